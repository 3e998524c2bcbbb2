"""
Fact Memory Service

Facade over the extractor, entity store, conflict resolver, cache and prompt
injector. It owns transactions and per-user locking:

- Writes (extraction, resolution, deletion) run under the user's lock, each
  as one transaction that also invalidates the user's cache.
- Guaranteed reads hit the cache without locking; a miss populates under the
  lock so it can never cache a view older than a committed write.
- The LLM fallback always runs before the lock is taken.
"""

import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, List, Optional, Sequence, Tuple, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from factmemory.core.config import FactMemorySettings, Settings, settings
from factmemory.core.exceptions import AppError, ErrorKind, NotFoundError, ValidationError
from factmemory.core.llm_client import create_llm_client
from factmemory.core.locks import UserLockRegistry
from factmemory.schemas.facts import (
    AttributeHistoryItem,
    BatchExtractionReport,
    BatchFailure,
    ConflictSummary,
    CriticalFacts,
    DiagnosticInfo,
    EntitySummary,
    ExpectedFacts,
    ExtractionResult,
    FactAccuracyCheck,
    IncomingMessage,
    PromptWithFacts,
    ResolutionReport,
)
from factmemory.services.conflict_resolver import ConflictResolver
from factmemory.services.entity_store import EntityStore
from factmemory.services.extraction.fact_extractor import FactExtractor
from factmemory.services.extraction.llm_extractor import LLMFactExtractor
from factmemory.services.extraction.pattern_extractor import PatternExtractor
from factmemory.services.fact_cache import CRITICAL_FACTS_KEY, MISS, PET_NAMES_KEY, USER_NAME_KEY, UserFactCache
from factmemory.services.prompt_injector import PromptFactInjector
from factmemory.services.semantic_retriever import create_retriever
from factmemory.utils.logging import get_logger
from factmemory.utils.normalization import normalize_name

LOGGER = get_logger(__name__)

ACCURACY_READ_REPETITIONS = 100


class FactMemoryService:
    """Entry point used by the conversation pipeline and the HTTP API."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        locks: Optional[UserLockRegistry] = None,
        fact_settings: Optional[FactMemorySettings] = None,
        extractor: Optional[FactExtractor] = None,
        injector: Optional[PromptFactInjector] = None,
    ):
        self.session_factory = session_factory
        self.locks = locks or UserLockRegistry()
        self.settings = fact_settings or settings.facts
        self.extractor = extractor or FactExtractor(fact_settings=self.settings)
        self.injector = injector or PromptFactInjector(required_categories=self.settings.required_fact_categories)

    # Plumbing

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        async with self.session_factory() as session, session.begin():
            yield session

    def _components(self, session: AsyncSession) -> Tuple[EntityStore, ConflictResolver]:
        store = EntityStore(session, self.settings)
        return store, ConflictResolver(session, store)

    def _cache(self, session: AsyncSession, user_id: str) -> UserFactCache:
        return UserFactCache(session, user_id, self.settings.cache_ttl_hours)

    @staticmethod
    def _check_user(user_id: Optional[str]) -> str:
        if not user_id or not str(user_id).strip():
            raise ValidationError("user_id is required")
        return str(user_id)

    async def _cached_read(
        self,
        user_id: str,
        cache_key: str,
        loader: Callable[[EntityStore], Awaitable[Any]],
        populate: bool = True,
    ) -> Any:
        """Read ``cache_key`` from the cache, falling back to the store.

        With ``populate=False`` a miss is served straight from the store
        without taking the lock or writing a cache row.
        """
        user_id = self._check_user(user_id)
        async with self.session_factory() as session:
            cached = await self._cache(session, user_id).lookup(cache_key)
            if cached is not MISS:
                return cached
            if not populate:
                return await loader(EntityStore(session, self.settings))

        async with self.locks.acquire(user_id):
            async with self._transaction() as session:
                store = EntityStore(session, self.settings)
                return await self._cache(session, user_id).get_or_populate(cache_key, lambda: loader(store))

    async def _load_critical_facts(self, store: EntityStore, user_id: str) -> dict:
        facts = await store.read_critical_facts(user_id)
        return facts.model_dump(mode="json")

    # Guaranteed reads

    async def get_user_name(self, user_id: str, populate: bool = True) -> str:
        """
        Canonical user name.

        Raises:
            NotFoundError: If the user never stated a name
        """
        return await self._cached_read(user_id, USER_NAME_KEY, lambda store: store.get_user_name(user_id), populate)

    async def get_pet_names(self, user_id: str, populate: bool = True) -> List[str]:
        return list(
            await self._cached_read(user_id, PET_NAMES_KEY, lambda store: store.get_pet_names(user_id), populate)
        )

    async def get_all_critical_facts(self, user_id: str, populate: bool = True) -> CriticalFacts:
        data = await self._cached_read(
            user_id, CRITICAL_FACTS_KEY, lambda store: self._load_critical_facts(store, user_id), populate
        )
        return CriticalFacts.model_validate(data)

    # Extraction

    async def extract_and_store_facts(
        self, content: Optional[str], message_id: Optional[str], user_id: Optional[str]
    ) -> ExtractionResult:
        """
        Extract facts from one message and persist them.

        Args:
            content: Message text
            message_id: Source message id, stamped on every write
            user_id: Owner of the facts

        Returns:
            ExtractionResult: What was extracted (empty when the message states no facts)

        Raises:
            ValidationError: If content is null or an id is missing
        """
        user_id = self._check_user(user_id)
        if content is None:
            raise ValidationError("Message content must not be null", details={"message_id": message_id})
        if not message_id:
            raise ValidationError("message_id is required", details={"user_id": user_id})

        result = await self.extractor.extract(content)
        if result.is_empty:
            LOGGER.debug("No facts in message", extra={"user_id": user_id, "message_id": message_id})
            return result

        async with self.locks.acquire(user_id):
            async with self._transaction() as session:
                store, resolver = self._components(session)
                changes = await self.extractor.persist(store, resolver, user_id, result, message_id)
                await resolver.handle_attribute_changes(user_id, changes)
                if self.settings.resolve_after_extraction:
                    await resolver.resolve_all(user_id)

        LOGGER.info(
            "Facts stored",
            extra={
                "user_id": user_id,
                "message_id": message_id,
                "method": result.method,
                "entities": len(result.entities),
                "profile_attributes": len(result.profile_attributes),
            },
        )
        return result

    async def extract_and_store_batch(
        self, messages: Sequence[Union[IncomingMessage, dict]]
    ) -> BatchExtractionReport:
        """
        Process messages one by one; a bad message is skipped and reported,
        never aborting the rest of the batch.
        """
        report = BatchExtractionReport(total=len(messages))

        for index, raw in enumerate(messages):
            message_id = raw.get("message_id") if isinstance(raw, dict) else getattr(raw, "message_id", None)
            try:
                message = raw if isinstance(raw, IncomingMessage) else IncomingMessage.model_validate(raw)
                if message.content is None or not message.content.strip():
                    raise ValidationError("Message content is null or blank")
                await self.extract_and_store_facts(message.content, message.message_id, message.user_id)
                report.processed += 1
            except PydanticValidationError as e:
                report.failures.append(
                    BatchFailure(index=index, message_id=message_id, error_kind=ErrorKind.VALIDATION_ERROR.value, error=str(e))
                )
            except AppError as e:
                report.failures.append(
                    BatchFailure(index=index, message_id=message_id, error_kind=e.kind.value, error=e.message)
                )
            except Exception as e:
                LOGGER.error(
                    f"Unexpected error processing batch message: {e}",
                    extra={"index": index, "message_id": message_id},
                    exc_info=True,
                )
                report.failures.append(
                    BatchFailure(index=index, message_id=message_id, error_kind=ErrorKind.INTERNAL_ERROR.value, error=str(e))
                )

        report.skipped = len(report.failures)
        if report.failures:
            report.kind = ErrorKind.PARTIAL_BATCH_FAILURE.value
            LOGGER.warning(
                "Batch extraction skipped messages",
                extra={"total": report.total, "skipped": report.skipped},
            )
        return report

    # Prompting

    async def generate_system_prompt_with_facts(
        self, user_id: str, base_prompt: str, query: Optional[str] = None
    ) -> PromptWithFacts:
        facts = await self.get_all_critical_facts(user_id)
        pending = await self.get_pending_conflicts(user_id)
        return await self.injector.generate(user_id, base_prompt, facts, pending=pending, query=query)

    # Diagnostics

    async def test_fact_accuracy(
        self, user_id: str, expected: Optional[ExpectedFacts] = None
    ) -> List[FactAccuracyCheck]:
        """
        Check the guaranteed reads.

        With ``expected`` the reads are compared against it. Without it the
        engine checks itself: repeated reads are identical, the cached view
        matches a fresh store read, and the generated prompt carries every
        critical value. Read-only: no cache rows are written.
        """
        user_id = self._check_user(user_id)
        if expected is not None:
            return await self._check_expected(user_id, expected)

        checks = []
        names = [await self._optional_user_name(user_id) for _ in range(ACCURACY_READ_REPETITIONS)]
        checks.append(
            FactAccuracyCheck(
                test_name="user_name_repeatable",
                expected=names[0],
                actual=sorted(set(n or "" for n in names)),
                passed=len(set(names)) == 1,
            )
        )

        pets = [tuple(await self.get_pet_names(user_id, populate=False)) for _ in range(ACCURACY_READ_REPETITIONS)]
        checks.append(
            FactAccuracyCheck(
                test_name="pet_names_repeatable",
                expected=list(pets[0]),
                actual=[list(p) for p in sorted(set(pets))],
                passed=len(set(pets)) == 1,
            )
        )

        async with self.session_factory() as session:
            cached = await self._cache(session, user_id).lookup(CRITICAL_FACTS_KEY)
            fresh = (await EntityStore(session, self.settings).read_critical_facts(user_id)).model_dump(mode="json")
        checks.append(
            FactAccuracyCheck(
                test_name="cache_matches_store",
                expected=fresh,
                actual=fresh if cached is MISS else cached,
                passed=cached is MISS or cached == fresh,
            )
        )

        facts = CriticalFacts.model_validate(fresh)
        prompt = await self.injector.generate(user_id, "", facts)
        tokens = ([facts.user_name] if facts.user_name else []) + facts.pet_names
        missing = [token for token in tokens if token not in prompt.enhanced_prompt]
        checks.append(
            FactAccuracyCheck(
                test_name="prompt_contains_facts",
                expected=tokens,
                actual=[t for t in tokens if t not in missing],
                passed=not missing,
            )
        )

        failed = [c.test_name for c in checks if not c.passed]
        if failed:
            LOGGER.warning("Fact accuracy checks failed", extra={"user_id": user_id, "failed": failed})
        return checks

    async def _optional_user_name(self, user_id: str) -> Optional[str]:
        try:
            return await self.get_user_name(user_id, populate=False)
        except NotFoundError:
            return None

    async def _check_expected(self, user_id: str, expected: ExpectedFacts) -> List[FactAccuracyCheck]:
        checks = []
        if expected.user_name is not None:
            actual = await self._optional_user_name(user_id)
            checks.append(
                FactAccuracyCheck(
                    test_name="user_name",
                    expected=expected.user_name,
                    actual=actual,
                    passed=actual == expected.user_name,
                )
            )
        if expected.pet_names is not None:
            actual_pets = await self.get_pet_names(user_id, populate=False)
            checks.append(
                FactAccuracyCheck(
                    test_name="pet_names",
                    expected=expected.pet_names,
                    actual=actual_pets,
                    passed=sorted(map(normalize_name, actual_pets)) == sorted(map(normalize_name, expected.pet_names)),
                )
            )
        return checks

    async def get_diagnostic_info(self, user_id: str) -> DiagnosticInfo:
        user_id = self._check_user(user_id)
        async with self.session_factory() as session:
            store, resolver = self._components(session)
            entities = await store.list_entities(user_id, include_proposed=True)
            return DiagnosticInfo(
                entity_count=await store.count_active_entities(user_id),
                cache_entries=await self._cache(session, user_id).entry_count(),
                last_updated=await store.last_updated(user_id),
                pending_conflicts=await resolver.conflicts.count_pending(user_id),
                entities=[EntitySummary.model_validate(e) for e in entities],
            )

    # Conflicts

    async def resolve_conflicts(self, user_id: str) -> ResolutionReport:
        user_id = self._check_user(user_id)
        async with self.locks.acquire(user_id):
            async with self._transaction() as session:
                _, resolver = self._components(session)
                return await resolver.resolve_all(user_id)

    async def get_pending_conflicts(self, user_id: str) -> List[ConflictSummary]:
        user_id = self._check_user(user_id)
        async with self.session_factory() as session:
            _, resolver = self._components(session)
            return [ConflictSummary.model_validate(c) for c in await resolver.pending_conflicts(user_id)]

    async def resolve_pending_conflict(self, user_id: str, conflict_id: uuid.UUID, keep_value: str) -> ConflictSummary:
        """
        Close a pending contradiction with the value the user confirmed.

        Raises:
            NotFoundError: Unknown conflict
            ValidationError: Conflict not pending or empty value
        """
        user_id = self._check_user(user_id)
        async with self.locks.acquire(user_id):
            async with self._transaction() as session:
                _, resolver = self._components(session)
                conflict = await resolver.resolve_pending(user_id, conflict_id, keep_value)
                return ConflictSummary.model_validate(conflict)

    # Profile facts

    async def get_profile_fact(self, user_id: str, kind: str) -> str:
        """
        Current value of a user-level attribute (location, birthday...).

        Raises:
            NotFoundError: If the value was never stated
            ConflictUnresolvedError: If contradictory values await confirmation
        """
        user_id = self._check_user(user_id)
        async with self.session_factory() as session:
            store, resolver = self._components(session)
            profile = await store.get_profile(user_id)
            if profile is None:
                raise NotFoundError(f"No '{kind}' stored for user", details={"user_id": user_id})
            await resolver.ensure_no_pending(user_id, profile, kind)
            value = await store.get_current_value(profile, kind)
            if value is None:
                raise NotFoundError(f"No '{kind}' stored for user", details={"user_id": user_id})
            return value

    async def get_attribute_history(self, user_id: str, kind: str) -> List[AttributeHistoryItem]:
        user_id = self._check_user(user_id)
        async with self.session_factory() as session:
            store = EntityStore(session, self.settings)
            profile = await store.get_profile(user_id)
            if profile is None:
                return []
            rows = await store.get_attribute_history(profile, kind)
            return [AttributeHistoryItem.model_validate(row) for row in rows]

    async def forget_entity(self, user_id: str, entity_id: uuid.UUID) -> EntitySummary:
        """User-initiated deletion; the entity is deactivated, never removed."""
        user_id = self._check_user(user_id)
        async with self.locks.acquire(user_id):
            async with self._transaction() as session:
                store = EntityStore(session, self.settings)
                entity = await store.deactivate_entity(user_id, entity_id)
                return EntitySummary.model_validate(entity)


def build_fact_memory_service(
    session_factory: async_sessionmaker[AsyncSession],
    app_settings: Optional[Settings] = None,
    locks: Optional[UserLockRegistry] = None,
) -> FactMemoryService:
    """Wire the service from settings: LLM fallback only when a provider key is configured."""
    app_settings = app_settings or settings
    fact_settings = app_settings.facts

    llm_extractor = None
    if app_settings.llm.is_configured and fact_settings.llm_fallback_mode != "never":
        llm_extractor = LLMFactExtractor(
            create_llm_client(app_settings.llm),
            timeout_seconds=fact_settings.extraction_timeout_seconds,
            max_confidence=fact_settings.pattern_confidence,
        )
    else:
        LOGGER.info("LLM extraction fallback disabled")

    extractor = FactExtractor(PatternExtractor(fact_settings), llm_extractor, fact_settings)
    injector = PromptFactInjector(
        retriever=create_retriever(app_settings.retriever),
        required_categories=fact_settings.required_fact_categories,
        advisory_top_k=app_settings.retriever.top_k,
    )
    return FactMemoryService(session_factory, locks, fact_settings, extractor, injector)
