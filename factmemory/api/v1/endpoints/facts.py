"""Fact memory API endpoints.

User-scoped routes live under ``/users/{user_id}/facts``; batch ingestion,
where every message names its own user, lives under ``/facts``.
"""

from functools import lru_cache
from typing import Annotated, List
from uuid import UUID

from fastapi import APIRouter, Depends, status

from factmemory.core.database import async_session_maker
from factmemory.schemas.facts import (
    AttributeHistoryItem,
    BatchExtractionReport,
    ConflictSummary,
    CriticalFacts,
    DiagnosticInfo,
    EntitySummary,
    ExtractBatchRequest,
    ExtractFactsRequest,
    ExtractionResult,
    FactAccuracyCheck,
    FactAccuracyRequest,
    PetNamesResponse,
    ProfileFactResponse,
    PromptRequest,
    PromptWithFacts,
    ResolutionReport,
    ResolvePendingRequest,
    UserNameResponse,
)
from factmemory.services.fact_memory_service import FactMemoryService, build_fact_memory_service
from factmemory.utils.logging import get_logger

LOGGER = get_logger(__name__)

router = APIRouter()
batch_router = APIRouter()


@lru_cache
def get_fact_memory_service() -> FactMemoryService:
    # One instance per process so every request shares the per-user lock registry
    return build_fact_memory_service(async_session_maker)


FactService = Annotated[FactMemoryService, Depends(get_fact_memory_service)]


@router.get(
    "/user-name",
    response_model=UserNameResponse,
    summary="Get canonical user name",
    description="Exact lookup of the user's canonical name. 404 means the assistant must ask for it.",
    operation_id="get_user_name",
)
async def get_user_name(user_id: str, service: FactService) -> UserNameResponse:
    return UserNameResponse(user_name=await service.get_user_name(user_id))


@router.get(
    "/pet-names",
    response_model=PetNamesResponse,
    summary="Get pet names",
    operation_id="get_pet_names",
)
async def get_pet_names(user_id: str, service: FactService) -> PetNamesResponse:
    return PetNamesResponse(pet_names=await service.get_pet_names(user_id))


@router.get(
    "/critical",
    response_model=CriticalFacts,
    summary="Get all critical facts",
    operation_id="get_all_critical_facts",
)
async def get_all_critical_facts(user_id: str, service: FactService) -> CriticalFacts:
    return await service.get_all_critical_facts(user_id)


@router.post(
    "/extract",
    response_model=ExtractionResult,
    summary="Extract and store facts from a message",
    operation_id="extract_and_store_facts",
)
async def extract_and_store_facts(
    user_id: str, request: ExtractFactsRequest, service: FactService
) -> ExtractionResult:
    return await service.extract_and_store_facts(request.content, request.message_id, user_id)


@batch_router.post(
    "/extract-batch",
    response_model=BatchExtractionReport,
    summary="Extract facts from a batch of messages",
    description="Malformed messages are skipped and reported; the rest of the batch is still processed.",
    operation_id="extract_and_store_batch",
)
async def extract_and_store_batch(request: ExtractBatchRequest, service: FactService) -> BatchExtractionReport:
    return await service.extract_and_store_batch(request.messages)


@router.post(
    "/prompt",
    response_model=PromptWithFacts,
    summary="Build a system prompt with verified facts",
    operation_id="generate_system_prompt_with_facts",
)
async def generate_system_prompt_with_facts(
    user_id: str, request: PromptRequest, service: FactService
) -> PromptWithFacts:
    return await service.generate_system_prompt_with_facts(user_id, request.base_prompt, query=request.query)


@router.post(
    "/accuracy",
    response_model=List[FactAccuracyCheck],
    summary="Run fact accuracy checks",
    operation_id="test_fact_accuracy",
)
async def test_fact_accuracy(
    user_id: str, request: FactAccuracyRequest, service: FactService
) -> List[FactAccuracyCheck]:
    return await service.test_fact_accuracy(user_id, expected=request.expected)


@router.get(
    "/diagnostics",
    response_model=DiagnosticInfo,
    summary="Get diagnostic info",
    operation_id="get_diagnostic_info",
)
async def get_diagnostic_info(user_id: str, service: FactService) -> DiagnosticInfo:
    return await service.get_diagnostic_info(user_id)


@router.post(
    "/resolve",
    response_model=ResolutionReport,
    summary="Run conflict resolution",
    operation_id="resolve_conflicts",
)
async def resolve_conflicts(user_id: str, service: FactService) -> ResolutionReport:
    return await service.resolve_conflicts(user_id)


@router.get(
    "/conflicts",
    response_model=List[ConflictSummary],
    summary="List conflicts awaiting user confirmation",
    operation_id="get_pending_conflicts",
)
async def get_pending_conflicts(user_id: str, service: FactService) -> List[ConflictSummary]:
    return await service.get_pending_conflicts(user_id)


@router.post(
    "/conflicts/{conflict_id}/resolve",
    response_model=ConflictSummary,
    summary="Confirm the value of a pending conflict",
    operation_id="resolve_pending_conflict",
)
async def resolve_pending_conflict(
    user_id: str, conflict_id: UUID, request: ResolvePendingRequest, service: FactService
) -> ConflictSummary:
    return await service.resolve_pending_conflict(user_id, conflict_id, request.keep_value)


@router.get(
    "/profile/{kind}",
    response_model=ProfileFactResponse,
    summary="Get a user-level fact",
    description="409 when contradictory values are waiting for confirmation.",
    operation_id="get_profile_fact",
)
async def get_profile_fact(user_id: str, kind: str, service: FactService) -> ProfileFactResponse:
    return ProfileFactResponse(kind=kind, value=await service.get_profile_fact(user_id, kind))


@router.get(
    "/profile/{kind}/history",
    response_model=List[AttributeHistoryItem],
    summary="Get the value history of a user-level fact",
    operation_id="get_attribute_history",
)
async def get_attribute_history(user_id: str, kind: str, service: FactService) -> List[AttributeHistoryItem]:
    return await service.get_attribute_history(user_id, kind)


@router.delete(
    "/entities/{entity_id}",
    response_model=EntitySummary,
    status_code=status.HTTP_200_OK,
    summary="Forget an entity",
    description="Deactivates the entity; its history is kept.",
    operation_id="forget_entity",
)
async def forget_entity(user_id: str, entity_id: UUID, service: FactService) -> EntitySummary:
    LOGGER.info("Forget entity requested", extra={"user_id": user_id, "entity_id": str(entity_id)})
    return await service.forget_entity(user_id, entity_id)
