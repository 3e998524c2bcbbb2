"""
Prompt Fact Injector

Renders a user's critical facts into a system prompt as a delimited,
verbatim block. Values are copied exactly as stored; the model is told never
to substitute them. Unverified retrieval results go in their own advisory
section and are never mixed into the verified block.
"""

import re
from typing import List, Optional, Sequence

from factmemory.schemas.facts import AdvisoryContext, ConflictSummary, CriticalFacts, PromptWithFacts
from factmemory.services.semantic_retriever import NullRetriever, SemanticRetriever
from factmemory.utils.logging import get_logger

LOGGER = get_logger(__name__)

CRITICAL_HEADER = "=== CRITICAL USER FACTS (VERIFIED) ==="
CRITICAL_FOOTER = "=== END CRITICAL USER FACTS ==="
CRITICAL_INSTRUCTION = (
    "Use these values exactly as written. Never guess or substitute a different name. "
    "If a value is marked NOT SET, ask the user for it."
)
NOT_SET = "[NOT SET - ASK THE USER]"
CLARIFICATION_HEADER = "--- NEEDS CLARIFICATION ---"
CLARIFICATION_FOOTER = "--- END NEEDS CLARIFICATION ---"
ADVISORY_HEADER = "--- ADVISORY CONTEXT (unverified, lower trust) ---"
ADVISORY_FOOTER = "--- END ADVISORY CONTEXT ---"

EXAMPLES_SECTION = re.compile(r"^[ \t]*(?:#+[ \t]*)?(?i:examples?)\b.*$", re.MULTILINE)

CATEGORY_LABELS = {
    "user_name": "User's name",
    "pet_names": "Pet names",
    "family_members": "Family",
    "location": "Location",
    "occupation": "Occupation",
    "workplace": "Workplace",
}


class PromptFactInjector:
    """Builds fact-enhanced system prompts."""

    def __init__(
        self,
        retriever: Optional[SemanticRetriever] = None,
        required_categories: Sequence[str] = ("user_name", "pet_names"),
        advisory_top_k: int = 5,
    ):
        self.retriever = retriever or NullRetriever()
        self.required_categories = list(required_categories)
        self.advisory_top_k = advisory_top_k

    async def generate(
        self,
        user_id: str,
        base_prompt: str,
        facts: CriticalFacts,
        pending: Sequence[ConflictSummary] = (),
        query: Optional[str] = None,
    ) -> PromptWithFacts:
        """
        Insert the facts block into ``base_prompt``.

        Args:
            user_id: Owner of the facts
            base_prompt: System prompt to enhance
            facts: Critical facts snapshot
            pending: Unconfirmed contradictions to surface for clarification
            query: Current user query; enables the advisory section

        Returns:
            PromptWithFacts: Enhanced prompt plus completeness confidence
        """
        lines, included = self.render_critical_facts(facts)
        missing = [c for c in self.required_categories if not facts.has_category(c)]
        blocks = ["\n".join(lines)]

        clarifications = self.render_clarifications(pending)
        if clarifications:
            blocks.append("\n".join([CLARIFICATION_HEADER, *clarifications, CLARIFICATION_FOOTER]))

        advisory = await self._advisory(user_id, query)
        if advisory:
            blocks.append("\n".join([ADVISORY_HEADER, *(self._advisory_line(a) for a in advisory), ADVISORY_FOOTER]))

        enhanced = self.insert_block(base_prompt or "", "\n\n".join(blocks))

        if self.required_categories:
            present = len(self.required_categories) - len(missing)
            confidence = round(present / len(self.required_categories), 4)
        else:
            confidence = 1.0

        LOGGER.debug(
            "Generated fact-enhanced prompt",
            extra={"user_id": user_id, "confidence": confidence, "missing": missing, "advisory": len(advisory)},
        )
        return PromptWithFacts(
            enhanced_prompt=enhanced,
            confidence=confidence,
            facts_included=included,
            missing_categories=missing,
            pending_clarifications=clarifications,
            advisory_count=len(advisory),
        )

    def render_critical_facts(self, facts: CriticalFacts) -> tuple[List[str], List[str]]:
        """Return the block lines and the categories that had a value."""
        lines = [CRITICAL_HEADER]
        included = []
        for category, label in CATEGORY_LABELS.items():
            value = self._format_value(category, facts)
            if value:
                included.append(category)
                lines.append(f"- {label}: {value}")
            elif category in self.required_categories:
                lines.append(f"- {label}: {NOT_SET}")
        lines.append(CRITICAL_INSTRUCTION)
        lines.append(CRITICAL_FOOTER)
        return lines, included

    @staticmethod
    def _format_value(category: str, facts: CriticalFacts) -> Optional[str]:
        value = getattr(facts, category)
        if category == "pet_names":
            return ", ".join(value) if value else None
        if category == "family_members":
            members = [f"{m.name} ({m.relation})" if m.relation else m.name for m in value]
            return ", ".join(members) if members else None
        return value or None

    @staticmethod
    def render_clarifications(pending: Sequence[ConflictSummary]) -> List[str]:
        lines = []
        for conflict in pending:
            details = conflict.details or {}
            values = " vs ".join(f'"{v}"' for v in details.get("values") or [])
            lines.append(
                f"- {conflict.attribute_name or conflict.conflict_type}: conflicting values {values}; "
                "confirm with the user before relying on it."
            )
        return lines

    async def _advisory(self, user_id: str, query: Optional[str]) -> List[AdvisoryContext]:
        if not query:
            return []
        try:
            return await self.retriever.search(user_id, query, self.advisory_top_k)
        except Exception as e:
            LOGGER.warning(f"Advisory retrieval failed: {e}", extra={"user_id": user_id}, exc_info=True)
            return []

    @staticmethod
    def _advisory_line(context: AdvisoryContext) -> str:
        source = f" (source: {context.source})" if context.source else ""
        return f"- {context.content}{source}"

    @staticmethod
    def insert_block(base_prompt: str, block: str) -> str:
        """Place ``block`` before the first Examples section, or append it."""
        match = EXAMPLES_SECTION.search(base_prompt)
        if match is None:
            separator = "\n\n" if base_prompt.strip() else ""
            return f"{base_prompt.rstrip()}{separator}{block}\n"
        head = base_prompt[: match.start()].rstrip()
        tail = base_prompt[match.start():]
        prefix = f"{head}\n\n" if head else ""
        return f"{prefix}{block}\n\n{tail}"
