import logging
import re
from typing import List, Optional

from .models import AugmentedContext, QueryAnswer, normalize_entity_name
from .errors import GenerationError
from .llm_client import ModelClient


logger = logging.getLogger(__name__)


SYSTEM_PROMPT = (
    "You are a helpful assistant that answers user questions based on "
    "context retrieved from the user's documents and from a knowledge graph "
    "built over them. Ground your answer in the context; if the context "
    "does not contain the answer, say that the information is not available "
    "in the documents. Refer to concepts by the names used in the context."
)


def build_answer_prompt(question: str, context: AugmentedContext) -> str:
    context_text = context.text or "(no context was retrieved)"
    return (
        "Here is the context retrieved for the question:\n\n"
        f"{context_text}\n\n"
        f"Question: {question}\n"
        "Answer:"
    )


def find_key_entities(answer: str, context: AugmentedContext) -> List[str]:
    """
    Names of context entities that occur in the answer, on word boundaries
    and after normalisation, in context order and each once.
    """
    haystack = normalize_entity_name(answer)
    found: List[str] = []
    seen = set()
    for entity in context.entities:
        needle = normalize_entity_name(entity.name)
        if not needle or needle in seen:
            continue
        if re.search(rf"(?<!\w){re.escape(needle)}(?!\w)", haystack):
            seen.add(needle)
            found.append(entity.name)
    return found


class AnswerComposer:
    """One completion per question; failures surface as GenerationError."""

    def __init__(self, model: ModelClient, max_tokens: Optional[int] = None) -> None:
        self.model = model
        self.max_tokens = max_tokens

    async def answer(self, question: str, context: AugmentedContext) -> QueryAnswer:
        prompt = build_answer_prompt(question, context)
        constraints = {"system": SYSTEM_PROMPT}
        if self.max_tokens:
            constraints["max_tokens"] = self.max_tokens

        try:
            text = await self.model.complete(prompt, constraints)
        except Exception as e:
            raise GenerationError(f"Answer generation failed: {e}") from e

        text = (text or "").strip()
        if not text:
            raise GenerationError("Model returned an empty answer")

        key_entities = find_key_entities(text, context)
        logger.info(
            "Answered %r (response length=%d chars, %d key entit(ies))",
            question,
            len(text),
            len(key_entities),
        )
        return QueryAnswer(answer=text, key_entities=key_entities)


__all__ = ["AnswerComposer", "SYSTEM_PROMPT", "build_answer_prompt", "find_key_entities"]
