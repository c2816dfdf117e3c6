from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Optional

from .errors import ExtractionFailure, ModelError
from .llm_client import ModelClient
from .models import (
    ExtractedEntity,
    ExtractedRelation,
    ExtractionResult,
    normalize_entity_name,
)


logger = logging.getLogger(__name__)


ENTITY_TYPES = ("Person", "Organization", "Concept", "Technology", "Location", "Event", "Other")

EXTRACTION_SYSTEM_PROMPT = (
    "You are an assistant that extracts a knowledge graph from a text fragment.\n"
    "Identify the important entities and classify each one as one of: "
    + ", ".join(ENTITY_TYPES)
    + ".\n"
    "Identify directed relations between those entities. The relation label "
    "must be a concise UPPER_SNAKE_CASE predicate (e.g. IS_A, PART_OF, DRIVES).\n\n"
    "Return the result as a single valid JSON object with two arrays: "
    "'entities' and 'relations'.\n"
    "Each entity: {\"name\": string, \"type\": string}.\n"
    "Each relation: {\"source\": string, \"target\": string, \"label\": string}, "
    "where source and target are entity names from the 'entities' array.\n"
    "If nothing is found, return empty arrays. Do not output any text before "
    "or after the JSON object. Use only double quotes and no trailing commas.\n"
)

_PREDICATE_JUNK = re.compile(r"[^A-Z0-9_]+")


def build_extraction_prompt(chunk_text: str) -> str:
    return "Text fragment:\n" + chunk_text


def _extract_json_block(raw: str) -> str:
    """
    Try to robustly extract a JSON object from an LLM response.

    Удаляет возможные Markdown-кодовые блоки и берёт подстроку
    от первого '{' до последней '}'.
    """
    text = raw.strip()

    if text.startswith("```"):
        first_newline = text.find("\n")
        if first_newline != -1:
            text = text[first_newline + 1 :]
        end_fence = text.rfind("```")
        if end_fence != -1:
            text = text[:end_fence]
        text = text.strip()

    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1 or end <= start:
        return text

    return text[start : end + 1]


def _try_parse_json_with_trimming(raw: str, max_trim: int = 200) -> Any:
    """
    Parse JSON, trimming a truncated tail if needed.

    Covers answers cut off inside an array by the token limit: the tail is
    dropped back to the last closing bracket until the rest parses.
    """
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        last_error = e

    for cut in range(1, min(max_trim, len(raw))):
        trimmed = raw[:-cut].rstrip()
        last_brace = max(trimmed.rfind("}"), trimmed.rfind("]"))
        if last_brace == -1:
            break
        candidate = trimmed[: last_brace + 1]
        try:
            data = json.loads(candidate)
            logger.debug("Extraction JSON parsed after trimming %d chars", cut)
            return data
        except json.JSONDecodeError as e:
            last_error = e

    raise last_error


def _first_str(obj: Dict[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = obj.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _normalize_type(raw: Optional[str]) -> str:
    if not raw:
        return "Other"
    for known in ENTITY_TYPES:
        if raw.strip().lower() == known.lower():
            return known
    return raw.strip()


def _normalize_predicate(raw: str) -> str:
    predicate = _PREDICATE_JUNK.sub("_", raw.strip().upper()).strip("_")
    return predicate or "RELATED_TO"


def parse_extraction(raw: str) -> ExtractionResult:
    """
    Validate a model answer against the extraction schema.

    Raises ValueError when the answer is not a JSON object with list-valued
    'entities' / 'relations' keys. Invalid items inside the lists are
    skipped individually.
    """
    try:
        data = _try_parse_json_with_trimming(_extract_json_block(raw))
    except json.JSONDecodeError as e:
        raise ValueError(f"not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")
    raw_entities = data.get("entities", data.get("nodes", []))
    raw_relations = data.get("relations", data.get("edges", []))
    if not isinstance(raw_entities, list) or not isinstance(raw_relations, list):
        raise ValueError("'entities' and 'relations' must be arrays")

    entities: Dict[str, ExtractedEntity] = {}
    for item in raw_entities:
        if not isinstance(item, dict):
            continue
        name = _first_str(item, "name", "id")
        if not name or not normalize_entity_name(name):
            continue
        entity = ExtractedEntity(name=name, type=_normalize_type(_first_str(item, "type", "label")))
        # Same concept named twice in one chunk: last occurrence wins.
        entities[entity.key] = entity

    relations: List[ExtractedRelation] = []
    seen = set()
    for item in raw_relations:
        if not isinstance(item, dict):
            continue
        source = _first_str(item, "source", "subject")
        target = _first_str(item, "target", "object")
        label = _first_str(item, "label", "predicate", "type")
        if not source or not target or not label:
            continue
        source_key = normalize_entity_name(source)
        target_key = normalize_entity_name(target)
        if source_key not in entities or target_key not in entities:
            logger.warning(
                "Dropping relation %r -[%s]-> %r: endpoint not among extracted entities",
                source,
                label,
                target,
            )
            continue
        if source_key == target_key:
            continue
        predicate = _normalize_predicate(label)
        triple = (source_key, target_key, predicate)
        if triple in seen:
            continue
        seen.add(triple)
        relations.append(
            ExtractedRelation(
                source=entities[source_key].name,
                target=entities[target_key].name,
                label=predicate,
            )
        )

    return ExtractionResult(entities=list(entities.values()), relations=relations)


class KnowledgeExtractor:
    """Asks the model for the entities and relations of one chunk."""

    def __init__(self, model: ModelClient, max_tokens: int = 1024) -> None:
        self.model = model
        self.max_tokens = max_tokens

    async def extract(self, chunk_text: str) -> ExtractionResult:
        if not chunk_text.strip():
            return ExtractionResult()

        try:
            raw = await self.model.complete(
                build_extraction_prompt(chunk_text),
                constraints={
                    "system": EXTRACTION_SYSTEM_PROMPT,
                    "response_format": "json_object",
                    "max_tokens": self.max_tokens,
                    "temperature": 0.0,
                },
            )
        except (ModelError, ExtractionFailure):
            raise
        except Exception as e:
            raise ExtractionFailure(f"Extraction call failed: {e}") from e

        try:
            result = parse_extraction(raw)
        except ValueError as e:
            # Не роняем всю ингестию: чанк сохранится без сущностей.
            logger.warning(
                "Failed to parse extraction answer (%s); chunk stored without entities. "
                "Answer preview: %r",
                e,
                raw[:200],
            )
            return ExtractionResult(parse_failed=True)

        logger.debug(
            "Extracted %d entit(ies) and %d relation(s)",
            len(result.entities),
            len(result.relations),
        )
        return result


__all__ = [
    "ENTITY_TYPES",
    "EXTRACTION_SYSTEM_PROMPT",
    "KnowledgeExtractor",
    "build_extraction_prompt",
    "parse_extraction",
]
