import json
import re
from typing import Any, Dict, List, Union

from factmemory.utils.logging import get_logger

LOGGER = get_logger(__name__)

_FENCE_PATTERN = re.compile(r"^```(?:json)?\s*|\s*```$")
_OBJECT_PATTERN = re.compile(r"(\{[^{}]*(?:\{[^{}]*(?:\{[^{}]*\}[^{}]*)*\}[^{}]*)*\})", re.DOTALL)


def parse_json_safely(text: str) -> Union[Dict[str, Any], List[Any], None]:
    """Parse JSON emitted by an LLM.

    Handles:
    - Markdown code fences (```json ... ```)
    - Leading/trailing prose around a single object
    - Concatenated JSON objects ({...}\\n{...}), merged into one

    Args:
        text: Raw model output

    Returns:
        Parsed JSON value or None if nothing parseable was found
    """
    if not text:
        return None

    cleaned_text = _FENCE_PATTERN.sub("", text.strip()).strip()

    try:
        return json.loads(cleaned_text)
    except json.JSONDecodeError as e:
        LOGGER.warning(f"Initial JSON parse failed: {e}, attempting repairs...")

    objects = _decode_all(cleaned_text)
    if objects:
        return _merge_json_objects(objects)

    match = _OBJECT_PATTERN.search(cleaned_text)
    if match:
        try:
            return json.loads(match.group(1))
        except json.JSONDecodeError as e:
            LOGGER.debug(f"Embedded object parse failed: {e}")

    LOGGER.error("Failed to parse JSON from model output", extra={"preview": cleaned_text[:200]})
    return None


def _decode_all(text: str) -> List[Any]:
    """Decode every top-level JSON value found in ``text``."""
    decoder = json.JSONDecoder()
    results = []
    idx = 0

    while idx < len(text):
        start = _next_json_start(text, idx)
        if start == -1:
            break
        try:
            obj, idx = decoder.raw_decode(text, start)
            results.append(obj)
        except json.JSONDecodeError:
            idx = start + 1

    return results


def _next_json_start(text: str, idx: int) -> int:
    positions = [p for p in (text.find("{", idx), text.find("[", idx)) if p != -1]
    return min(positions) if positions else -1


def _merge_json_objects(objects: List[Any]) -> Union[Dict[str, Any], List[Any]]:
    """Merge decoded fragments: dicts are merged key-wise with list concatenation."""
    if len(objects) == 1:
        return objects[0]

    if all(isinstance(obj, dict) for obj in objects):
        merged: Dict[str, Any] = {}
        for obj in objects:
            for key, value in obj.items():
                existing = merged.get(key)
                if isinstance(existing, list) and isinstance(value, list):
                    merged[key] = existing + value
                else:
                    merged[key] = value
        return merged

    if all(isinstance(obj, list) for obj in objects):
        return [item for obj in objects for item in obj]

    return objects
