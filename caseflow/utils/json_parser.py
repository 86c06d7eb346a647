import json
import re
from typing import Any, Dict, List, Union

from caseflow.utils.logging import get_logger

LOGGER = get_logger(__name__)

_FENCE_PATTERN = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def parse_json_safely(text: str) -> Union[Dict[str, Any], List[Any], None]:
    """Parse JSON from model output, handling common formatting issues.

    Handles:
    - Markdown code fences (```json ... ```)
    - Leading/trailing whitespace or prose around a single object/array
    - Concatenated JSON values (e.g. ``[...]\\n[...]``)

    Args:
        text: The text containing JSON

    Returns:
        Parsed JSON value or None if nothing parseable was found
    """
    if not text:
        return None

    cleaned_text = _FENCE_PATTERN.sub("", text.strip()).strip()

    try:
        return json.loads(cleaned_text)
    except json.JSONDecodeError as e:
        LOGGER.debug(f"Initial JSON parse failed: {e}, attempting repairs")

    values = _decode_all(cleaned_text)
    if values:
        return _merge_json_values(values)

    LOGGER.warning("Failed to parse JSON from model output", extra={"preview": cleaned_text[:200]})
    return None


def _decode_all(text: str) -> List[Any]:
    """Decode every JSON object or array embedded in ``text``."""
    decoder = json.JSONDecoder()
    results: List[Any] = []
    idx = 0

    while idx < len(text):
        next_brace = text.find("{", idx)
        next_bracket = text.find("[", idx)
        starts = [pos for pos in (next_brace, next_bracket) if pos != -1]
        if not starts:
            break
        start = min(starts)

        try:
            obj, end_idx = decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            idx = start + 1
            continue

        results.append(obj)
        idx = end_idx

    return results


def _merge_json_values(values: List[Any]) -> Union[Dict[str, Any], List[Any]]:
    """Merge several decoded JSON values into one result.

    Lists are flattened, dicts are merged with list values concatenated.
    """
    if len(values) == 1:
        return values[0]

    if all(isinstance(value, list) for value in values):
        flattened: List[Any] = []
        for value in values:
            flattened.extend(value)
        return flattened

    if all(isinstance(value, dict) for value in values):
        merged: Dict[str, Any] = {}
        for value in values:
            for key, item in value.items():
                existing = merged.get(key)
                if isinstance(existing, list) and isinstance(item, list):
                    merged[key] = existing + item
                else:
                    merged[key] = item
        return merged

    return values
