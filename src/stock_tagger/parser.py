"""Extraction of structured metadata from free-form model replies."""

import json
from typing import Any

from loguru import logger
from pydantic import ValidationError

from stock_tagger.errors import MalformedResponseError
from stock_tagger.models import Metadata


_DECODER = json.JSONDecoder()


def extract_json_object(text: str) -> dict[str, Any] | None:
    """
    Return the first brace-delimited JSON object embedded in ``text``.

    Prose before and after the object is ignored, as are brace fragments that do not decode.

    Examples:
        >>> extract_json_object('Sure! {"title": "Barn"} thanks')
        {'title': 'Barn'}
        >>> extract_json_object("no json here") is None
        True

    """
    start = text.find("{")
    while start != -1:
        try:
            candidate, _ = _DECODER.raw_decode(text, start)
        except json.JSONDecodeError:
            candidate = None
        if isinstance(candidate, dict):
            return candidate
        start = text.find("{", start + 1)
    return None


def parse_metadata(raw_text: str) -> Metadata:
    """
    Parse a provider reply into validated Metadata.

    Args:
        raw_text: Model output expected to contain one JSON object with
                  ``title``, ``keywords`` and ``category``.

    Returns:
        Metadata with the title cut to 70 characters and at most 50 trimmed keywords.

    Raises:
        MalformedResponseError: for every failure; no other exception leaves this function.

    Examples:
        >>> parse_metadata('Sure! {"title": "Red Barn", "keywords": ["barn", " rural "], '
        ...                '"category": "Nature"} thanks')
        Metadata(title='Red Barn', keywords=['barn', 'rural'], category='Nature')

    """
    if not raw_text or not raw_text.strip():
        msg = "Failed to parse AI response: empty response"
        raise MalformedResponseError(msg)

    payload = extract_json_object(raw_text)
    if payload is None:
        logger.debug("ai_response_without_json", response=raw_text[:500])
        msg = "Failed to parse AI response: no JSON found in response"
        raise MalformedResponseError(msg)

    # An empty keyword list is a valid answer; title and category must have content.
    missing = [
        name
        for name in ("title", "keywords", "category")
        if payload.get(name) is None or (name != "keywords" and not payload[name])
    ]
    if missing:
        msg = f"Failed to parse AI response: missing {', '.join(missing)}"
        raise MalformedResponseError(msg)

    try:
        return Metadata.model_validate(payload)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
            for err in exc.errors()
        )
        msg = f"Failed to parse AI response: {problems}"
        raise MalformedResponseError(msg) from exc
