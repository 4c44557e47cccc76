"""
Structured-block extraction from free-form reasoning output.

Three tiers, tried in order:
1. A fenced block tagged with the expected label (```sentinel-output ...```)
2. A JSON object anchored at the end of the text that contains a marker key
3. The last top-level JSON object anywhere in the text

Any failure yields None; callers treat None as a null decision.
"""

import json
import logging
import re
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from ai.schemas import CEODirective, SentinelDecision

log = logging.getLogger(__name__)

SENTINEL_TAG = "sentinel-output"
CEO_TAG = "ceo-directive"
DIRECTIVE_KEYS = ("marketRegime", "overallBias", "coins")


def _fence_pattern(tag: str) -> re.Pattern:
    return re.compile(r"```" + re.escape(tag) + r"\s*\n(.*?)\n\s*```", re.DOTALL)


def _keyed_pattern(key: str) -> re.Pattern:
    return re.compile(r"\{.*\"" + re.escape(key) + r"\"\s*:\s*\".*\"\s*\}\s*$", re.DOTALL)


def _loads_object(candidate: str) -> Optional[Dict[str, Any]]:
    try:
        value = json.loads(candidate.strip())
    except (TypeError, ValueError):
        return None
    return value if isinstance(value, dict) else None


def top_level_objects(text: str) -> List[str]:
    """Return every balanced top-level {...} span, honouring JSON strings."""
    spans = []
    depth = 0
    start = -1
    in_string = False
    escaped = False
    for i, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"' and depth > 0:
            in_string = True
        elif ch == "{":
            if depth == 0:
                start = i
            depth += 1
        elif ch == "}" and depth > 0:
            depth -= 1
            if depth == 0:
                spans.append(text[start:i + 1])
    return spans


def extract_structured_block(
    text: str,
    tag: str,
    marker_key: str,
    accept_keys: Optional[Iterable[str]] = None,
) -> Optional[Dict[str, Any]]:
    """
    Locate and decode the structured block in model output.

    Args:
        text: Raw model output
        tag: Fence label, e.g. "sentinel-output"
        marker_key: Key the anchored-regex fallback looks for
        accept_keys: When given, the last-object fallback only accepts
            objects containing at least one of these keys

    Returns:
        Decoded dict, or None when no tier produced a JSON object
    """
    if not text:
        return None

    match = _fence_pattern(tag).search(text)
    if match:
        parsed = _loads_object(match.group(1))
        if parsed is not None:
            return parsed
        log.debug("Fenced %s block is not valid JSON, falling back", tag)

    match = _keyed_pattern(marker_key).search(text)
    if match:
        parsed = _loads_object(match.group(0))
        if parsed is not None:
            return parsed

    objects = top_level_objects(text)
    if objects:
        parsed = _loads_object(objects[-1])
        if parsed is not None:
            if accept_keys is None or any(parsed.get(k) for k in accept_keys):
                return parsed

    return None


def parse_sentinel_output(text: str) -> Optional[SentinelDecision]:
    raw = extract_structured_block(text, SENTINEL_TAG, "summary")
    if raw is None:
        log.warning("No sentinel-output block found in model response")
        return None
    return SentinelDecision.from_dict(raw)


def parse_ceo_directive(
    text: str,
    model_used: str = "",
    now: Optional[datetime] = None,
    ttl_hours: float = 24.0,
) -> Optional[CEODirective]:
    """
    Parse a CEO directive block.

    Timestamps are always assigned locally: generated_at is now and
    valid_until is now + ttl_hours, whatever the model wrote.
    """
    raw = extract_structured_block(text, CEO_TAG, "marketRegime", accept_keys=DIRECTIVE_KEYS)
    if raw is None or not any(raw.get(k) for k in DIRECTIVE_KEYS):
        log.warning("No usable ceo-directive block found in model response")
        return None

    for key in ("generatedAt", "generated_at", "validUntil", "valid_until", "modelUsed", "model_used"):
        raw.pop(key, None)
    return CEODirective.from_dict(raw, now=now, ttl_hours=ttl_hours, model_used=model_used)
