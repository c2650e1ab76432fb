"""Turning model output into a ruling, and a ruling into an on-ledger outcome.

Parsing runs ordered stages, each usable on its own:

1. ``parse_strict``: the whole (fence-stripped) text is the JSON object.
2. ``extract_embedded``: the first well-formed ``{...}`` object in the text
   that carries ``decision``, ``reasoning`` and ``confidence``. Models often
   think out loud before answering.
3. Otherwise ``RulingParseError``. There is no default ruling.
"""

from __future__ import annotations

import json
import logging
import math

from dispute_arbiter.errors import RulingParseError
from dispute_arbiter.schemas import Decision, Ruling

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("decision", "reasoning", "confidence")

_decoder = json.JSONDecoder()


def strip_code_fences(text: str) -> str:
    """Remove a surrounding markdown code fence, if any."""
    text = text.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else text[3:]
        if text.endswith("```"):
            text = text[:-3]
        text = text.strip()
    return text


def _has_required_fields(obj: object) -> bool:
    return isinstance(obj, dict) and all(k in obj for k in REQUIRED_FIELDS)


def parse_strict(text: str) -> dict | None:
    try:
        parsed = json.loads(strip_code_fences(text))
    except ValueError:
        return None
    return parsed if _has_required_fields(parsed) else None


def extract_embedded(text: str) -> dict | None:
    """Find the first decodable JSON object holding all ruling fields."""
    idx = text.find("{")
    while idx != -1:
        try:
            obj, _end = _decoder.raw_decode(text, idx)
        except ValueError:
            obj = None
        if _has_required_fields(obj):
            return obj
        idx = text.find("{", idx + 1)
    return None


def _to_ruling(obj: dict, raw_text: str) -> Ruling:
    decision_str = str(obj["decision"]).strip().lower()
    try:
        decision = Decision(decision_str)
    except ValueError:
        raise RulingParseError(
            f"Model returned unrecognized decision: {obj['decision']!r}", raw_text
        ) from None

    raw_confidence = obj["confidence"]
    if isinstance(raw_confidence, bool):
        raise RulingParseError("Model returned a boolean confidence", raw_text)
    try:
        confidence = float(raw_confidence)
    except (TypeError, ValueError):
        raise RulingParseError(
            f"Model returned non-numeric confidence: {raw_confidence!r}", raw_text
        ) from None
    if math.isnan(confidence):
        raise RulingParseError("Model returned NaN confidence", raw_text)

    return Ruling(
        decision=decision,
        reasoning=str(obj["reasoning"]),
        confidence=max(0.0, min(1.0, confidence)),
    )


def parse_ruling(raw_text: str) -> Ruling:
    """Parse display-stripped model output into a Ruling.

    Raises RulingParseError if no stage yields a valid ruling object.
    """
    obj = parse_strict(raw_text)
    if obj is None:
        obj = extract_embedded(raw_text)
        if obj is not None:
            logger.info("Ruling extracted from surrounding model commentary")
    if obj is None:
        raise RulingParseError("Failed to parse model response as a ruling", raw_text)
    return _to_ruling(obj, raw_text)


def enacted_outcome(ruling: Ruling, confidence_threshold: float) -> Decision:
    """Approve only when the model approves with enough confidence.

    The threshold never gates a denial: an unsure arbiter leaves the funds
    with the receiver.
    """
    if ruling.decision == Decision.APPROVE and ruling.confidence >= confidence_threshold:
        return Decision.APPROVE
    return Decision.DENY


def decide(raw_text: str, confidence_threshold: float) -> tuple[Ruling, Decision]:
    ruling = parse_ruling(raw_text)
    return ruling, enacted_outcome(ruling, confidence_threshold)
