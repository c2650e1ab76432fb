"""Prompt templates for the arbiter.

``build_prompt`` must be a pure function of the evidence list and resolved
contents: the prompt hash is part of the published commitment, and a
replay has to reproduce it byte for byte.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import datetime, timezone

from dispute_arbiter.schemas import EvidenceEntry, SubmitterRole

ROLE_LABELS: dict[int, str] = {
    SubmitterRole.PAYER: "Payer",
    SubmitterRole.RECEIVER: "Receiver",
    SubmitterRole.ARBITER: "Arbiter",
}

# The model gateway caps request bodies at ~100KB. System prompt plus JSON
# envelope is ~1KB, so the user prompt is held to 80K characters.
MAX_EVIDENCE_CHARS_PER_ENTRY = 20_000
MAX_PROMPT_CHARS = 80_000

EVIDENCE_TRUNCATED_MARKER = "\n\n[... truncated — evidence exceeded size limit]"
PROMPT_TRUNCATED_MARKER = "\n\n[... prompt truncated to fit payload limit]"
CONTENT_UNAVAILABLE = "(content unavailable)"

SYSTEM_PROMPT = """\
You are a neutral payment dispute arbiter. You will be given evidence from a payer and a receiver about a disputed payment. Evaluate the evidence impartially and decide whether the payer deserves a refund.

Rules:
- A refund should be approved if the payer did not receive what was promised, or the service was materially deficient.
- A refund should be denied if the payer received the agreed-upon goods/services and the complaint is unsubstantiated.
- Consider the strength, specificity, and consistency of evidence from both sides.

You MUST respond with ONLY a JSON object in this exact format:
{
  "decision": "approve" | "deny",
  "reasoning": "<2-3 sentence explanation>",
  "confidence": <number between 0 and 1>
}"""


def role_label(role: int) -> str:
    return ROLE_LABELS.get(role, f"Role({role})")


def format_timestamp(unix_seconds: int) -> str:
    """ISO-8601 UTC with millisecond precision, e.g. ``2025-06-01T00:00:00.000Z``."""
    dt = datetime.fromtimestamp(unix_seconds, tz=timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def truncate(text: str, max_len: int, marker: str = EVIDENCE_TRUNCATED_MARKER) -> str:
    if len(text) <= max_len:
        return text
    return text[:max_len] + marker


def build_prompt(
    evidence: Sequence[EvidenceEntry],
    contents: Mapping[str, str],
) -> str:
    """Build the user-turn prompt from evidence in ledger order."""
    sections = ["# Dispute Evidence\n"]

    for entry in evidence:
        content = truncate(
            contents.get(entry.cid, CONTENT_UNAVAILABLE), MAX_EVIDENCE_CHARS_PER_ENTRY
        )
        sections.append(
            f"## {role_label(entry.role)} ({entry.submitter})\n"
            f"Submitted: {format_timestamp(entry.timestamp)}\n"
            f"CID: {entry.cid}\n\n"
            f"{content}\n"
        )

    sections.append("---\n\nBased on the above evidence, provide your decision as JSON.")

    return truncate("\n".join(sections), MAX_PROMPT_CHARS, PROMPT_TRUNCATED_MARKER)
