"""Commitment scheme binding a ruling to the exact inputs that produced it.

Hash scheme (for third-party verifiers)
=======================================

**Hash algorithm:** Keccak-256 (the Ethereum variant, not FIPS SHA3-256).

- ``promptHash``     = keccak256(utf8(user_prompt))
- ``responseHash``   = keccak256(utf8(display_text))
- ``commitmentHash`` = keccak256(promptHash ‖ responseHash ‖ uint256(seed))

The final hash uses Solidity ``abi.encodePacked`` of
``(bytes32, bytes32, uint256)``: exactly 96 bytes, fixed width, fixed order.

``display_text`` is the model output with the provider's channel wrapper
removed (see ``model_client.strip_display_wrappers``). Hashing the raw
envelope would make every replay mismatch, since the provider regenerates
wrapper tokens per call. The flip side: if the provider changes its
wrapper format, commitments made before the change can no longer be
reproduced.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable

from pydantic import ValidationError
from web3 import Web3

from dispute_arbiter.evidence import EvidenceResolver, arbiter_evidence
from dispute_arbiter.schemas import ArbiterRulingRecord, Commitment, EvidenceEntry

logger = logging.getLogger(__name__)

_UINT256_MAX = 2**256 - 1


def keccak_text(text: str) -> str:
    return Web3.keccak(text=text).to_0x_hex()


def create_commitment(prompt: str, seed: int, response_text: str) -> Commitment:
    """Compute the commitment for one evaluation. Pure; no I/O."""
    if not 0 <= seed <= _UINT256_MAX:
        raise ValueError(f"seed must fit in uint256, got {seed}")

    prompt_hash = keccak_text(prompt)
    response_hash = keccak_text(response_text)
    commitment_hash = Web3.solidity_keccak(
        ["bytes32", "bytes32", "uint256"],
        [prompt_hash, response_hash, seed],
    ).to_0x_hex()

    return Commitment(
        prompt_hash=prompt_hash,
        response_hash=response_hash,
        commitment_hash=commitment_hash,
        seed=seed,
    )


def _load_json(entry: EvidenceEntry, resolver: EvidenceResolver) -> dict | None:
    try:
        parsed = json.loads(resolver.resolve(entry.cid))
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


def find_arbiter_record(
    entries: Iterable[EvidenceEntry],
    resolver: EvidenceResolver,
) -> ArbiterRulingRecord | None:
    """Return the first arbiter evidence entry that parses as a ruling record."""
    for entry in arbiter_evidence(entries):
        parsed = _load_json(entry, resolver)
        if parsed is None:
            continue
        try:
            return ArbiterRulingRecord.model_validate(parsed)
        except ValidationError:
            logger.warning("Arbiter evidence from %s is not a ruling record", entry.submitter)
    return None


def extract_seed(
    entries: Iterable[EvidenceEntry],
    resolver: EvidenceResolver,
    default: int,
) -> int:
    """Seed recorded in the arbiter's evidence, or *default* if none is found.

    Accepts both ``{"commitment": {"seed": n}}`` and a bare ``{"seed": n}``.
    """
    for entry in arbiter_evidence(entries):
        parsed = _load_json(entry, resolver)
        if parsed is None:
            continue
        commitment = parsed.get("commitment")
        if isinstance(commitment, dict) and _is_seed(commitment.get("seed")):
            return commitment["seed"]
        if _is_seed(parsed.get("seed")):
            return parsed["seed"]
    return default


def _is_seed(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0
