"""Pydantic models for disputes, evidence, commitments, rulings and results."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from web3 import Web3

SCHEMA_VERSION = "1.0"

RULING_RECORD_TYPE = "arbiter-ruling"


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class SubmitterRole(IntEnum):
    """Role of an evidence submitter as recorded on the ledger."""

    PAYER = 0
    RECEIVER = 1
    ARBITER = 2


class DisputeStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    CANCELLED = "cancelled"


class Decision(str, Enum):
    APPROVE = "approve"
    DENY = "deny"


class DisputeState(str, Enum):
    """Scheduler-local progress of a dispute. Absence from the index is "unseen"."""

    INDEXED = "indexed"
    AWAITING_EVIDENCE = "awaiting_evidence"
    READY = "ready"
    EVALUATING = "evaluating"
    DONE = "done"


# ---------------------------------------------------------------------------
# Ledger records
# ---------------------------------------------------------------------------


class Dispute(BaseModel):
    """A refund request, identified by the payment it targets and a nonce."""

    payment_info_hash: str = Field(..., pattern=r"^0x[0-9a-fA-F]{64}$")
    nonce: int = Field(..., ge=0)
    payment_info: dict | None = None

    @field_validator("payment_info_hash")
    @classmethod
    def _lowercase_hash(cls, value: str) -> str:
        return value.lower()

    @property
    def composite_key(self) -> str:
        """keccak256(abi.encodePacked(bytes32 paymentInfoHash, uint256 nonce))."""
        return Web3.solidity_keccak(
            ["bytes32", "uint256"], [self.payment_info_hash, self.nonce]
        ).to_0x_hex()


class EvidenceEntry(BaseModel):
    """One submission in a dispute's append-only evidence list.

    ``role`` stays a plain integer so entries with roles this code does not
    know about are carried through instead of rejected.
    """

    submitter: str
    role: int
    timestamp: int = Field(..., description="Unix seconds")
    cid: str = Field(..., description="Inline JSON, IPFS CID, or free text")


# ---------------------------------------------------------------------------
# Commitment and ruling
# ---------------------------------------------------------------------------


class Commitment(BaseModel):
    """Hash binding {prompt, display response, seed} of one evaluation.

    Serialized with camelCase keys so records are readable by other
    implementations of the same arbiter protocol.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    prompt_hash: str
    response_hash: str
    commitment_hash: str
    seed: int


class Ruling(BaseModel):
    """The model's stated ruling, before the confidence threshold is applied."""

    decision: Decision
    reasoning: str
    confidence: float = Field(..., ge=0.0, le=1.0)


class ArbiterRulingRecord(BaseModel):
    """Content of the arbiter's evidence entry.

    ``decision`` is the enacted outcome, which may differ from the model's
    stated decision when confidence was below the threshold.
    """

    type: Literal["arbiter-ruling"] = RULING_RECORD_TYPE
    decision: Decision
    reasoning: str
    confidence: float
    commitment: Commitment
    model: str

    def to_cid(self) -> str:
        """Compact JSON suitable for inline submission as evidence."""
        return json.dumps(
            self.model_dump(mode="json", by_alias=True),
            separators=(",", ":"),
            ensure_ascii=False,
        )


class ModelResponse(BaseModel):
    """What the model evaluator returned for one call."""

    raw_text: str
    display_text: str
    latency_ms: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class EvaluationResult(BaseModel):
    """Full trace of one evaluation, returned to the caller and logged."""

    dispute: Dispute
    composite_key: str
    decision: Decision = Field(..., description="Decision stated by the model")
    enacted_outcome: Decision = Field(..., description="Outcome submitted to the ledger")
    reasoning: str
    confidence: float
    commitment: Commitment
    model: str
    evidence_tx: str
    decision_tx: str | None = None
    refund_tx: str | None = None
    refund_error: str | None = None
    ruling_conflict: bool = False
    latency_ms: int = 0
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ReplayResult(BaseModel):
    """Independent re-run of an evaluation, for comparison with the original."""

    composite_key: str
    seed: int
    replay_commitment: Commitment
    original_commitment: Commitment | None = None
    matches: bool | None = Field(
        default=None, description="None when the ledger holds no recorded commitment"
    )
    display_text: str
    model: str
    replayed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# Webhook payload (incoming from the ledger gateway)
# ---------------------------------------------------------------------------


class WebhookPayload(BaseModel):
    """Incoming ledger event."""

    event: str
    timestamp: str
    data: dict


# ---------------------------------------------------------------------------
# JSON Schema export for external verifiers
# ---------------------------------------------------------------------------

_SCHEMA_MODELS: dict[str, type[BaseModel]] = {
    "EvidenceEntry": EvidenceEntry,
    "Commitment": Commitment,
    "ArbiterRulingRecord": ArbiterRulingRecord,
    "EvaluationResult": EvaluationResult,
    "ReplayResult": ReplayResult,
}


def export_json_schemas() -> dict[str, dict]:
    """Return versioned JSON Schema definitions of the published records.

    Verifiers can validate an arbiter's on-ledger evidence against these
    without the arbiter's source code.
    """
    schemas: dict[str, dict] = {}
    for name, model_cls in _SCHEMA_MODELS.items():
        schema = model_cls.model_json_schema(by_alias=True)
        schema["$id"] = f"urn:dispute-arbiter:schemas:{name}:v{SCHEMA_VERSION}"
        schema["$schema"] = "https://json-schema.org/draft/2020-12/schema"
        schemas[name] = schema
    return schemas
