"""Dispute Arbiter: automated, replay-verifiable rulings on escrow refund disputes."""

from dispute_arbiter.arbiter import Arbiter
from dispute_arbiter.commitment import create_commitment, extract_seed, find_arbiter_record
from dispute_arbiter.config import ArbiterSettings, settings
from dispute_arbiter.decision import decide, enacted_outcome, parse_ruling
from dispute_arbiter.errors import (
    AlreadyRuledError,
    ArbitrationError,
    ConfigurationError,
    ErrorKind,
    LedgerConflict,
    LedgerError,
    ModelError,
    NoEvidenceError,
    RulingParseError,
)
from dispute_arbiter.evidence import EvidenceResolver, canonical_evidence, party_evidence
from dispute_arbiter.ledger import Ledger, LedgerClient
from dispute_arbiter.model_client import ModelClient, strip_display_wrappers
from dispute_arbiter.prompts import SYSTEM_PROMPT, build_prompt
from dispute_arbiter.scheduler import DisputeScheduler
from dispute_arbiter.schemas import (
    ArbiterRulingRecord,
    Commitment,
    Decision,
    Dispute,
    DisputeState,
    EvaluationResult,
    EvidenceEntry,
    ReplayResult,
    Ruling,
    SubmitterRole,
)
from dispute_arbiter.verifier import ReplayVerifier

__all__ = [
    # Evaluation
    "Arbiter",
    "DisputeScheduler",
    "ReplayVerifier",
    "settings",
    "ArbiterSettings",
    # Building blocks
    "EvidenceResolver",
    "canonical_evidence",
    "party_evidence",
    "build_prompt",
    "SYSTEM_PROMPT",
    "create_commitment",
    "extract_seed",
    "find_arbiter_record",
    "decide",
    "enacted_outcome",
    "parse_ruling",
    "ModelClient",
    "strip_display_wrappers",
    "Ledger",
    "LedgerClient",
    # Records
    "ArbiterRulingRecord",
    "Commitment",
    "Decision",
    "Dispute",
    "DisputeState",
    "EvaluationResult",
    "EvidenceEntry",
    "ReplayResult",
    "Ruling",
    "SubmitterRole",
    # Errors
    "ArbitrationError",
    "ErrorKind",
    "NoEvidenceError",
    "RulingParseError",
    "ModelError",
    "LedgerError",
    "LedgerConflict",
    "AlreadyRuledError",
    "ConfigurationError",
]

__version__ = "0.1.0"
