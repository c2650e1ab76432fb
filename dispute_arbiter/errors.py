"""Error taxonomy shared by the arbiter, scheduler, verifier and API.

Every failure an evaluation can surface carries an ``ErrorKind`` so callers
can tell a retryable hiccup from a dispute that needs a human look.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from dispute_arbiter.schemas import Commitment


class ErrorKind(str, Enum):
    NO_EVIDENCE = "no_evidence"
    MALFORMED_INPUT = "malformed_input"
    TRANSIENT = "transient"
    CONFLICT = "conflict"
    CONFIGURATION = "configuration"


class ArbitrationError(Exception):
    """Base class for structured arbitration failures."""

    kind: ErrorKind = ErrorKind.TRANSIENT

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "message": self.message}


class NoEvidenceError(ArbitrationError):
    """No party evidence exists, so no decision can be made."""

    kind = ErrorKind.NO_EVIDENCE


class RulingParseError(ArbitrationError):
    """Model output could not be read as a ruling. Fatal for this attempt."""

    kind = ErrorKind.MALFORMED_INPUT

    def __init__(self, message: str, raw_text: str) -> None:
        super().__init__(message)
        self.raw_text = raw_text

    def to_dict(self) -> dict:
        return {**super().to_dict(), "raw_response": self.raw_text}


class ModelError(ArbitrationError):
    """The model evaluator could not be reached or returned an error."""


class LedgerError(ArbitrationError):
    """A ledger read or write failed. Retryable."""


class LedgerConflict(LedgerError):
    """A ledger write reverted because the desired end state already holds."""

    kind = ErrorKind.CONFLICT


class AlreadyRuledError(ArbitrationError):
    """An arbiter ruling is already recorded on the ledger for this dispute."""

    kind = ErrorKind.CONFLICT

    def __init__(self, message: str, commitment: Commitment | None = None) -> None:
        super().__init__(message)
        self.commitment = commitment

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.commitment is not None:
            data["commitment"] = self.commitment.model_dump(mode="json", by_alias=True)
        return data


class ConfigurationError(ArbitrationError):
    kind = ErrorKind.CONFIGURATION
