"""Shared fixtures: an in-memory ledger and a deterministic model stand-in.

Nothing here touches the network. Evidence is inline JSON or free text
unless a test patches the content-store fetch explicitly.
"""

from __future__ import annotations

import pytest

from dispute_arbiter.arbiter import Arbiter
from dispute_arbiter.errors import LedgerConflict, LedgerError
from dispute_arbiter.evidence import EvidenceResolver
from dispute_arbiter.model_client import strip_display_wrappers
from dispute_arbiter.schemas import (
    Decision,
    Dispute,
    DisputeStatus,
    EvidenceEntry,
    ModelResponse,
    SubmitterRole,
)

PAYMENT_INFO_HASH = "0x" + "ab" * 32
PAYER = "0x1111111111111111111111111111111111111111"
RECEIVER = "0x2222222222222222222222222222222222222222"
ARBITER = "0x3333333333333333333333333333333333333333"
SUBMITTED_AT = 1_748_736_000  # 2025-06-01T00:00:00Z

PAYER_CLAIM = '{"claim":"Ordered a research report, nothing was delivered"}'
RECEIVER_CLAIM = '{"claim":"Report delivered on time via shared drive"}'

APPROVE_RESPONSE = (
    '{"decision": "approve", "reasoning": "The receiver offers no proof of delivery.", '
    '"confidence": 0.92}'
)
DENY_RESPONSE = (
    '{"decision": "deny", "reasoning": "Delivery is documented.", "confidence": 0.88}'
)


class FakeLedger:
    """In-memory ``Ledger`` recording every write in order."""

    def __init__(self) -> None:
        self.evidence: dict[str, list[EvidenceEntry]] = {}
        self.statuses: dict[str, DisputeStatus] = {}
        self.recent: list[Dispute] = []
        self.writes: list[tuple[str, str]] = []
        self.fail_refund = False
        self.fail_listing = False
        self.conflict_on_ruling = False
        self.last_block_range: int | None = None

    def add_evidence(
        self,
        dispute: Dispute,
        role: SubmitterRole,
        cid: str,
        submitter: str | None = None,
        timestamp: int = SUBMITTED_AT,
    ) -> None:
        if submitter is None:
            submitter = {
                SubmitterRole.PAYER: PAYER,
                SubmitterRole.RECEIVER: RECEIVER,
                SubmitterRole.ARBITER: ARBITER,
            }[role]
        entry = EvidenceEntry(submitter=submitter, role=int(role), timestamp=timestamp, cid=cid)
        self.evidence.setdefault(dispute.composite_key, []).append(entry)

    def arbiter_entries(self, dispute: Dispute) -> list[EvidenceEntry]:
        return [
            e
            for e in self.evidence.get(dispute.composite_key, [])
            if e.role == SubmitterRole.ARBITER
        ]

    # -- Ledger protocol --------------------------------------------------

    def get_all_evidence(self, dispute: Dispute) -> list[EvidenceEntry]:
        return list(self.evidence.get(dispute.composite_key, []))

    def submit_evidence(self, dispute: Dispute, content: str) -> str:
        self.add_evidence(dispute, SubmitterRole.ARBITER, content, timestamp=SUBMITTED_AT + 60)
        return self._record("evidence", dispute)

    def approve(self, dispute: Dispute) -> str:
        return self._rule(dispute, Decision.APPROVE)

    def deny(self, dispute: Dispute) -> str:
        return self._rule(dispute, Decision.DENY)

    def execute_refund(self, dispute: Dispute) -> str:
        if self.fail_refund:
            raise LedgerError("refund reverted: payment already settled")
        return self._record("refund", dispute)

    def get_status(self, dispute: Dispute) -> DisputeStatus:
        return self.statuses.get(dispute.composite_key, DisputeStatus.PENDING)

    def list_recent_disputes(self, block_range: int) -> list[Dispute]:
        self.last_block_range = block_range
        if self.fail_listing:
            raise LedgerError("log query failed")
        return list(self.recent)

    # -- Internal ---------------------------------------------------------

    def _rule(self, dispute: Dispute, decision: Decision) -> str:
        if self.conflict_on_ruling:
            raise LedgerConflict("dispute is no longer pending")
        self.statuses[dispute.composite_key] = (
            DisputeStatus.APPROVED if decision == Decision.APPROVE else DisputeStatus.DENIED
        )
        return self._record(decision.value, dispute)

    def _record(self, kind: str, dispute: Dispute) -> str:
        self.writes.append((kind, dispute.composite_key))
        return "0x" + f"{len(self.writes):064x}"


class StubModel:
    """Deterministic model: same prompt and seed, same answer.

    *text* is the display text, or a callable ``(user_prompt, seed) -> str``.
    The raw text carries the provider's channel wrapper.
    """

    model = "stub/deterministic"

    def __init__(self, text=APPROVE_RESPONSE, side_effect=None) -> None:
        self.text = text
        self.side_effect = side_effect
        self.calls: list[tuple[str, int]] = []

    def evaluate(self, system_prompt: str, user_prompt: str, seed: int) -> ModelResponse:
        self.calls.append((user_prompt, seed))
        if self.side_effect is not None:
            self.side_effect(user_prompt, seed)
        text = self.text(user_prompt, seed) if callable(self.text) else self.text
        raw = f"<|channel|>final<|message|>{text}<|end|>"
        return ModelResponse(raw_text=raw, display_text=strip_display_wrappers(raw), latency_ms=7)


@pytest.fixture
def dispute() -> Dispute:
    return Dispute(payment_info_hash=PAYMENT_INFO_HASH, nonce=0)


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def resolver() -> EvidenceResolver:
    return EvidenceResolver(gateway_url="https://gateway.test/ipfs", timeout=1.0)


@pytest.fixture
def model() -> StubModel:
    return StubModel()


@pytest.fixture
def arbiter(ledger, resolver, model) -> Arbiter:
    return Arbiter(
        ledger=ledger,
        resolver=resolver,
        model=model,
        confidence_threshold=0.7,
        seed_policy="fixed",
        seed=42,
    )


@pytest.fixture
def contested(ledger, dispute) -> Dispute:
    """A dispute where both parties have submitted evidence."""
    ledger.add_evidence(dispute, SubmitterRole.PAYER, PAYER_CLAIM)
    ledger.add_evidence(dispute, SubmitterRole.RECEIVER, RECEIVER_CLAIM, timestamp=SUBMITTED_AT + 30)
    return dispute
