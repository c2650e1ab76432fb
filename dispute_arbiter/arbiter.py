"""Core arbiter logic.

Runs one evaluation of a dispute end to end:
1. Read evidence from the ledger and refuse if a ruling is already recorded
2. Resolve the canonical party evidence
3. Choose the evaluation seed
4. Build the prompt, evaluate via the model, parse and threshold the ruling
5. Seal the evaluation in a commitment
6. Publish the commitment as arbiter evidence, *then* submit the ruling
7. On approval, execute the refund (best effort)

Writing the evidence before the ruling means a crash between the two still
leaves the commitment public. ``resume`` finishes such a dispute from the
published record without evaluating it again.

Steps 6 and 7 run under a per-dispute lock, so callers sharing one
``Arbiter`` (the scheduler and the HTTP API) never both write a ruling.
"""

from __future__ import annotations

import logging
import random
import threading
from datetime import datetime, timezone

from dispute_arbiter.commitment import create_commitment, find_arbiter_record
from dispute_arbiter.config import settings
from dispute_arbiter.decision import decide
from dispute_arbiter.errors import AlreadyRuledError, LedgerConflict, LedgerError, NoEvidenceError
from dispute_arbiter.evidence import EvidenceResolver, arbiter_evidence, party_evidence
from dispute_arbiter.ledger import Ledger, LedgerClient
from dispute_arbiter.model_client import ModelClient
from dispute_arbiter.prompts import SYSTEM_PROMPT, build_prompt
from dispute_arbiter.schemas import (
    ArbiterRulingRecord,
    Commitment,
    Decision,
    Dispute,
    DisputeStatus,
    EvaluationResult,
    EvidenceEntry,
)

logger = logging.getLogger(__name__)

SEED_POLICY_FIXED = "fixed"
SEED_POLICY_RANDOM = "random"
RANDOM_SEED_BOUND = 10_000


class Arbiter:
    """Evaluates disputes and writes rulings to the ledger."""

    def __init__(
        self,
        ledger: Ledger | None = None,
        resolver: EvidenceResolver | None = None,
        model: ModelClient | None = None,
        confidence_threshold: float | None = None,
        seed_policy: str | None = None,
        seed: int | None = None,
    ) -> None:
        self.ledger = ledger if ledger is not None else LedgerClient()
        self.resolver = resolver if resolver is not None else EvidenceResolver()
        self.model = model if model is not None else ModelClient()
        self.confidence_threshold = (
            confidence_threshold
            if confidence_threshold is not None
            else settings.confidence_threshold
        )
        self.seed_policy = seed_policy if seed_policy is not None else settings.seed_policy
        self.seed = seed if seed is not None else settings.seed
        if self.seed_policy not in (SEED_POLICY_FIXED, SEED_POLICY_RANDOM):
            raise ValueError(f"Unknown seed policy: {self.seed_policy!r}")

        self._write_locks: dict[str, threading.Lock] = {}
        self._write_locks_guard = threading.Lock()

    def choose_seed(self) -> int:
        if self.seed_policy == SEED_POLICY_RANDOM:
            return random.randrange(RANDOM_SEED_BOUND)
        return self.seed

    def get_commitment(self, dispute: Dispute) -> Commitment | None:
        """The commitment recorded on the ledger for *dispute*, if any."""
        record = find_arbiter_record(self.ledger.get_all_evidence(dispute), self.resolver)
        return record.commitment if record is not None else None

    def evaluate(self, dispute: Dispute) -> EvaluationResult:
        """Run the full evaluation pipeline for a dispute.

        Raises:
            AlreadyRuledError: an arbiter entry exists (before or during the run).
            NoEvidenceError: neither party has submitted evidence.
            ModelError, LedgerError: transient; retry the whole dispute later.
            RulingParseError: the model output held no ruling; nothing was written.
        """
        key = dispute.composite_key
        logger.info("Starting evaluation for dispute %s", key)

        # 1. Evidence, with the idempotency guard
        entries = self.ledger.get_all_evidence(dispute)
        self._ensure_not_ruled(entries, key)
        evidence = party_evidence(entries)
        if not evidence:
            raise NoEvidenceError(f"No evidence submitted for dispute {key}")

        # 2. Resolve content; unreachable blobs degrade to a sentinel
        contents = self.resolver.resolve_all(evidence)

        # 3-4. Prompt, model, ruling
        seed = self.choose_seed()
        user_prompt = build_prompt(evidence, contents)
        if settings.audit_log_enabled:
            logger.info("Prompt for dispute %s (seed=%d):\n%s", key, seed, user_prompt)

        response = self.model.evaluate(SYSTEM_PROMPT, user_prompt, seed)
        ruling, outcome = decide(response.display_text, self.confidence_threshold)

        # 5. Commitment over the display text
        commitment = create_commitment(user_prompt, seed, response.display_text)
        record = ArbiterRulingRecord(
            decision=outcome,
            reasoning=ruling.reasoning,
            confidence=ruling.confidence,
            commitment=commitment,
            model=self.model.model,
        )

        if ruling.decision != outcome:
            logger.info(
                "Dispute %s: model said %s at %.0f%% confidence (threshold %.0f%%), enacting %s",
                key,
                ruling.decision.value,
                ruling.confidence * 100,
                self.confidence_threshold * 100,
                outcome.value,
            )

        with self._write_lock(key):
            # 6. Last look before writing: another caller may have won the race
            self._ensure_not_ruled(self.ledger.get_all_evidence(dispute), key)

            evidence_tx = self.ledger.submit_evidence(dispute, record.to_cid())
            logger.info(
                "Commitment %s published for dispute %s (tx %s)",
                commitment.commitment_hash,
                key,
                evidence_tx,
            )

            # 7. A failed ruling write leaves the record for ``resume``
            decision_tx, ruling_conflict, refund_tx, refund_error = self._enact(dispute, outcome)

        result = EvaluationResult(
            dispute=dispute,
            composite_key=key,
            decision=ruling.decision,
            enacted_outcome=outcome,
            reasoning=ruling.reasoning,
            confidence=ruling.confidence,
            commitment=commitment,
            model=self.model.model,
            evidence_tx=evidence_tx,
            decision_tx=decision_tx,
            refund_tx=refund_tx,
            refund_error=refund_error,
            ruling_conflict=ruling_conflict,
            latency_ms=response.latency_ms,
            created_at=datetime.now(timezone.utc),
        )

        logger.info(
            "Ruled dispute %s → %s (confidence: %.0f%%)",
            key,
            outcome.value,
            ruling.confidence * 100,
        )
        if settings.audit_log_enabled:
            logger.info("Evaluation result: %s", result.model_dump_json(indent=2))

        return result

    def resume(self, dispute: Dispute) -> bool:
        """Submit the ruling of a published record whose ruling write never landed.

        Returns True when this call submitted the ruling. False means there
        is nothing to finish: no parseable record, the dispute is no longer
        pending, or the ledger reported the write as a conflict.
        LedgerError propagates and the dispute can be resumed again later.
        """
        key = dispute.composite_key
        with self._write_lock(key):
            record = find_arbiter_record(self.ledger.get_all_evidence(dispute), self.resolver)
            if record is None:
                return False
            if self.ledger.get_status(dispute) != DisputeStatus.PENDING:
                return False

            logger.warning(
                "Dispute %s has a published commitment %s but no ruling; submitting %s",
                key,
                record.commitment.commitment_hash,
                record.decision.value,
            )
            _tx, ruling_conflict, _refund_tx, _refund_error = self._enact(dispute, record.decision)
        return not ruling_conflict

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _write_lock(self, key: str) -> threading.Lock:
        with self._write_locks_guard:
            return self._write_locks.setdefault(key, threading.Lock())

    def _enact(
        self, dispute: Dispute, outcome: Decision
    ) -> tuple[str | None, bool, str | None, str | None]:
        """Submit the ruling, then the refund on approval.

        Returns ``(decision_tx, ruling_conflict, refund_tx, refund_error)``.
        """
        key = dispute.composite_key
        decision_tx = None
        ruling_conflict = False
        try:
            if outcome == Decision.APPROVE:
                decision_tx = self.ledger.approve(dispute)
            else:
                decision_tx = self.ledger.deny(dispute)
        except LedgerConflict as exc:
            ruling_conflict = True
            logger.warning("Ruling for dispute %s already settled on ledger: %s", key, exc)

        # Settlement is best effort; the ruling already stands
        refund_tx = None
        refund_error = None
        if outcome == Decision.APPROVE and not ruling_conflict:
            try:
                refund_tx = self.ledger.execute_refund(dispute)
            except LedgerError as exc:
                refund_error = str(exc)
                logger.warning(
                    "Refund execution failed for dispute %s (may already be settled): %s",
                    key,
                    exc,
                )
        return decision_tx, ruling_conflict, refund_tx, refund_error

    def _ensure_not_ruled(self, entries: list[EvidenceEntry], key: str) -> None:
        if not arbiter_evidence(entries):
            return
        record = find_arbiter_record(entries, self.resolver)
        raise AlreadyRuledError(
            f"Dispute {key} already has an arbiter ruling",
            commitment=record.commitment if record is not None else None,
        )
