"""Independent replay of an arbiter evaluation.

The verifier rebuilds the exact prompt from the canonical party evidence,
re-runs the model with the seed recorded in the arbiter's commitment and
recomputes the commitment. Equal ``commitment_hash`` values prove the
ruling is reproducible from public inputs.

The verifier must run under its own model credential: a replay by the
arbiter's own account only shows the author can re-run it.
"""

from __future__ import annotations

import logging

from dispute_arbiter.commitment import create_commitment, extract_seed, find_arbiter_record
from dispute_arbiter.config import settings
from dispute_arbiter.errors import NoEvidenceError
from dispute_arbiter.evidence import EvidenceResolver, canonical_evidence, party_evidence
from dispute_arbiter.ledger import Ledger, LedgerClient
from dispute_arbiter.model_client import ModelClient
from dispute_arbiter.prompts import SYSTEM_PROMPT, build_prompt
from dispute_arbiter.schemas import Dispute, ReplayResult

logger = logging.getLogger(__name__)


class ReplayVerifier:
    def __init__(
        self,
        ledger: Ledger | None = None,
        resolver: EvidenceResolver | None = None,
        model: ModelClient | None = None,
        default_seed: int | None = None,
    ) -> None:
        self.ledger = ledger if ledger is not None else LedgerClient()
        self.resolver = resolver if resolver is not None else EvidenceResolver()
        self.model = model if model is not None else ModelClient.for_verifier()
        self.default_seed = (
            default_seed if default_seed is not None else settings.replay_default_seed
        )

    def replay(self, dispute: Dispute) -> ReplayResult:
        key = dispute.composite_key
        entries = canonical_evidence(self.ledger.get_all_evidence(dispute))
        evidence = party_evidence(entries)
        if not evidence:
            raise NoEvidenceError(f"No party evidence found for dispute {key}")

        seed = extract_seed(entries, self.resolver, self.default_seed)
        record = find_arbiter_record(entries, self.resolver)
        original = record.commitment if record is not None else None

        contents = self.resolver.resolve_all(evidence)
        user_prompt = build_prompt(evidence, contents)
        response = self.model.evaluate(SYSTEM_PROMPT, user_prompt, seed)
        replayed = create_commitment(user_prompt, seed, response.display_text)

        matches = None
        if original is not None:
            matches = replayed.commitment_hash == original.commitment_hash
            if matches:
                logger.info("Replay of dispute %s reproduced %s", key, original.commitment_hash)
            else:
                logger.warning(
                    "Replay of dispute %s diverged: original=%s replay=%s "
                    "(prompt %s, response %s)",
                    key,
                    original.commitment_hash,
                    replayed.commitment_hash,
                    "match" if replayed.prompt_hash == original.prompt_hash else "differ",
                    "match" if replayed.response_hash == original.response_hash else "differ",
                )
        else:
            logger.info("Dispute %s has no recorded commitment; replayed with seed %d", key, seed)

        return ReplayResult(
            composite_key=key,
            seed=seed,
            replay_commitment=replayed,
            original_commitment=original,
            matches=matches,
            display_text=response.display_text,
            model=self.model.model,
        )
