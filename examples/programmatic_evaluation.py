"""Example: Programmatic evaluation and replay of a dispute.

This example shows how to use the arbiter as a library rather than running
it as an API service with a background scheduler. Useful for testing,
batch processing, or auditing another arbiter's rulings.

Prerequisites:
    export ARBITER_LEDGER_URL=http://127.0.0.1:8545/v1
    export ARBITER_LEDGER_API_KEY=your_gateway_key
    export ARBITER_LLM_API_BASE=https://inference.example/v1
    export ARBITER_LLM_API_KEY=sk-...
    export ARBITER_VERIFIER_API_KEY=sk-...   # a different account, for --replay

Usage:
    python examples/programmatic_evaluation.py <payment_info_hash> <nonce> [--replay]
"""

from __future__ import annotations

import json
import sys

from dispute_arbiter import (
    AlreadyRuledError,
    Arbiter,
    Decision,
    Dispute,
    EvidenceResolver,
    LedgerClient,
    ReplayVerifier,
    build_prompt,
    party_evidence,
)


def main() -> None:
    if len(sys.argv) < 3:
        print("Usage: python examples/programmatic_evaluation.py <payment_info_hash> <nonce> [--replay]")
        sys.exit(1)

    dispute = Dispute(payment_info_hash=sys.argv[1], nonce=int(sys.argv[2]))
    replay = "--replay" in sys.argv[3:]
    ledger = LedgerClient()
    resolver = EvidenceResolver()

    # Step 1: Preview the evidence and the exact prompt (optional; evaluate() does this)
    print("=" * 60)
    print(f"Dispute: {dispute.composite_key}")
    print("=" * 60)
    evidence = party_evidence(ledger.get_all_evidence(dispute))
    for entry in evidence:
        print(f"  role={entry.role} submitter={entry.submitter} cid={entry.cid[:60]}")
    prompt = build_prompt(evidence, resolver.resolve_all(evidence))
    print(f"  Prompt: {len(prompt)} characters")
    print()

    # Step 2: Evaluate, or replay an existing ruling
    if replay:
        print("Replaying recorded evaluation...")
        print("-" * 60)
        result = ReplayVerifier(ledger=ledger, resolver=resolver).replay(dispute)
        print(json.dumps(result.model_dump(mode="json", by_alias=True), indent=2))
        if result.matches is None:
            print("\nNo recorded commitment to compare against.")
        elif result.matches:
            print("\n✅ Commitment reproduced.")
        else:
            print("\n❌ Commitment mismatch.")
        return

    print("Running evaluation...")
    print("-" * 60)
    try:
        result = Arbiter(ledger=ledger, resolver=resolver).evaluate(dispute)
    except AlreadyRuledError as exc:
        print(f"Already ruled: {json.dumps(exc.to_dict(), indent=2)}")
        return

    # Step 3: Display results
    print(f"\n{'=' * 60}")
    print(f"OUTCOME: {result.enacted_outcome.value}")
    print(f"  Model said:  {result.decision.value} ({result.confidence:.0%})")
    print(f"  Reasoning:   {result.reasoning}")
    print(f"  Commitment:  {result.commitment.commitment_hash} (seed {result.commitment.seed})")
    print(f"  LLM:         {result.model} ({result.latency_ms}ms)")

    if result.enacted_outcome == Decision.APPROVE and result.refund_tx:
        print(f"\n✅ Refund executed: {result.refund_tx}")
    if result.refund_error:
        print(f"\n⚠️  Refund not executed: {result.refund_error}")


if __name__ == "__main__":
    main()
