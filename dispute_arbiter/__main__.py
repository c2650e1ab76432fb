"""CLI entrypoint for the Dispute Arbiter.

Usage:
    dispute-arbiter                         # Start API, webhook and scheduler
    dispute-arbiter --evaluate HASH NONCE   # Evaluate a single dispute and exit
    dispute-arbiter --verify HASH NONCE     # Replay a recorded evaluation and exit
"""

from __future__ import annotations

import argparse
import json
import logging
import sys

import uvicorn

from dispute_arbiter.config import settings
from dispute_arbiter.errors import ArbitrationError


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    parser = argparse.ArgumentParser(description="Dispute Arbiter")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--evaluate",
        nargs=2,
        metavar=("PAYMENT_INFO_HASH", "NONCE"),
        help="Evaluate a single dispute and exit (no API or scheduler)",
    )
    mode.add_argument(
        "--verify",
        nargs=2,
        metavar=("PAYMENT_INFO_HASH", "NONCE"),
        help="Replay a recorded evaluation with the verifier credential and exit",
    )
    parser.add_argument(
        "--host",
        default=settings.api_host,
        help=f"API host (default: {settings.api_host})",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=settings.api_port,
        help=f"API port (default: {settings.api_port})",
    )
    args = parser.parse_args()

    if not settings.ledger_url:
        print("ERROR: ARBITER_LEDGER_URL must be set", file=sys.stderr)
        sys.exit(1)

    if args.evaluate or args.verify:
        from dispute_arbiter.schemas import Dispute

        payment_info_hash, nonce = args.evaluate or args.verify
        try:
            dispute = Dispute(payment_info_hash=payment_info_hash, nonce=int(nonce))
        except ValueError as exc:
            print(f"ERROR: invalid dispute: {exc}", file=sys.stderr)
            sys.exit(2)

        try:
            if args.evaluate:
                from dispute_arbiter.arbiter import Arbiter

                result = Arbiter().evaluate(dispute)
                exit_code = 0
            else:
                from dispute_arbiter.verifier import ReplayVerifier

                result = ReplayVerifier().replay(dispute)
                exit_code = 0 if result.matches is not False else 1
        except ArbitrationError as exc:
            print(json.dumps({"error": exc.to_dict()}, indent=2))
            sys.exit(1)

        print(json.dumps(result.model_dump(mode="json", by_alias=True), indent=2))
        sys.exit(exit_code)

    print("Dispute Arbiter v0.1.0")
    print(f"   Ledger:    {settings.ledger_url}")
    print(f"   LLM:       {settings.llm_model}")
    print(f"   Threshold: {settings.confidence_threshold:.0%}")
    print(f"   Seed:      {settings.seed_policy} ({settings.seed})")
    print(f"   Listening: http://{args.host}:{args.port}")
    print()

    uvicorn.run(
        "dispute_arbiter.api:app",
        host=args.host,
        port=args.port,
        log_level="info",
    )


if __name__ == "__main__":
    main()
