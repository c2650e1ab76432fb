"""Configuration for the Dispute Arbiter.

All settings are driven by environment variables with sensible defaults.
The arbiter needs an API key on the ledger gateway (which signs and sends
the arbiter's transactions) and a model credential. The verifier credential
is deliberately separate so replays are run by a different party.
"""

from __future__ import annotations

import os


def _get_int(name: str, default: int) -> int:
    val = os.getenv(name)
    if val is None or val == "":
        return default
    return int(val)


def _get_float(name: str, default: float) -> float:
    val = os.getenv(name)
    if val is None or val == "":
        return default
    return float(val)


def _get_bool(name: str, default: bool) -> bool:
    val = os.getenv(name)
    if val is None or val == "":
        return default
    return val.strip().lower() in {"1", "true", "yes", "y", "on"}


class ArbiterSettings:
    # --- Ledger gateway ---
    ledger_url: str = os.getenv("ARBITER_LEDGER_URL", "http://127.0.0.1:8545/v1")
    ledger_api_key: str = os.getenv("ARBITER_LEDGER_API_KEY", "")
    ledger_timeout_seconds: float = _get_float("ARBITER_LEDGER_TIMEOUT", 30.0)

    # --- Evidence store (IPFS gateway) ---
    evidence_gateway_url: str = os.getenv(
        "ARBITER_EVIDENCE_GATEWAY_URL", "https://gateway.pinata.cloud/ipfs"
    )
    evidence_fetch_timeout_seconds: float = _get_float("ARBITER_EVIDENCE_FETCH_TIMEOUT", 10.0)

    # --- Model evaluator (via LiteLLM) ---
    llm_model: str = os.getenv("ARBITER_LLM_MODEL", "openai/gpt-oss-120b-f16")
    llm_api_base: str = os.getenv("ARBITER_LLM_API_BASE", "")
    llm_api_key: str = os.getenv("ARBITER_LLM_API_KEY", "")
    llm_temperature: float = _get_float("ARBITER_LLM_TEMPERATURE", 0.0)
    llm_max_tokens: int = _get_int("ARBITER_LLM_MAX_TOKENS", 1024)
    llm_timeout_seconds: int = _get_int("ARBITER_LLM_TIMEOUT", 60)

    # --- Independent verifier credential (replay) ---
    verifier_api_key: str = os.getenv("ARBITER_VERIFIER_API_KEY", "")
    # Empty means "same endpoint as the arbiter, different key".
    verifier_api_base: str = os.getenv("ARBITER_VERIFIER_API_BASE", "")

    # --- Ruling policy ---
    # Approvals below this confidence are enacted as denials.
    confidence_threshold: float = _get_float("ARBITER_CONFIDENCE_THRESHOLD", 0.7)
    # "fixed" reuses `seed` for every dispute; "random" draws one per dispute.
    seed_policy: str = os.getenv("ARBITER_SEED_POLICY", "fixed")
    seed: int = _get_int("ARBITER_SEED", 42)
    # Used by replay when the arbiter's evidence carries no seed.
    replay_default_seed: int = _get_int("ARBITER_REPLAY_DEFAULT_SEED", 42)
    # If True, log full prompts and model responses for audit.
    audit_log_enabled: bool = _get_bool("ARBITER_AUDIT_LOG", True)

    # --- Dispute scheduler ---
    scheduler_enabled: bool = _get_bool("ARBITER_SCHEDULER_ENABLED", True)
    scheduler_interval_seconds: float = _get_float("ARBITER_SCHEDULER_INTERVAL", 15.0)
    scheduler_lookback_blocks: int = _get_int("ARBITER_SCHEDULER_LOOKBACK_BLOCKS", 10_000)
    # Longer evaluations keep running but are settled on a later tick.
    scheduler_dispute_timeout_seconds: float = _get_float("ARBITER_DISPUTE_TIMEOUT", 120.0)
    scheduler_max_workers: int = _get_int("ARBITER_SCHEDULER_MAX_WORKERS", 4)

    # --- HTTP API ---
    api_host: str = os.getenv("ARBITER_HOST", "127.0.0.1")
    api_port: int = _get_int("ARBITER_PORT", 3000)
    # Shared secret for HMAC-signed ledger event webhooks.
    webhook_secret: str = os.getenv("ARBITER_WEBHOOK_SECRET", "")


settings = ArbiterSettings()
