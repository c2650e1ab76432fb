"""HTTP API and ledger-event webhook for the Dispute Arbiter.

Exposes manual evaluation, independent replay, dispute and commitment lookup, and
receives ``refund.requested`` / ``evidence.submitted`` events so a dispute
is looked at as soon as both sides have spoken instead of on the next tick.
Webhook signatures use HMAC-SHA256 over the raw body.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from collections.abc import AsyncIterator
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError
from starlette.middleware.base import BaseHTTPMiddleware

from dispute_arbiter.arbiter import Arbiter
from dispute_arbiter.config import settings
from dispute_arbiter.errors import AlreadyRuledError, ArbitrationError, ErrorKind, LedgerError
from dispute_arbiter.payment_cache import payment_cache
from dispute_arbiter.scheduler import DisputeScheduler
from dispute_arbiter.schemas import SCHEMA_VERSION, Dispute, WebhookPayload, export_json_schemas
from dispute_arbiter.verifier import ReplayVerifier

logger = logging.getLogger(__name__)

MAX_REQUEST_BODY_BYTES = 1 * 1024 * 1024  # 1 MiB hard cap on all request bodies

TRIGGER_EVENTS = {"refund.requested", "evidence.submitted"}

_ERROR_STATUS = {
    ErrorKind.NO_EVIDENCE: 400,
    ErrorKind.MALFORMED_INPUT: 502,
    ErrorKind.TRANSIENT: 503,
    ErrorKind.CONFLICT: 409,
    ErrorKind.CONFIGURATION: 503,
}


class _BodySizeLimitMiddleware(BaseHTTPMiddleware):
    """Reject requests whose body exceeds MAX_REQUEST_BODY_BYTES."""

    async def dispatch(self, request: Request, call_next):
        content_length = request.headers.get("content-length")
        if content_length and int(content_length) > MAX_REQUEST_BODY_BYTES:
            return JSONResponse(
                status_code=413,
                content={"detail": "Request body too large"},
            )
        return await call_next(request)


_arbiter = Arbiter()
_scheduler = DisputeScheduler(arbiter=_arbiter)


@asynccontextmanager
async def _lifespan(_app: FastAPI) -> AsyncIterator[None]:
    if settings.scheduler_enabled:
        _scheduler.start()
    yield
    _scheduler.stop()


app = FastAPI(
    title="Dispute Arbiter",
    description="Automated, replay-verifiable arbitration of escrow refund disputes",
    version="0.1.0",
    lifespan=_lifespan,
)

app.add_middleware(_BodySizeLimitMiddleware)

# Thread pool for webhook-triggered checks (webhook must respond quickly)
_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="arbiter-webhook")


@app.exception_handler(ArbitrationError)
async def _arbitration_error_handler(_request: Request, exc: ArbitrationError):
    return JSONResponse(status_code=_ERROR_STATUS[exc.kind], content={"error": exc.to_dict()})


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------


def _to_dispute(payment_info_hash: str, nonce: int, payment_info: dict | None = None) -> Dispute:
    try:
        dispute = Dispute(
            payment_info_hash=payment_info_hash,
            nonce=nonce,
            payment_info=payment_info,
        )
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail="Invalid dispute identifier") from exc
    if dispute.payment_info is not None:
        payment_cache.put(dispute.payment_info_hash, dispute.payment_info)
    return payment_cache.attach(dispute)


class DisputeRequest(BaseModel):
    payment_info_hash: str
    nonce: int
    payment_info: dict | None = None

    def to_dispute(self) -> Dispute:
        return _to_dispute(self.payment_info_hash, self.nonce, self.payment_info)


class PaymentInfoRequest(BaseModel):
    payment_info_hash: str = Field(..., pattern=r"^0x[0-9a-fA-F]{64}$")
    payment_info: dict


# ---------------------------------------------------------------------------
# Signature verification
# ---------------------------------------------------------------------------


def _verify_signature(body: bytes, signature: str | None) -> bool:
    """Verify the webhook HMAC-SHA256 signature."""
    if not settings.webhook_secret:
        # No secret configured: development mode
        logger.warning("Webhook signature verification skipped (no secret configured)")
        return True

    if not signature:
        return False

    expected = hmac.new(
        settings.webhook_secret.encode("utf-8"),
        body,
        hashlib.sha256,
    ).hexdigest()

    return hmac.compare_digest(f"sha256={expected}", signature)


# ---------------------------------------------------------------------------
# Background check task
# ---------------------------------------------------------------------------


def _run_check(key: str) -> None:
    """Advance one dispute in a background thread."""
    try:
        state = _scheduler.check_dispute(key)
        logger.info("Webhook-triggered check of dispute %s → %s", key, state.value)
    except LedgerError as exc:
        logger.warning("Webhook-triggered check of dispute %s failed: %s", key, exc)
    except Exception:
        logger.exception("Webhook-triggered check failed for dispute %s", key)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@app.get("/health")
def health():
    return {
        "status": "ok",
        "service": "dispute-arbiter",
        "version": "0.1.0",
        "model": settings.llm_model,
        "seed_policy": _arbiter.seed_policy,
        "seed": _arbiter.seed,
        "confidence_threshold": _arbiter.confidence_threshold,
        "payment_infos_cached": len(payment_cache),
    }


@app.post("/webhook")
async def receive_webhook(
    request: Request,
    x_arbiter_signature: str | None = Header(default=None),
    x_arbiter_delivery: str | None = Header(default=None),
):
    """Receive ledger events. Only refund and evidence events trigger work."""
    body = await request.body()

    if not _verify_signature(body, x_arbiter_signature):
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    try:
        payload = WebhookPayload(**json.loads(body))
    except Exception as exc:
        logger.error("Failed to parse webhook payload: %s", exc)
        raise HTTPException(status_code=400, detail="Invalid payload") from exc

    logger.info("Received webhook: event=%s delivery=%s", payload.event, x_arbiter_delivery)

    if payload.event not in TRIGGER_EVENTS:
        return {"status": "ignored", "event": payload.event}

    try:
        dispute = Dispute.model_validate(payload.data)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail="Missing or invalid dispute in webhook data") from exc

    payment_cache.remember([dispute])
    key = _scheduler.track(dispute)
    _executor.submit(_run_check, key)

    return {"status": "accepted", "composite_key": key}


@app.post("/api/evaluate")
def evaluate(req: DisputeRequest):
    """Evaluate a dispute now, synchronously. Returns the full result."""
    dispute = req.to_dispute()
    key = _scheduler.track(dispute)
    try:
        result = _arbiter.evaluate(dispute)
    except AlreadyRuledError:
        # Finish a ruling write that never landed before reporting the conflict
        _arbiter.resume(dispute)
        _scheduler.mark_done(key)
        raise
    _scheduler.mark_done(key)
    return result.model_dump(mode="json", by_alias=True)


@app.post("/api/verify")
def verify(req: DisputeRequest):
    """Replay the recorded evaluation under the verifier's own credential."""
    dispute = req.to_dispute()
    result = ReplayVerifier(ledger=_arbiter.ledger, resolver=_arbiter.resolver).replay(dispute)
    return result.model_dump(mode="json", by_alias=True)


@app.get("/api/commitment/{payment_info_hash}/{nonce}")
def get_commitment(payment_info_hash: str, nonce: int):
    dispute = _to_dispute(payment_info_hash, nonce)
    commitment = _arbiter.get_commitment(dispute)
    if commitment is None:
        raise HTTPException(status_code=404, detail="No commitment recorded for this dispute")
    return {
        "composite_key": dispute.composite_key,
        "commitment": commitment.model_dump(mode="json", by_alias=True),
    }


@app.get("/api/dispute/{payment_info_hash}/{nonce}")
def get_dispute(payment_info_hash: str, nonce: int):
    """Ledger status of one dispute alongside the arbiter's local view of it."""
    dispute = _to_dispute(payment_info_hash, nonce)
    key = dispute.composite_key
    status = _arbiter.ledger.get_status(dispute)
    commitment = _arbiter.get_commitment(dispute)
    state = _scheduler.state(key)
    return {
        "composite_key": key,
        "payment_info_hash": dispute.payment_info_hash,
        "nonce": dispute.nonce,
        "status": status.value,
        "state": state.value if state is not None else None,
        "commitment": commitment.model_dump(mode="json", by_alias=True) if commitment else None,
    }


@app.get("/api/disputes")
def list_disputes(limit: int = 20, offset: int = 0):
    """List disputes known to the scheduler with their local state."""
    known = _scheduler.disputes()
    page = known[offset : offset + limit]
    return {
        "disputes": [
            {
                "composite_key": d.composite_key,
                "payment_info_hash": d.payment_info_hash,
                "nonce": d.nonce,
                "state": state.value,
            }
            for d, state in page
        ],
        "total": len(known),
    }


@app.post("/api/payment-info")
def store_payment_info(req: PaymentInfoRequest):
    payment_cache.put(req.payment_info_hash, req.payment_info)
    return {"hash": req.payment_info_hash.lower(), "stored": True}


@app.get("/api/payment-info/{payment_info_hash}")
def get_payment_info(payment_info_hash: str):
    record = payment_cache.get(payment_info_hash)
    if record is None:
        raise HTTPException(status_code=404, detail="PaymentInfo not found for this hash")
    return record


@app.get("/scheduler/status")
def scheduler_status():
    return _scheduler.status()


@app.get("/schemas")
def list_schemas():
    """Versioned JSON Schemas of the records the arbiter publishes."""
    return {
        "schema_version": SCHEMA_VERSION,
        "schemas": export_json_schemas(),
    }
