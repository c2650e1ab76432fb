"""Tests for the HTTP API and webhook.

The module-level arbiter is swapped for one wired to the in-memory ledger
and the stub model.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from dispute_arbiter.api import _scheduler, app
from dispute_arbiter.commitment import create_commitment
from dispute_arbiter.config import settings
from dispute_arbiter.payment_cache import payment_cache
from dispute_arbiter.schemas import (
    ArbiterRulingRecord,
    Decision,
    DisputeState,
    DisputeStatus,
    SubmitterRole,
)
from dispute_arbiter.verifier import ReplayVerifier

from conftest import PAYER, PAYER_CLAIM, PAYMENT_INFO_HASH, StubModel


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture(autouse=True)
def _wired(arbiter):
    payment_cache.clear()
    with patch("dispute_arbiter.api._arbiter", arbiter):
        yield
    payment_cache.clear()


def _body(nonce: int = 0, **extra) -> dict:
    return {"payment_info_hash": PAYMENT_INFO_HASH, "nonce": nonce, **extra}


def _body_info() -> dict:
    # Mixed-case hash: the cache keys on the lowercased form
    return {"payment_info_hash": "0x" + "AB" * 32, "payment_info": {"payer": PAYER}}


def _webhook_body(event: str = "evidence.submitted", nonce: int = 0) -> dict:
    return {
        "event": event,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "data": {"payment_info_hash": PAYMENT_INFO_HASH, "nonce": nonce},
    }


def _sign(body: bytes, secret: str = "test-secret") -> str:
    sig = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return f"sha256={sig}"


# ---------------------------------------------------------------------------
# Evaluation routes
# ---------------------------------------------------------------------------


class TestEvaluateRoute:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["service"] == "dispute-arbiter"
        assert data["seed"] == 42

    def test_evaluate(self, client, ledger, contested):
        resp = client.post("/api/evaluate", json=_body())
        assert resp.status_code == 200
        data = resp.json()
        assert data["composite_key"] == contested.composite_key
        assert data["enacted_outcome"] == "approve"
        assert data["commitment"]["seed"] == 42
        assert data["commitment"]["commitmentHash"].startswith("0x")
        assert len(ledger.arbiter_entries(contested)) == 1

    def test_evaluate_attaches_payment_info(self, client, ledger, contested):
        client.post("/api/payment-info", json=_body_info())
        with patch.object(ledger, "execute_refund", wraps=ledger.execute_refund) as refund:
            resp = client.post("/api/evaluate", json=_body())
        assert resp.status_code == 200
        assert refund.call_args.args[0].payment_info == {"payer": PAYER}

    def test_no_evidence(self, client):
        resp = client.post("/api/evaluate", json=_body(nonce=9))
        assert resp.status_code == 400
        assert resp.json()["error"]["kind"] == "no_evidence"

    def test_already_ruled_returns_commitment(self, client, contested):
        first = client.post("/api/evaluate", json=_body()).json()
        resp = client.post("/api/evaluate", json=_body())
        assert resp.status_code == 409
        error = resp.json()["error"]
        assert error["kind"] == "conflict"
        assert error["commitment"]["commitmentHash"] == first["commitment"]["commitmentHash"]

    def test_already_ruled_marks_done(self, client, ledger, dispute):
        other = dispute.model_copy(update={"nonce": 5})
        ledger.add_evidence(other, SubmitterRole.PAYER, PAYER_CLAIM)
        ledger.add_evidence(other, SubmitterRole.ARBITER, '{"note": "ruled elsewhere"}')

        resp = client.post("/api/evaluate", json=_body(nonce=5))

        assert resp.status_code == 409
        assert _scheduler.state(other.composite_key) == DisputeState.DONE
        assert ledger.writes == []

    def test_already_ruled_finishes_stranded_ruling(self, client, ledger, dispute):
        other = dispute.model_copy(update={"nonce": 6})
        ledger.add_evidence(other, SubmitterRole.PAYER, PAYER_CLAIM)
        record = ArbiterRulingRecord(
            decision=Decision.DENY,
            reasoning="Service was delivered.",
            confidence=0.9,
            commitment=create_commitment("prompt", 42, "response"),
            model="stub/deterministic",
        )
        ledger.add_evidence(other, SubmitterRole.ARBITER, record.to_cid())

        resp = client.post("/api/evaluate", json=_body(nonce=6))

        assert resp.status_code == 409
        assert ledger.get_status(other) == DisputeStatus.DENIED
        assert _scheduler.state(other.composite_key) == DisputeState.DONE

    def test_unparseable_ruling(self, client, arbiter, contested):
        arbiter.model = StubModel("No opinion.")
        resp = client.post("/api/evaluate", json=_body())
        assert resp.status_code == 502
        assert resp.json()["error"]["raw_response"] == "No opinion."

    def test_invalid_hash(self, client):
        resp = client.post("/api/evaluate", json={"payment_info_hash": "0x1234", "nonce": 0})
        assert resp.status_code == 400


class TestVerifyRoute:
    def test_replay_matches(self, client, contested):
        client.post("/api/evaluate", json=_body())
        with patch(
            "dispute_arbiter.api.ReplayVerifier",
            side_effect=lambda **kw: ReplayVerifier(model=StubModel(), **kw),
        ):
            resp = client.post("/api/verify", json=_body())
        assert resp.status_code == 200
        data = resp.json()
        assert data["matches"] is True
        assert data["replay_commitment"] == data["original_commitment"]

    def test_missing_verifier_credential(self, client, contested):
        with patch.object(settings, "verifier_api_key", ""):
            resp = client.post("/api/verify", json=_body())
        assert resp.status_code == 503
        assert resp.json()["error"]["kind"] == "configuration"


class TestCommitmentRoute:
    def test_not_found(self, client, contested):
        resp = client.get(f"/api/commitment/{PAYMENT_INFO_HASH}/0")
        assert resp.status_code == 404

    def test_found(self, client, contested):
        evaluated = client.post("/api/evaluate", json=_body()).json()
        resp = client.get(f"/api/commitment/{PAYMENT_INFO_HASH}/0")
        assert resp.status_code == 200
        assert resp.json()["commitment"] == evaluated["commitment"]

    def test_dispute_detail(self, client, ledger, dispute):
        other = dispute.model_copy(update={"nonce": 7})
        ledger.add_evidence(other, SubmitterRole.PAYER, PAYER_CLAIM)

        before = client.get(f"/api/dispute/{PAYMENT_INFO_HASH}/7").json()
        assert before["composite_key"] == other.composite_key
        assert before["status"] == "pending"
        assert before["commitment"] is None

        evaluated = client.post("/api/evaluate", json=_body(nonce=7)).json()
        resp = client.get(f"/api/dispute/{PAYMENT_INFO_HASH}/7")

        assert resp.status_code == 200
        data = resp.json()
        assert data["nonce"] == 7
        assert data["status"] == "approved"
        assert data["state"] == "done"
        assert data["commitment"] == evaluated["commitment"]

    def test_dispute_detail_invalid_hash(self, client):
        resp = client.get("/api/dispute/0x1234/0")
        assert resp.status_code == 400

    def test_disputes_listed(self, client, contested):
        client.post("/api/evaluate", json=_body())
        resp = client.get("/api/disputes")
        assert resp.status_code == 200
        listed = {d["composite_key"]: d["state"] for d in resp.json()["disputes"]}
        assert listed[contested.composite_key] == "done"


# ---------------------------------------------------------------------------
# Payment info cache
# ---------------------------------------------------------------------------


class TestPaymentInfo:
    def test_store_and_fetch(self, client):
        resp = client.post("/api/payment-info", json=_body_info())
        assert resp.status_code == 200
        assert resp.json() == {"hash": PAYMENT_INFO_HASH, "stored": True}

        resp = client.get(f"/api/payment-info/{PAYMENT_INFO_HASH}")
        assert resp.status_code == 200
        assert resp.json() == {"payer": PAYER}

    def test_unknown_hash(self, client):
        resp = client.get(f"/api/payment-info/0x{'00' * 32}")
        assert resp.status_code == 404

    def test_malformed_hash_rejected(self, client):
        resp = client.post("/api/payment-info", json={"payment_info_hash": "abc", "payment_info": {}})
        assert resp.status_code == 422


# ---------------------------------------------------------------------------
# Webhook
# ---------------------------------------------------------------------------


class TestWebhook:
    @patch("dispute_arbiter.api._executor")
    @patch("dispute_arbiter.api._run_check")
    def test_trigger_event_schedules_check(self, mock_check, mock_executor, client, dispute):
        resp = client.post(
            "/webhook",
            content=json.dumps(_webhook_body("refund.requested")),
            headers={"Content-Type": "application/json"},
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "accepted"
        assert data["composite_key"] == dispute.composite_key
        mock_executor.submit.assert_called_once_with(mock_check, dispute.composite_key)

    def test_other_event_ignored(self, client):
        resp = client.post(
            "/webhook",
            content=json.dumps(_webhook_body("refund.cancelled")),
            headers={"Content-Type": "application/json"},
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == "ignored"

    def test_invalid_dispute_data(self, client):
        body = _webhook_body()
        body["data"] = {"nonce": 1}
        resp = client.post(
            "/webhook",
            content=json.dumps(body),
            headers={"Content-Type": "application/json"},
        )
        assert resp.status_code == 400

    def test_signature_rejects_bad_sig(self, client):
        with patch.object(settings, "webhook_secret", "test-secret"):
            resp = client.post(
                "/webhook",
                content=json.dumps(_webhook_body()).encode(),
                headers={
                    "Content-Type": "application/json",
                    "X-Arbiter-Signature": "sha256=bad",
                },
            )
        assert resp.status_code == 401

    def test_signature_accepts_good_sig(self, client):
        body = json.dumps(_webhook_body()).encode()
        with patch.object(settings, "webhook_secret", "test-secret"), patch(
            "dispute_arbiter.api._executor", MagicMock()
        ):
            resp = client.post(
                "/webhook",
                content=body,
                headers={
                    "Content-Type": "application/json",
                    "X-Arbiter-Signature": _sign(body),
                },
            )
        assert resp.status_code == 200


class TestIntrospection:
    def test_scheduler_status(self, client):
        resp = client.get("/scheduler/status")
        assert resp.status_code == 200
        assert "running" in resp.json()

    def test_schemas(self, client):
        resp = client.get("/schemas")
        assert resp.status_code == 200
        data = resp.json()
        assert data["schema_version"] == "1.0"
        commitment = data["schemas"]["Commitment"]
        assert commitment["$id"] == "urn:dispute-arbiter:schemas:Commitment:v1.0"
        assert "commitmentHash" in commitment["properties"]
