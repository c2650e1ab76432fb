"""Access to the escrow ledger.

The arbiter never signs transactions itself. It talks to a ledger gateway
over REST; the gateway holds the arbiter's key, submits the contract calls
and returns transaction hashes. ``Ledger`` is the interface the rest of the
package depends on, so tests and alternative gateways can stand in.

A write that reverts because the desired end state already holds (the
dispute was ruled by someone else, or cancelled) is reported by the gateway
as HTTP 409 and surfaces here as ``LedgerConflict``.
"""

from __future__ import annotations

import logging
from typing import Protocol

import httpx

from dispute_arbiter.config import settings
from dispute_arbiter.errors import LedgerConflict, LedgerError
from dispute_arbiter.schemas import Dispute, DisputeStatus, EvidenceEntry

logger = logging.getLogger(__name__)


class Ledger(Protocol):
    def get_all_evidence(self, dispute: Dispute) -> list[EvidenceEntry]:
        """All evidence entries for *dispute*, in append order."""
        ...

    def submit_evidence(self, dispute: Dispute, content: str) -> str:
        """Append an arbiter evidence entry. Returns the transaction hash."""
        ...

    def approve(self, dispute: Dispute) -> str:
        ...

    def deny(self, dispute: Dispute) -> str:
        ...

    def execute_refund(self, dispute: Dispute) -> str:
        """Move escrowed funds back to the payer for the dispute's payment."""
        ...

    def get_status(self, dispute: Dispute) -> DisputeStatus:
        ...

    def list_recent_disputes(self, block_range: int) -> list[Dispute]:
        """Refund requests filed within the last *block_range* blocks."""
        ...


class LedgerClient:
    """``Ledger`` implementation backed by the ledger gateway's REST API."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
    ) -> None:
        self._base_url = base_url if base_url is not None else settings.ledger_url
        self._api_key = api_key if api_key is not None else settings.ledger_api_key
        self._timeout = timeout if timeout is not None else settings.ledger_timeout_seconds

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_all_evidence(self, dispute: Dispute) -> list[EvidenceEntry]:
        data = self._request("GET", self._dispute_path(dispute, "evidence"))
        return [EvidenceEntry.model_validate(e) for e in data.get("evidence", [])]

    def get_status(self, dispute: Dispute) -> DisputeStatus:
        data = self._request("GET", self._dispute_path(dispute))
        return DisputeStatus(str(data["status"]).lower())

    def list_recent_disputes(self, block_range: int) -> list[Dispute]:
        data = self._request("GET", "disputes", params={"lookback_blocks": block_range})
        return [Dispute.model_validate(d) for d in data.get("disputes", [])]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def submit_evidence(self, dispute: Dispute, content: str) -> str:
        data = self._request(
            "POST", self._dispute_path(dispute, "evidence"), json={"cid": content}
        )
        return data["tx_hash"]

    def approve(self, dispute: Dispute) -> str:
        return self._request("POST", self._dispute_path(dispute, "approve"))["tx_hash"]

    def deny(self, dispute: Dispute) -> str:
        return self._request("POST", self._dispute_path(dispute, "deny"))["tx_hash"]

    def execute_refund(self, dispute: Dispute) -> str:
        path = f"payments/{dispute.payment_info_hash}/refund"
        body = {"payment_info": dispute.payment_info} if dispute.payment_info else None
        return self._request("POST", path, json=body)["tx_hash"]

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    @staticmethod
    def _dispute_path(dispute: Dispute, suffix: str = "") -> str:
        path = f"disputes/{dispute.payment_info_hash}/{dispute.nonce}"
        return f"{path}/{suffix}" if suffix else path

    def _url(self, path: str) -> str:
        return self._base_url.rstrip("/") + "/" + path.lstrip("/")

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            with httpx.Client(timeout=self._timeout, headers=self._headers()) as client:
                resp = client.request(method, self._url(path), **kwargs)
        except httpx.HTTPError as exc:
            raise LedgerError(f"Ledger {method} {path} failed: {exc}") from exc

        if resp.status_code == 409:
            raise LedgerConflict(f"Ledger {method} {path} conflict: {resp.text}")
        if not resp.is_success:
            raise LedgerError(
                f"Ledger {method} {path} returned {resp.status_code}: {resp.text}"
            )
        return resp.json()
