"""Evidence resolution and canonicalization.

An evidence identifier on the ledger is one of three things: inline JSON,
an IPFS content address, or free text. The resolver turns each into the
text that goes into the prompt. A content-store failure never blocks a
dispute: the entry is rendered with a fixed sentinel instead.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable

import httpx

from dispute_arbiter.config import settings
from dispute_arbiter.schemas import EvidenceEntry, SubmitterRole

logger = logging.getLogger(__name__)

FETCH_FAILED_SENTINEL = "(failed to retrieve)"

_CID_V0 = re.compile(r"^Qm[A-Za-z0-9]{44}$")


def is_content_address(identifier: str) -> bool:
    """True for CIDv0 (``Qm`` + 44 alphanumerics) or CIDv1 (``bafy...``)."""
    return identifier.startswith("bafy") or bool(_CID_V0.match(identifier))


def _is_json(identifier: str) -> bool:
    try:
        json.loads(identifier)
    except ValueError:
        return False
    return True


def canonical_evidence(entries: Iterable[EvidenceEntry]) -> list[EvidenceEntry]:
    """Keep only the first entry per role, preserving ledger order."""
    seen: set[int] = set()
    canonical = []
    for entry in entries:
        if entry.role in seen:
            continue
        seen.add(entry.role)
        canonical.append(entry)
    return canonical


def party_evidence(entries: Iterable[EvidenceEntry]) -> list[EvidenceEntry]:
    """Canonical evidence minus the arbiter's own entries."""
    return [e for e in canonical_evidence(entries) if e.role != SubmitterRole.ARBITER]


def arbiter_evidence(entries: Iterable[EvidenceEntry]) -> list[EvidenceEntry]:
    return [e for e in entries if e.role == SubmitterRole.ARBITER]


class EvidenceResolver:
    """Resolves evidence identifiers to text via an IPFS HTTP gateway."""

    def __init__(
        self,
        gateway_url: str | None = None,
        timeout: float | None = None,
    ) -> None:
        self._gateway_url = (
            gateway_url if gateway_url is not None else settings.evidence_gateway_url
        )
        self._timeout = (
            timeout if timeout is not None else settings.evidence_fetch_timeout_seconds
        )

    def resolve(self, identifier: str) -> str:
        if _is_json(identifier):
            return identifier
        if not is_content_address(identifier):
            return identifier
        try:
            return self._fetch(identifier)
        except httpx.HTTPError as exc:
            logger.warning("Failed to fetch evidence %s: %s", identifier, exc)
            return FETCH_FAILED_SENTINEL

    def resolve_all(self, entries: Iterable[EvidenceEntry]) -> dict[str, str]:
        """Map each entry's identifier to its resolved content."""
        contents: dict[str, str] = {}
        for entry in entries:
            if entry.cid not in contents:
                contents[entry.cid] = self.resolve(entry.cid)
        return contents

    def _fetch(self, cid: str) -> str:
        url = self._gateway_url.rstrip("/") + "/" + cid
        with httpx.Client(timeout=self._timeout) as client:
            resp = client.get(url)
            resp.raise_for_status()
            return resp.text
