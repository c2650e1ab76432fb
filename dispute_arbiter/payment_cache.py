"""Process-local cache of payment records keyed by payment-info hash.

Only used to resolve a dispute back to its payment context. The ledger is
authoritative: the cache can be dropped and rebuilt by re-scanning refund
requests, and a miss means "not cached yet", never "no such payment".
"""

from __future__ import annotations

import threading
from collections.abc import Iterable

from dispute_arbiter.schemas import Dispute


class PaymentInfoCache:
    def __init__(self) -> None:
        self._records: dict[str, dict] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def put(self, payment_info_hash: str, payment_info: dict) -> None:
        with self._lock:
            self._records[payment_info_hash.lower()] = dict(payment_info)

    def get(self, payment_info_hash: str) -> dict | None:
        with self._lock:
            record = self._records.get(payment_info_hash.lower())
            return dict(record) if record is not None else None

    def remember(self, disputes: Iterable[Dispute]) -> int:
        """Cache payment info carried by *disputes*. Returns how many were new."""
        added = 0
        with self._lock:
            for dispute in disputes:
                if dispute.payment_info is None:
                    continue
                if dispute.payment_info_hash not in self._records:
                    added += 1
                self._records[dispute.payment_info_hash] = dict(dispute.payment_info)
        return added

    def attach(self, dispute: Dispute) -> Dispute:
        """Return *dispute* with cached payment info filled in, when known."""
        if dispute.payment_info is not None:
            return dispute
        record = self.get(dispute.payment_info_hash)
        if record is None:
            return dispute
        return dispute.model_copy(update={"payment_info": record})

    def clear(self) -> None:
        with self._lock:
            self._records.clear()


payment_cache = PaymentInfoCache()
