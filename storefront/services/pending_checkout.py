"""Server-side staging for checkouts that finish asynchronously (NETS, PayPal)."""
from __future__ import annotations

import logging
import secrets
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple

from storefront.config import Config
from storefront.services.pricing import LineItem, Totals

SESSION_PENDING_KEY = "pending_checkout"


@dataclass
class PendingCheckout:
    token: str
    kind: str
    invoice_number: str
    customer: Any
    line_items: Tuple[LineItem, ...]
    totals: Totals
    form: Dict[str, Any] = field(default_factory=dict)
    provider_reference: Optional[str] = None
    paid: bool = False
    created_at: float = 0.0
    expires_at: float = 0.0

    def expired(self, now: float) -> bool:
        return now >= self.expires_at


class PendingCheckoutStore:
    """
    Holds the staged cart, totals and customer while the shopper is away at
    the payment provider. Only the token goes into the Flask session.
    """

    def __init__(
        self,
        ttl_seconds: int = Config.PENDING_CHECKOUT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._records: Dict[str, PendingCheckout] = {}
        self._lock = threading.Lock()
        self.logger = logging.getLogger(__name__)

    def stage(
        self,
        kind: str,
        invoice_number: str,
        customer: Any,
        line_items,
        totals: Totals,
        form: Optional[Dict[str, Any]] = None,
    ) -> PendingCheckout:
        now = self.clock()
        record = PendingCheckout(
            token=secrets.token_urlsafe(16),
            kind=kind,
            invoice_number=invoice_number,
            customer=customer,
            line_items=tuple(line_items),
            totals=totals,
            form=dict(form or {}),
            created_at=now,
            expires_at=now + self.ttl_seconds,
        )
        with self._lock:
            self._purge_locked(now)
            self._records[record.token] = record
        self.logger.info("Staged %s checkout %s", kind, invoice_number)
        return record

    def get(self, token: Optional[str], kind: Optional[str] = None) -> Optional[PendingCheckout]:
        if not token:
            return None
        with self._lock:
            self._purge_locked(self.clock())
            record = self._records.get(token)
        if record is None or (kind and record.kind != kind):
            return None
        return record

    def attach_reference(self, token: str, reference: str) -> None:
        with self._lock:
            record = self._records.get(token)
            if record is not None:
                record.provider_reference = reference

    def mark_paid(self, reference: Optional[str]) -> bool:
        record = self.find_by_reference(reference)
        if record is None:
            return False
        with self._lock:
            record.paid = True
        return True

    def find_by_reference(self, reference: Optional[str]) -> Optional[PendingCheckout]:
        if not reference:
            return None
        with self._lock:
            self._purge_locked(self.clock())
            return next(
                (record for record in self._records.values() if record.provider_reference == reference),
                None,
            )

    def discard(self, token: Optional[str]) -> Optional[PendingCheckout]:
        if not token:
            return None
        with self._lock:
            return self._records.pop(token, None)

    def claim(self, token: Optional[str], kind: Optional[str] = None) -> Optional[PendingCheckout]:
        """Remove and return a live record; only one caller can win."""
        if not token:
            return None
        with self._lock:
            self._purge_locked(self.clock())
            record = self._records.get(token)
            if record is None or (kind and record.kind != kind):
                return None
            return self._records.pop(token)

    def purge_expired(self) -> int:
        with self._lock:
            return self._purge_locked(self.clock())

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def _purge_locked(self, now: float) -> int:
        stale = [token for token, record in self._records.items() if record.expired(now)]
        for token in stale:
            del self._records[token]
        if stale:
            self.logger.info("Purged %d expired pending checkouts", len(stale))
        return len(stale)
