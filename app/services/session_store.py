"""Per-sender pending orders.

Each bot runtime owns one store. At most one order lives per sender key; the
controller is the only writer.
"""

import asyncio
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from app.logging_config import get_logger
from app.services.state_machine import OrderState

logger = get_logger("session_store")

DEFAULT_QUANTITY = 1
DEFAULT_TAX_RATE_PCT = 20.0


@dataclass
class InvoiceFields:
    client_name: Optional[str] = None
    description: Optional[str] = None
    amount: Optional[float] = None
    client_email: Optional[str] = None
    quantity: int = DEFAULT_QUANTITY
    tax_rate_pct: float = DEFAULT_TAX_RATE_PCT

    def missing_fields(self) -> list[str]:
        missing = []
        if not self.client_name:
            missing.append("client_name")
        if not self.description:
            missing.append("description")
        if not self.amount:
            missing.append("amount")
        return missing

    def is_complete(self) -> bool:
        return bool(self.client_name and self.description and self.amount)

    def total_with_tax(self) -> float:
        subtotal = (self.amount or 0) * (self.quantity or DEFAULT_QUANTITY)
        return round(subtotal * (1 + self.tax_rate_pct / 100), 2)

    def copy(self) -> "InvoiceFields":
        return replace(self)


@dataclass
class PendingOrder:
    sender_key: str
    state: OrderState
    fields: InvoiceFields
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def normalize_sender_key(number: str) -> str:
    return "".join(ch for ch in str(number or "") if ch.isdigit())


class SessionStore(ABC):
    """Keyed storage for pending orders."""

    @abstractmethod
    def get(self, sender_key: str) -> Optional[PendingOrder]:
        pass

    @abstractmethod
    def set(self, order: PendingOrder) -> None:
        pass

    @abstractmethod
    def delete(self, sender_key: str) -> bool:
        """Remove the order; returns True when one existed."""
        pass


class InMemorySessionStore(SessionStore):
    """Process-local store with lazy expiry of abandoned orders."""

    def __init__(self, ttl_minutes: int = 0, clock=None):
        self._orders: Dict[str, PendingOrder] = {}
        self._ttl = timedelta(minutes=ttl_minutes) if ttl_minutes and ttl_minutes > 0 else None
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _is_expired(self, order: PendingOrder) -> bool:
        if self._ttl is None:
            return False
        return self._clock() - order.updated_at > self._ttl

    def get(self, sender_key: str) -> Optional[PendingOrder]:
        key = normalize_sender_key(sender_key)
        order = self._orders.get(key)
        if order is None:
            return None
        if self._is_expired(order):
            del self._orders[key]
            logger.info("Pending order expired", extra={"context": {"sender": key}})
            return None
        return order

    def set(self, order: PendingOrder) -> None:
        order.sender_key = normalize_sender_key(order.sender_key)
        order.updated_at = self._clock()
        self._orders[order.sender_key] = order

    def delete(self, sender_key: str) -> bool:
        return self._orders.pop(normalize_sender_key(sender_key), None) is not None

    def __len__(self) -> int:
        return len(self._orders)


class SenderLocks:
    """One asyncio.Lock per sender so turns from the same number never interleave.

    A lock lives only while some turn holds or waits for it.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, sender_key: str):
        key = normalize_sender_key(sender_key)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)
