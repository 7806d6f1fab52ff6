"""
repository.py
--------------
Storage contracts for the two pieces of state the engine learns over time:

    - MerchantMappingStore: user corrections and global merchant mappings.
    - RecurringPaymentStore: detected recurring payments.

The engine only talks to the abstract classes. In-memory implementations are
provided for tests and the CLI; a database-backed store implements the same
methods.

Concurrency contract:
    - key_lock(key) returns a context manager serialising read-compute-write
      cycles for one logical record (merchant key, or user/merchant/account).
    - RecurringPaymentStore.update() takes the version the caller read and
      raises StaleRecordError if the stored record has moved on.
"""

import copy
import itertools
import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Hashable, Iterator, List, Optional

from core.models import MerchantMapping, RecurringPayment

logger = logging.getLogger(__name__)


class StaleRecordError(RuntimeError):
    """Raised when an update carries a version older than the stored record."""


class _KeyLocks:
    """Lazily created per-key locks."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, threading.Lock] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
        with lock:
            yield


def mapping_key(merchant: str) -> str:
    return (merchant or "").lower().strip()


# =============================================================================
# MERCHANT MAPPINGS
# =============================================================================

class MerchantMappingStore(ABC):

    @abstractmethod
    def find(self, merchant_key: str, user_id: str | None) -> Optional[MerchantMapping]:
        """Exact lookup. user_id=None looks up the global mapping."""

    @abstractmethod
    def find_all(self, user_id: str | None = None) -> List[MerchantMapping]:
        """Mappings visible to a user (their own plus global). None returns every mapping."""

    @abstractmethod
    def create(self, mapping: MerchantMapping) -> MerchantMapping:
        ...

    @abstractmethod
    def update(self, mapping_id: str, changes: Dict[str, Any]) -> MerchantMapping:
        ...

    @abstractmethod
    def key_lock(self, key: Hashable):
        ...


class InMemoryMerchantMappingStore(MerchantMappingStore):

    def __init__(self, mappings: List[MerchantMapping] | None = None):
        self._lock = threading.RLock()
        self._key_locks = _KeyLocks()
        self._ids = itertools.count(1)
        self._by_id: Dict[str, MerchantMapping] = {}
        for m in mappings or []:
            self.create(m)

    def find(self, merchant_key, user_id):
        key = mapping_key(merchant_key)
        with self._lock:
            for m in self._by_id.values():
                if m.user_id == user_id and mapping_key(m.merchant_raw) == key:
                    return copy.deepcopy(m)
        return None

    def find_all(self, user_id=None):
        with self._lock:
            return [
                copy.deepcopy(m) for m in self._by_id.values()
                if user_id is None or m.user_id in (user_id, None)
            ]

    def create(self, mapping):
        with self._lock:
            if self.find(mapping.merchant_raw, mapping.user_id) is not None:
                raise ValueError(
                    f"Mapping already exists for '{mapping.merchant_raw}' (user={mapping.user_id})"
                )
            stored = copy.deepcopy(mapping)
            stored.merchant_raw = mapping_key(stored.merchant_raw)
            stored.id = stored.id or f"mm_{next(self._ids)}"
            self._by_id[stored.id] = stored
            return copy.deepcopy(stored)

    def update(self, mapping_id, changes):
        with self._lock:
            if mapping_id not in self._by_id:
                raise KeyError(f"Unknown merchant mapping: {mapping_id}")
            stored = self._by_id[mapping_id]
            for name, value in changes.items():
                if not hasattr(stored, name):
                    raise KeyError(f"MerchantMapping has no field '{name}'")
                setattr(stored, name, value)
            stored.updated_at = datetime.now()
            return copy.deepcopy(stored)

    def key_lock(self, key):
        return self._key_locks.hold(("mapping",) + tuple(key if isinstance(key, tuple) else (key,)))

    def __len__(self) -> int:
        return len(self._by_id)


# =============================================================================
# RECURRING PAYMENTS
# =============================================================================

class RecurringPaymentStore(ABC):

    @abstractmethod
    def find(self, user_id: str, merchant: str, account_id: str) -> Optional[RecurringPayment]:
        ...

    @abstractmethod
    def find_all(self, user_id: str | None = None) -> List[RecurringPayment]:
        ...

    @abstractmethod
    def create(self, payment: RecurringPayment) -> RecurringPayment:
        ...

    @abstractmethod
    def update(self, payment_id: str, changes: Dict[str, Any], expected_version: int) -> RecurringPayment:
        """
        Applies changes if the stored version equals expected_version, then
        bumps the version.

        Raises:
            StaleRecordError: On a version mismatch.
        """

    @abstractmethod
    def key_lock(self, key: tuple[str, str, str]):
        ...

    def flag_price_change(
        self, payment_id: str, percent_change: float, when: datetime, expected_version: int
    ) -> RecurringPayment:
        """Records a price-increase alert on an existing payment."""
        return self.update(
            payment_id,
            {
                "price_increase_alert": True,
                "last_price_change": percent_change,
                "last_price_change_date": when,
            },
            expected_version,
        )


class InMemoryRecurringPaymentStore(RecurringPaymentStore):

    def __init__(self, payments: List[RecurringPayment] | None = None):
        self._lock = threading.RLock()
        self._key_locks = _KeyLocks()
        self._ids = itertools.count(1)
        self._by_id: Dict[str, RecurringPayment] = {}
        for p in payments or []:
            self.create(p)

    def find(self, user_id, merchant, account_id):
        key = (user_id, mapping_key(merchant), account_id)
        with self._lock:
            for p in self._by_id.values():
                if p.key == key:
                    return copy.deepcopy(p)
        return None

    def find_all(self, user_id=None):
        with self._lock:
            return [copy.deepcopy(p) for p in self._by_id.values() if user_id is None or p.user_id == user_id]

    def create(self, payment):
        with self._lock:
            if self.find(*payment.key) is not None:
                raise ValueError(f"Recurring payment already exists for {payment.key}")
            stored = copy.deepcopy(payment)
            stored.id = stored.id or f"rp_{next(self._ids)}"
            stored.version = 1
            self._by_id[stored.id] = stored
            return copy.deepcopy(stored)

    def update(self, payment_id, changes, expected_version):
        with self._lock:
            if payment_id not in self._by_id:
                raise KeyError(f"Unknown recurring payment: {payment_id}")
            stored = self._by_id[payment_id]
            if stored.version != expected_version:
                raise StaleRecordError(
                    f"Recurring payment {payment_id} is at version {stored.version}, "
                    f"update expected {expected_version}"
                )
            for name, value in changes.items():
                if not hasattr(stored, name):
                    raise KeyError(f"RecurringPayment has no field '{name}'")
                setattr(stored, name, value)
            stored.version += 1
            stored.updated_at = datetime.now()
            return copy.deepcopy(stored)

    def key_lock(self, key):
        return self._key_locks.hold(("recurring",) + tuple(key))

    def __len__(self) -> int:
        return len(self._by_id)
