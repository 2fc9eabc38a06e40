"""
In-memory registries for decoded staking events.

Every keeper serializes access with a shared-read / exclusive-write lock:
readers run concurrently, a writer runs alone, and a waiting writer blocks
new readers so a steady stream of lookups cannot starve it.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Generic, Iterable, List, Optional, Tuple, TypeVar

from sfc_events import Validator, DelegateInfo, UndelegateInfo, RewardClaimInfo

T = TypeVar('T')


class ReadWriteLock:
    """Writer-preferring read/write lock usable from any thread"""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read_locked(self):
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write_locked(self):
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class ValidatorRegistry:
    """Validators keyed by id; later observations overwrite earlier ones"""

    def __init__(self):
        self._validators: Dict[int, Validator] = {}
        self._lock = ReadWriteLock()

    def add(self, validator: Validator) -> None:
        with self._lock.write_locked():
            self._validators[validator.id] = validator

    def add_batch(self, validators: Iterable[Validator]) -> None:
        with self._lock.write_locked():
            for validator in validators:
                self._validators[validator.id] = validator

    def get_by_id(self, validator_id: int) -> Optional[Validator]:
        with self._lock.read_locked():
            return self._validators.get(validator_id)

    def snapshot(self) -> Dict[int, Validator]:
        """Copy of the full map; later mutations are not visible through it"""
        with self._lock.read_locked():
            return dict(self._validators)

    def __len__(self) -> int:
        with self._lock.read_locked():
            return len(self._validators)


class AppendOnlyHistory(Generic[T]):
    """Unbounded append-only list of events seen during this run"""

    def __init__(self, name: str = "history"):
        self.name = name
        self._items: List[T] = []
        self._lock = ReadWriteLock()

    def add(self, item: T) -> None:
        with self._lock.write_locked():
            self._items.append(item)

    def add_batch(self, items: Iterable[T]) -> None:
        with self._lock.write_locked():
            self._items.extend(items)

    def get_last(self) -> Tuple[Optional[T], bool]:
        with self._lock.read_locked():
            if not self._items:
                return None, False
            return self._items[-1], True

    def __len__(self) -> int:
        with self._lock.read_locked():
            return len(self._items)


class DelegateHistory(AppendOnlyHistory[DelegateInfo]):
    def __init__(self):
        super().__init__("delegate")


class UndelegateHistory(AppendOnlyHistory[UndelegateInfo]):
    def __init__(self):
        super().__init__("undelegate")


class RewardHistory(AppendOnlyHistory[RewardClaimInfo]):
    def __init__(self):
        super().__init__("reward")
