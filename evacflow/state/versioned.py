"""
Per-key versioned cells with compare-and-set updates.

Each key owns its own lock, used only for the swap itself, so writers to
different destinations or edges never contend with each other.
"""

from typing import Callable, Dict, Generic, Iterator, List, Optional, Tuple, TypeVar
import threading

from ..errors import StaleStateConflict, UnknownResource

T = TypeVar('T')
R = TypeVar('R')


class VersionedCell(Generic[T]):
    """An immutable value plus a version counter, replaced atomically."""

    __slots__ = ('_value', '_version', '_lock')

    def __init__(self, value: T):
        self._value = value
        self._version = 0
        self._lock = threading.Lock()

    def read(self) -> Tuple[T, int]:
        """Point-in-time (value, version) pair."""
        with self._lock:
            return self._value, self._version

    @property
    def value(self) -> T:
        return self.read()[0]

    @property
    def version(self) -> int:
        return self.read()[1]

    def compare_and_set(self, expected_version: int, new_value: T) -> bool:
        """Install `new_value` only if nobody wrote since `expected_version`."""
        with self._lock:
            if self._version != expected_version:
                return False
            self._value = new_value
            self._version += 1
            return True


class VersionedMap(Generic[T]):
    """
    Map of keys to versioned cells.

    The registration lock is only taken when keys are added; reads and
    updates go straight to the per-key cell.
    """

    def __init__(self, max_retries: int = 8):
        self._cells: Dict[str, VersionedCell[T]] = {}
        self._register_lock = threading.Lock()
        self.max_retries = max_retries

    def register(self, key, value: T) -> VersionedCell[T]:
        with self._register_lock:
            cell = self._cells.get(key)
            if cell is None:
                cell = VersionedCell(value)
                self._cells[key] = cell
            return cell

    def cell(self, key) -> VersionedCell[T]:
        cell = self._cells.get(key)
        if cell is None:
            raise UnknownResource(f"Unknown key {key!r}", details={'key': key})
        return cell

    def get(self, key) -> T:
        return self.cell(key).value

    def __contains__(self, key) -> bool:
        return key in self._cells

    def __len__(self) -> int:
        return len(self._cells)

    def keys(self) -> List:
        return list(self._cells.keys())

    def items(self) -> Iterator[Tuple[object, T]]:
        """Iterate (key, value) pairs; each value is individually consistent."""
        for key, cell in list(self._cells.items()):
            yield key, cell.value

    def update(self, key, fn: Callable[[T], Tuple[T, R]],
               on_retry: Optional[Callable[[int], None]] = None) -> R:
        """
        Apply `fn` to the current value with a compare-and-set loop.

        `fn` returns (new_value, result); it may run more than once and must
        not have side effects. Returning the same object skips the write.

        Raises:
            StaleStateConflict: after `max_retries` lost races.
        """
        cell = self.cell(key)
        for attempt in range(self.max_retries):
            current, version = cell.read()
            new_value, result = fn(current)
            if new_value is current:
                return result
            if cell.compare_and_set(version, new_value):
                return result
            if on_retry:
                on_retry(attempt + 1)

        raise StaleStateConflict(
            f"Lost {self.max_retries} concurrent updates on {key!r}",
            details={'key': key, 'retries': self.max_retries},
        )
