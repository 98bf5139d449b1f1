from __future__ import annotations
from datetime import datetime, timedelta
from threading import Lock

import pytest

from circdesk import LibrarySystem

ADMIN = "admin-001"
DAY_ZERO = datetime(2025, 1, 6, 9, 0, 0)


class FakeClock:
    """Settable clock shared by every service of a test system."""

    def __init__(self, start: datetime = DAY_ZERO) -> None:
        self._now = start
        self._lock = Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, **delta) -> datetime:
        with self._lock:
            self._now += timedelta(**delta)
            return self._now

    def set(self, when: datetime) -> None:
        with self._lock:
            self._now = when


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def system(tmp_path, clock):
    sys = LibrarySystem(database_url=f"sqlite:///{tmp_path / 'ledger.db'}", clock=clock)
    yield sys
    sys.close()


def stock(system):
    system.register_student("C22-0044", "Maria Santos", "maria@example.edu")
    system.register_student("C21-0107", "Jose Reyes", "jose@example.edu")
    system.register_student("A23-0310", "Ana Cruz", "ana@example.edu")
    for n in range(1, 7):
        system.add_book(f"Title {n}", "Some Author", number_code=f"BK-{n:04d}")
    return system


@pytest.fixture
def stocked(system):
    """Three students and six available copies BK-0001..BK-0006."""
    return stock(system)


@pytest.fixture
def in_memory(clock):
    """Same catalog as ``stocked`` on a ``sqlite://`` ledger."""
    sys = LibrarySystem(database_url="sqlite://", clock=clock)
    yield stock(sys)
    sys.close()
