from __future__ import annotations
from datetime import timedelta
from threading import Event, Thread

import pytest

from circdesk import CirculationError, CopyStatus, FineAction, StoreError
from circdesk.store import SystemSetting
from conftest import ADMIN


def test_unit_commits_on_success(system):
    with system.store.transaction() as s:
        s.add(SystemSetting(setting_key="library_hours", setting_value="8-17"))

    assert system.get_settings()["library_hours"] == "8-17"


def test_unit_rolls_back_on_error(system):
    with pytest.raises(RuntimeError):
        with system.store.transaction() as s:
            s.add(SystemSetting(setting_key="library_hours", setting_value="8-17"))
            s.flush()
            raise RuntimeError("boom")

    assert "library_hours" not in system.get_settings()


def test_database_failures_surface_as_store_error(system):
    with pytest.raises(StoreError):
        with system.store.transaction() as s:
            s.add(SystemSetting(setting_key="fine_per_day", setting_value="9"))


def test_in_memory_units_wait_for_each_other(in_memory):
    entered, release = Event(), Event()
    results = {}

    def hold_unit():
        with in_memory.store.transaction() as s:
            s.add(SystemSetting(setting_key="library_hours", setting_value="8-17"))
            s.flush()
            entered.set()
            release.wait(5)

    def validate():
        results["check"] = in_memory.validate_borrow("C22-0044", ["BK-0001"])

    holder = Thread(target=hold_unit)
    holder.start()
    assert entered.wait(5)
    waiter = Thread(target=validate)
    waiter.start()
    waiter.join(0.3)
    assert waiter.is_alive()

    release.set()
    holder.join(5)
    waiter.join(5)

    assert results["check"].ok
    assert in_memory.get_settings()["library_hours"] == "8-17"


def test_loop_and_foreground_traffic_share_in_memory_ledger(in_memory, clock, caplog):
    in_memory.commit_borrow("A23-0310", ["BK-0006"], ADMIN, due_date=clock() - timedelta(days=2))
    errors = []
    outcomes = []

    def cycle(student_id, code):
        try:
            for _ in range(5):
                borrowed = in_memory.commit_borrow(student_id, [code], ADMIN)
                in_memory.commit_return(borrowed.transaction_ids, ADMIN)
        except CirculationError as exc:
            errors.append(exc)

    def force():
        for _ in range(5):
            outcomes.extend(in_memory.force_reconciliation())

    assert in_memory.start_reconciliation_loop(interval_ms=1000)
    threads = [
        Thread(target=cycle, args=("C22-0044", "BK-0001")),
        Thread(target=cycle, args=("C21-0107", "BK-0002")),
        Thread(target=force),
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join(60)
    in_memory.stop_reconciliation_loop()

    assert errors == []
    assert all(o.action is not FineAction.ERROR for o in outcomes)
    assert "Fine reconciliation pass failed" not in caplog.text
    assert in_memory.get_loop_status().last_errors == 0
    for code in ("BK-0001", "BK-0002"):
        assert in_memory.catalog.get_book(code).status is CopyStatus.AVAILABLE
    assert in_memory.borrowing_stats()["total_borrowed"] == 1
    assert len(in_memory.get_fines("A23-0310")) == 1
    assert in_memory.get_semester_tracking("C22-0044")[0].books_borrowed_count == 5
