from __future__ import annotations
from datetime import datetime, timedelta

import pytest

from circdesk import FineAction, FineStatus, LoanStatus, NotFoundError
from circdesk.services import calculate_fine
from circdesk.store import Fine
from conftest import ADMIN

DUE = datetime(2025, 1, 13, 9, 0, 0)


@pytest.mark.parametrize(
    "now, days",
    [
        (DUE - timedelta(hours=1), 0),
        (DUE, 0),
        (DUE + timedelta(seconds=1), 1),
        (DUE + timedelta(days=1), 1),
        (DUE + timedelta(days=1, minutes=1), 2),
        (DUE + timedelta(days=10), 10),
    ],
)
def test_partial_days_round_up(now, days):
    result = calculate_fine(DUE, False, now, 500)

    assert result.days_overdue == days
    assert result.fine_amount_cents == days * 500


def test_returned_loan_computes_no_fine():
    result = calculate_fine(DUE, True, DUE + timedelta(days=4), 500)

    assert result.fine_amount_cents == 0
    assert result.days_overdue == 0


def test_nine_days_after_borrowing(stocked, clock):
    borrowed = stocked.commit_borrow("C22-0044", ["BK-0001"], ADMIN)
    clock.advance(days=9)

    computed = stocked.compute_fine(borrowed.transaction_ids[0])

    assert computed.days_overdue == 2
    assert computed.fine_amount == 10.0


def test_compute_unknown_transaction(stocked):
    with pytest.raises(NotFoundError):
        stocked.compute_fine(4242)


def test_upsert_creates_then_leaves_unchanged(stocked, clock):
    tx = stocked.commit_borrow("C22-0044", ["BK-0001"], ADMIN).transaction_ids[0]
    clock.advance(days=9)

    first = stocked.fines.upsert_fine(tx)
    again = stocked.fines.upsert_fine(tx)

    assert first.action is FineAction.CREATED
    assert first.fine_amount_cents == 1000
    assert again.action is FineAction.UNCHANGED
    fines = stocked.get_fines("C22-0044")
    assert len(fines) == 1
    assert fines[0].status is FineStatus.UNPAID
    assert fines[0].fine_date == clock().date()


def test_upsert_flags_loan_overdue(stocked, clock):
    tx = stocked.commit_borrow("C22-0044", ["BK-0001"], ADMIN).transaction_ids[0]
    clock.advance(days=8)

    stocked.fines.upsert_fine(tx)

    [loan] = stocked.student_transactions("C22-0044")
    assert loan.status is LoanStatus.OVERDUE
    assert not stocked.get_borrowing_status("C22-0044").can_borrow


def test_unpaid_fine_grows_with_time(stocked, clock):
    tx = stocked.commit_borrow("C22-0044", ["BK-0001"], ADMIN).transaction_ids[0]
    clock.advance(days=8)
    stocked.fines.upsert_fine(tx)

    clock.advance(days=3)
    outcome = stocked.fines.upsert_fine(tx)

    assert outcome.action is FineAction.UPDATED
    assert outcome.days_overdue == 4
    assert outcome.fine_amount_cents == 2000


def test_unpaid_fine_never_shrinks_when_rate_drops(stocked, clock):
    tx = stocked.commit_borrow("C22-0044", ["BK-0001"], ADMIN).transaction_ids[0]
    clock.advance(days=9)
    stocked.fines.upsert_fine(tx)
    stocked.update_setting("fine_per_day", "1", ADMIN)

    outcome = stocked.fines.upsert_fine(tx)

    assert outcome.action is FineAction.UNCHANGED
    assert outcome.fine_amount_cents == 1000


def test_paid_fine_is_frozen(stocked, clock):
    tx = stocked.commit_borrow("C22-0044", ["BK-0001"], ADMIN).transaction_ids[0]
    clock.advance(days=8)
    stocked.fines.upsert_fine(tx)
    [fine] = stocked.get_fines("C22-0044")
    stocked.pay_fine(fine.fine_id, 5, "cash", ADMIN)

    clock.advance(days=5)
    outcome = stocked.fines.upsert_fine(tx)

    assert outcome.action is FineAction.UNCHANGED
    [fine] = stocked.get_fines("C22-0044")
    assert fine.status is FineStatus.PAID
    assert fine.fine_amount == 5.0


def test_waived_fine_is_frozen(stocked, clock):
    tx = stocked.commit_borrow("C22-0044", ["BK-0001"], ADMIN).transaction_ids[0]
    clock.advance(days=8)
    stocked.fines.upsert_fine(tx)
    with stocked.store.transaction() as s:
        s.query(Fine).filter_by(transaction_id=tx).one().status = FineStatus.WAIVED

    clock.advance(days=2)
    assert stocked.fines.upsert_fine(tx).action is FineAction.UNCHANGED


def test_return_freezes_fine(stocked, clock):
    tx = stocked.commit_borrow("C22-0044", ["BK-0001"], ADMIN).transaction_ids[0]
    clock.advance(days=9)
    stocked.process_all_overdue()
    stocked.commit_return([tx], ADMIN)

    clock.advance(days=10)
    outcome = stocked.fines.upsert_fine(tx)

    assert outcome.action is FineAction.NO_FINE
    [fine] = stocked.get_fines("C22-0044", recalculate=True)
    assert fine.fine_amount == 10.0
    assert fine.days_overdue == 2


def test_loan_not_yet_due_has_no_fine(stocked, clock):
    tx = stocked.commit_borrow("C22-0044", ["BK-0001"], ADMIN).transaction_ids[0]
    clock.advance(days=6)

    assert stocked.fines.upsert_fine(tx).action is FineAction.NO_FINE
    assert stocked.get_fines("C22-0044") == []


def test_process_all_overdue_reports_each_loan(stocked, clock):
    late = stocked.commit_borrow("C22-0044", ["BK-0001"], ADMIN).transaction_ids[0]
    clock.advance(days=2)
    stocked.commit_borrow("C21-0107", ["BK-0002"], ADMIN)
    clock.advance(days=6)

    outcomes = stocked.process_all_overdue()

    assert [(o.transaction_id, o.action) for o in outcomes] == [(late, FineAction.CREATED)]
    # a second pass only sees borrowed loans, and this one is now overdue
    assert stocked.process_all_overdue() == []


def test_process_all_overdue_isolates_failures(stocked, clock, monkeypatch):
    first = stocked.commit_borrow("C22-0044", ["BK-0001"], ADMIN).transaction_ids[0]
    second = stocked.commit_borrow("C21-0107", ["BK-0002"], ADMIN).transaction_ids[0]
    clock.advance(days=8)
    real_upsert = stocked.fines.upsert_fine

    def flaky(transaction_id, session=None):
        if transaction_id == first:
            raise NotFoundError("gone", transaction_id=transaction_id)
        return real_upsert(transaction_id, session)

    monkeypatch.setattr(stocked.fines, "upsert_fine", flaky)
    outcomes = {o.transaction_id: o for o in stocked.process_all_overdue()}

    assert outcomes[first].action is FineAction.ERROR
    assert outcomes[first].error
    assert outcomes[second].action is FineAction.CREATED
    assert [f.transaction_id for f in stocked.get_fines("C21-0107")] == [second]


def test_get_fines_with_recalculate_refreshes_amounts(stocked, clock):
    tx = stocked.commit_borrow("C22-0044", ["BK-0001"], ADMIN).transaction_ids[0]
    clock.advance(days=8)
    stocked.process_all_overdue()
    clock.advance(days=2)

    stale = stocked.get_fines("C22-0044")
    fresh = stocked.get_fines("C22-0044", recalculate=True)

    assert stale[0].fine_amount == 5.0
    assert fresh[0].fine_amount == 15.0
    assert fresh[0].transaction_id == tx
    assert fresh[0].book_code == "BK-0001"
    assert fresh[0].remaining_amount == 15.0


def test_get_fines_filters_by_status(stocked, clock):
    stocked.commit_borrow("C22-0044", ["BK-0001", "BK-0002"], ADMIN)
    clock.advance(days=8)
    stocked.process_all_overdue()
    first, _ = stocked.get_fines("C22-0044")
    stocked.pay_fine(first.fine_id, first.fine_amount, "cash", ADMIN)

    assert len(stocked.get_fines("C22-0044", FineStatus.UNPAID)) == 1
    assert len(stocked.get_fines("C22-0044", FineStatus.PAID)) == 1


def test_penalty_stats(stocked, clock):
    stocked.commit_borrow("C22-0044", ["BK-0001"], ADMIN)
    stocked.commit_borrow("C21-0107", ["BK-0002"], ADMIN)
    clock.advance(days=9)
    stocked.process_all_overdue()
    fine = stocked.get_fines("C21-0107")[0]
    stocked.pay_fine(fine.fine_id, 4, "cash", ADMIN)

    stats = stocked.penalty_stats()

    assert stats["total_fines"] == 2
    assert stats["unpaid_fines"] == 2
    assert stats["total_fine_amount"] == 20.0
    assert stats["unpaid_fine_amount"] == 16.0
    assert stats["overdue_books"] == 2
    assert stats["blocked_students"] == 2
