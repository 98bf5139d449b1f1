from __future__ import annotations
from datetime import timedelta

from circdesk import ConflictError, NotFoundError, PolicyViolationError, ValidationError
from conftest import ADMIN


def test_valid_request_is_ok(stocked):
    result = stocked.validate_borrow("C22-0044", ["BK-0001", "BK-0002"])

    assert result.ok
    assert result.errors == []
    assert result.student.id_number == "C22-0044"
    assert [c.book_code for c in result.checks] == ["BK-0001", "BK-0002"]
    assert all(c.valid for c in result.checks)


def test_malformed_student_id(stocked):
    result = stocked.validate_borrow("c22-44", ["BK-0001"])

    assert not result.ok
    assert isinstance(result.errors[0], ValidationError)
    assert result.checks == []


def test_unknown_student(stocked):
    result = stocked.validate_borrow("Z99-9999", ["BK-0001"])

    assert not result.ok
    assert isinstance(result.errors[0], NotFoundError)


def test_empty_request_is_rejected(stocked):
    result = stocked.validate_borrow("C22-0044", [])

    assert not result.ok
    assert isinstance(result.errors[0], ValidationError)


def test_more_than_cap_in_one_request(stocked):
    result = stocked.validate_borrow("C22-0044", ["BK-0001", "BK-0002", "BK-0003", "BK-0004"])

    assert not result.ok
    assert len(result.errors) == 1
    assert isinstance(result.errors[0], PolicyViolationError)
    assert "Maximum 3" in result.errors[0].message


def test_existing_loans_count_against_cap(stocked):
    stocked.commit_borrow("C22-0044", ["BK-0001", "BK-0002"], ADMIN)

    result = stocked.validate_borrow("C22-0044", ["BK-0003", "BK-0004"])

    assert not result.ok
    assert isinstance(result.errors[0], PolicyViolationError)
    assert "already has 2" in result.errors[0].message


def test_per_book_failures_are_accumulated(stocked):
    stocked.commit_borrow("C21-0107", ["BK-0002"], ADMIN)

    result = stocked.validate_borrow("C22-0044", ["BK-0001", "BK-0002", "BK-9999"])

    assert not result.ok
    by_code = {c.book_code: c for c in result.checks}
    assert by_code["BK-0001"].valid
    assert by_code["BK-0002"].exists and not by_code["BK-0002"].available
    assert by_code["BK-0002"].message == "Book is currently borrowed"
    assert not by_code["BK-9999"].exists
    kinds = sorted(type(e).__name__ for e in result.errors)
    assert kinds == ["ConflictError", "NotFoundError"]


def test_duplicate_codes_rejected_as_a_whole(stocked):
    result = stocked.validate_borrow("C22-0044", ["BK-0001", "BK-0001"])

    assert not result.ok
    assert any(isinstance(e, ConflictError) and "Duplicate" in e.message for e in result.errors)


def test_blocked_student_skips_book_checks(stocked, clock):
    # one unpaid fine of 10 pesos
    stocked.commit_borrow("C22-0044", ["BK-0001"], ADMIN)
    clock.advance(days=9)
    stocked.process_all_overdue()
    loan = stocked.student_transactions("C22-0044")[0]
    stocked.commit_return([loan.transaction_id], ADMIN)
    fines = stocked.get_fines("C22-0044")
    assert [f.fine_amount for f in fines] == [10.0]

    result = stocked.validate_borrow("C22-0044", ["BK-0002", "BK-9999"])

    assert not result.ok
    assert len(result.errors) == 1
    assert isinstance(result.errors[0], PolicyViolationError)
    assert "Unpaid fines" in result.errors[0].message
    assert result.checks == []


def test_blocked_status_is_recomputed_not_read_from_cache(stocked, clock):
    from circdesk.store import StudentBorrowingStatus

    with stocked.store.transaction() as s:
        s.add(StudentBorrowingStatus(student_id_number="C22-0044", can_borrow=False, reason_blocked="stale"))

    result = stocked.validate_borrow("C22-0044", ["BK-0001"])

    assert result.ok


def test_overdue_but_unfined_loan_blocks_once_flagged(stocked, clock):
    stocked.commit_borrow("C22-0044", ["BK-0001"], ADMIN, due_date=clock() - timedelta(hours=1))
    stocked.process_all_overdue()

    result = stocked.validate_borrow("C22-0044", ["BK-0002"])

    assert not result.ok
    assert "Unpaid fines" in result.errors[0].message
