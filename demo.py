from __future__ import annotations

from circdesk import LibrarySystem, configure_logging, seed_demo_data
from circdesk.errors import CirculationError
from circdesk.seed import ADMIN_ID


def demo_flow() -> None:
    configure_logging()
    sys = LibrarySystem(database_url="sqlite://")
    seed_demo_data(sys)

    # Eligibility report for a request with one unavailable copy
    check = sys.validate_borrow("C21-0107", ["BK-0005", "BK-0001"])
    print("\n[demo] validate C21-0107:", "OK" if check.ok else check.messages)

    # Reconcile overdue loans (A23-0310 is three days late)
    outcomes = sys.force_reconciliation()
    print("[demo] reconciliation:", [(o.transaction_id, o.action.value) for o in outcomes])

    # Blocked student cannot borrow
    try:
        sys.commit_borrow("A23-0310", ["BK-0005"], ADMIN_ID)
    except CirculationError as e:
        print(f"[demo] A23-0310 borrow DENIED: {e.message}")

    # Partial then full settlement
    fines = sys.get_fines("A23-0310")
    for f in fines:
        print(f"  - {f.book_title}: {f.days_overdue} day(s), fine={f.fine_amount:.2f}")
    if fines:
        partial = sys.pay_fine(fines[0].fine_id, 5, "cash", ADMIN_ID, notes="partial")
        print(f"[demo] partial payment, remaining={partial.remaining_amount:.2f}")
    settled = sys.pay_all_unpaid("A23-0310", ADMIN_ID)
    print(
        f"[demo] settled {settled.paid_count} fine(s), returned {settled.returned_book_count} book(s),"
        f" paid {settled.total_amount:.2f}"
    )
    print("[demo] A23-0310 status:", sys.get_borrowing_status("A23-0310"))

    # Regular return
    loans = sys.student_transactions("C22-0044")
    returned = sys.commit_return([l.transaction_id for l in loans], ADMIN_ID)
    print("[demo] returned:", [b.book_code for b in returned.returned_books])

    # Semester quota
    for sem in sys.get_semester_tracking("C22-0044"):
        print(
            f"[demo] semester {sem.semester_start_date}..{sem.semester_end_date}:"
            f" {sem.books_borrowed_count}/{sem.books_required}"
        )

    print("\n[demo] penalty stats:", sys.penalty_stats())
    print("[demo] loop:", sys.get_loop_status())
    sys.close()


if __name__ == "__main__":
    demo_flow()
