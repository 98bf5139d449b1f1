from __future__ import annotations
from datetime import timedelta

from .api import LibrarySystem

ADMIN_ID = "admin-001"


def seed_demo_data(sys: LibrarySystem) -> None:
    # students
    sys.register_student("C22-0044", "Maria Santos", "maria.santos@example.edu")
    sys.register_student("C21-0107", "Jose Reyes", "jose.reyes@example.edu")
    sys.register_student("A23-0310", "Ana Cruz", "ana.cruz@example.edu")

    # books
    sys.add_book("Noli Me Tangere", "Jose Rizal", number_code="BK-0001")
    sys.add_book("El Filibusterismo", "Jose Rizal", number_code="BK-0002")
    sys.add_book("Dune", "Frank Herbert", number_code="BK-0003")
    sys.add_book("Clean Code", "Robert C. Martin", number_code="BK-0004")
    sys.add_book("The Pragmatic Programmer", "Andrew Hunt", number_code="BK-0005")

    # borrowings
    sys.commit_borrow("C22-0044", ["BK-0001", "BK-0002"], ADMIN_ID)
    sys.commit_borrow("C21-0107", ["BK-0003"], ADMIN_ID)

    # already past due by three days
    now = sys.clock()
    sys.commit_borrow("A23-0310", ["BK-0004"], ADMIN_ID, due_date=now - timedelta(days=3))

    print("[seed] settings:", sys.get_settings())
    print("[seed] loans for C22-0044:", [t.transaction_id for t in sys.student_transactions("C22-0044")])
    print("[seed] borrowing stats:", sys.borrowing_stats())
