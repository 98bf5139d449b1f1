from __future__ import annotations
from datetime import date, datetime
from typing import Dict, List, Optional, Sequence

from .config import Config
from .domain import (
    Amount,
    BookSummary,
    BorrowResult,
    BorrowingStatus,
    EligibilityResult,
    FineComputation,
    FineOutcome,
    FineStatus,
    FineView,
    LoanStatus,
    LoanView,
    LoopStatus,
    Page,
    PayAllResult,
    PaymentResult,
    ReturnResult,
    SemesterView,
    StudentPenaltySummary,
    StudentSummary,
    to_cents,
    utcnow,
)
from .reconciler import FineReconciliationLoop
from .services import (
    BorrowingStatusService,
    CatalogService,
    CirculationService,
    Clock,
    EligibilityService,
    FineService,
    PolicyService,
    SemesterService,
)
from .store import FinePayment, LedgerStore


class LibrarySystem:
    """
    Facade that wires the ledger store, services and the reconciliation loop,
    and offers the operations the HTTP layer calls.

    Every entry point receives already-authenticated admin/student ids.
    Amounts go in and come out in pesos; the ledger keeps centavos.
    """

    def __init__(
        self,
        database_url: Optional[str] = None,
        clock: Optional[Clock] = None,
        config: type = Config,
        create_schema: bool = True,
    ) -> None:
        self.config = config
        self.clock: Clock = clock or utcnow
        self.store = LedgerStore(database_url or config.DATABASE_URL, echo=config.SQL_ECHO)
        if create_schema:
            self.store.create_all()

        # services
        self.policy = PolicyService(self.store, self.clock)
        self.catalog = CatalogService(self.store)
        self.borrowing_status = BorrowingStatusService(self.store, self.clock)
        self.eligibility = EligibilityService(
            self.store, self.policy, self.borrowing_status, config.STUDENT_ID_PATTERN
        )
        self.semesters = SemesterService(self.store, self.policy, self.clock)
        self.circulation = CirculationService(
            self.store, self.policy, self.borrowing_status, self.semesters, self.clock
        )
        self.fines = FineService(self.store, self.policy, self.borrowing_status, self.circulation, self.clock)

        # background loop
        self.reconciler = FineReconciliationLoop(self.fines, config.RECONCILE_INTERVAL_MS, self.clock)

        if create_schema:
            self.policy.seed_defaults()

    def close(self) -> None:
        if self.reconciler.status().is_running:
            self.reconciler.stop()
        self.store.dispose()

    def __enter__(self) -> "LibrarySystem":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ---- catalog
    def register_student(self, id_number: str, name: str, email: Optional[str] = None) -> StudentSummary:
        return self.catalog.register_student(id_number, name, email)

    def add_book(self, title: str, author: Optional[str] = None, number_code: Optional[str] = None) -> BookSummary:
        return self.catalog.add_book(title, author, number_code)

    # ---- borrowing
    def validate_borrow(self, student_id: str, book_codes: Sequence[str]) -> EligibilityResult:
        return self.eligibility.validate_borrow(student_id, book_codes)

    def commit_borrow(
        self,
        student_id: str,
        book_codes: Sequence[str],
        admin_id: str,
        due_date: Optional[datetime] = None,
    ) -> BorrowResult:
        eligibility = self.eligibility.validate_borrow(student_id, book_codes)
        if not eligibility.ok:
            raise eligibility.errors[0]
        return self.circulation.commit_borrow(student_id, book_codes, admin_id, due_date)

    def commit_return(self, transaction_ids: Sequence[int], admin_id: str) -> ReturnResult:
        return self.circulation.commit_return(transaction_ids, admin_id)

    def student_transactions(self, student_id: str, status: Optional[LoanStatus] = None) -> List[LoanView]:
        return self.circulation.list_student_transactions(student_id, status)

    def list_transactions(
        self,
        status: Optional[LoanStatus] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Page[LoanView]:
        return self.circulation.list_transactions(status, search, page, limit)

    def borrowing_stats(self) -> Dict[str, int]:
        return self.circulation.borrowing_stats()

    # ---- fines
    def compute_fine(self, transaction_id: int) -> FineComputation:
        return self.fines.compute(transaction_id)

    def get_fines(
        self,
        student_id: str,
        status: Optional[FineStatus] = None,
        recalculate: bool = False,
    ) -> List[FineView]:
        return self.fines.get_fines(student_id, status, recalculate)

    def pay_fine(
        self,
        fine_id: int,
        amount: Amount,
        method: str,
        admin_id: str,
        notes: Optional[str] = None,
    ) -> PaymentResult:
        return self.fines.pay_fine(fine_id, to_cents(amount), method, admin_id, notes)

    def pay_all_unpaid(self, student_id: str, admin_id: str, method: str = "cash") -> PayAllResult:
        return self.fines.pay_all_unpaid(student_id, admin_id, method)

    def payment_history(self, fine_id: int) -> List[FinePayment]:
        return self.fines.payment_history(fine_id)

    def process_all_overdue(self) -> List[FineOutcome]:
        return self.fines.process_all_overdue()

    def list_all_fines(
        self,
        status: Optional[FineStatus] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Page[FineView]:
        return self.fines.list_all_fines(status, search, page, limit)

    def student_penalty_summary(self, student_id: str) -> StudentPenaltySummary:
        return self.fines.student_penalty_summary(student_id)

    def penalty_stats(self) -> Dict[str, float]:
        stats: Dict[str, float] = dict(self.fines.penalty_stats())
        stats["total_fine_amount"] = stats.pop("total_fine_amount_cents") / 100.0
        stats["unpaid_fine_amount"] = stats.pop("unpaid_fine_amount_cents") / 100.0
        return stats

    # ---- borrowing status & semester
    def get_borrowing_status(self, student_id: str) -> BorrowingStatus:
        return self.borrowing_status.recompute(student_id)

    def get_semester_tracking(self, student_id: str) -> List[SemesterView]:
        return self.semesters.get_tracking(student_id)

    def set_semester(self, student_id: str, start: date, end: date) -> SemesterView:
        return self.semesters.set_semester(student_id, start, end)

    def recalculate_semester_counts(self) -> Dict[str, int]:
        return self.semesters.recalculate_counts()

    # ---- settings
    def get_settings(self) -> Dict[str, str]:
        return self.policy.get_settings()

    def update_setting(self, key: str, value: object, admin_id: str) -> None:
        self.policy.set_setting(key, value, admin_id)

    # ---- reconciliation loop
    def start_reconciliation_loop(self, interval_ms: Optional[int] = None) -> bool:
        return self.reconciler.start(interval_ms)

    def stop_reconciliation_loop(self) -> bool:
        return self.reconciler.stop()

    def get_loop_status(self) -> LoopStatus:
        return self.reconciler.status()

    def force_reconciliation(self) -> List[FineOutcome]:
        return self.reconciler.force_process()
