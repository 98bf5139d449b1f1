from __future__ import annotations
import calendar
import logging
import math
import random
import re
from datetime import date, datetime, time, timedelta
from decimal import Decimal, InvalidOperation
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from sqlalchemy.orm import Session

from .domain import (
    BookCheck,
    BookSummary,
    BorrowResult,
    BorrowingStatus,
    CopyStatus,
    EligibilityResult,
    FineAction,
    FineComputation,
    FineOutcome,
    FineStatus,
    FineView,
    LoanStatus,
    LoanView,
    OPEN_LOAN_STATUSES,
    Page,
    PayAllResult,
    PaymentResult,
    Policy,
    ReturnResult,
    ReturnedBook,
    SemesterStatus,
    SemesterView,
    StudentPenaltySummary,
    StudentSummary,
    utcnow,
)
from .errors import (
    CirculationError,
    ConflictError,
    NotFoundError,
    PolicyViolationError,
    ValidationError,
)
from .repositories import (
    BookRepo,
    BorrowingStatusRepo,
    FineRepo,
    LoanRepo,
    SemesterRepo,
    SettingsRepo,
    StudentRepo,
)
from .store import (
    BookCopy,
    BorrowTransaction,
    Fine,
    FinePayment,
    LedgerStore,
    SemesterTracking,
    Student,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

SECONDS_PER_DAY = 24 * 60 * 60

DEFAULT_SETTINGS: Dict[str, tuple] = {
    "max_books_per_borrowing": ("3", "Maximum number of books a student can borrow at once"),
    "borrowing_period_days": ("7", "Number of days a book can be borrowed (1 week)"),
    "fine_per_day": ("5", "Fine amount in pesos per day for overdue books"),
    "books_required_per_semester": ("20", "Minimum number of books a student must borrow per semester"),
    "semester_duration_months": ("5", "Duration of a semester in months"),
}

REASON_UNPAID_FINES = "Unpaid fines"
REASON_OVERDUE_BOOKS = "Overdue books"

NUMBER_CODE_ATTEMPTS = 100


def calculate_fine(due_date: datetime, returned: bool, now: datetime, fine_per_day_cents: int) -> FineComputation:
    """
    Fine owed on a loan at `now`.

    Any part of a day past the due date counts as a full day.
    """
    if returned or due_date >= now:
        return FineComputation(fine_amount_cents=0, days_overdue=0)
    days = math.ceil((now - due_date).total_seconds() / SECONDS_PER_DAY)
    return FineComputation(fine_amount_cents=days * fine_per_day_cents, days_overdue=days)


def add_months(start: date, months: int) -> date:
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def _start_of_day(d: date) -> datetime:
    return datetime.combine(d, time.min)


def _page_offset(page: int, limit: int) -> int:
    if page < 1 or limit < 1:
        raise ValidationError("Page and limit must be positive integers", page=page, limit=limit)
    return (page - 1) * limit


def _semester_view(row: SemesterTracking) -> SemesterView:
    return SemesterView(
        semester_id=row.id,
        student_id_number=row.student_id_number,
        semester_start_date=row.semester_start_date,
        semester_end_date=row.semester_end_date,
        books_borrowed_count=row.books_borrowed_count,
        books_required=row.books_required,
        status=row.status,
    )


# =========================
# policy provider
# =========================

class PolicyService:
    def __init__(self, store: LedgerStore, clock: Clock = utcnow) -> None:
        self.store = store
        self.clock = clock

    def get_settings(self, session: Optional[Session] = None) -> Dict[str, str]:
        with self.store.unit(session) as s:
            return SettingsRepo(s).all()

    def set_setting(self, key: str, value: object, admin_id: Optional[str]) -> None:
        if not key or value is None or str(value).strip() == "":
            raise ValidationError("Setting key and value are required", key=key)
        with self.store.transaction() as s:
            SettingsRepo(s).upsert(key, str(value).strip(), admin_id, self.clock())
        logger.info("Setting updated | key=%s value=%s admin=%s", key, value, admin_id)

    def seed_defaults(self) -> int:
        inserted = 0
        with self.store.transaction() as s:
            repo = SettingsRepo(s)
            for key, (value, description) in DEFAULT_SETTINGS.items():
                if repo.insert_if_missing(key, value, description):
                    inserted += 1
        return inserted

    def policy(self, session: Optional[Session] = None) -> Policy:
        raw = self.get_settings(session)
        defaults = Policy()
        return Policy(
            max_books_per_borrowing=self._int(raw, "max_books_per_borrowing", defaults.max_books_per_borrowing),
            borrowing_period_days=self._int(raw, "borrowing_period_days", defaults.borrowing_period_days),
            fine_per_day_cents=self._cents(raw, "fine_per_day", defaults.fine_per_day_cents),
            books_required_per_semester=self._int(
                raw, "books_required_per_semester", defaults.books_required_per_semester
            ),
            semester_duration_months=self._int(raw, "semester_duration_months", defaults.semester_duration_months),
        )

    @staticmethod
    def _int(raw: Dict[str, str], key: str, default: int) -> int:
        value = raw.get(key)
        if value is None:
            return default
        try:
            parsed = int(value.strip())
        except ValueError:
            logger.warning("Non-numeric setting, using default | key=%s value=%r default=%s", key, value, default)
            return default
        if parsed < 0:
            logger.warning("Negative setting, using default | key=%s value=%r default=%s", key, value, default)
            return default
        return parsed

    @staticmethod
    def _cents(raw: Dict[str, str], key: str, default_cents: int) -> int:
        value = raw.get(key)
        if value is None:
            return default_cents
        try:
            amount = Decimal(value.strip())
        except InvalidOperation:
            logger.warning("Non-numeric setting, using default | key=%s value=%r", key, value)
            return default_cents
        if not amount.is_finite() or amount < 0:
            logger.warning("Invalid setting, using default | key=%s value=%r", key, value)
            return default_cents
        return int((amount * 100).to_integral_value())


# =========================
# catalog
# =========================

class CatalogService:
    def __init__(self, store: LedgerStore) -> None:
        self.store = store

    def register_student(self, id_number: str, name: str, email: Optional[str] = None) -> StudentSummary:
        with self.store.transaction() as s:
            repo = StudentRepo(s)
            if repo.get(id_number) is not None:
                raise ConflictError(f"Student {id_number} already exists", student_id=id_number)
            repo.add(Student(id_number=id_number, name=name, email=email))
        return StudentSummary(id_number=id_number, name=name, email=email)

    def add_book(self, title: str, author: Optional[str] = None, number_code: Optional[str] = None) -> BookSummary:
        if not title or not title.strip():
            raise ValidationError("Title is required")
        with self.store.transaction() as s:
            repo = BookRepo(s)
            code = number_code or self._new_number_code(repo)
            if repo.code_exists(code):
                raise ConflictError(f"Book code {code} already exists", book_code=code)
            book = BookCopy(number_code=code, title=title.strip(), author=author)
            repo.add(book)
            return BookSummary(book_id=book.id, number_code=book.number_code, title=book.title, author=book.author)

    def get_book(self, number_code: str) -> Optional[BookCopy]:
        with self.store.transaction() as s:
            return BookRepo(s).get_by_code(number_code)

    @staticmethod
    def _new_number_code(repo: BookRepo) -> str:
        for _ in range(NUMBER_CODE_ATTEMPTS):
            code = f"BK-{random.randint(0, 9999):04d}"
            if not repo.code_exists(code):
                return code
        raise ConflictError(
            "Could not generate a free book code; pass number_code explicitly",
            attempts=NUMBER_CODE_ATTEMPTS,
        )


# =========================
# borrowing-status reconciler
# =========================

class BorrowingStatusService:
    def __init__(self, store: LedgerStore, clock: Clock = utcnow) -> None:
        self.store = store
        self.clock = clock

    def recompute(self, student_id: str, session: Optional[Session] = None) -> BorrowingStatus:
        """
        Derive whether `student_id` may borrow and persist the answer.

        Unpaid fines are reported ahead of overdue books when both apply.
        """
        with self.store.unit(session) as s:
            has_unpaid_fines = FineRepo(s).count_unpaid(student_id) > 0
            has_overdue_books = LoanRepo(s).count_overdue(student_id) > 0
            can_borrow = not has_unpaid_fines and not has_overdue_books
            if has_unpaid_fines:
                reason = REASON_UNPAID_FINES
            elif has_overdue_books:
                reason = REASON_OVERDUE_BOOKS
            else:
                reason = None
            BorrowingStatusRepo(s).upsert(student_id, can_borrow, reason, self.clock())
        return BorrowingStatus(student_id_number=student_id, can_borrow=can_borrow, reason_blocked=reason)


# =========================
# eligibility checker
# =========================

class EligibilityService:
    def __init__(
        self,
        store: LedgerStore,
        policy: PolicyService,
        status: BorrowingStatusService,
        student_id_pattern: str = r"^[A-Z]\d{2}-\d{4}$",
    ) -> None:
        self.store = store
        self.policy = policy
        self.status = status
        self.student_id_pattern = re.compile(student_id_pattern)

    def validate_student_id(self, student_id: str) -> bool:
        return bool(student_id) and self.student_id_pattern.match(student_id) is not None

    def validate_borrow(self, student_id: str, book_codes: Sequence[str]) -> EligibilityResult:
        if not self.validate_student_id(student_id):
            return self._reject(
                ValidationError(
                    "Invalid student ID format. Must be in format XXX-XXXX (e.g., C22-0044)",
                    student_id=student_id,
                )
            )
        codes = list(book_codes or [])
        if not codes:
            return self._reject(ValidationError("At least one book code is required"))

        with self.store.transaction() as s:
            student = StudentRepo(s).get(student_id)
            if student is None:
                return self._reject(NotFoundError("Student ID not found in the system", student_id=student_id))
            summary = StudentSummary(id_number=student.id_number, name=student.name, email=student.email)

            standing = self.status.recompute(student_id, session=s)
            if not standing.can_borrow:
                return self._reject(
                    PolicyViolationError(
                        f"Student is blocked from borrowing: {standing.reason_blocked}",
                        student_id=student_id,
                        reason=standing.reason_blocked,
                    ),
                    summary,
                )

            policy = self.policy.policy(s)
            cap = policy.max_books_per_borrowing
            if len(codes) > cap:
                return self._reject(
                    PolicyViolationError(f"Maximum {cap} books can be borrowed at once", requested=len(codes)),
                    summary,
                )
            current = LoanRepo(s).count_active(student_id)
            if current + len(codes) > cap:
                return self._reject(
                    PolicyViolationError(
                        f"Student already has {current} books borrowed. Cannot borrow {len(codes)} more books.",
                        current=current,
                        requested=len(codes),
                    ),
                    summary,
                )

            books = BookRepo(s)
            checks: List[BookCheck] = []
            errors: List[CirculationError] = []
            for code in codes:
                book = books.get_by_code(code)
                if book is None:
                    checks.append(BookCheck(book_code=code, exists=False, message="Book not found"))
                    errors.append(NotFoundError(f"Book with code {code} not found", book_code=code))
                    continue
                info = BookSummary(book_id=book.id, number_code=book.number_code, title=book.title, author=book.author)
                if book.status is not CopyStatus.AVAILABLE:
                    message = f"Book is currently {book.status.value}"
                    checks.append(BookCheck(book_code=code, exists=True, available=False, message=message, book=info))
                    errors.append(
                        ConflictError(
                            f'Book "{book.title}" ({code}) is not available: {message}',
                            book_code=code,
                            book_status=book.status.value,
                        )
                    )
                else:
                    checks.append(BookCheck(book_code=code, exists=True, available=True, book=info))

        if len(set(codes)) != len(codes):
            errors.append(ConflictError("Duplicate book codes are not allowed", book_codes=codes))

        return EligibilityResult(ok=not errors, student=summary, checks=checks, errors=errors)

    @staticmethod
    def _reject(error: CirculationError, student: Optional[StudentSummary] = None) -> EligibilityResult:
        return EligibilityResult(ok=False, student=student, errors=[error])


# =========================
# semester tracking
# =========================

class SemesterService:
    def __init__(self, store: LedgerStore, policy: PolicyService, clock: Clock = utcnow) -> None:
        self.store = store
        self.policy = policy
        self.clock = clock

    def ensure_active(self, session: Session, student_id: str, policy: Policy, today: date) -> SemesterTracking:
        repo = SemesterRepo(session)
        semester = repo.get_active(student_id, lock=True)
        if semester is None:
            semester = SemesterTracking(
                student_id_number=student_id,
                semester_start_date=today,
                semester_end_date=add_months(today, policy.semester_duration_months),
                books_borrowed_count=0,
                books_required=policy.books_required_per_semester,
                status=SemesterStatus.ACTIVE,
                updated_at=self.clock(),
            )
            repo.add(semester)
            logger.info("Semester tracking opened | student=%s start=%s", student_id, today)
        return semester

    def record_borrowed(self, session: Session, student_id: str, count: int) -> None:
        semester = SemesterRepo(session).get_active(student_id, lock=True)
        if semester is None:
            return
        # cumulative; returns never decrement it
        semester.books_borrowed_count += count
        semester.updated_at = self.clock()

    def get_tracking(self, student_id: str) -> List[SemesterView]:
        with self.store.transaction() as s:
            return [_semester_view(row) for row in SemesterRepo(s).list_by_student(student_id)]

    def set_semester(self, student_id: str, start: date, end: date) -> SemesterView:
        if start >= end:
            raise ValidationError("Semester end date must be after its start date", start=start, end=end)
        with self.store.transaction() as s:
            if StudentRepo(s).get(student_id) is None:
                raise NotFoundError(f"Student {student_id} not found", student_id=student_id)
            policy = self.policy.policy(s)
            repo = SemesterRepo(s)
            semester = repo.get_active(student_id, lock=True)
            if semester is None:
                semester = SemesterTracking(student_id_number=student_id, status=SemesterStatus.ACTIVE)
                semester.books_borrowed_count = 0
                s.add(semester)
            semester.semester_start_date = start
            semester.semester_end_date = end
            semester.books_required = policy.books_required_per_semester
            semester.updated_at = self.clock()
            s.flush()
            return _semester_view(semester)

    def recalculate_counts(self) -> Dict[str, int]:
        """Rebuild every active semester's count from the borrowing history."""
        with self.store.transaction() as s:
            student_ids = [row.student_id_number for row in SemesterRepo(s).list_active()]

        updated = 0
        for student_id in student_ids:
            try:
                with self.store.transaction() as s:
                    semester = SemesterRepo(s).get_active(student_id, lock=True)
                    if semester is None:
                        continue
                    since = _start_of_day(semester.semester_start_date)
                    semester.books_borrowed_count = LoanRepo(s).count_borrowed_since(student_id, since)
                    semester.updated_at = self.clock()
                updated += 1
            except CirculationError as exc:
                logger.error("Semester recount failed | student=%s error=%s", student_id, exc)
        return {"updated_count": updated, "total_students": len(student_ids)}


# =========================
# borrow/return transactor
# =========================

class CirculationService:
    def __init__(
        self,
        store: LedgerStore,
        policy: PolicyService,
        status: BorrowingStatusService,
        semesters: SemesterService,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.policy = policy
        self.status = status
        self.semesters = semesters
        self.clock = clock

    def commit_borrow(
        self,
        student_id: str,
        book_codes: Sequence[str],
        admin_id: str,
        due_date: Optional[datetime] = None,
    ) -> BorrowResult:
        codes = list(book_codes or [])
        if not codes:
            raise ValidationError("At least one book code is required")
        if len(set(codes)) != len(codes):
            raise ConflictError("Duplicate book codes are not allowed", book_codes=codes)

        now = self.clock()
        with self.store.transaction() as s:
            student = StudentRepo(s).get(student_id, lock=True)
            if student is None:
                raise NotFoundError("Student ID not found in the system", student_id=student_id)

            policy = self.policy.policy(s)
            loans = LoanRepo(s)
            current = loans.count_active(student_id)
            if current + len(codes) > policy.max_books_per_borrowing:
                raise PolicyViolationError(
                    f"Student already has {current} books borrowed. Cannot borrow {len(codes)} more books.",
                    current=current,
                    requested=len(codes),
                )

            self.semesters.ensure_active(s, student_id, policy, now.date())
            actual_due = due_date or now + timedelta(days=policy.borrowing_period_days)

            books = BookRepo(s)
            transaction_ids: List[int] = []
            borrowed: List[BookSummary] = []
            for code in codes:
                book = books.get_by_code(code, lock=True)
                if book is None:
                    raise NotFoundError(f"Book with code {code} not found", book_code=code)
                if book.status is not CopyStatus.AVAILABLE or not books.mark_borrowed(book.id):
                    raise ConflictError(
                        f'Book "{book.title}" ({code}) is no longer available',
                        book_code=code,
                    )
                loan = BorrowTransaction(
                    student_id_number=student_id,
                    book_id=book.id,
                    borrowed_at=now,
                    due_date=actual_due,
                    status=LoanStatus.BORROWED,
                    borrowed_by_admin=admin_id,
                )
                loans.add(loan)
                transaction_ids.append(loan.id)
                borrowed.append(
                    BookSummary(book_id=book.id, number_code=book.number_code, title=book.title, author=book.author)
                )

            self.semesters.record_borrowed(s, student_id, len(codes))

        logger.info(
            "Borrow committed | student=%s books=%s transactions=%s admin=%s",
            student_id, codes, transaction_ids, admin_id,
        )
        return BorrowResult(transaction_ids=transaction_ids, borrowed_books=borrowed, due_date=actual_due)

    def commit_return(self, transaction_ids: Sequence[int], admin_id: str) -> ReturnResult:
        ids = list(transaction_ids or [])
        if not ids:
            raise ValidationError("Transaction IDs are required")
        if len(set(ids)) != len(ids):
            raise ConflictError("Duplicate transaction IDs are not allowed", transaction_ids=ids)

        now = self.clock()
        with self.store.transaction() as s:
            loans = LoanRepo(s)
            returned: List[ReturnedBook] = []
            students = set()
            for transaction_id in ids:
                loan = loans.get(transaction_id, lock=True)
                if loan is None:
                    raise NotFoundError(f"Transaction {transaction_id} not found", transaction_id=transaction_id)
                # borrowed and overdue loans are both returnable
                if loan.status is LoanStatus.RETURNED:
                    raise ConflictError(
                        f"Transaction {transaction_id} already returned", transaction_id=transaction_id
                    )
                returned.append(self.return_loan(s, loan, admin_id, now))
                students.add(loan.student_id_number)
            for student_id in sorted(students):
                self.status.recompute(student_id, session=s)

        logger.info("Return committed | transactions=%s admin=%s", ids, admin_id)
        return ReturnResult(returned_books=returned)

    def return_loan(self, session: Session, loan: BorrowTransaction, admin_id: str, now: datetime) -> ReturnedBook:
        """Close one open loan and free its copy; the caller owns the unit and the status recompute."""
        loan.status = LoanStatus.RETURNED
        loan.returned_at = now
        loan.returned_by_admin = admin_id
        books = BookRepo(session)
        book = books.get(loan.book_id, lock=True)
        books.mark_available(book)
        return ReturnedBook(
            transaction_id=loan.id,
            book_code=book.number_code,
            book_title=book.title,
            returned_at=now,
        )

    def list_student_transactions(self, student_id: str, status: Optional[LoanStatus] = None) -> List[LoanView]:
        with self.store.transaction() as s:
            return [self._view(loan) for loan in LoanRepo(s).list_by_student(student_id, status)]

    def list_transactions(
        self,
        status: Optional[LoanStatus] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Page[LoanView]:
        """Every loan, newest first, optionally filtered by status and a search term."""
        offset = _page_offset(page, limit)
        with self.store.transaction() as s:
            loans, total = LoanRepo(s).search(status, search, offset, limit)
            return Page(items=[self._view(loan) for loan in loans], page=page, limit=limit, total=total)

    def borrowing_stats(self) -> Dict[str, int]:
        now = self.clock()
        day_start = _start_of_day(now.date())
        day_end = day_start + timedelta(days=1)
        with self.store.transaction() as s:
            loans = LoanRepo(s)
            copies = BookRepo(s).count_by_status()
            return {
                "available_books": copies.get(CopyStatus.AVAILABLE, 0),
                "total_borrowed": loans.count_with_status(OPEN_LOAN_STATUSES),
                "overdue_books": loans.count_with_status(OPEN_LOAN_STATUSES, due_before=now),
                "today_borrowings": loans.count_borrowed_between(day_start, day_end),
                "today_returns": loans.count_returned_between(day_start, day_end),
            }

    @staticmethod
    def _view(loan: BorrowTransaction) -> LoanView:
        return LoanView(
            transaction_id=loan.id,
            student_id_number=loan.student_id_number,
            book_code=loan.book.number_code,
            book_title=loan.book.title,
            borrowed_at=loan.borrowed_at,
            due_date=loan.due_date,
            status=loan.status,
            returned_at=loan.returned_at,
            book_author=loan.book.author,
            borrowed_by_admin=loan.borrowed_by_admin,
            returned_by_admin=loan.returned_by_admin,
        )


# =========================
# fine calculator & payments
# =========================

class FineService:
    def __init__(
        self,
        store: LedgerStore,
        policy: PolicyService,
        status: BorrowingStatusService,
        circulation: CirculationService,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.policy = policy
        self.status = status
        self.circulation = circulation
        self.clock = clock

    def compute(self, transaction_id: int) -> FineComputation:
        now = self.clock()
        with self.store.transaction() as s:
            loan = LoanRepo(s).get(transaction_id)
            if loan is None:
                raise NotFoundError(f"Transaction {transaction_id} not found", transaction_id=transaction_id)
            policy = self.policy.policy(s)
            return calculate_fine(
                loan.due_date, loan.status is LoanStatus.RETURNED, now, policy.fine_per_day_cents
            )

    def upsert_fine(self, transaction_id: int, session: Optional[Session] = None) -> FineOutcome:
        """
        Reconcile the stored fine of one loan with its freshly computed value.

        Shared by foreground requests and the reconciliation loop. Running it
        twice at the same instant rewrites nothing the second time.
        """
        now = self.clock()
        with self.store.unit(session) as s:
            loan = LoanRepo(s).get(transaction_id, lock=True)
            if loan is None:
                raise NotFoundError(f"Transaction {transaction_id} not found", transaction_id=transaction_id)
            policy = self.policy.policy(s)
            computed = calculate_fine(
                loan.due_date, loan.status is LoanStatus.RETURNED, now, policy.fine_per_day_cents
            )
            if computed.fine_amount_cents == 0:
                return FineOutcome(transaction_id=transaction_id, action=FineAction.NO_FINE)

            fines = FineRepo(s)
            fine = fines.get_by_transaction(transaction_id, lock=True)
            if fine is None:
                fine = Fine(
                    student_id_number=loan.student_id_number,
                    transaction_id=transaction_id,
                    fine_amount_cents=computed.fine_amount_cents,
                    paid_amount_cents=0,
                    days_overdue=computed.days_overdue,
                    fine_date=now.date(),
                    status=FineStatus.UNPAID,
                    updated_at=now,
                )
                fines.add(fine)
                action = FineAction.CREATED
            elif fine.status is FineStatus.UNPAID and (
                computed.fine_amount_cents > fine.fine_amount_cents or computed.days_overdue > fine.days_overdue
            ):
                # never lower an unpaid fine, even if the daily rate was cut
                fine.fine_amount_cents = max(fine.fine_amount_cents, computed.fine_amount_cents)
                fine.days_overdue = max(fine.days_overdue, computed.days_overdue)
                fine.updated_at = now
                action = FineAction.UPDATED
            else:
                action = FineAction.UNCHANGED

            flagged = loan.status is LoanStatus.BORROWED
            if flagged:
                loan.status = LoanStatus.OVERDUE
            if flagged or action is not FineAction.UNCHANGED:
                self.status.recompute(loan.student_id_number, session=s)

            outcome = FineOutcome(
                transaction_id=transaction_id,
                action=action,
                fine_amount_cents=fine.fine_amount_cents,
                days_overdue=fine.days_overdue,
            )
        if action is not FineAction.UNCHANGED:
            logger.debug(
                "Fine %s | transaction=%s amount_cents=%s days=%s",
                action.value, transaction_id, outcome.fine_amount_cents, outcome.days_overdue,
            )
        return outcome

    def process_all_overdue(self, statuses: Iterable[LoanStatus] = (LoanStatus.BORROWED,)) -> List[FineOutcome]:
        """Upsert the fine of every loan past due; each loan is its own unit."""
        now = self.clock()
        with self.store.transaction() as s:
            ids = LoanRepo(s).list_ids_due_before(now, statuses)

        outcomes: List[FineOutcome] = []
        for transaction_id in ids:
            try:
                outcomes.append(self.upsert_fine(transaction_id))
            except CirculationError as exc:
                logger.error("Error processing fine | transaction=%s error=%s", transaction_id, exc)
                outcomes.append(FineOutcome(transaction_id=transaction_id, action=FineAction.ERROR, error=str(exc)))
        return outcomes

    def get_fines(
        self,
        student_id: str,
        status: Optional[FineStatus] = None,
        recalculate: bool = False,
    ) -> List[FineView]:
        if recalculate:
            now = self.clock()
            with self.store.transaction() as s:
                ids = LoanRepo(s).list_ids_due_before(now, OPEN_LOAN_STATUSES, student_id=student_id)
            for transaction_id in ids:
                self.upsert_fine(transaction_id)

        with self.store.transaction() as s:
            return [self._view(fine) for fine in FineRepo(s).list_for_student(student_id, status)]

    def pay_fine(
        self,
        fine_id: int,
        amount_cents: int,
        method: str,
        admin_id: str,
        notes: Optional[str] = None,
    ) -> PaymentResult:
        if amount_cents is None or amount_cents <= 0:
            raise ValidationError("Payment amount must be greater than zero", amount_cents=amount_cents)
        if not method:
            raise ValidationError("Payment method is required")

        now = self.clock()
        with self.store.transaction() as s:
            fines = FineRepo(s)
            fine = fines.get(fine_id, lock=True)
            if fine is None:
                raise NotFoundError(f"Fine {fine_id} not found", fine_id=fine_id)
            if fine.status is not FineStatus.UNPAID:
                raise ConflictError(f"Fine {fine_id} is already {fine.status.value}", fine_id=fine_id)

            applied = min(amount_cents, fine.fine_amount_cents - fine.paid_amount_cents)
            fine.paid_amount_cents += applied
            if fine.paid_amount_cents >= fine.fine_amount_cents:
                fine.status = FineStatus.PAID
                fine.paid_date = now
            fine.updated_at = now
            fines.add_payment(
                FinePayment(
                    fine_id=fine.id,
                    amount_cents=applied,
                    method=method,
                    processed_by=admin_id,
                    paid_at=now,
                    notes=notes,
                )
            )
            self.status.recompute(fine.student_id_number, session=s)
            result = PaymentResult(
                fine_id=fine.id,
                applied_cents=applied,
                paid_amount_cents=fine.paid_amount_cents,
                remaining_cents=fine.fine_amount_cents - fine.paid_amount_cents,
                status=fine.status,
            )

        logger.info(
            "Fine payment recorded | fine=%s applied_cents=%s status=%s admin=%s",
            fine_id, applied, result.status.value, admin_id,
        )
        return result

    def pay_all_unpaid(self, student_id: str, admin_id: str, method: str = "cash") -> PayAllResult:
        """Settle every unpaid fine of a student and return the books behind them, all at once."""
        now = self.clock()
        with self.store.transaction() as s:
            if StudentRepo(s).get(student_id, lock=True) is None:
                raise NotFoundError(f"Student {student_id} not found", student_id=student_id)
            fines = FineRepo(s)
            loans = LoanRepo(s)

            # bring amounts up to date before settling them
            for fine in fines.list_unpaid(student_id):
                self.upsert_fine(fine.transaction_id, session=s)

            paid_count = 0
            returned_count = 0
            total_cents = 0
            for fine in fines.list_unpaid(student_id, lock=True):
                remaining = fine.fine_amount_cents - fine.paid_amount_cents
                if remaining > 0:
                    fines.add_payment(
                        FinePayment(
                            fine_id=fine.id,
                            amount_cents=remaining,
                            method=method,
                            processed_by=admin_id,
                            paid_at=now,
                            notes="Settled with all unpaid fines",
                        )
                    )
                fine.paid_amount_cents = fine.fine_amount_cents
                fine.status = FineStatus.PAID
                fine.paid_date = now
                fine.updated_at = now
                paid_count += 1
                total_cents += remaining

                loan = loans.get(fine.transaction_id, lock=True)
                if loan is not None and loan.status is not LoanStatus.RETURNED:
                    self.circulation.return_loan(s, loan, admin_id, now)
                    returned_count += 1

            self.status.recompute(student_id, session=s)

        logger.info(
            "All unpaid fines settled | student=%s fines=%s returned=%s total_cents=%s admin=%s",
            student_id, paid_count, returned_count, total_cents, admin_id,
        )
        return PayAllResult(paid_count=paid_count, returned_book_count=returned_count, total_amount_cents=total_cents)

    def payment_history(self, fine_id: int) -> List[FinePayment]:
        with self.store.transaction() as s:
            if FineRepo(s).get(fine_id) is None:
                raise NotFoundError(f"Fine {fine_id} not found", fine_id=fine_id)
            return FineRepo(s).list_payments(fine_id)

    def penalty_stats(self) -> Dict[str, int]:
        with self.store.transaction() as s:
            fines = FineRepo(s)
            return {
                "total_fines": fines.count(),
                "unpaid_fines": fines.count(FineStatus.UNPAID),
                "total_fine_amount_cents": fines.total_amount_cents(),
                "unpaid_fine_amount_cents": fines.total_outstanding_cents(),
                "overdue_books": LoanRepo(s).count_with_status([LoanStatus.OVERDUE]),
                "blocked_students": BorrowingStatusRepo(s).count_blocked(),
            }

    def list_all_fines(
        self,
        status: Optional[FineStatus] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Page[FineView]:
        offset = _page_offset(page, limit)
        with self.store.transaction() as s:
            fines, total = FineRepo(s).search(status, search, offset, limit)
            return Page(items=[self._view(fine) for fine in fines], page=page, limit=limit, total=total)

    def student_penalty_summary(self, student_id: str) -> StudentPenaltySummary:
        """What a student sees about their own standing: unpaid fines, block, semester and loans."""
        with self.store.transaction() as s:
            if StudentRepo(s).get(student_id) is None:
                raise NotFoundError(f"Student {student_id} not found", student_id=student_id)
            unpaid = [self._view(fine) for fine in FineRepo(s).list_for_student(student_id, FineStatus.UNPAID)]
            standing = self.status.recompute(student_id, session=s)
            semesters = SemesterRepo(s).list_by_student(student_id)
            return StudentPenaltySummary(
                student_id_number=student_id,
                unpaid_fines=unpaid,
                total_unpaid_cents=sum(f.fine_amount_cents - f.paid_amount_cents for f in unpaid),
                borrowing_status=standing,
                semester=_semester_view(semesters[0]) if semesters else None,
                current_borrowed_count=LoanRepo(s).count_active(student_id),
            )

    @staticmethod
    def _view(fine: Fine) -> FineView:
        loan = fine.transaction
        book = loan.book if loan is not None else None
        return FineView(
            fine_id=fine.id,
            transaction_id=fine.transaction_id,
            student_id_number=fine.student_id_number,
            fine_amount_cents=fine.fine_amount_cents,
            paid_amount_cents=fine.paid_amount_cents,
            days_overdue=fine.days_overdue,
            fine_date=fine.fine_date,
            status=fine.status,
            paid_date=fine.paid_date,
            book_code=book.number_code if book else None,
            book_title=book.title if book else None,
            book_author=book.author if book else None,
            borrowed_at=loan.borrowed_at if loan else None,
            due_date=loan.due_date if loan else None,
            returned_at=loan.returned_at if loan else None,
        )
