from __future__ import annotations
import math
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Generic, List, Optional, TypeVar, Union

from .errors import CirculationError, ValidationError


Amount = Union[int, float, str, Decimal]


def utcnow() -> datetime:
    """Naive UTC timestamp; the ledger stores naive UTC everywhere."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_cents(amount: Amount) -> int:
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid amount: {amount!r}", amount=amount)
    if not value.is_finite():
        raise ValidationError(f"Invalid amount: {amount!r}", amount=amount)
    return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> float:
    return cents / 100.0


# =========================
# ledger states
# =========================

class CopyStatus(Enum):
    AVAILABLE = "available"
    BORROWED = "borrowed"
    LOST = "lost"
    MAINTENANCE = "maintenance"


class LoanStatus(Enum):
    BORROWED = "borrowed"
    OVERDUE = "overdue"
    RETURNED = "returned"


OPEN_LOAN_STATUSES = (LoanStatus.BORROWED, LoanStatus.OVERDUE)


class FineStatus(Enum):
    UNPAID = "unpaid"
    PAID = "paid"
    WAIVED = "waived"


class SemesterStatus(Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    INCOMPLETE = "incomplete"


# =========================
# policy
# =========================

@dataclass(frozen=True)
class Policy:
    max_books_per_borrowing: int = 3
    borrowing_period_days: int = 7
    fine_per_day_cents: int = 500
    books_required_per_semester: int = 20
    semester_duration_months: int = 5

    @property
    def fine_per_day(self) -> float:
        return from_cents(self.fine_per_day_cents)


# =========================
# value objects returned to callers
# =========================

@dataclass
class StudentSummary:
    id_number: str
    name: str
    email: Optional[str] = None


@dataclass
class BookSummary:
    book_id: int
    number_code: str
    title: str
    author: Optional[str] = None


@dataclass
class BookCheck:
    book_code: str
    exists: bool
    available: bool = False
    message: Optional[str] = None
    book: Optional[BookSummary] = None

    @property
    def valid(self) -> bool:
        return self.exists and self.available


@dataclass
class EligibilityResult:
    ok: bool
    student: Optional[StudentSummary] = None
    checks: List[BookCheck] = field(default_factory=list)
    errors: List[CirculationError] = field(default_factory=list)

    @property
    def messages(self) -> List[str]:
        return [e.message for e in self.errors]


@dataclass
class BorrowResult:
    transaction_ids: List[int]
    borrowed_books: List[BookSummary]
    due_date: datetime


@dataclass
class ReturnedBook:
    transaction_id: int
    book_code: str
    book_title: str
    returned_at: datetime


@dataclass
class ReturnResult:
    returned_books: List[ReturnedBook]


@dataclass
class LoanView:
    transaction_id: int
    student_id_number: str
    book_code: str
    book_title: str
    borrowed_at: datetime
    due_date: datetime
    status: LoanStatus
    returned_at: Optional[datetime] = None
    book_author: Optional[str] = None
    borrowed_by_admin: Optional[str] = None
    returned_by_admin: Optional[str] = None


@dataclass(frozen=True)
class FineComputation:
    fine_amount_cents: int
    days_overdue: int

    @property
    def fine_amount(self) -> float:
        return from_cents(self.fine_amount_cents)


class FineAction(Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    NO_FINE = "no_fine"
    ERROR = "error"


@dataclass
class FineOutcome:
    transaction_id: int
    action: FineAction
    fine_amount_cents: int = 0
    days_overdue: int = 0
    error: Optional[str] = None


@dataclass
class FineView:
    fine_id: int
    transaction_id: int
    student_id_number: str
    fine_amount_cents: int
    paid_amount_cents: int
    days_overdue: int
    fine_date: date
    status: FineStatus
    paid_date: Optional[datetime] = None
    book_code: Optional[str] = None
    book_title: Optional[str] = None
    book_author: Optional[str] = None
    borrowed_at: Optional[datetime] = None
    due_date: Optional[datetime] = None
    returned_at: Optional[datetime] = None

    @property
    def fine_amount(self) -> float:
        return from_cents(self.fine_amount_cents)

    @property
    def paid_amount(self) -> float:
        return from_cents(self.paid_amount_cents)

    @property
    def remaining_amount(self) -> float:
        return from_cents(self.fine_amount_cents - self.paid_amount_cents)


@dataclass
class PaymentResult:
    fine_id: int
    applied_cents: int
    paid_amount_cents: int
    remaining_cents: int
    status: FineStatus

    @property
    def remaining_amount(self) -> float:
        return from_cents(self.remaining_cents)


@dataclass
class PayAllResult:
    paid_count: int
    returned_book_count: int
    total_amount_cents: int

    @property
    def total_amount(self) -> float:
        return from_cents(self.total_amount_cents)


@dataclass
class BorrowingStatus:
    student_id_number: str
    can_borrow: bool
    reason_blocked: Optional[str] = None


@dataclass
class SemesterView:
    semester_id: int
    student_id_number: str
    semester_start_date: date
    semester_end_date: date
    books_borrowed_count: int
    books_required: int
    status: SemesterStatus

    @property
    def books_remaining(self) -> int:
        return max(0, self.books_required - self.books_borrowed_count)


@dataclass
class StudentPenaltySummary:
    student_id_number: str
    unpaid_fines: List[FineView]
    total_unpaid_cents: int
    borrowing_status: BorrowingStatus
    semester: Optional[SemesterView]
    current_borrowed_count: int

    @property
    def total_unpaid_amount(self) -> float:
        return from_cents(self.total_unpaid_cents)


T = TypeVar("T")


@dataclass
class Page(Generic[T]):
    """One slice of a listing plus what a client needs to ask for the next one."""

    items: List[T]
    page: int
    limit: int
    total: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


class LoopState(Enum):
    STOPPED = "stopped"
    RUNNING = "running"


@dataclass(frozen=True)
class LoopStatus:
    state: LoopState
    interval_ms: int
    last_run_at: Optional[datetime] = None
    passes_completed: int = 0
    last_updated: int = 0
    last_errors: int = 0

    @property
    def is_running(self) -> bool:
        return self.state is LoopState.RUNNING
