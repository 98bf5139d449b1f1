from __future__ import annotations
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from .domain import CopyStatus, FineStatus, LoanStatus, OPEN_LOAN_STATUSES, SemesterStatus
from .store import (
    BookCopy,
    BorrowTransaction,
    Fine,
    FinePayment,
    SemesterTracking,
    Student,
    StudentBorrowingStatus,
    SystemSetting,
)


def _matches(text: str, student_column):
    # substring match on student id, book title or book code; % and _ are literal
    return or_(
        student_column.icontains(text, autoescape=True),
        BookCopy.title.icontains(text, autoescape=True),
        BookCopy.number_code.icontains(text, autoescape=True),
    )


class StudentRepo:
    def __init__(self, session: Session) -> None:
        self.session = session

    def add(self, student: Student) -> None:
        self.session.add(student)
        self.session.flush()

    def get(self, id_number: str, lock: bool = False) -> Optional[Student]:
        stmt = select(Student).where(Student.id_number == id_number)
        if lock:
            stmt = stmt.with_for_update()
        return self.session.scalars(stmt).first()


class BookRepo:
    def __init__(self, session: Session) -> None:
        self.session = session

    def add(self, book: BookCopy) -> None:
        self.session.add(book)
        self.session.flush()

    def get(self, book_id: int, lock: bool = False) -> Optional[BookCopy]:
        return self.session.get(BookCopy, book_id, with_for_update=lock or None)

    def get_by_code(self, number_code: str, lock: bool = False) -> Optional[BookCopy]:
        stmt = select(BookCopy).where(BookCopy.number_code == number_code)
        if lock:
            stmt = stmt.with_for_update()
        return self.session.scalars(stmt).first()

    def code_exists(self, number_code: str) -> bool:
        return self.get_by_code(number_code) is not None

    def mark_borrowed(self, book_id: int) -> bool:
        """Compare-and-set available -> borrowed; False when the copy was taken meanwhile."""
        result = self.session.execute(
            update(BookCopy)
            .where(BookCopy.id == book_id, BookCopy.status == CopyStatus.AVAILABLE)
            .values(status=CopyStatus.BORROWED)
        )
        return result.rowcount == 1

    def mark_available(self, book: BookCopy) -> None:
        book.status = CopyStatus.AVAILABLE

    def count_by_status(self) -> Dict[CopyStatus, int]:
        rows = self.session.execute(select(BookCopy.status, func.count()).group_by(BookCopy.status))
        return {status: count for status, count in rows}


class LoanRepo:
    def __init__(self, session: Session) -> None:
        self.session = session

    def add(self, loan: BorrowTransaction) -> None:
        self.session.add(loan)
        self.session.flush()

    def get(self, transaction_id: int, lock: bool = False) -> Optional[BorrowTransaction]:
        return self.session.get(BorrowTransaction, transaction_id, with_for_update=lock or None)

    def count_active(self, student_id: str) -> int:
        stmt = select(func.count()).select_from(BorrowTransaction).where(
            BorrowTransaction.student_id_number == student_id,
            BorrowTransaction.status.in_(OPEN_LOAN_STATUSES),
        )
        return self.session.scalar(stmt) or 0

    def count_overdue(self, student_id: str) -> int:
        stmt = select(func.count()).select_from(BorrowTransaction).where(
            BorrowTransaction.student_id_number == student_id,
            BorrowTransaction.status == LoanStatus.OVERDUE,
        )
        return self.session.scalar(stmt) or 0

    def list_by_student(self, student_id: str, status: Optional[LoanStatus] = None) -> List[BorrowTransaction]:
        stmt = select(BorrowTransaction).where(BorrowTransaction.student_id_number == student_id)
        if status is not None:
            stmt = stmt.where(BorrowTransaction.status == status)
        stmt = stmt.order_by(BorrowTransaction.borrowed_at.desc(), BorrowTransaction.id.desc())
        return list(self.session.scalars(stmt))

    def list_ids_due_before(
        self,
        now: datetime,
        statuses: Iterable[LoanStatus] = (LoanStatus.BORROWED,),
        student_id: Optional[str] = None,
    ) -> List[int]:
        stmt = select(BorrowTransaction.id).where(
            BorrowTransaction.status.in_(list(statuses)),
            BorrowTransaction.due_date < now,
        )
        if student_id is not None:
            stmt = stmt.where(BorrowTransaction.student_id_number == student_id)
        return list(self.session.scalars(stmt.order_by(BorrowTransaction.id)))

    def count_borrowed_since(self, student_id: str, since: datetime) -> int:
        stmt = select(func.count()).select_from(BorrowTransaction).where(
            BorrowTransaction.student_id_number == student_id,
            BorrowTransaction.borrowed_at >= since,
        )
        return self.session.scalar(stmt) or 0

    def count_with_status(self, statuses: Sequence[LoanStatus], due_before: Optional[datetime] = None) -> int:
        stmt = select(func.count()).select_from(BorrowTransaction).where(
            BorrowTransaction.status.in_(list(statuses))
        )
        if due_before is not None:
            stmt = stmt.where(BorrowTransaction.due_date < due_before)
        return self.session.scalar(stmt) or 0

    def count_borrowed_between(self, start: datetime, end: datetime) -> int:
        stmt = select(func.count()).select_from(BorrowTransaction).where(
            BorrowTransaction.borrowed_at >= start, BorrowTransaction.borrowed_at < end
        )
        return self.session.scalar(stmt) or 0

    def count_returned_between(self, start: datetime, end: datetime) -> int:
        stmt = select(func.count()).select_from(BorrowTransaction).where(
            BorrowTransaction.returned_at >= start, BorrowTransaction.returned_at < end
        )
        return self.session.scalar(stmt) or 0

    def search(
        self,
        status: Optional[LoanStatus] = None,
        text: Optional[str] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[BorrowTransaction], int]:
        stmt = select(BorrowTransaction).join(BookCopy, BorrowTransaction.book_id == BookCopy.id)
        if status is not None:
            stmt = stmt.where(BorrowTransaction.status == status)
        if text:
            stmt = stmt.where(_matches(text, BorrowTransaction.student_id_number))
        total = self.session.scalar(select(func.count()).select_from(stmt.subquery())) or 0
        stmt = stmt.order_by(BorrowTransaction.borrowed_at.desc(), BorrowTransaction.id.desc())
        return list(self.session.scalars(stmt.offset(offset).limit(limit))), total


class FineRepo:
    def __init__(self, session: Session) -> None:
        self.session = session

    def add(self, fine: Fine) -> None:
        self.session.add(fine)
        self.session.flush()

    def add_payment(self, payment: FinePayment) -> None:
        self.session.add(payment)

    def get(self, fine_id: int, lock: bool = False) -> Optional[Fine]:
        return self.session.get(Fine, fine_id, with_for_update=lock or None)

    def get_by_transaction(self, transaction_id: int, lock: bool = False) -> Optional[Fine]:
        stmt = select(Fine).where(Fine.transaction_id == transaction_id)
        if lock:
            stmt = stmt.with_for_update()
        return self.session.scalars(stmt).first()

    def count_unpaid(self, student_id: str) -> int:
        stmt = select(func.count()).select_from(Fine).where(
            Fine.student_id_number == student_id, Fine.status == FineStatus.UNPAID
        )
        return self.session.scalar(stmt) or 0

    def list_unpaid(self, student_id: str, lock: bool = False) -> List[Fine]:
        stmt = (
            select(Fine)
            .where(Fine.student_id_number == student_id, Fine.status == FineStatus.UNPAID)
            .order_by(Fine.id)
        )
        if lock:
            stmt = stmt.with_for_update()
        return list(self.session.scalars(stmt))

    def list_for_student(self, student_id: str, status: Optional[FineStatus] = None) -> List[Fine]:
        stmt = select(Fine).where(Fine.student_id_number == student_id)
        if status is not None:
            stmt = stmt.where(Fine.status == status)
        return list(self.session.scalars(stmt.order_by(Fine.fine_date.desc(), Fine.id.desc())))

    def list_payments(self, fine_id: int) -> List[FinePayment]:
        stmt = select(FinePayment).where(FinePayment.fine_id == fine_id).order_by(FinePayment.id)
        return list(self.session.scalars(stmt))

    def count(self, status: Optional[FineStatus] = None) -> int:
        stmt = select(func.count()).select_from(Fine)
        if status is not None:
            stmt = stmt.where(Fine.status == status)
        return self.session.scalar(stmt) or 0

    def total_amount_cents(self) -> int:
        return self.session.scalar(select(func.coalesce(func.sum(Fine.fine_amount_cents), 0))) or 0

    def total_outstanding_cents(self) -> int:
        stmt = select(func.coalesce(func.sum(Fine.fine_amount_cents - Fine.paid_amount_cents), 0)).where(
            Fine.status == FineStatus.UNPAID
        )
        return self.session.scalar(stmt) or 0

    def search(
        self,
        status: Optional[FineStatus] = None,
        text: Optional[str] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[Fine], int]:
        stmt = (
            select(Fine)
            .join(BorrowTransaction, Fine.transaction_id == BorrowTransaction.id)
            .join(BookCopy, BorrowTransaction.book_id == BookCopy.id)
        )
        if status is not None:
            stmt = stmt.where(Fine.status == status)
        if text:
            stmt = stmt.where(_matches(text, Fine.student_id_number))
        total = self.session.scalar(select(func.count()).select_from(stmt.subquery())) or 0
        stmt = stmt.order_by(Fine.fine_date.desc(), Fine.id.desc())
        return list(self.session.scalars(stmt.offset(offset).limit(limit))), total


class BorrowingStatusRepo:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, student_id: str) -> Optional[StudentBorrowingStatus]:
        return self.session.get(StudentBorrowingStatus, student_id)

    def upsert(self, student_id: str, can_borrow: bool, reason_blocked: Optional[str], now: datetime) -> StudentBorrowingStatus:
        row = self.get(student_id)
        if row is None:
            row = StudentBorrowingStatus(student_id_number=student_id)
            self.session.add(row)
        row.can_borrow = can_borrow
        row.reason_blocked = reason_blocked
        row.updated_at = now
        return row

    def count_blocked(self) -> int:
        stmt = select(func.count()).select_from(StudentBorrowingStatus).where(
            StudentBorrowingStatus.can_borrow.is_(False)
        )
        return self.session.scalar(stmt) or 0


class SemesterRepo:
    def __init__(self, session: Session) -> None:
        self.session = session

    def add(self, semester: SemesterTracking) -> None:
        self.session.add(semester)
        self.session.flush()

    def get_active(self, student_id: str, lock: bool = False) -> Optional[SemesterTracking]:
        stmt = select(SemesterTracking).where(
            SemesterTracking.student_id_number == student_id,
            SemesterTracking.status == SemesterStatus.ACTIVE,
        )
        if lock:
            stmt = stmt.with_for_update()
        return self.session.scalars(stmt).first()

    def list_active(self) -> List[SemesterTracking]:
        stmt = select(SemesterTracking).where(SemesterTracking.status == SemesterStatus.ACTIVE)
        return list(self.session.scalars(stmt.order_by(SemesterTracking.id)))

    def list_by_student(self, student_id: str) -> List[SemesterTracking]:
        stmt = (
            select(SemesterTracking)
            .where(SemesterTracking.student_id_number == student_id)
            .order_by(SemesterTracking.semester_start_date.desc(), SemesterTracking.id.desc())
        )
        return list(self.session.scalars(stmt))


class SettingsRepo:
    def __init__(self, session: Session) -> None:
        self.session = session

    def all(self) -> Dict[str, str]:
        rows = self.session.execute(select(SystemSetting.setting_key, SystemSetting.setting_value))
        return {key: value for key, value in rows}

    def get(self, key: str) -> Optional[SystemSetting]:
        return self.session.get(SystemSetting, key)

    def upsert(self, key: str, value: str, admin_id: Optional[str], now: datetime) -> SystemSetting:
        row = self.get(key)
        if row is None:
            row = SystemSetting(setting_key=key, setting_value=value)
            self.session.add(row)
        row.setting_value = value
        row.updated_by = admin_id
        row.updated_at = now
        return row

    def insert_if_missing(self, key: str, value: str, description: Optional[str]) -> bool:
        if self.get(key) is not None:
            return False
        self.session.add(SystemSetting(setting_key=key, setting_value=value, description=description))
        return True
