"""Ledger store: the relational tables and the transactional unit of work.

Every multi-row mutation in the engine runs inside ``LedgerStore.transaction``.
The unit commits when the block exits normally and rolls back on any
exception, so a failure mid-sequence never leaves partial state behind.
SQLAlchemy failures leave the unit as ``StoreError``.

SQLite has no row locks; there every unit opens with ``BEGIN IMMEDIATE`` so
writers are serialised by the database file lock instead. An in-memory
database lives on a single shared connection, so its units also queue on a
process-local lock. On server databases
the repositories lock rows with ``SELECT ... FOR UPDATE``.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager, nullcontext
from datetime import date, datetime
from threading import RLock
from typing import Iterator, Optional, Type

import sqlalchemy as sa
from sqlalchemy import ForeignKey, event, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, relationship, sessionmaker
from sqlalchemy.pool import StaticPool

from .domain import CopyStatus, FineStatus, LoanStatus, SemesterStatus
from .errors import StoreError

logger = logging.getLogger(__name__)


def _enum(cls: Type) -> sa.Enum:
    # stored as the lowercase value, not the member name
    return sa.Enum(
        cls,
        native_enum=False,
        length=20,
        values_callable=lambda members: [m.value for m in members],
    )


class Base(DeclarativeBase):
    pass


class Student(Base):
    __tablename__ = "students"

    id_number: Mapped[str] = mapped_column(sa.String(10), primary_key=True)
    name: Mapped[str] = mapped_column(sa.String(120), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(sa.String(255))


class BookCopy(Base):
    __tablename__ = "books"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    number_code: Mapped[str] = mapped_column(sa.String(32), unique=True, nullable=False, index=True)
    title: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    author: Mapped[Optional[str]] = mapped_column(sa.String(255))
    status: Mapped[CopyStatus] = mapped_column(_enum(CopyStatus), default=CopyStatus.AVAILABLE, nullable=False)


class BorrowTransaction(Base):
    __tablename__ = "borrowing_transactions"
    __table_args__ = (
        sa.Index("ix_borrowing_status_due", "status", "due_date"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    student_id_number: Mapped[str] = mapped_column(ForeignKey("students.id_number"), nullable=False, index=True)
    book_id: Mapped[int] = mapped_column(ForeignKey("books.id"), nullable=False, index=True)
    borrowed_at: Mapped[datetime] = mapped_column(sa.DateTime, nullable=False)
    due_date: Mapped[datetime] = mapped_column(sa.DateTime, nullable=False)
    returned_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime)
    status: Mapped[LoanStatus] = mapped_column(_enum(LoanStatus), default=LoanStatus.BORROWED, nullable=False)
    borrowed_by_admin: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    returned_by_admin: Mapped[Optional[str]] = mapped_column(sa.String(64))

    book: Mapped[BookCopy] = relationship()


class Fine(Base):
    __tablename__ = "fines"
    __table_args__ = (
        sa.CheckConstraint("paid_amount_cents <= fine_amount_cents", name="chk_fine_paid_le_amount"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    student_id_number: Mapped[str] = mapped_column(ForeignKey("students.id_number"), nullable=False, index=True)
    # one fine per transaction
    transaction_id: Mapped[int] = mapped_column(ForeignKey("borrowing_transactions.id"), unique=True, nullable=False)
    fine_amount_cents: Mapped[int] = mapped_column(nullable=False)
    paid_amount_cents: Mapped[int] = mapped_column(default=0, nullable=False)
    days_overdue: Mapped[int] = mapped_column(nullable=False)
    fine_date: Mapped[date] = mapped_column(sa.Date, nullable=False)
    paid_date: Mapped[Optional[datetime]] = mapped_column(sa.DateTime)
    status: Mapped[FineStatus] = mapped_column(_enum(FineStatus), default=FineStatus.UNPAID, nullable=False)
    updated_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime)

    transaction: Mapped[BorrowTransaction] = relationship()


class FinePayment(Base):
    __tablename__ = "fine_payments"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    fine_id: Mapped[int] = mapped_column(ForeignKey("fines.id"), nullable=False, index=True)
    amount_cents: Mapped[int] = mapped_column(nullable=False)
    method: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    processed_by: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    paid_at: Mapped[datetime] = mapped_column(sa.DateTime, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(sa.Text)


class StudentBorrowingStatus(Base):
    __tablename__ = "student_borrowing_status"

    student_id_number: Mapped[str] = mapped_column(ForeignKey("students.id_number"), primary_key=True)
    can_borrow: Mapped[bool] = mapped_column(default=True, nullable=False)
    reason_blocked: Mapped[Optional[str]] = mapped_column(sa.String(255))
    blocked_until: Mapped[Optional[datetime]] = mapped_column(sa.DateTime)
    updated_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime)


class SemesterTracking(Base):
    __tablename__ = "semester_tracking"
    __table_args__ = (
        sa.Index(
            "uq_semester_one_active",
            "student_id_number",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    student_id_number: Mapped[str] = mapped_column(ForeignKey("students.id_number"), nullable=False)
    semester_start_date: Mapped[date] = mapped_column(sa.Date, nullable=False)
    semester_end_date: Mapped[date] = mapped_column(sa.Date, nullable=False)
    books_borrowed_count: Mapped[int] = mapped_column(default=0, nullable=False)
    books_required: Mapped[int] = mapped_column(default=20, nullable=False)
    status: Mapped[SemesterStatus] = mapped_column(_enum(SemesterStatus), default=SemesterStatus.ACTIVE, nullable=False)
    updated_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime)


class SystemSetting(Base):
    __tablename__ = "system_settings"

    setting_key: Mapped[str] = mapped_column(sa.String(100), primary_key=True)
    setting_value: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(sa.Text)
    updated_by: Mapped[Optional[str]] = mapped_column(sa.String(64))
    updated_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime)


class LedgerStore:
    """
    Owns the engine and hands out transactional sessions.

    Pass a store to the services explicitly; tests build one per test on a
    throwaway SQLite file.
    """

    def __init__(self, url: str, echo: bool = False, busy_timeout: float = 30.0) -> None:
        self.url = url
        kwargs = {"echo": echo}
        shared_connection = False
        if url.startswith("sqlite"):
            connect_args = {"timeout": busy_timeout, "check_same_thread": False}
            kwargs["connect_args"] = connect_args
            if url in ("sqlite://", "sqlite:///:memory:"):
                kwargs["poolclass"] = StaticPool
                shared_connection = True
        self.engine = sa.create_engine(url, **kwargs)
        if self.engine.dialect.name == "sqlite":
            _serialise_sqlite_writers(self.engine)
        self.session_factory = sessionmaker(self.engine, expire_on_commit=False)
        # every session rides the one in-memory connection, so units take turns
        self._unit_lock = RLock() if shared_connection else None

    def create_all(self) -> None:
        Base.metadata.create_all(self.engine)

    def drop_all(self) -> None:
        Base.metadata.drop_all(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        with self._unit_lock or nullcontext():
            session = self.session_factory()
            try:
                with session.begin():
                    yield session
            except SQLAlchemyError as exc:
                logger.error("Ledger transaction rolled back | %s", exc)
                raise StoreError(f"Ledger store failure: {exc}") from exc
            finally:
                session.close()

    @contextmanager
    def unit(self, session: Optional[Session] = None) -> Iterator[Session]:
        """Join the caller's session when given, otherwise open a new transaction."""
        if session is not None:
            yield session
            return
        with self.transaction() as own:
            yield own


def _serialise_sqlite_writers(engine: sa.Engine) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # let SQLAlchemy emit BEGIN itself
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")
