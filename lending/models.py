import enum
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List, Optional

from lending.database import Base
from lending.errors import (
    InvalidArgumentError,
    InvalidPeriodError,
    InvalidStateError,
    InvalidTimestampError,
    InvariantViolationError,
)
from sqlalchemy.orm import relationship
from sqlalchemy.ext.hybrid import hybrid_property
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Table,
)


def utcnow() -> datetime:
    """Current time as naive UTC, the form every timestamp column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_utc(value: datetime) -> datetime:
    """Normalize an incoming timestamp to naive UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _require_text(value: Optional[str], field: str) -> str:
    if value is None or not value.strip():
        raise InvalidArgumentError(f"{field} must not be blank")
    return value.strip()


class BookStatus(str, enum.Enum):
    AVAILABLE = "AVAILABLE"
    LOANED = "LOANED"
    RESERVED = "RESERVED"
    DAMAGED = "DAMAGED"
    INACTIVE = "INACTIVE"


# Statuses set explicitly by staff rather than derived from availability.
FLAGGED_BOOK_STATUSES = (BookStatus.RESERVED, BookStatus.DAMAGED, BookStatus.INACTIVE)


class LoanStatus(str, enum.Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    RETURNED = "RETURNED"
    CANCELLED = "CANCELLED"


class BorrowerType(str, enum.Enum):
    READER = "READER"
    TEACHER = "TEACHER"
    STAFF = "STAFF"


class NotificationKind(str, enum.Enum):
    INFO = "INFO"
    REMINDER = "REMINDER"
    OVERDUE = "OVERDUE"
    PENALTY = "PENALTY"


class Book(Base):
    """
    Book model representing a catalog record and its copy counters.

    Business Logic:
    - available_copies moves by exactly one per loan activation, return or
      cancellation of an active loan, and stays within [0, total_copies]
    - AVAILABLE and LOANED follow availability; RESERVED, DAMAGED and
      INACTIVE are flags set by staff and block lending until restored

    Internal Working:
    - version_id is SQLAlchemy's optimistic lock column. Every UPDATE carries
      "WHERE version_id = <loaded value>", so two sessions that loaded the
      same row cannot both commit a change to it
    """

    __tablename__ = "books"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String, nullable=False, index=True)
    author = Column(String, nullable=False, index=True)
    isbn = Column(String, unique=True, nullable=True, index=True)
    location = Column(String, nullable=True)
    published_at = Column(DateTime, nullable=True)
    total_copies = Column(Integer, nullable=False)
    available_copies = Column(Integer, nullable=False)
    status = Column(
        Enum(BookStatus, name="book_status"),
        nullable=False,
        default=BookStatus.AVAILABLE,
        index=True,
    )
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, nullable=True)
    version_id = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version_id}

    @classmethod
    def register(
        cls,
        title: str,
        author: str,
        total_copies: int,
        isbn: Optional[str] = None,
        location: Optional[str] = None,
        published_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> "Book":
        if total_copies < 1:
            raise InvalidArgumentError("A book needs at least one copy")
        now = now or utcnow()
        return cls(
            title=_require_text(title, "title"),
            author=_require_text(author, "author"),
            isbn=isbn.strip() if isbn else None,
            location=location.strip() if location else None,
            published_at=as_utc(published_at) if published_at else None,
            total_copies=total_copies,
            available_copies=total_copies,
            status=BookStatus.AVAILABLE,
            created_at=now,
            updated_at=now,
        )

    @property
    def copies_on_loan(self) -> int:
        return self.total_copies - self.available_copies

    @property
    def is_lendable(self) -> bool:
        return self.status not in FLAGGED_BOOK_STATUSES and self.available_copies > 0

    def lend_copy(self, now: datetime) -> None:
        if self.available_copies <= 0:
            raise InvalidStateError(f"Book {self.id} has no copy left to lend")
        self.available_copies -= 1
        self._refresh_status()
        self.updated_at = now

    def return_copy(self, now: datetime) -> None:
        if self.available_copies >= self.total_copies:
            raise InvariantViolationError(
                f"Book {self.id} already has all {self.total_copies} copies on the shelf"
            )
        self.available_copies += 1
        self._refresh_status()
        self.updated_at = now

    def update_details(
        self,
        now: datetime,
        title: Optional[str] = None,
        author: Optional[str] = None,
        isbn: Optional[str] = None,
        published_at: Optional[datetime] = None,
    ) -> None:
        if title is not None:
            self.title = _require_text(title, "title")
        if author is not None:
            self.author = _require_text(author, "author")
        if isbn is not None:
            self.isbn = isbn.strip() or None
        if published_at is not None:
            self.published_at = as_utc(published_at)
        self.updated_at = now

    def change_total_copies(self, total_copies: int, now: datetime) -> None:
        if total_copies < 1:
            raise InvalidArgumentError("A book needs at least one copy")
        on_loan = self.copies_on_loan
        if total_copies < on_loan:
            raise InvalidArgumentError(
                f"Cannot reduce to {total_copies} copies while {on_loan} are on loan"
            )
        self.total_copies = total_copies
        self.available_copies = total_copies - on_loan
        self._refresh_status()
        self.updated_at = now

    def relocate(self, location: Optional[str], now: datetime) -> None:
        self.location = location.strip() if location and location.strip() else None
        self.updated_at = now

    def mark_reserved(self, now: datetime) -> None:
        if self.status != BookStatus.AVAILABLE:
            raise InvalidStateError(
                f"Only an available book can be reserved, book is {self.status.value}"
            )
        self._set_flag(BookStatus.RESERVED, now)

    def mark_damaged(self, now: datetime) -> None:
        if self.status in (BookStatus.DAMAGED, BookStatus.INACTIVE):
            raise InvalidStateError(f"Book is already {self.status.value}")
        self._set_flag(BookStatus.DAMAGED, now)

    def mark_inactive(self, now: datetime) -> None:
        if self.status == BookStatus.INACTIVE:
            raise InvalidStateError("Book is already INACTIVE")
        self._set_flag(BookStatus.INACTIVE, now)

    def restore(self, now: datetime) -> None:
        """Clear a staff flag and fall back to the availability-derived status."""
        if self.status not in FLAGGED_BOOK_STATUSES:
            raise InvalidStateError(f"Book is {self.status.value}, nothing to restore")
        self.status = BookStatus.AVAILABLE
        self._refresh_status()
        self.updated_at = now

    def _set_flag(self, status: BookStatus, now: datetime) -> None:
        self.status = status
        self.updated_at = now

    def _refresh_status(self) -> None:
        if self.status in FLAGGED_BOOK_STATUSES:
            return
        self.status = BookStatus.LOANED if self.available_copies == 0 else BookStatus.AVAILABLE


# Loans a borrower has taken. Rows are added on activation and never removed,
# so the borrower keeps the full history.
borrower_loans = Table(
    "borrower_loans",
    Base.metadata,
    Column("borrower_id", Integer, ForeignKey("borrowers.id"), primary_key=True),
    Column("loan_id", Integer, ForeignKey("loans.id"), primary_key=True),
)


class Borrower(Base):
    """
    Borrower model representing a person entitled to take loans.

    Relationships:
    - registered_loans: every loan that was ever activated for this borrower,
      through the borrower_loans association table
    """

    __tablename__ = "borrowers"

    id = Column(Integer, primary_key=True, index=True)
    first_name = Column(String, nullable=False)
    last_name = Column(String, nullable=False)
    email = Column(String, unique=True, nullable=False, index=True)
    borrower_type = Column(
        Enum(BorrowerType, name="borrower_type"),
        nullable=False,
        default=BorrowerType.READER,
    )
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, nullable=True)

    registered_loans = relationship("Loan", secondary=borrower_loans, order_by="Loan.id")

    @classmethod
    def register(
        cls,
        first_name: str,
        last_name: str,
        email: str,
        borrower_type: BorrowerType = BorrowerType.READER,
        now: Optional[datetime] = None,
    ) -> "Borrower":
        now = now or utcnow()
        return cls(
            first_name=_require_text(first_name, "first_name"),
            last_name=_require_text(last_name, "last_name"),
            email=_normalize_email(email),
            borrower_type=borrower_type,
            is_active=True,
            created_at=now,
            updated_at=now,
        )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    @property
    def loan_ids(self) -> List[int]:
        return [loan.id for loan in self.registered_loans]

    def register_loan(self, loan: "Loan", now: datetime) -> None:
        if loan not in self.registered_loans:
            self.registered_loans.append(loan)
        self.updated_at = now

    def rename(self, first_name: str, last_name: str, now: datetime) -> None:
        self.first_name = _require_text(first_name, "first_name")
        self.last_name = _require_text(last_name, "last_name")
        self.updated_at = now

    def change_email(self, email: str, now: datetime) -> None:
        self.email = _normalize_email(email)
        self.updated_at = now

    def deactivate(self, now: datetime) -> None:
        self.is_active = False
        self.updated_at = now

    def reactivate(self, now: datetime) -> None:
        self.is_active = True
        self.updated_at = now


def _normalize_email(email: Optional[str]) -> str:
    email = _require_text(email, "email").lower()
    local, _, domain = email.partition("@")
    if not local or "." not in domain:
        raise InvalidArgumentError(f"{email!r} is not a valid email address")
    return email


class Loan(Base):
    """
    Loan model representing one borrowing transaction.

    State machine:
    - PENDING -> ACTIVE -> RETURNED
    - PENDING -> CANCELLED and ACTIVE -> CANCELLED
    - RETURNED and CANCELLED are terminal

    The status column is mapped under a private attribute and exposed as a
    read-only hybrid property, so the only way to move a loan is through
    activate(), mark_returned(), cancel() and extend(). Side effects on the
    book and borrower belong to LoanLifecycleManager, not to the entity.
    """

    __tablename__ = "loans"

    id = Column(Integer, primary_key=True, index=True)
    book_id = Column(Integer, ForeignKey("books.id"), nullable=False, index=True)
    borrower_id = Column(Integer, ForeignKey("borrowers.id"), nullable=False, index=True)
    start_at = Column(DateTime, nullable=False)
    due_at = Column(DateTime, nullable=False)
    _status = Column("status", Enum(LoanStatus, name="loan_status"), nullable=False, index=True)
    returned_at = Column(DateTime, nullable=True)
    notes = Column(String, nullable=True)
    cancellation_reason = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, nullable=True)
    version_id = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version_id}

    @hybrid_property
    def status(self) -> LoanStatus:
        return self._status

    @classmethod
    def request(
        cls,
        book_id: int,
        borrower_id: int,
        start_at: datetime,
        due_at: datetime,
        now: Optional[datetime] = None,
    ) -> "Loan":
        start_at, due_at = as_utc(start_at), as_utc(due_at)
        if start_at >= due_at:
            raise InvalidPeriodError("Loan start must be strictly before its due date")
        now = now or utcnow()
        return cls(
            book_id=book_id,
            borrower_id=borrower_id,
            start_at=start_at,
            due_at=due_at,
            _status=LoanStatus.PENDING,
            created_at=now,
            updated_at=now,
        )

    @property
    def holds_copy(self) -> bool:
        """True while the loan keeps one of the book's copies off the shelf."""
        return self._status == LoanStatus.ACTIVE

    def is_overdue(self, reference: datetime) -> bool:
        return self._status == LoanStatus.ACTIVE and self.due_at < as_utc(reference)

    def activate(self, now: datetime) -> None:
        self._require(LoanStatus.PENDING, action="activate")
        self._status = LoanStatus.ACTIVE
        self.updated_at = now

    def mark_returned(
        self, returned_at: datetime, notes: Optional[str], now: datetime
    ) -> None:
        self._require(LoanStatus.ACTIVE, action="return")
        returned_at = as_utc(returned_at)
        if returned_at < self.start_at:
            raise InvalidTimestampError(
                f"Return time {returned_at.isoformat()} precedes the loan start "
                f"{self.start_at.isoformat()}"
            )
        self._status = LoanStatus.RETURNED
        self.returned_at = returned_at
        self.notes = notes.strip() if notes and notes.strip() else None
        self.updated_at = now

    def cancel(self, reason: str, now: datetime) -> None:
        self._require(LoanStatus.PENDING, LoanStatus.ACTIVE, action="cancel")
        self.cancellation_reason = _require_text(reason, "reason")
        self._status = LoanStatus.CANCELLED
        self.updated_at = now

    def extend(self, days: int, now: datetime) -> None:
        self._require(LoanStatus.PENDING, LoanStatus.ACTIVE, action="extend")
        if days <= 0:
            raise InvalidArgumentError("Extension must be at least one day")
        self.due_at = self.due_at + timedelta(days=days)
        self.updated_at = now

    def _require(self, *allowed: LoanStatus, action: str) -> None:
        if self._status not in allowed:
            raise InvalidStateError(
                f"Cannot {action} loan {self.id}: it is {self._status.value}"
            )


class Penalty(Base):
    """
    Penalty model representing a monetary consequence for a borrower.

    Business Logic:
    - amount is positive and the window satisfies starts_at < ends_at
    - is_active is re-evaluated lazily: refresh_status() switches it off once
      the window has passed, and the caller persists the change
    - a penalty is in force only inside its window; one issued with a
      future starts_at keeps is_active but is not in force yet
    - close_early() ends the window at "now" and records why; a penalty
      whose window has not opened cannot be closed
    """

    __tablename__ = "penalties"

    id = Column(Integer, primary_key=True, index=True)
    borrower_id = Column(Integer, ForeignKey("borrowers.id"), nullable=False, index=True)
    loan_id = Column(Integer, ForeignKey("loans.id"), nullable=True, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    starts_at = Column(DateTime, nullable=False)
    ends_at = Column(DateTime, nullable=False)
    reason = Column(String, nullable=False)
    closure_reason = Column(String, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, nullable=True)

    @classmethod
    def issue(
        cls,
        borrower_id: int,
        loan_id: Optional[int],
        amount: Decimal,
        starts_at: datetime,
        ends_at: datetime,
        reason: str,
        now: Optional[datetime] = None,
    ) -> "Penalty":
        amount = Decimal(amount)
        if amount <= 0:
            raise InvalidArgumentError("Penalty amount must be positive")
        starts_at, ends_at = as_utc(starts_at), as_utc(ends_at)
        if starts_at >= ends_at:
            raise InvalidPeriodError("Penalty start must be strictly before its end")
        now = now or utcnow()
        return cls(
            borrower_id=borrower_id,
            loan_id=loan_id,
            amount=amount.quantize(Decimal("0.01")),
            starts_at=starts_at,
            ends_at=ends_at,
            reason=_require_text(reason, "reason"),
            is_active=True,
            created_at=now,
            updated_at=now,
        )

    def is_in_force(self, now: datetime) -> bool:
        """True while not closed and starts_at <= now <= ends_at."""
        now = as_utc(now)
        return bool(self.is_active) and self.starts_at <= now <= self.ends_at

    def refresh_status(self, now: datetime) -> bool:
        """Deactivate an expired penalty. Returns True when the flag changed."""
        if self.is_active and as_utc(now) > self.ends_at:
            self.is_active = False
            self.updated_at = now
            return True
        return False

    def close_early(self, reason: str, now: datetime) -> None:
        reason = _require_text(reason, "reason")
        if not self.is_active:
            raise InvalidStateError(f"Penalty {self.id} is already closed")
        now = as_utc(now)
        # Ending the window at or before its start would leave starts_at >= ends_at.
        if now <= self.starts_at:
            raise InvalidStateError(f"Penalty {self.id} has not started yet")
        self.ends_at = now
        self.closure_reason = reason
        self.is_active = False
        self.updated_at = now


class Notification(Base):
    """Notification model: a stored message for a borrower. Delivery happens elsewhere."""

    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    borrower_id = Column(Integer, ForeignKey("borrowers.id"), nullable=False, index=True)
    title = Column(String, nullable=False)
    message = Column(String, nullable=False)
    kind = Column(
        Enum(NotificationKind, name="notification_kind"),
        nullable=False,
        default=NotificationKind.INFO,
    )
    is_read = Column(Boolean, default=False, nullable=False, index=True)
    read_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, nullable=True)

    @classmethod
    def compose(
        cls,
        borrower_id: int,
        title: str,
        message: str,
        kind: NotificationKind = NotificationKind.INFO,
        now: Optional[datetime] = None,
    ) -> "Notification":
        now = now or utcnow()
        return cls(
            borrower_id=borrower_id,
            title=_require_text(title, "title"),
            message=_require_text(message, "message"),
            kind=kind,
            is_read=False,
            created_at=now,
            updated_at=now,
        )

    def mark_read(self, now: datetime) -> None:
        if self.is_read:
            return
        self.is_read = True
        self.read_at = now
        self.updated_at = now
