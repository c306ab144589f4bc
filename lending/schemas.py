from datetime import datetime
from decimal import Decimal
from typing import Optional, List
from pydantic import BaseModel, ConfigDict, Field

from lending.models import BookStatus, BorrowerType, LoanStatus, NotificationKind


class BookBase(BaseModel):
    """
    Base schema with common book fields.

    This is the parent class to avoid field duplication.
    """

    title: str = Field(..., min_length=1, max_length=500)
    author: str = Field(..., min_length=1, max_length=200)
    isbn: Optional[str] = Field(None, min_length=10, max_length=13)
    location: Optional[str] = Field(None, max_length=200)
    published_at: Optional[datetime] = None


class BookCreate(BookBase):
    """
    Schema for creating a new book.

    The ... in Field(...) means the field is required.
    total_copies seeds both counters; every copy starts on the shelf.
    """

    total_copies: int = Field(..., ge=1)


class BookUpdate(BaseModel):
    """
    Schema for updating a book.

    All fields are optional to support partial updates.
    Only provided fields will be updated.
    """

    title: Optional[str] = Field(None, min_length=1, max_length=500)
    author: Optional[str] = Field(None, min_length=1, max_length=200)
    isbn: Optional[str] = Field(None, min_length=10, max_length=13)
    published_at: Optional[datetime] = None
    total_copies: Optional[int] = Field(None, ge=1)


class BookLocationUpdate(BaseModel):
    location: Optional[str] = Field(None, max_length=200)


class Book(BookBase):
    """
    Schema for book responses.

    Internal Working:
    - from_attributes=True: Allows Pydantic to read data from ORM objects
    - SQLAlchemy objects have attributes like obj.id, obj.title
    - Pydantic extracts these attributes and validates them against the schema
    """

    model_config = ConfigDict(from_attributes=True)

    id: int
    total_copies: int
    available_copies: int
    status: BookStatus
    created_at: datetime
    updated_at: Optional[datetime] = None


class BorrowerBase(BaseModel):
    """Base schema with common borrower fields."""

    first_name: str = Field(..., min_length=1, max_length=200)
    last_name: str = Field(..., min_length=1, max_length=200)
    email: str = Field(..., pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$", max_length=320)


class BorrowerCreate(BorrowerBase):
    borrower_type: BorrowerType = BorrowerType.READER


class BorrowerUpdate(BaseModel):
    """
    Schema for updating a borrower.

    A name change needs both first and last name.
    """

    first_name: Optional[str] = Field(None, min_length=1, max_length=200)
    last_name: Optional[str] = Field(None, min_length=1, max_length=200)
    email: Optional[str] = Field(None, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$", max_length=320)


class Borrower(BorrowerBase):
    """
    Schema for borrower responses.

    loan_ids lists every loan ever activated for the borrower, returned and
    cancelled ones included.
    """

    model_config = ConfigDict(from_attributes=True)

    id: int
    full_name: str
    borrower_type: BorrowerType
    is_active: bool
    loan_ids: List[int] = []
    created_at: datetime
    updated_at: Optional[datetime] = None


class LoanCreate(BaseModel):
    """
    Schema for requesting a loan.

    start_at < due_at is checked by the loan itself so the error carries the
    same kind whether the request comes over HTTP or from code.
    """

    book_id: int = Field(..., gt=0)
    borrower_id: int = Field(..., gt=0)
    start_at: datetime
    due_at: datetime


class LoanReturn(BaseModel):
    returned_at: datetime
    notes: Optional[str] = Field(None, max_length=2000)


class LoanCancel(BaseModel):
    reason: str = Field(..., max_length=1000)


class LoanExtend(BaseModel):
    days: int


class Loan(BaseModel):
    """
    Schema for loan responses.

    Internal Working:
    - datetime objects are automatically serialized to ISO format strings
    - Optional[datetime] means returned_at can be null until the loan is returned
    """

    model_config = ConfigDict(from_attributes=True)

    id: int
    book_id: int
    borrower_id: int
    status: LoanStatus
    start_at: datetime
    due_at: datetime
    returned_at: Optional[datetime] = None
    notes: Optional[str] = None
    cancellation_reason: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None


class PenaltyCreate(BaseModel):
    borrower_id: int = Field(..., gt=0)
    loan_id: Optional[int] = Field(None, gt=0)
    amount: Decimal = Field(..., max_digits=10, decimal_places=2)
    starts_at: datetime
    ends_at: datetime
    reason: str = Field(..., max_length=1000)


class PenaltyClose(BaseModel):
    reason: str = Field(..., max_length=1000)


class Penalty(BaseModel):
    """Schema for penalty responses."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    borrower_id: int
    loan_id: Optional[int] = None
    amount: Decimal
    starts_at: datetime
    ends_at: datetime
    reason: str
    closure_reason: Optional[str] = None
    is_active: bool
    created_at: datetime
    updated_at: Optional[datetime] = None


class NotificationCreate(BaseModel):
    borrower_id: int = Field(..., gt=0)
    title: str = Field(..., min_length=1, max_length=200)
    message: str = Field(..., min_length=1, max_length=4000)
    kind: NotificationKind = NotificationKind.INFO


class Notification(BaseModel):
    """Schema for notification responses."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    borrower_id: int
    title: str
    message: str
    kind: NotificationKind
    is_read: bool
    read_at: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None


class Summary(BaseModel):
    """Counters shown on the administration dashboard."""

    total_borrowers: int
    active_borrowers: int
    total_books: int
    available_books: int
    active_loans: int
    overdue_loans: int
    active_penalties: int
