from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from lending.database import unit_of_work
from lending.errors import (
    ConflictError,
    InvalidArgumentError,
    InvalidStateError,
    UnavailableError,
)
from lending.models import Loan, Penalty, as_utc, utcnow
from lending.penalties import PenaltyPolicy, generate_overdue_penalty
from lending.repositories import (
    BookRepository,
    BorrowerRepository,
    LoanRepository,
    PenaltyRepository,
)


class LoanLifecycleManager:
    """
    Applies loan transitions together with their effects on books,
    borrowers and penalties.

    Copy reservation happens at activation: requesting a loan never touches
    the book, activating takes one copy, and returning or cancelling an
    active loan gives it back.

    Each operation loads what it needs, mutates everything in memory, then
    persists and commits as one unit of work. Nothing is retried; a lost race
    on a book or loan row comes back as ConflictError.
    """

    def __init__(
        self,
        db: Session,
        policy: Optional[PenaltyPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.books = BookRepository(db)
        self.borrowers = BorrowerRepository(db)
        self.loans = LoanRepository(db)
        self.penalties = PenaltyRepository(db)
        self.policy = policy or PenaltyPolicy()
        self.clock = clock

    def request_loan(
        self, book_id: int, borrower_id: int, start_at: datetime, due_at: datetime
    ) -> Loan:
        with unit_of_work(self.db):
            book = self.books.get_by_id(book_id)
            borrower = self.borrowers.get_by_id(borrower_id)
            if not borrower.is_active:
                raise InvalidStateError(f"Borrower {borrower_id} is inactive")
            if self.loans.exists_active_or_pending(book_id, borrower_id):
                raise ConflictError(
                    f"Borrower {borrower_id} already has an open loan for book {book_id}"
                )
            if not book.is_lendable:
                raise UnavailableError(f"Book {book_id} has no copy available to lend")

            loan = Loan.request(book.id, borrower.id, start_at, due_at, now=self.clock())
            self.loans.add(loan)
        return loan

    def activate_loan(self, loan_id: int) -> Loan:
        with unit_of_work(self.db):
            loan = self.loans.get_by_id(loan_id)
            book = self.books.get_by_id(loan.book_id)
            borrower = self.borrowers.get_by_id(loan.borrower_id)
            now = self.clock()

            loan.activate(now)
            if not book.is_lendable:
                raise UnavailableError(f"Book {book.id} has no copy available to lend")
            book.lend_copy(now)
            borrower.register_loan(loan, now)

            self.loans.update(loan)
            self.books.update(book)
            self.borrowers.update(borrower)
        return loan

    def register_return(
        self, loan_id: int, returned_at: datetime, notes: Optional[str] = None
    ) -> Loan:
        with unit_of_work(self.db):
            loan = self.loans.get_by_id(loan_id)
            book = self.books.get_by_id(loan.book_id)
            now = self.clock()

            loan.mark_returned(returned_at, notes, now)
            book.return_copy(now)
            penalty = generate_overdue_penalty(
                due_at=loan.due_at,
                returned_at=loan.returned_at,
                borrower_id=loan.borrower_id,
                loan_id=loan.id,
                now=now,
                policy=self.policy,
            )

            if penalty is not None:
                self.penalties.add(penalty)
            self.loans.update(loan)
            self.books.update(book)
        return loan

    def cancel_loan(self, loan_id: int, reason: str) -> Loan:
        with unit_of_work(self.db):
            loan = self.loans.get_by_id(loan_id)
            held_copy = loan.holds_copy
            now = self.clock()

            loan.cancel(reason, now)
            book = None
            if held_copy:
                book = self.books.get_by_id(loan.book_id)
                book.return_copy(now)

            self.loans.update(loan)
            if book is not None:
                self.books.update(book)
        return loan

    def extend_loan(self, loan_id: int, days: int) -> Loan:
        with unit_of_work(self.db):
            loan = self.loans.get_by_id(loan_id)
            loan.extend(days, self.clock())
            self.loans.update(loan)
        return loan

    def get_loan(self, loan_id: int) -> Loan:
        return self.loans.get_by_id(loan_id)

    def loans_for_borrower(self, borrower_id: int) -> List[Loan]:
        self.borrowers.get_by_id(borrower_id)
        return self.loans.list_by_borrower(borrower_id)

    def active_loans_for_book(self, book_id: int) -> List[Loan]:
        self.books.get_by_id(book_id)
        return self.loans.list_active_by_book(book_id)

    def overdue_loans(self, reference_time: Optional[datetime] = None) -> List[Loan]:
        reference_time = as_utc(reference_time) if reference_time else self.clock()
        return self.loans.find_overdue(reference_time)


class PenaltyService:
    """Administrative penalties: manual issue, lazy expiry on read, early close."""

    def __init__(self, db: Session, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.borrowers = BorrowerRepository(db)
        self.loans = LoanRepository(db)
        self.penalties = PenaltyRepository(db)
        self.clock = clock

    def issue(
        self,
        borrower_id: int,
        amount: Decimal,
        starts_at: datetime,
        ends_at: datetime,
        reason: str,
        loan_id: Optional[int] = None,
    ) -> Penalty:
        with unit_of_work(self.db):
            self.borrowers.get_by_id(borrower_id)
            if loan_id is not None:
                self.loans.get_by_id(loan_id)
            penalty = Penalty.issue(
                borrower_id=borrower_id,
                loan_id=loan_id,
                amount=amount,
                starts_at=starts_at,
                ends_at=ends_at,
                reason=reason,
                now=self.clock(),
            )
            self.penalties.add(penalty)
        return penalty

    def active_for_borrower(self, borrower_id: int) -> List[Penalty]:
        with unit_of_work(self.db):
            penalties = self.penalties.list_active_by_borrower(borrower_id)
            now = self.clock()
            for penalty in penalties:
                if penalty.refresh_status(now):
                    self.penalties.update(penalty)
            active = [penalty for penalty in penalties if penalty.is_in_force(now)]
        return active

    def close(self, penalty_id: int, reason: str) -> Penalty:
        if reason is None or not reason.strip():
            raise InvalidArgumentError("A reason is required to close a penalty")
        with unit_of_work(self.db):
            penalty = self.penalties.get_by_id(penalty_id)
            now = self.clock()
            if penalty.refresh_status(now):
                self.penalties.update(penalty)
        # The expiry is committed even when the close is refused.
        if not penalty.is_active:
            raise InvalidStateError(f"Penalty {penalty_id} is already closed")
        with unit_of_work(self.db):
            penalty.close_early(reason, now)
            self.penalties.update(penalty)
        return penalty
