"""
Repository collaborators over a SQLAlchemy session.

Every repository exposes get_by_id / add / update. add() and update() flush
immediately so constraint and version-counter failures surface inside the
caller's unit of work instead of at commit time. Committing is never done
here; see lending.database.unit_of_work.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from lending.errors import NotFoundError
from lending.models import (
    Book,
    BookStatus,
    Borrower,
    Loan,
    LoanStatus,
    Notification,
    Penalty,
)


class Repository:
    model = None
    entity_name = "Entity"

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, entity_id: int):
        entity = self.db.query(self.model).filter(self.model.id == entity_id).first()
        if entity is None:
            raise NotFoundError(self.entity_name, entity_id)
        return entity

    def add(self, entity):
        self.db.add(entity)
        self.db.flush()
        return entity

    def update(self, entity):
        self.db.add(entity)
        self.db.flush()
        return entity

    def count(self) -> int:
        return self.db.query(func.count(self.model.id)).scalar()


class BookRepository(Repository):
    model = Book
    entity_name = "Book"

    def isbn_exists(self, isbn: str, exclude_id: Optional[int] = None) -> bool:
        query = self.db.query(Book.id).filter(Book.isbn == isbn)
        if exclude_id is not None:
            query = query.filter(Book.id != exclude_id)
        return query.first() is not None

    def search_by_title(self, text: str) -> List[Book]:
        return self.db.query(Book).filter(Book.title.ilike(f"%{text}%")).order_by(Book.id).all()

    def search_by_author(self, text: str) -> List[Book]:
        return self.db.query(Book).filter(Book.author.ilike(f"%{text}%")).order_by(Book.id).all()

    def count_by_status(self, status: BookStatus) -> int:
        return self.db.query(func.count(Book.id)).filter(Book.status == status).scalar()


class BorrowerRepository(Repository):
    model = Borrower
    entity_name = "Borrower"

    def get_by_email(self, email: str) -> Optional[Borrower]:
        return self.db.query(Borrower).filter(Borrower.email == email.strip().lower()).first()

    def count_active(self) -> int:
        return self.db.query(func.count(Borrower.id)).filter(Borrower.is_active.is_(True)).scalar()


class LoanRepository(Repository):
    model = Loan
    entity_name = "Loan"

    def exists_active_or_pending(self, book_id: int, borrower_id: int) -> bool:
        return (
            self.db.query(Loan.id)
            .filter(
                Loan.book_id == book_id,
                Loan.borrower_id == borrower_id,
                Loan.status.in_([LoanStatus.PENDING, LoanStatus.ACTIVE]),
            )
            .first()
            is not None
        )

    def find_overdue(self, reference_time: datetime) -> List[Loan]:
        return (
            self.db.query(Loan)
            .filter(Loan.status == LoanStatus.ACTIVE, Loan.due_at < reference_time)
            .order_by(Loan.due_at)
            .all()
        )

    def list_by_borrower(self, borrower_id: int) -> List[Loan]:
        return self.db.query(Loan).filter(Loan.borrower_id == borrower_id).order_by(Loan.id).all()

    def list_active_by_book(self, book_id: int) -> List[Loan]:
        return (
            self.db.query(Loan)
            .filter(Loan.book_id == book_id, Loan.status == LoanStatus.ACTIVE)
            .order_by(Loan.id)
            .all()
        )

    def count_by_status(self, status: LoanStatus) -> int:
        return self.db.query(func.count(Loan.id)).filter(Loan.status == status).scalar()

    def count_overdue(self, reference_time: datetime) -> int:
        return (
            self.db.query(func.count(Loan.id))
            .filter(Loan.status == LoanStatus.ACTIVE, Loan.due_at < reference_time)
            .scalar()
        )


class PenaltyRepository(Repository):
    model = Penalty
    entity_name = "Penalty"

    def list_active_by_borrower(self, borrower_id: int) -> List[Penalty]:
        return (
            self.db.query(Penalty)
            .filter(Penalty.borrower_id == borrower_id, Penalty.is_active.is_(True))
            .order_by(Penalty.id)
            .all()
        )

    def list_by_loan(self, loan_id: int) -> List[Penalty]:
        return self.db.query(Penalty).filter(Penalty.loan_id == loan_id).order_by(Penalty.id).all()

    def count_active(self, reference_time: datetime) -> int:
        # Expired rows may not have been switched off yet; the window decides.
        return (
            self.db.query(func.count(Penalty.id))
            .filter(
                Penalty.is_active.is_(True),
                Penalty.starts_at <= reference_time,
                Penalty.ends_at >= reference_time,
            )
            .scalar()
        )


class NotificationRepository(Repository):
    model = Notification
    entity_name = "Notification"

    def list_unread_by_borrower(self, borrower_id: int) -> List[Notification]:
        return (
            self.db.query(Notification)
            .filter(Notification.borrower_id == borrower_id, Notification.is_read.is_(False))
            .order_by(Notification.created_at, Notification.id)
            .all()
        )

    def count_unread(self, borrower_id: int) -> int:
        return (
            self.db.query(func.count(Notification.id))
            .filter(Notification.borrower_id == borrower_id, Notification.is_read.is_(False))
            .scalar()
        )
