import logging
from datetime import datetime
from typing import Dict, List, Optional

from lending import models
from lending import schemas
from lending.auth import verify_api_key
from lending.config import LOG_LEVEL
from lending.database import engine, get_db, unit_of_work
from lending.errors import (
    ConflictError,
    InvalidArgumentError,
    InvalidStateError,
    InvariantViolationError,
    LendingError,
    NotFoundError,
    UnavailableError,
)
from lending.repositories import (
    BookRepository,
    BorrowerRepository,
    LoanRepository,
    NotificationRepository,
    PenaltyRepository,
)
from lending.services import LoanLifecycleManager, PenaltyService

from sqlalchemy.orm import Session
from fastapi import FastAPI, Depends, Query, Request, status
from fastapi.responses import JSONResponse


logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

models.Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="Library Lending API",
    description="Library backend managing books, borrowers, the loan lifecycle, penalties and notifications",
    version="1.0.0",
)

# Checked in order; subclasses must come before their parents.
ERROR_STATUS = (
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (InvalidArgumentError, status.HTTP_400_BAD_REQUEST),
    (InvalidStateError, status.HTTP_400_BAD_REQUEST),
    (ConflictError, status.HTTP_409_CONFLICT),
    (UnavailableError, status.HTTP_409_CONFLICT),
    (InvariantViolationError, status.HTTP_500_INTERNAL_SERVER_ERROR),
)


@app.exception_handler(LendingError)
async def lending_error_handler(request: Request, exc: LendingError):
    """
    Translate domain errors into JSON responses.

    Internal Working:
    - Starlette looks handlers up along the exception's MRO, so this one
      receives every LendingError subclass
    - InvariantViolationError means corrupt data or a bug; it is logged at
      CRITICAL and reported as a 500, never as a client mistake
    """
    status_code = next(
        (code for kind, code in ERROR_STATUS if isinstance(exc, kind)),
        status.HTTP_400_BAD_REQUEST,
    )
    if isinstance(exc, InvariantViolationError):
        logger.critical("Invariant violated on %s %s: %s", request.method, request.url.path, exc)
    else:
        logger.warning(
            "%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc
        )
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


def get_loan_manager(db: Session = Depends(get_db)) -> LoanLifecycleManager:
    return LoanLifecycleManager(db)


def get_penalty_service(db: Session = Depends(get_db)) -> PenaltyService:
    return PenaltyService(db)


@app.get("/health")
async def health_check():
    """
    Health check endpoint for monitoring and load balancers.

    Returns:
        Simple status message indicating the service is running
    """
    return {"status": "healthy", "service": "lending-api"}


# ---- books


@app.post(
    "/books",
    response_model=schemas.Book,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(verify_api_key)],
)
async def create_book(book: schemas.BookCreate, db: Session = Depends(get_db)):
    """
    Add a book to the catalog (requires API key).

    Business Logic:
    - ISBN, when given, must be unique across all books
    - All copies start available

    Raises:
        ConflictError: 409 if the ISBN is already registered
    """
    books = BookRepository(db)
    with unit_of_work(db):
        if book.isbn and books.isbn_exists(book.isbn):
            raise ConflictError(f"Book with ISBN {book.isbn} already exists")
        db_book = books.add(models.Book.register(**book.model_dump()))
    logger.info("Registered book %s with %s copies", db_book.id, db_book.total_copies)
    return db_book


@app.get("/books/search", response_model=List[schemas.Book])
async def search_books(
    title: Optional[str] = Query(None),
    author: Optional[str] = Query(None),
    db: Session = Depends(get_db),
):
    """
    Search books by title, or by author when no title is given.

    Raises:
        InvalidArgumentError: 400 if neither title nor author is provided
    """
    books = BookRepository(db)
    if title and title.strip():
        return books.search_by_title(title.strip())
    if author and author.strip():
        return books.search_by_author(author.strip())
    raise InvalidArgumentError("Provide a title or an author to search for")


@app.get("/books/{book_id}", response_model=schemas.Book)
async def get_book(book_id: int, db: Session = Depends(get_db)):
    return BookRepository(db).get_by_id(book_id)


@app.put(
    "/books/{book_id}",
    response_model=schemas.Book,
    dependencies=[Depends(verify_api_key)],
)
async def update_book(
    book_id: int, book_update: schemas.BookUpdate, db: Session = Depends(get_db)
):
    """
    Update a book's details and copy count (requires API key).

    This implements partial updates (PATCH-like behavior with PUT).
    Changing total_copies moves available_copies by the same amount and is
    refused when fewer copies would remain than are currently on loan.
    """
    books = BookRepository(db)
    with unit_of_work(db):
        db_book = books.get_by_id(book_id)
        update_data = book_update.model_dump(exclude_unset=True)
        total_copies = update_data.pop("total_copies", None)

        isbn = update_data.get("isbn")
        if isbn and isbn != db_book.isbn and books.isbn_exists(isbn, exclude_id=book_id):
            raise ConflictError(f"Book with ISBN {isbn} already exists")

        now = models.utcnow()
        db_book.update_details(now, **update_data)
        if total_copies is not None:
            db_book.change_total_copies(total_copies, now)
        books.update(db_book)
    return db_book


@app.put(
    "/books/{book_id}/location",
    response_model=schemas.Book,
    dependencies=[Depends(verify_api_key)],
)
async def update_book_location(
    book_id: int, location: schemas.BookLocationUpdate, db: Session = Depends(get_db)
):
    books = BookRepository(db)
    with unit_of_work(db):
        db_book = books.get_by_id(book_id)
        db_book.relocate(location.location, models.utcnow())
        books.update(db_book)
    return db_book


def _change_book_status(db: Session, book_id: int, transition) -> models.Book:
    books = BookRepository(db)
    with unit_of_work(db):
        db_book = books.get_by_id(book_id)
        transition(db_book, models.utcnow())
        books.update(db_book)
    logger.info("Book %s is now %s", book_id, db_book.status.value)
    return db_book


@app.post(
    "/books/{book_id}/reserve",
    response_model=schemas.Book,
    dependencies=[Depends(verify_api_key)],
)
async def reserve_book(book_id: int, db: Session = Depends(get_db)):
    return _change_book_status(db, book_id, models.Book.mark_reserved)


@app.post(
    "/books/{book_id}/damage",
    response_model=schemas.Book,
    dependencies=[Depends(verify_api_key)],
)
async def damage_book(book_id: int, db: Session = Depends(get_db)):
    return _change_book_status(db, book_id, models.Book.mark_damaged)


@app.post(
    "/books/{book_id}/deactivate",
    response_model=schemas.Book,
    dependencies=[Depends(verify_api_key)],
)
async def deactivate_book(book_id: int, db: Session = Depends(get_db)):
    return _change_book_status(db, book_id, models.Book.mark_inactive)


@app.post(
    "/books/{book_id}/restore",
    response_model=schemas.Book,
    dependencies=[Depends(verify_api_key)],
)
async def restore_book(book_id: int, db: Session = Depends(get_db)):
    return _change_book_status(db, book_id, models.Book.restore)


# ---- borrowers


@app.post(
    "/borrowers",
    response_model=schemas.Borrower,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(verify_api_key)],
)
async def create_borrower(borrower: schemas.BorrowerCreate, db: Session = Depends(get_db)):
    """
    Register a borrower (requires API key).

    Raises:
        ConflictError: 409 if the email is already registered
    """
    borrowers = BorrowerRepository(db)
    with unit_of_work(db):
        if borrowers.get_by_email(borrower.email) is not None:
            raise ConflictError(f"Email {borrower.email} is already registered")
        db_borrower = borrowers.add(models.Borrower.register(**borrower.model_dump()))
    logger.info("Registered borrower %s", db_borrower.id)
    return db_borrower


@app.get("/borrowers/{borrower_id}", response_model=schemas.Borrower)
async def get_borrower(borrower_id: int, db: Session = Depends(get_db)):
    return BorrowerRepository(db).get_by_id(borrower_id)


@app.put(
    "/borrowers/{borrower_id}",
    response_model=schemas.Borrower,
    dependencies=[Depends(verify_api_key)],
)
async def update_borrower(
    borrower_id: int, borrower_update: schemas.BorrowerUpdate, db: Session = Depends(get_db)
):
    """
    Update a borrower's name and/or email (requires API key).

    Raises:
        InvalidArgumentError: 400 if only one of first_name/last_name is given
        ConflictError: 409 if the new email belongs to someone else
    """
    borrowers = BorrowerRepository(db)
    with unit_of_work(db):
        db_borrower = borrowers.get_by_id(borrower_id)
        now = models.utcnow()

        if borrower_update.email and borrower_update.email.lower() != db_borrower.email:
            existing = borrowers.get_by_email(borrower_update.email)
            if existing is not None and existing.id != db_borrower.id:
                raise ConflictError(f"Email {borrower_update.email} is already in use")
            db_borrower.change_email(borrower_update.email, now)

        if borrower_update.first_name and borrower_update.last_name:
            db_borrower.rename(borrower_update.first_name, borrower_update.last_name, now)
        elif borrower_update.first_name or borrower_update.last_name:
            raise InvalidArgumentError("Provide both first_name and last_name to rename a borrower")

        borrowers.update(db_borrower)
    return db_borrower


@app.post(
    "/borrowers/{borrower_id}/deactivate",
    response_model=schemas.Borrower,
    dependencies=[Depends(verify_api_key)],
)
async def deactivate_borrower(borrower_id: int, db: Session = Depends(get_db)):
    borrowers = BorrowerRepository(db)
    with unit_of_work(db):
        db_borrower = borrowers.get_by_id(borrower_id)
        db_borrower.deactivate(models.utcnow())
        borrowers.update(db_borrower)
    return db_borrower


@app.post(
    "/borrowers/{borrower_id}/reactivate",
    response_model=schemas.Borrower,
    dependencies=[Depends(verify_api_key)],
)
async def reactivate_borrower(borrower_id: int, db: Session = Depends(get_db)):
    borrowers = BorrowerRepository(db)
    with unit_of_work(db):
        db_borrower = borrowers.get_by_id(borrower_id)
        db_borrower.reactivate(models.utcnow())
        borrowers.update(db_borrower)
    return db_borrower


# ---- loans


@app.post(
    "/loans",
    response_model=schemas.Loan,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(verify_api_key)],
)
async def request_loan(
    loan: schemas.LoanCreate, manager: LoanLifecycleManager = Depends(get_loan_manager)
):
    """
    Request a loan (requires API key).

    Business Logic:
    1. Book and borrower must exist, and the borrower must be active
    2. The borrower may not already hold a pending or active loan for the book
    3. The book must have a lendable copy
    4. The loan is created PENDING; no copy is taken until activation

    Raises:
        NotFoundError: 404, ConflictError/UnavailableError: 409,
        InvalidPeriodError: 400 if start_at >= due_at
    """
    db_loan = manager.request_loan(loan.book_id, loan.borrower_id, loan.start_at, loan.due_at)
    logger.info(
        "Loan %s requested: book %s for borrower %s", db_loan.id, loan.book_id, loan.borrower_id
    )
    return db_loan


@app.get("/loans/overdue", response_model=List[schemas.Loan])
async def list_overdue_loans(
    reference: Optional[datetime] = Query(None),
    manager: LoanLifecycleManager = Depends(get_loan_manager),
):
    """Active loans whose due date is before `reference` (default: now)."""
    return manager.overdue_loans(reference)


@app.get("/loans/borrower/{borrower_id}", response_model=List[schemas.Loan])
async def list_borrower_loans(
    borrower_id: int, manager: LoanLifecycleManager = Depends(get_loan_manager)
):
    return manager.loans_for_borrower(borrower_id)


@app.get("/loans/book/{book_id}", response_model=List[schemas.Loan])
async def list_active_book_loans(
    book_id: int, manager: LoanLifecycleManager = Depends(get_loan_manager)
):
    return manager.active_loans_for_book(book_id)


@app.get("/loans/{loan_id}", response_model=schemas.Loan)
async def get_loan(loan_id: int, manager: LoanLifecycleManager = Depends(get_loan_manager)):
    return manager.get_loan(loan_id)


@app.post(
    "/loans/{loan_id}/activate",
    response_model=schemas.Loan,
    dependencies=[Depends(verify_api_key)],
)
async def activate_loan(loan_id: int, manager: LoanLifecycleManager = Depends(get_loan_manager)):
    """
    Hand the book over: PENDING -> ACTIVE (requires API key).

    Takes one copy off the shelf and records the loan on the borrower.
    A concurrent activation that already took the last copy makes this one
    fail with 409.
    """
    db_loan = manager.activate_loan(loan_id)
    logger.info("Loan %s activated", loan_id)
    return db_loan


@app.post(
    "/loans/{loan_id}/return",
    response_model=schemas.Loan,
    dependencies=[Depends(verify_api_key)],
)
async def return_loan(
    loan_id: int,
    loan_return: schemas.LoanReturn,
    manager: LoanLifecycleManager = Depends(get_loan_manager),
):
    """
    Register a return: ACTIVE -> RETURNED (requires API key).

    Puts the copy back on the shelf. A return after the due date also
    generates an overdue penalty for the borrower.
    """
    db_loan = manager.register_return(loan_id, loan_return.returned_at, loan_return.notes)
    logger.info("Loan %s returned at %s", loan_id, db_loan.returned_at.isoformat())
    return db_loan


@app.post(
    "/loans/{loan_id}/cancel",
    response_model=schemas.Loan,
    dependencies=[Depends(verify_api_key)],
)
async def cancel_loan(
    loan_id: int,
    cancellation: schemas.LoanCancel,
    manager: LoanLifecycleManager = Depends(get_loan_manager),
):
    db_loan = manager.cancel_loan(loan_id, cancellation.reason)
    logger.info("Loan %s cancelled", loan_id)
    return db_loan


@app.post(
    "/loans/{loan_id}/extend",
    response_model=schemas.Loan,
    dependencies=[Depends(verify_api_key)],
)
async def extend_loan(
    loan_id: int,
    extension: schemas.LoanExtend,
    manager: LoanLifecycleManager = Depends(get_loan_manager),
):
    db_loan = manager.extend_loan(loan_id, extension.days)
    logger.info("Loan %s extended by %s day(s)", loan_id, extension.days)
    return db_loan


# ---- penalties


@app.post(
    "/penalties",
    response_model=schemas.Penalty,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(verify_api_key)],
)
async def create_penalty(
    penalty: schemas.PenaltyCreate, service: PenaltyService = Depends(get_penalty_service)
):
    """Issue a penalty by hand, e.g. for a damaged book (requires API key)."""
    db_penalty = service.issue(
        borrower_id=penalty.borrower_id,
        loan_id=penalty.loan_id,
        amount=penalty.amount,
        starts_at=penalty.starts_at,
        ends_at=penalty.ends_at,
        reason=penalty.reason,
    )
    logger.info("Penalty %s issued to borrower %s", db_penalty.id, penalty.borrower_id)
    return db_penalty


@app.get("/penalties/borrower/{borrower_id}", response_model=List[schemas.Penalty])
async def list_active_penalties(
    borrower_id: int, service: PenaltyService = Depends(get_penalty_service)
):
    """
    Active penalties of a borrower.

    Penalties whose window has passed are switched off and saved before the
    list is returned.
    """
    return service.active_for_borrower(borrower_id)


@app.post(
    "/penalties/{penalty_id}/close",
    response_model=schemas.Penalty,
    dependencies=[Depends(verify_api_key)],
)
async def close_penalty(
    penalty_id: int,
    closure: schemas.PenaltyClose,
    service: PenaltyService = Depends(get_penalty_service),
):
    db_penalty = service.close(penalty_id, closure.reason)
    logger.info("Penalty %s closed early", penalty_id)
    return db_penalty


# ---- notifications


@app.post(
    "/notifications",
    response_model=schemas.Notification,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(verify_api_key)],
)
async def create_notification(
    notification: schemas.NotificationCreate, db: Session = Depends(get_db)
):
    notifications = NotificationRepository(db)
    with unit_of_work(db):
        BorrowerRepository(db).get_by_id(notification.borrower_id)
        db_notification = notifications.add(
            models.Notification.compose(**notification.model_dump())
        )
    return db_notification


@app.get(
    "/notifications/borrower/{borrower_id}/unread",
    response_model=List[schemas.Notification],
)
async def list_unread_notifications(borrower_id: int, db: Session = Depends(get_db)):
    return NotificationRepository(db).list_unread_by_borrower(borrower_id)


@app.post(
    "/notifications/borrower/{borrower_id}/mark-read",
    dependencies=[Depends(verify_api_key)],
)
async def mark_notifications_read(borrower_id: int, db: Session = Depends(get_db)):
    """Mark every unread notification of the borrower as read."""
    notifications = NotificationRepository(db)
    with unit_of_work(db):
        unread = notifications.list_unread_by_borrower(borrower_id)
        now = models.utcnow()
        for notification in unread:
            notification.mark_read(now)
            notifications.update(notification)
    return {"marked": len(unread)}


@app.get("/notifications/borrower/{borrower_id}/count")
async def count_unread_notifications(borrower_id: int, db: Session = Depends(get_db)):
    return {"unread": NotificationRepository(db).count_unread(borrower_id)}


# ---- reports


@app.get("/reports/books-by-status", response_model=Dict[str, int])
async def books_by_status(db: Session = Depends(get_db)):
    books = BookRepository(db)
    return {book_status.value: books.count_by_status(book_status) for book_status in models.BookStatus}


@app.get("/reports/loans-by-status", response_model=Dict[str, int])
async def loans_by_status(db: Session = Depends(get_db)):
    loans = LoanRepository(db)
    return {loan_status.value: loans.count_by_status(loan_status) for loan_status in models.LoanStatus}


@app.get("/reports/active-penalties")
async def active_penalties(db: Session = Depends(get_db)):
    return {"active_penalties": PenaltyRepository(db).count_active(models.utcnow())}


@app.get("/reports/active-borrowers")
async def active_borrowers(db: Session = Depends(get_db)):
    return {"active_borrowers": BorrowerRepository(db).count_active()}


@app.get("/admin/summary", response_model=schemas.Summary)
async def admin_summary(db: Session = Depends(get_db)):
    """
    Dashboard counters in a single response.

    Overdue loans and active penalties are evaluated against the current time.
    """
    now = models.utcnow()
    books = BookRepository(db)
    borrowers = BorrowerRepository(db)
    loans = LoanRepository(db)
    return schemas.Summary(
        total_borrowers=borrowers.count(),
        active_borrowers=borrowers.count_active(),
        total_books=books.count(),
        available_books=books.count_by_status(models.BookStatus.AVAILABLE),
        active_loans=loans.count_by_status(models.LoanStatus.ACTIVE),
        overdue_loans=loans.count_overdue(now),
        active_penalties=PenaltyRepository(db).count_active(now),
    )
