from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from lending.errors import (
    ConflictError,
    InvalidArgumentError,
    InvalidPeriodError,
    InvalidStateError,
    InvalidTimestampError,
    NotFoundError,
    UnavailableError,
)
from lending.models import Book, BookStatus, Borrower, Loan, LoanStatus, Penalty
from lending.penalties import OVERDUE_REASON, PenaltyPolicy
from lending.repositories import PenaltyRepository
from lending.services import LoanLifecycleManager, PenaltyService

NOW = datetime(2026, 3, 2, 12, 0, 0)
START = datetime(2026, 3, 1, 9, 0, 0)
DUE = datetime(2026, 3, 15, 9, 0, 0)

POLICY = PenaltyPolicy(daily_rate=Decimal("2.00"), duration=timedelta(days=14))


@pytest.fixture
def manager(db):
    return LoanLifecycleManager(db, policy=POLICY, clock=lambda: NOW)


def open_loan(manager, book, borrower, activate=True):
    loan = manager.request_loan(book.id, borrower.id, START, DUE)
    if activate:
        manager.activate_loan(loan.id)
    return loan


def test_request_loan_creates_pending_loan_without_taking_a_copy(
    manager, make_book, make_borrower
):
    """
    Verifies:
    - the loan is persisted PENDING
    - copies are reserved at activation, so availability is unchanged
    """
    book = make_book(total_copies=2)
    borrower = make_borrower()

    loan = manager.request_loan(book.id, borrower.id, START, DUE)

    assert loan.id is not None
    assert loan.status == LoanStatus.PENDING
    assert manager.get_loan(loan.id).book_id == book.id
    assert book.available_copies == 2
    assert borrower.loan_ids == []


def test_request_loan_unknown_book_or_borrower(manager, make_book, make_borrower):
    book = make_book()
    borrower = make_borrower()

    with pytest.raises(NotFoundError):
        manager.request_loan(999, borrower.id, START, DUE)
    with pytest.raises(NotFoundError):
        manager.request_loan(book.id, 999, START, DUE)


def test_request_loan_invalid_period(manager, make_book, make_borrower):
    book = make_book()
    borrower = make_borrower()
    with pytest.raises(InvalidPeriodError):
        manager.request_loan(book.id, borrower.id, DUE, START)
    assert manager.loans_for_borrower(borrower.id) == []


@pytest.mark.parametrize("activate_first", [False, True])
def test_request_loan_rejects_duplicate_open_loan(
    manager, make_book, make_borrower, activate_first
):
    book = make_book(total_copies=3)
    borrower = make_borrower()
    open_loan(manager, book, borrower, activate=activate_first)

    with pytest.raises(ConflictError):
        manager.request_loan(book.id, borrower.id, START, DUE)


def test_request_loan_allowed_again_after_return(manager, make_book, make_borrower):
    book = make_book()
    borrower = make_borrower()
    loan = open_loan(manager, book, borrower)
    manager.register_return(loan.id, DUE)

    again = manager.request_loan(book.id, borrower.id, START, DUE)
    assert again.status == LoanStatus.PENDING


def test_request_loan_when_no_copy_available(manager, make_book, make_borrower):
    book = make_book(total_copies=1)
    open_loan(manager, book, make_borrower())

    with pytest.raises(UnavailableError):
        manager.request_loan(book.id, make_borrower().id, START, DUE)


def test_request_loan_for_flagged_book(manager, db, make_book, make_borrower):
    book = make_book()
    book.mark_damaged(NOW)
    db.commit()

    with pytest.raises(UnavailableError):
        manager.request_loan(book.id, make_borrower().id, START, DUE)


def test_request_loan_for_inactive_borrower(manager, db, make_book, make_borrower):
    book = make_book()
    borrower = make_borrower()
    borrower.deactivate(NOW)
    db.commit()

    with pytest.raises(InvalidStateError):
        manager.request_loan(book.id, borrower.id, START, DUE)


def test_activate_loan_takes_a_copy_and_registers_borrower(manager, make_book, make_borrower):
    book = make_book(total_copies=2)
    borrower = make_borrower()
    loan = manager.request_loan(book.id, borrower.id, START, DUE)

    activated = manager.activate_loan(loan.id)

    assert activated.status == LoanStatus.ACTIVE
    assert activated.updated_at == NOW
    assert book.available_copies == 1
    assert borrower.loan_ids == [loan.id]


def test_activate_loan_twice_fails_without_second_decrement(manager, make_book, make_borrower):
    book = make_book(total_copies=2)
    loan = open_loan(manager, book, make_borrower())

    with pytest.raises(InvalidStateError):
        manager.activate_loan(loan.id)
    assert book.available_copies == 1


def test_activate_unknown_loan(manager):
    with pytest.raises(NotFoundError):
        manager.activate_loan(12345)


def test_activate_when_last_copy_already_taken(manager, make_book, make_borrower):
    """
    Two pending loans on a single-copy book: the second activation finds the
    shelf empty and is refused, and its loan stays PENDING.
    """
    book = make_book(total_copies=1)
    first = manager.request_loan(book.id, make_borrower().id, START, DUE)
    second = manager.request_loan(book.id, make_borrower().id, START, DUE)

    manager.activate_loan(first.id)
    with pytest.raises(UnavailableError):
        manager.activate_loan(second.id)

    assert book.available_copies == 0
    assert manager.get_loan(second.id).status == LoanStatus.PENDING


def test_concurrent_activations_never_oversell_last_copy(session_factory):
    """
    Both transactions read the book while it still shows one free copy.

    Verifies:
    - exactly one activation commits
    - the other fails with a conflict (stale version counter) instead of
      driving available_copies below zero
    """
    setup = session_factory()
    clock = lambda: NOW
    book = Book.register("Dune", "Frank Herbert", 1, now=NOW)
    ana = Borrower.register("Ana", "Perez", "ana@example.com", now=NOW)
    luis = Borrower.register("Luis", "Gomez", "luis@example.com", now=NOW)
    setup.add_all([book, ana, luis])
    setup.commit()
    setup_manager = LoanLifecycleManager(setup, clock=clock)
    first_id = setup_manager.request_loan(book.id, ana.id, START, DUE).id
    second_id = setup_manager.request_loan(book.id, luis.id, START, DUE).id
    book_id = book.id
    setup.close()

    session_a = session_factory()
    session_b = session_factory()
    try:
        assert session_a.get(Book, book_id).available_copies == 1
        assert session_b.get(Book, book_id).available_copies == 1

        LoanLifecycleManager(session_a, clock=clock).activate_loan(first_id)
        with pytest.raises((ConflictError, UnavailableError)):
            LoanLifecycleManager(session_b, clock=clock).activate_loan(second_id)
    finally:
        session_a.close()
        session_b.close()

    check = session_factory()
    try:
        assert check.get(Book, book_id).available_copies == 0
        assert check.get(Loan, first_id).status == LoanStatus.ACTIVE
        assert check.get(Loan, second_id).status == LoanStatus.PENDING
    finally:
        check.close()


def test_activate_then_return_restores_availability(manager, make_book, make_borrower):
    book = make_book(total_copies=3)
    loan = open_loan(manager, book, make_borrower())
    assert book.available_copies == 2

    returned = manager.register_return(loan.id, DUE - timedelta(days=1), "all good")

    assert returned.status == LoanStatus.RETURNED
    assert returned.returned_at == DUE - timedelta(days=1)
    assert returned.notes == "all good"
    assert book.available_copies == 3


def test_return_twice_fails_without_double_increment(manager, db, make_book, make_borrower):
    book = make_book(total_copies=2)
    loan = open_loan(manager, book, make_borrower())
    manager.register_return(loan.id, DUE)

    with pytest.raises(InvalidStateError):
        manager.register_return(loan.id, DUE)

    assert book.available_copies == 2
    assert PenaltyRepository(db).list_by_loan(loan.id) == []


def test_return_of_pending_loan_fails(manager, make_book, make_borrower):
    book = make_book()
    loan = open_loan(manager, book, make_borrower(), activate=False)
    with pytest.raises(InvalidStateError):
        manager.register_return(loan.id, DUE)
    assert book.available_copies == 2


def test_return_before_start_is_rejected_and_rolled_back(manager, make_book, make_borrower):
    book = make_book()
    loan = open_loan(manager, book, make_borrower())

    with pytest.raises(InvalidTimestampError):
        manager.register_return(loan.id, START - timedelta(days=1))

    assert manager.get_loan(loan.id).status == LoanStatus.ACTIVE
    assert book.available_copies == 1


def test_late_return_generates_penalty(manager, db, make_book, make_borrower):
    book = make_book()
    borrower = make_borrower()
    loan = open_loan(manager, book, borrower)

    manager.register_return(loan.id, DUE + timedelta(days=5))

    penalties = PenaltyRepository(db).list_by_loan(loan.id)
    assert len(penalties) == 1
    penalty = penalties[0]
    assert penalty.amount > 0
    assert penalty.amount == Decimal("10.00")
    assert penalty.borrower_id == borrower.id
    assert penalty.reason == OVERDUE_REASON
    assert penalty.starts_at == NOW
    assert penalty.ends_at == NOW + timedelta(days=14)
    assert penalty.is_active


@pytest.mark.parametrize("returned_at", [START, DUE])
def test_on_time_return_generates_no_penalty(manager, db, make_book, make_borrower, returned_at):
    loan = open_loan(manager, make_book(), make_borrower())
    manager.register_return(loan.id, returned_at)
    assert PenaltyRepository(db).list_by_loan(loan.id) == []


def test_cancel_pending_loan_leaves_availability_untouched(manager, make_book, make_borrower):
    book = make_book(total_copies=2)
    loan = open_loan(manager, book, make_borrower(), activate=False)

    cancelled = manager.cancel_loan(loan.id, "Requested by mistake")

    assert cancelled.status == LoanStatus.CANCELLED
    assert cancelled.cancellation_reason == "Requested by mistake"
    assert book.available_copies == 2


def test_cancel_active_loan_returns_the_copy(manager, make_book, make_borrower):
    book = make_book(total_copies=1)
    borrower = make_borrower()
    loan = open_loan(manager, book, borrower)
    assert book.status == BookStatus.LOANED

    manager.cancel_loan(loan.id, "Wrong edition handed out")

    assert book.available_copies == 1
    assert book.status == BookStatus.AVAILABLE
    assert borrower.loan_ids == [loan.id]


def test_cancel_requires_reason(manager, make_book, make_borrower):
    loan = open_loan(manager, make_book(), make_borrower())
    with pytest.raises(InvalidArgumentError):
        manager.cancel_loan(loan.id, "  ")
    assert manager.get_loan(loan.id).status == LoanStatus.ACTIVE


def test_cancel_unknown_loan(manager):
    with pytest.raises(NotFoundError):
        manager.cancel_loan(404, "gone")


def test_extend_loan(manager, make_book, make_borrower):
    loan = open_loan(manager, make_book(), make_borrower())
    extended = manager.extend_loan(loan.id, 7)
    assert extended.due_at == DUE + timedelta(days=7)

    with pytest.raises(InvalidArgumentError):
        manager.extend_loan(loan.id, 0)
    assert manager.get_loan(loan.id).due_at == DUE + timedelta(days=7)


def test_extended_due_date_drives_penalty(manager, db, make_book, make_borrower):
    loan = open_loan(manager, make_book(), make_borrower())
    manager.extend_loan(loan.id, 3)
    manager.register_return(loan.id, DUE + timedelta(days=3))
    assert PenaltyRepository(db).list_by_loan(loan.id) == []


def test_overdue_loans(manager, make_book, make_borrower):
    overdue = open_loan(manager, make_book(), make_borrower())
    open_loan(manager, make_book(), make_borrower(), activate=False)
    returned = open_loan(manager, make_book(), make_borrower())
    manager.register_return(returned.id, DUE)

    found = manager.overdue_loans(DUE + timedelta(hours=1))
    assert [loan.id for loan in found] == [overdue.id]
    assert manager.overdue_loans(DUE - timedelta(hours=1)) == []


def test_loan_lookups(manager, make_book, make_borrower):
    book = make_book()
    borrower = make_borrower()
    active = open_loan(manager, book, borrower)
    pending = open_loan(manager, book, make_borrower(), activate=False)

    assert [loan.id for loan in manager.active_loans_for_book(book.id)] == [active.id]
    assert [loan.id for loan in manager.loans_for_borrower(borrower.id)] == [active.id]
    assert pending.status == LoanStatus.PENDING

    with pytest.raises(NotFoundError):
        manager.active_loans_for_book(999)
    with pytest.raises(NotFoundError):
        manager.loans_for_borrower(999)


def test_full_loan_scenario(manager, db, make_book, make_borrower):
    """
    Book(total=2, available=2) -> request -> activate -> late return -> cancel.

    Verifies availability, loan state and the single penalty at each step.
    """
    book = make_book(total_copies=2)
    borrower = make_borrower()

    loan = manager.request_loan(book.id, borrower.id, START, DUE)
    manager.activate_loan(loan.id)
    assert book.available_copies == 1
    assert manager.get_loan(loan.id).status == LoanStatus.ACTIVE

    manager.register_return(loan.id, DUE + timedelta(days=3))
    assert book.available_copies == 2
    assert manager.get_loan(loan.id).status == LoanStatus.RETURNED
    penalties = PenaltyRepository(db).list_by_loan(loan.id)
    assert len(penalties) == 1
    assert penalties[0].amount == POLICY.amount_for(3)

    with pytest.raises(InvalidStateError):
        manager.cancel_loan(loan.id, "too late")
    assert book.available_copies == 2


@pytest.fixture
def penalty_service(db):
    return PenaltyService(db, clock=lambda: NOW)


def test_issue_penalty_checks_references(penalty_service, make_borrower):
    borrower = make_borrower()
    with pytest.raises(NotFoundError):
        penalty_service.issue(999, Decimal("5"), NOW, NOW + timedelta(days=1), "damage")
    with pytest.raises(NotFoundError):
        penalty_service.issue(
            borrower.id, Decimal("5"), NOW, NOW + timedelta(days=1), "damage", loan_id=999
        )

    penalty = penalty_service.issue(
        borrower.id, Decimal("5"), NOW, NOW + timedelta(days=1), "damaged cover"
    )
    assert penalty.id is not None
    assert penalty.loan_id is None


def test_active_penalties_expire_on_read(db, make_borrower):
    borrower = make_borrower()
    issuing = PenaltyService(db, clock=lambda: NOW)
    short = issuing.issue(borrower.id, Decimal("3"), NOW, NOW + timedelta(days=1), "short")
    lasting = issuing.issue(borrower.id, Decimal("3"), NOW, NOW + timedelta(days=30), "long")

    later = PenaltyService(db, clock=lambda: NOW + timedelta(days=2))
    active = later.active_for_borrower(borrower.id)

    assert [penalty.id for penalty in active] == [lasting.id]
    assert PenaltyRepository(db).get_by_id(short.id).is_active is False


def test_close_penalty(penalty_service, make_borrower):
    borrower = make_borrower()
    penalty = penalty_service.issue(
        borrower.id, Decimal("8"), NOW - timedelta(days=1), NOW + timedelta(days=9), "late"
    )

    with pytest.raises(InvalidArgumentError):
        penalty_service.close(penalty.id, " ")

    closed = penalty_service.close(penalty.id, "Waived by the librarian")
    assert closed.is_active is False
    assert closed.ends_at == NOW
    assert closed.closure_reason == "Waived by the librarian"

    with pytest.raises(InvalidStateError):
        penalty_service.close(penalty.id, "again")
    with pytest.raises(NotFoundError):
        penalty_service.close(999, "missing")


def test_penalty_with_future_window_is_not_in_force_yet(db, penalty_service, make_borrower):
    """
    Verifies:
    - a penalty whose window has not opened is neither listed nor counted
    - it cannot be closed early, and its window stays intact
    - once the window opens it is listed like any other
    """
    borrower = make_borrower()
    penalty = penalty_service.issue(
        borrower.id, Decimal("6"), NOW + timedelta(days=10), NOW + timedelta(days=20), "damage"
    )

    assert penalty_service.active_for_borrower(borrower.id) == []
    assert PenaltyRepository(db).count_active(NOW) == 0

    with pytest.raises(InvalidStateError):
        penalty_service.close(penalty.id, "waived")
    stored = PenaltyRepository(db).get_by_id(penalty.id)
    assert stored.is_active is True
    assert stored.starts_at < stored.ends_at

    opened = PenaltyService(db, clock=lambda: NOW + timedelta(days=11))
    assert [p.id for p in opened.active_for_borrower(borrower.id)] == [penalty.id]
    assert PenaltyRepository(db).count_active(NOW + timedelta(days=11)) == 1


def test_close_expired_penalty_saves_the_expiry(session_factory, penalty_service, make_borrower):
    borrower = make_borrower()
    penalty = penalty_service.issue(
        borrower.id, Decimal("4"), NOW - timedelta(days=5), NOW - timedelta(days=1), "late"
    )

    with pytest.raises(InvalidStateError):
        penalty_service.close(penalty.id, "waived")

    check = session_factory()
    try:
        stored = check.get(Penalty, penalty.id)
        assert stored.is_active is False
        assert stored.closure_reason is None
        assert stored.ends_at == NOW - timedelta(days=1)
    finally:
        check.close()
