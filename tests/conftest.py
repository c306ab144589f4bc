from datetime import datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from lending.database import Base
from lending.models import Book, Borrower


NOW = datetime(2026, 3, 2, 12, 0, 0)


@pytest.fixture
def engine(tmp_path):
    """
    A throwaway SQLite database file per test.

    A file (rather than :memory:) lets several sessions open their own
    connections to the same data, which the concurrency tests rely on.
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'lending.db'}", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_book(db):
    """Factory fixture: persist a book and return it."""

    def _make_book(total_copies=2, title="Domain-Driven Design", author="Eric Evans"):
        book = Book.register(title, author, total_copies, now=NOW)
        db.add(book)
        db.commit()
        return book

    return _make_book


@pytest.fixture
def make_borrower(db):
    """Factory fixture: persist a borrower and return it."""
    counter = {"n": 0}

    def _make_borrower(first_name="Ana", last_name="Perez"):
        counter["n"] += 1
        borrower = Borrower.register(
            first_name, last_name, f"reader{counter['n']}@example.com", now=NOW
        )
        db.add(borrower)
        db.commit()
        return borrower

    return _make_borrower
