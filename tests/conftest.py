from __future__ import annotations

import os
import tempfile
from typing import Any, Callable, Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from budgetbook import models
from budgetbook.core.database import Base
from budgetbook.seed import ensure_system_categories
from budgetbook.services import AccountService


@pytest.fixture(scope="session")
def test_db_url() -> Generator[str, Any, Any]:
    # Temporary SQLite file so the developer database is never touched
    fd, path = tempfile.mkstemp(prefix="budgetbook_test_", suffix=".sqlite3")
    os.close(fd)
    url = f"sqlite:///{path}"
    yield url
    try:
        os.remove(path)
    except OSError:
        pass


@pytest.fixture(scope="session")
def engine(test_db_url: str):
    eng = create_engine(test_db_url, connect_args={"check_same_thread": False})
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture(scope="function")
def db_session(engine) -> Generator[Any, Any, Any]:
    TestingSessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    session = TestingSessionLocal()
    # Every test starts from a demo user plus the shared system categories
    user = models.User(email="demo@example.com", is_active=True)
    session.add(user)
    session.flush()
    session.add(models.UserProfile(user_id=user.id, display_name="Demo", base_currency="USD"))
    ensure_system_categories(session)
    session.commit()

    try:
        yield session
    finally:
        session.close()
        with engine.begin() as conn:
            if engine.dialect.name == "sqlite":
                conn.exec_driver_sql("PRAGMA foreign_keys=OFF")
            for tbl in reversed(Base.metadata.sorted_tables):
                conn.execute(tbl.delete())
            if engine.dialect.name == "sqlite":
                conn.exec_driver_sql("PRAGMA foreign_keys=ON")


@pytest.fixture()
def user_id(db_session) -> int:
    return db_session.query(models.User).filter(models.User.email == "demo@example.com").one().id


@pytest.fixture()
def other_user_id(db_session) -> int:
    other = models.User(email="other@example.com", is_active=True)
    db_session.add(other)
    db_session.commit()
    return other.id


@pytest.fixture()
def system_category(db_session) -> Callable[..., models.Category]:
    def _get(name: str) -> models.Category:
        return (
            db_session.query(models.Category)
            .filter(models.Category.user_id.is_(None), models.Category.name == name)
            .one()
        )

    return _get


@pytest.fixture()
def make_account(db_session, user_id) -> Callable[..., models.Account]:
    def _make(name: str = "Checking", type_: str = "checking", balance: Any = "0", **extra: Any) -> models.Account:
        payload = {"name": name, "type": type_, "initial_balance": balance, **extra}
        return AccountService(db_session).create(user_id, payload)

    return _make
