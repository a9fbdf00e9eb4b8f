import itertools
import os

# settings are read at import time, so the environment must be set first
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ENV"] = "dev"
os.environ["SHARED_PASSWORD"] = "shared-pass"
os.environ["LOG_LEVEL"] = "WARNING"

import pytest
from sqlmodel import Session

from iup_tracker import models, repositories, services
from iup_tracker.database import create_db_and_tables, drop_db_and_tables, engine
from iup_tracker.main import _login_limiter

SHARED_PASSWORD = "shared-pass"
ADMIN_PASSWORD = "admin-pass"

_counter = itertools.count(1)


@pytest.fixture(autouse=True)
def reset_db():
    """Give every test an empty in-memory database."""
    drop_db_and_tables()
    create_db_and_tables()
    _login_limiter.reset()
    yield


@pytest.fixture
def session():
    with Session(engine) as s:
        yield s


@pytest.fixture
def make_user(session):
    """Factory creating a persisted user of the given role."""
    def _make(role, lastname=None, firstname="Test", **fields):
        n = next(_counter)
        role = models.Role(role)
        if role in models.STUDENT_ROLES:
            fields.setdefault("education_program", models.EducationProgram.P_7M01503)
        if role == models.Role.LEADER:
            fields.setdefault("degree", ["phd"])
        if role == models.Role.ADMIN:
            fields.setdefault("password_hash", services.PWD_CTX.hash(ADMIN_PASSWORD))
        user = models.User(
            lastname=lastname or f"User{n:03d}",
            firstname=firstname,
            role=role,
            whatsapp="+77010000000",
            email=f"user{n}@example.com",
            language=fields.pop("language", models.Language.RUSSIAN),
            username=f"user{n}",
            **fields,
        )
        return repositories.UserRepository(session).create(user)
    return _make


@pytest.fixture
def link(session):
    """Assign a supervisor to a student; returns the student's plan, if any."""
    def _link(student, supervisor):
        return services.RelationshipService(session).set_supervisor(student, supervisor.id)
    return _link


@pytest.fixture
def auth_headers(session):
    def _headers(user):
        token = services.AuthService(session).issue_token(user)
        return {"Authorization": f"Bearer {token}"}
    return _headers
