"""
Shared fixtures: in-memory SQLite database, funnel factories and an API
client with auth, database and rate limiting overridden.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ.pop("RESEND_API_KEY", None)

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app import models_funnel  # noqa: F401
from app.database import Base
from app.domain.funnels.backend import AccessGrant, GrantResult
from app.models import Organization, Program, ProgramCohort, ProgramInvite, User
from app.models_funnel import Funnel, FunnelStep


@pytest.fixture
def db():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    TestingSession = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSession()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def org(db):
    organization = Organization(name="Peak Coaching", slug="peak", plan="pro")
    db.add(organization)
    db.commit()
    db.refresh(organization)
    return organization


@pytest.fixture
def coach(db, org):
    user = User(
        firebase_uid="coach-uid",
        email="coach@peak.example",
        full_name="Casey Coach",
        organization_id=org.id,
        is_coach=True,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def client_user(db):
    user = User(firebase_uid="client-uid", email="jordan@example.com", full_name="Jordan")
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def other_user(db):
    user = User(firebase_uid="other-uid", email="sam@example.com", full_name="Sam")
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def program(db, org):
    prog = Program(
        organization_id=org.id,
        name="90 Day Reset",
        slug="reset",
        program_type="individual",
        price_in_cents=49900,
    )
    db.add(prog)
    db.commit()
    db.refresh(prog)
    return prog


def make_funnel(db, program, steps, slug="join", **kwargs):
    """Funnel with the given steps: dicts of type, config and show_if"""
    funnel = Funnel(
        organization_id=program.organization_id,
        program_id=program.id,
        name=kwargs.pop("name", "Join"),
        slug=slug,
        step_count=len(steps),
        **kwargs,
    )
    for order, step in enumerate(steps):
        funnel.steps.append(
            FunnelStep(
                order=order,
                type=step["type"],
                name=step.get("name"),
                config=step.get("config", {}),
                show_if=step.get("show_if"),
            )
        )
    db.add(funnel)
    db.commit()
    db.refresh(funnel)
    return funnel


def make_invite(db, funnel, code="ABC123", **kwargs):
    invite = ProgramInvite(
        id=code,
        funnel_id=funnel.id,
        program_id=funnel.program_id,
        organization_id=funnel.organization_id,
        **kwargs,
    )
    db.add(invite)
    db.commit()
    db.refresh(invite)
    return invite


def make_cohort(db, program, **kwargs):
    cohort = ProgramCohort(program_id=program.id, name=kwargs.pop("name", "Spring"), **kwargs)
    db.add(cohort)
    db.commit()
    db.refresh(cohort)
    return cohort


class RecordingAccessGrant(AccessGrant):
    """Counts grants and returns a canned result"""

    def __init__(self, result=None, error=None):
        self.calls = []
        self.result = result or GrantResult(success=True, enrollment_id=42)
        self.error = error

    async def grant_access(self, product, session):
        self.calls.append((product, session))
        if self.error:
            raise self.error
        return self.result


@pytest.fixture
def access_grant():
    return RecordingAccessGrant()


@pytest.fixture
def api(db):
    """TestClient plus a mutable current user"""
    from app.auth import get_current_user
    from app.database import get_db
    from app.domain.funnels.router import rate_limit_session_per_ip
    from app.main import app

    state = {"user": None}

    def _current_user():
        from fastapi import HTTPException

        if state["user"] is None:
            raise HTTPException(status_code=401, detail="Not authenticated")
        return state["user"]

    async def _no_limit():
        return None

    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_current_user] = _current_user
    app.dependency_overrides[rate_limit_session_per_ip] = _no_limit

    test_client = TestClient(app)
    test_client.state = state
    try:
        yield test_client
    finally:
        app.dependency_overrides.clear()
