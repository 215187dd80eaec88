"""Tests for program enrollment granted when a funnel completes."""

from datetime import timedelta

import pytest
from conftest import make_cohort, make_funnel, make_invite

from app.domain.funnels.access import ProgramEnrollmentGrant, extract_profile_data
from app.domain.funnels.backend import ProductDescriptor
from app.domain.funnels.repository import SqlSessionBackend
from app.models import ProgramEnrollment, ProgramInvite, utcnow


@pytest.fixture
def backend(db):
    return SqlSessionBackend(db)


@pytest.fixture
def grant(db):
    return ProgramEnrollmentGrant(db)


@pytest.fixture
def funnel(db, program):
    return make_funnel(db, program, [{"type": "goal_setting"}, {"type": "success"}])


def linked_session(backend, funnel, user, invite_id=None, data=None):
    session_id = backend.create_session(
        funnel_id=funnel.id,
        program_id=funnel.program_id,
        organization_id=funnel.organization_id,
        invite_id=invite_id,
    )
    if data:
        backend.update_session(session_id, data=data)
    return backend.link_session(session_id, user.id)


def product_for(funnel, payment=None):
    return ProductDescriptor(
        program_id=funnel.program_id,
        organization_id=funnel.organization_id,
        funnel_id=funnel.id,
        payment=payment or {},
    )


@pytest.mark.asyncio
async def test_unlinked_session_is_not_granted(db, backend, grant, funnel):
    session_id = backend.create_session(
        funnel_id=funnel.id, program_id=funnel.program_id, organization_id=funnel.organization_id
    )
    record = backend.get_session(session_id).session

    result = await grant.grant_access(product_for(funnel), record)

    assert result.success is False
    assert result.deferred is True
    assert db.query(ProgramEnrollment).count() == 0


@pytest.mark.asyncio
async def test_enrolls_user_and_copies_profile(db, backend, grant, funnel, program, client_user):
    record = linked_session(
        backend,
        funnel,
        client_user,
        data={"goal": "Launch my studio", "businessStage": "idea", "favoriteColor": "teal"},
    )

    result = await grant.grant_access(
        product_for(funnel, {"stripePaymentIntentId": "pi_1"}), record
    )

    assert result.success is True
    enrollment = db.query(ProgramEnrollment).filter(ProgramEnrollment.id == result.enrollment_id).one()
    assert enrollment.status == "active"
    assert enrollment.amount_paid == program.price_in_cents
    assert enrollment.flow_session_id == record.id
    assert enrollment.stripe_payment_intent_id == "pi_1"
    assert enrollment.paid_at is not None

    db.refresh(client_user)
    assert client_user.current_program_id == program.id
    assert client_user.current_enrollment_id == enrollment.id
    assert client_user.profile_data == {"goal": "Launch my studio", "businessStage": "idea"}


@pytest.mark.asyncio
async def test_existing_enrollment_is_reused(db, backend, grant, funnel, client_user):
    first = await grant.grant_access(product_for(funnel), linked_session(backend, funnel, client_user))
    second = await grant.grant_access(product_for(funnel), linked_session(backend, funnel, client_user))

    assert second.success is True
    assert second.enrollment_id == first.enrollment_id
    assert db.query(ProgramEnrollment).count() == 1


@pytest.mark.asyncio
async def test_prepaid_invite_is_consumed(db, backend, grant, funnel, program, client_user):
    cohort = make_cohort(db, program, start_date=utcnow() + timedelta(days=14))
    make_invite(db, funnel, payment_status="pre_paid", max_uses=1, target_cohort_id=cohort.id)
    record = linked_session(backend, funnel, client_user, invite_id="ABC123")

    result = await grant.grant_access(product_for(funnel), record)

    enrollment = db.query(ProgramEnrollment).filter(ProgramEnrollment.id == result.enrollment_id).one()
    assert enrollment.amount_paid == 0
    assert enrollment.cohort_id == cohort.id
    assert enrollment.status == "upcoming"

    invite = db.query(ProgramInvite).filter(ProgramInvite.id == "ABC123").one()
    assert invite.use_count == 1
    assert invite.used_by == client_user.id
    assert invite.used_at is not None


@pytest.mark.asyncio
async def test_group_program_joins_earliest_open_cohort(db, backend, grant, funnel, program, client_user):
    program.program_type = "group"
    db.commit()
    later = make_cohort(db, program, name="Autumn", start_date=utcnow() + timedelta(days=90))
    sooner = make_cohort(db, program, name="Summer", start_date=utcnow() + timedelta(days=30))
    make_cohort(
        db, program, name="Closed", start_date=utcnow() + timedelta(days=1), enrollment_open=False
    )

    result = await grant.grant_access(product_for(funnel), linked_session(backend, funnel, client_user))

    enrollment = db.query(ProgramEnrollment).filter(ProgramEnrollment.id == result.enrollment_id).one()
    assert enrollment.cohort_id == sooner.id
    assert enrollment.status == "upcoming"
    db.refresh(sooner)
    db.refresh(later)
    assert sooner.current_enrollment == 1
    assert later.current_enrollment == 0


def test_extract_profile_data_drops_empty_and_unknown_fields():
    data = {"goal": "Run a marathon", "identity": "", "obstacles": ["time"], "misc": 1}
    assert extract_profile_data(data) == {"goal": "Run a marathon", "obstacles": ["time"]}
