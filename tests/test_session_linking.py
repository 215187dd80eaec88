"""Tests for attaching anonymous flow sessions to signed-in users."""

import pytest
from conftest import make_funnel
from fastapi import HTTPException

from app.domain.funnels.repository import SqlSessionBackend
from app.domain.funnels.schemas import CompleteFunnelRequest, SessionCreateRequest
from app.domain.funnels.service import FunnelService
from app.models import ProgramEnrollment


class CountingBackend(SqlSessionBackend):
    def __init__(self, db):
        super().__init__(db)
        self.link_calls = 0

    def link_session(self, session_id, user_id):
        self.link_calls += 1
        return super().link_session(session_id, user_id)


@pytest.fixture
def backend(db):
    return CountingBackend(db)


@pytest.fixture
def service(db, backend, access_grant):
    return FunnelService(db, backend=backend, access_grant=access_grant)


@pytest.fixture
def session_id(db, program, service):
    funnel = make_funnel(db, program, [{"type": "signup"}, {"type": "success"}])
    return service.start_session(SessionCreateRequest(funnelId=funnel.id)).sessionId


def test_link_attaches_user(service, backend, session_id, client_user):
    state = service.link_session(session_id, client_user)

    assert state.linked is True
    assert backend.get_session(session_id).session.linkedUserId == client_user.id
    assert backend.link_calls == 1


def test_relinking_same_user_is_a_noop(service, backend, session_id, client_user):
    service.link_session(session_id, client_user)
    first_linked_at = backend.get_session(session_id).session.linkedAt

    service.link_session(session_id, client_user)

    assert backend.link_calls == 1
    assert backend.get_session(session_id).session.linkedAt == first_linked_at


def test_linking_to_another_user_is_forbidden(
    service, backend, session_id, client_user, other_user
):
    service.link_session(session_id, client_user)

    with pytest.raises(HTTPException) as exc:
        service.link_session(session_id, other_user)

    assert exc.value.status_code == 403
    assert backend.get_session(session_id).session.linkedUserId == client_user.id


def test_unknown_session_cannot_be_linked(service, client_user):
    with pytest.raises(HTTPException) as exc:
        service.link_session("flow_nope", client_user)
    assert exc.value.status_code == 404


class TestExplicitCompletion:
    @pytest.mark.asyncio
    async def test_requires_linked_session(self, service, session_id, client_user):
        with pytest.raises(HTTPException) as exc:
            await service.complete(CompleteFunnelRequest(flowSessionId=session_id), client_user)
        assert exc.value.status_code == 400

    @pytest.mark.asyncio
    async def test_rejects_other_owner(self, service, session_id, client_user, other_user):
        service.link_session(session_id, client_user)

        with pytest.raises(HTTPException) as exc:
            await service.complete(CompleteFunnelRequest(flowSessionId=session_id), other_user)
        assert exc.value.status_code == 403

    @pytest.mark.asyncio
    async def test_rejects_unfinished_funnel(self, service, session_id, client_user):
        service.link_session(session_id, client_user)

        with pytest.raises(HTTPException) as exc:
            await service.complete(CompleteFunnelRequest(flowSessionId=session_id), client_user)
        assert exc.value.status_code == 409

    @pytest.mark.asyncio
    async def test_completes_with_payment_reference(
        self, service, backend, session_id, client_user, access_grant
    ):
        service.link_session(session_id, client_user)
        backend.update_session(session_id, current_step_index=2)

        result = await service.complete(
            CompleteFunnelRequest(
                flowSessionId=session_id,
                stripePaymentIntentId="pi_987",
                redirectUrl="/dashboard",
            ),
            client_user,
        )

        assert result.accessGranted is True
        assert result.redirectUrl == "/dashboard"
        product, record = access_grant.calls[0]
        assert product.payment == {"stripePaymentIntentId": "pi_987"}
        assert record.linkedUserId == client_user.id

        again = await service.complete(
            CompleteFunnelRequest(flowSessionId=session_id), client_user
        )
        assert again.alreadyCompleted is True
        assert len(access_grant.calls) == 1


class TestSignInAfterFinishing:
    """Visitor reaches the end anonymously, then signs up and completes"""

    @pytest.fixture
    def real_service(self, db):
        return FunnelService(db)

    @pytest.fixture
    def finished_anonymously(self, db, program, real_service):
        funnel = make_funnel(db, program, [{"type": "question"}, {"type": "info"}])
        return real_service.start_session(SessionCreateRequest(funnelId=funnel.id)).sessionId

    @pytest.mark.asyncio
    async def test_anonymous_finish_leaves_session_open(
        self, db, real_service, finished_anonymously
    ):
        session_id = finished_anonymously
        await real_service.complete_step(session_id, {"goal": "Ship it"})

        result = await real_service.complete_step(session_id, {})

        assert result.session.terminal is True
        assert result.session.completed is False
        assert result.completion.completed is False
        assert result.completion.requiresSignIn is True
        assert result.completion.clearSession is False
        assert db.query(ProgramEnrollment).count() == 0

    @pytest.mark.asyncio
    async def test_link_then_complete_enrolls_once(
        self, db, real_service, finished_anonymously, client_user
    ):
        session_id = finished_anonymously
        await real_service.complete_step(session_id, {"goal": "Ship it"})
        await real_service.complete_step(session_id, {})

        real_service.link_session(session_id, client_user)
        result = await real_service.complete(
            CompleteFunnelRequest(flowSessionId=session_id), client_user
        )

        assert result.completed is True
        assert result.alreadyCompleted is False
        assert result.accessGranted is True
        enrollment = db.query(ProgramEnrollment).one()
        assert enrollment.user_id == client_user.id
        assert result.enrollmentId == enrollment.id

        again = await real_service.complete(
            CompleteFunnelRequest(flowSessionId=session_id), client_user
        )
        assert again.alreadyCompleted is True
        assert again.enrollmentId == enrollment.id
        assert db.query(ProgramEnrollment).count() == 1
