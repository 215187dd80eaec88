"""Funnel service - Business logic for running and authoring funnels"""

import logging
import secrets
import string
from typing import Any, Optional

from fastapi import HTTPException
from sqlalchemy.orm import Session

from ...config import DEFAULT_COMPLETION_REDIRECT
from ...models import Organization, ProgramInvite, User, utcnow
from ...models_funnel import Funnel
from ...plan_limits import can_create_funnel
from ...utils.sanitization import sanitize_string
from . import sequencer
from .access import ProgramEnrollmentGrant
from .backend import (
    AccessGrant,
    GrantResult,
    LookupStatus,
    ProductDescriptor,
    SessionBackend,
)
from .repository import FunnelRepository, SqlSessionBackend, to_step_definitions
from .schemas import (
    PAYMENT_WAIVED_STATUSES,
    CompleteFunnelRequest,
    CompletionResponse,
    FunnelCreate,
    FunnelStepDefinition,
    InviteCreate,
    SessionCreateRequest,
    SessionRecord,
    SessionStateResponse,
    SessionUpdateRequest,
    StepAdvanceResponse,
    StepsReplaceRequest,
    StepType,
    StepView,
)

logger = logging.getLogger(__name__)

PAYMENT_REFERENCE_FIELDS = ("stripePaymentIntentId", "stripeCheckoutSessionId", "stripeSubscriptionId")


def success_config(steps: list[FunnelStepDefinition]) -> dict:
    """Config of the funnel's success step, if it has one"""
    for step in steps:
        if step.type == StepType.SUCCESS.value:
            return step.config or {}
    return {}


def skips_success_page(step: FunnelStepDefinition) -> bool:
    return step.type == StepType.SUCCESS.value and bool((step.config or {}).get("skipSuccessPage"))


def validate_invite(invite: Optional[ProgramInvite], funnel: Funnel) -> ProgramInvite:
    """Raise unless the invite can still be used on this funnel"""
    if not invite or invite.funnel_id != funnel.id:
        raise HTTPException(status_code=404, detail="Invite not found")
    if invite.expires_at and invite.expires_at < utcnow():
        raise HTTPException(status_code=410, detail="Invite has expired")
    if invite.max_uses is not None and (invite.use_count or 0) >= invite.max_uses:
        raise HTTPException(status_code=410, detail="Invite has already been used")
    return invite


class FunnelService:
    """Runs visitors through funnels from first step to enrollment"""

    def __init__(
        self,
        db: Session,
        backend: Optional[SessionBackend] = None,
        access_grant: Optional[AccessGrant] = None,
    ):
        self.db = db
        self.repo = FunnelRepository()
        self.backend = backend or SqlSessionBackend(db)
        self.access_grant = access_grant or ProgramEnrollmentGrant(db)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _get_funnel(self, funnel_id: int) -> Funnel:
        funnel = self.repo.get_funnel_by_id(self.db, funnel_id)
        if not funnel:
            raise HTTPException(status_code=404, detail="Funnel not found")
        return funnel

    def _resolve_funnel(self, data: SessionCreateRequest) -> Funnel:
        if data.funnelId is not None:
            return self._get_funnel(data.funnelId)
        if data.funnelSlug:
            funnel = self.repo.get_funnel_by_slug(self.db, data.funnelSlug, data.programSlug)
            if funnel:
                return funnel
            raise HTTPException(status_code=404, detail="Funnel not found")
        raise HTTPException(status_code=400, detail="funnelId or funnelSlug is required")

    def _get_record(self, session_id: str) -> SessionRecord:
        lookup = self.backend.get_session(session_id)
        if lookup.status == LookupStatus.NOT_FOUND:
            raise HTTPException(status_code=404, detail="Flow session not found")
        if lookup.status == LookupStatus.EXPIRED:
            raise HTTPException(
                status_code=410, detail={"message": "Flow session has expired", "expired": True}
            )
        return lookup.session

    def _steps(self, funnel_id: int) -> list[FunnelStepDefinition]:
        return to_step_definitions(self._get_funnel(funnel_id).steps)

    def _skip_payment(self, record: SessionRecord) -> bool:
        if not record.inviteId:
            return False
        invite = self.repo.get_invite(self.db, record.inviteId)
        return bool(invite and invite.payment_status in PAYMENT_WAIVED_STATUSES)

    def _state(
        self, record: SessionRecord, steps: list[FunnelStepDefinition]
    ) -> SessionStateResponse:
        position = sequencer.FunnelPosition.at(record.currentStepIndex, steps)
        step_view = None
        if not position.terminal:
            step = steps[position.index]
            step_view = StepView(
                index=step.index,
                type=step.type,
                name=step.name,
                config=step.config,
                known=step.known,
            )
            if not step.known:
                logger.warning(
                    f"⚠️ Funnel {record.funnelId} step {step.index} has unknown type '{step.type}'"
                )

        return SessionStateResponse(
            sessionId=record.id,
            currentStepIndex=record.currentStepIndex,
            completedStepIndex=record.completedStepIndex,
            totalSteps=len(steps),
            terminal=position.terminal,
            data=record.data,
            step=step_view,
            linked=record.linkedUserId is not None,
            completed=record.completedAt is not None,
            noSteps=len(steps) == 0,
        )

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def start_session(
        self, data: SessionCreateRequest, origin_domain: Optional[str] = None
    ) -> SessionStateResponse:
        """Create a flow session positioned on the funnel's first visible step"""
        funnel = self._resolve_funnel(data)
        if not funnel.is_active:
            raise HTTPException(status_code=403, detail="This funnel is not accepting new users")

        invite = None
        if data.inviteCode:
            invite = validate_invite(self.repo.get_invite(self.db, data.inviteCode), funnel)
        elif funnel.access_type == "invite_only":
            raise HTTPException(status_code=403, detail="An invite code is required for this funnel")

        steps = to_step_definitions(funnel.steps)
        skip_payment = bool(invite and invite.payment_status in PAYMENT_WAIVED_STATUSES)
        entry_index = sequencer.first_index(steps, {}, skip_payment)

        session_id = self.backend.create_session(
            funnel_id=funnel.id,
            program_id=funnel.program_id,
            organization_id=funnel.organization_id,
            current_step_index=entry_index,
            invite_id=invite.id if invite else None,
            origin_domain=origin_domain,
        )
        if not steps:
            logger.warning(f"⚠️ Funnel {funnel.id} has no steps configured")

        return self._state(self._get_record(session_id), steps)

    def get_session_state(self, session_id: str) -> SessionStateResponse:
        record = self._get_record(session_id)
        return self._state(record, self._steps(record.funnelId))

    def update_session(self, session_id: str, data: SessionUpdateRequest) -> SessionStateResponse:
        """Raw sync of index/data from the client"""
        record = self._get_record(session_id)
        steps = self._steps(record.funnelId)

        if data.currentStepIndex is not None and not 0 <= data.currentStepIndex <= len(steps):
            raise HTTPException(status_code=400, detail="Step index out of range")

        updated = self.backend.update_session(
            session_id,
            current_step_index=data.currentStepIndex,
            completed_step_index=data.completedStepIndex,
            data=data.data,
        )
        return self._state(updated, steps)

    async def complete_step(
        self,
        session_id: str,
        step_data: dict[str, Any],
        redirect_url: Optional[str] = None,
    ) -> StepAdvanceResponse:
        """Record the current step's answers and move to the next visible step"""
        record = self._get_record(session_id)
        steps = self._steps(record.funnelId)

        if record.completedAt is not None:
            completion = self._already_completed(record, steps, redirect_url)
            return StepAdvanceResponse(session=self._state(record, steps), completion=completion)

        current = record.currentStepIndex
        if sequencer.is_terminal(current, steps):
            completion = await self._complete(record, steps, redirect_url)
            return StepAdvanceResponse(
                session=self._state(self._get_record(session_id), steps), completion=completion
            )

        merged = {**record.data, **step_data}
        self.backend.update_session(session_id, completed_step_index=current, data=step_data)

        next_index = sequencer.advance(current, steps, merged, self._skip_payment(record))
        skip_success = not sequencer.is_terminal(next_index, steps) and skips_success_page(
            steps[next_index]
        )

        if sequencer.is_terminal(next_index, steps) or skip_success:
            record = self.backend.update_session(session_id, current_step_index=len(steps))
            if skip_success and not redirect_url:
                redirect_url = steps[next_index].config.get("skipSuccessRedirect")
            completion = await self._complete(record, steps, redirect_url)
            return StepAdvanceResponse(
                session=self._state(self._get_record(session_id), steps), completion=completion
            )

        record = self.backend.update_session(session_id, current_step_index=next_index)
        return StepAdvanceResponse(session=self._state(record, steps))

    def go_back(self, session_id: str) -> SessionStateResponse:
        record = self._get_record(session_id)
        if record.completedAt is not None:
            raise HTTPException(status_code=409, detail="Flow session already completed")

        steps = self._steps(record.funnelId)
        updated = self.backend.update_session(
            session_id, current_step_index=sequencer.retreat(record.currentStepIndex)
        )
        return self._state(updated, steps)

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    def _redirect_for(self, steps: list[FunnelStepDefinition], redirect_url: Optional[str]) -> str:
        return (
            redirect_url
            or success_config(steps).get("skipSuccessRedirect")
            or DEFAULT_COMPLETION_REDIRECT
        )

    def _already_completed(
        self,
        record: SessionRecord,
        steps: list[FunnelStepDefinition],
        redirect_url: Optional[str],
    ) -> CompletionResponse:
        enrollment = None
        if record.linkedUserId is not None:
            enrollment = self.repo.get_active_enrollment(
                self.db, record.linkedUserId, record.programId
            )
        return CompletionResponse(
            sessionId=record.id,
            alreadyCompleted=True,
            accessGranted=enrollment is not None,
            redirectUrl=self._redirect_for(steps, redirect_url),
            enrollmentId=enrollment.id if enrollment else None,
        )

    async def _complete(
        self,
        record: SessionRecord,
        steps: list[FunnelStepDefinition],
        redirect_url: Optional[str] = None,
    ) -> CompletionResponse:
        """Grant access, close the session and tell the client where to go. Runs once per session."""
        if record.completedAt is not None:
            return self._already_completed(record, steps, redirect_url)

        product = ProductDescriptor(
            program_id=record.programId,
            organization_id=record.organizationId,
            funnel_id=record.funnelId,
            payment={k: record.data[k] for k in PAYMENT_REFERENCE_FIELDS if record.data.get(k)},
        )

        try:
            result = await self.access_grant.grant_access(product, record)
        except Exception as e:
            logger.error(f"❌ Access grant failed for session {record.id} (non-fatal): {e}")
            result = GrantResult(success=False, reason=str(e))

        if result.deferred:
            # Session stays terminal but open so the signed-in owner can finish it
            logger.info(f"⏸️ Completion of session {record.id} deferred: {result.reason}")
            return CompletionResponse(
                sessionId=record.id,
                completed=False,
                clearSession=False,
                redirectUrl=self._redirect_for(steps, redirect_url),
                requiresSignIn=True,
            )

        if not result.success:
            logger.error(
                f"❌ Access not granted for session {record.id} (non-fatal): {result.reason}"
            )

        self.backend.mark_completed(record.id, len(steps) - 1)
        logger.info(f"🏁 Flow session {record.id} completed funnel {record.funnelId}")

        return CompletionResponse(
            sessionId=record.id,
            accessGranted=result.success,
            redirectUrl=self._redirect_for(steps, redirect_url),
            enrollmentId=result.enrollment_id,
        )

    async def complete(self, data: CompleteFunnelRequest, user: User) -> CompletionResponse:
        """Explicit completion by the signed-in owner of a finished session"""
        record = self._get_record(data.flowSessionId)

        if record.linkedUserId is None:
            raise HTTPException(
                status_code=400, detail="Session not linked to user. Please sign up again."
            )
        if record.linkedUserId != user.id:
            raise HTTPException(status_code=403, detail="This flow session does not belong to you")

        steps = self._steps(record.funnelId)
        if record.completedAt is not None:
            return self._already_completed(record, steps, data.redirectUrl)

        if not sequencer.is_terminal(record.currentStepIndex, steps):
            raise HTTPException(status_code=409, detail="Funnel still has steps to complete")

        payment = {
            "stripePaymentIntentId": data.stripePaymentIntentId,
            "stripeCheckoutSessionId": data.stripeCheckoutSessionId,
        }
        payment = {k: v for k, v in payment.items() if v}
        if payment:
            record = self.backend.update_session(record.id, data=payment)

        return await self._complete(record, steps, data.redirectUrl)

    # ------------------------------------------------------------------
    # Linking
    # ------------------------------------------------------------------

    def link_session(self, session_id: str, user: User) -> SessionStateResponse:
        """Attach an anonymous session to the signed-in user. Once only, no unlinking."""
        record = self._get_record(session_id)
        steps = self._steps(record.funnelId)

        if record.linkedUserId == user.id:
            logger.debug(f"Session {session_id} already linked to user {user.id}")
            return self._state(record, steps)
        if record.linkedUserId is not None:
            logger.warning(
                f"⚠️ User {user.id} tried to link session {session_id} owned by another user"
            )
            raise HTTPException(status_code=403, detail="This flow session does not belong to you")

        linked = self.backend.link_session(session_id, user.id)
        logger.info(f"🔗 Flow session {session_id} linked to user {user.id}")
        return self._state(linked, steps)


class CoachFunnelService:
    """Funnel authoring for coaches"""

    def __init__(self, db: Session):
        self.db = db
        self.repo = FunnelRepository()

    def _require_org(self, user: User) -> Organization:
        if not user.is_coach or not user.organization_id:
            raise HTTPException(status_code=403, detail="Coach access required")
        return user.organization

    def list_funnels(self, user: User, program_id: Optional[int] = None) -> list[Funnel]:
        org = self._require_org(user)
        return self.repo.list_funnels(self.db, org.id, program_id)

    def get_funnel(self, funnel_id: int, user: User) -> Funnel:
        org = self._require_org(user)
        funnel = self.repo.get_funnel_for_org(self.db, funnel_id, org.id)
        if not funnel:
            raise HTTPException(status_code=404, detail="Funnel not found")
        return funnel

    def create_funnel(self, data: FunnelCreate, user: User) -> Funnel:
        org = self._require_org(user)

        can_create, error_message = can_create_funnel(org, self.db)
        if not can_create:
            logger.warning(f"⚠️ Organization {org.id} reached funnel limit: {error_message}")
            raise HTTPException(status_code=403, detail=error_message)

        program = self.repo.get_program(self.db, data.programId)
        if not program or program.organization_id != org.id:
            raise HTTPException(status_code=404, detail="Program not found")

        if self.repo.slug_taken(self.db, program.id, data.slug):
            raise HTTPException(
                status_code=409, detail="A funnel with this slug already exists for this program"
            )

        logger.info(f"📥 Creating funnel '{data.slug}' for organization {org.id}")
        return self.repo.create_funnel(
            self.db,
            organization_id=org.id,
            program_id=program.id,
            name=sanitize_string(data.name),
            slug=data.slug,
            description=sanitize_string(data.description),
            access_type=data.accessType,
            default_payment_status=data.defaultPaymentStatus,
            is_default=data.isDefault,
        )

    def replace_steps(self, funnel_id: int, data: StepsReplaceRequest, user: User) -> Funnel:
        funnel = self.get_funnel(funnel_id, user)
        steps = [
            {
                "type": step.type.value,
                "name": sanitize_string(step.name),
                "config": step.config,
                "show_if": step.showIf.model_dump() if step.showIf else None,
            }
            for step in data.steps
        ]
        logger.info(f"🧩 Replacing steps of funnel {funnel.id} ({len(steps)} steps)")
        return self.repo.replace_steps(self.db, funnel, steps)

    def _generate_invite_code(self) -> str:
        alphabet = string.ascii_uppercase + string.digits
        while True:
            code = "".join(secrets.choice(alphabet) for _ in range(6))
            if not self.repo.invite_code_exists(self.db, code):
                return code

    def create_invite(self, funnel_id: int, data: InviteCreate, user: User) -> ProgramInvite:
        funnel = self.get_funnel(funnel_id, user)
        return self.repo.create_invite(
            self.db,
            id=self._generate_invite_code(),
            funnel_id=funnel.id,
            program_id=funnel.program_id,
            organization_id=funnel.organization_id,
            created_by=user.id,
            email=data.email,
            name=sanitize_string(data.name),
            payment_status=data.paymentStatus,
            pre_paid_note=sanitize_string(data.prePaidNote),
            target_cohort_id=data.targetCohortId,
            max_uses=data.maxUses,
            expires_at=data.expiresAt,
        )
