"""Funnel repository - Database operations for funnels, invites and flow sessions"""

import logging
from datetime import timedelta
from typing import Any, Optional

from pydantic import ValidationError
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...config import FUNNEL_SESSION_TTL_HOURS
from ...models import Program, ProgramEnrollment, ProgramInvite, utcnow
from ...models_funnel import FlowSession, Funnel, FunnelStep
from .backend import (
    LookupStatus,
    SessionBackend,
    SessionBackendError,
    SessionLookup,
    SessionNotFoundError,
)
from .schemas import ConditionalRule, FunnelStepDefinition, SessionRecord

logger = logging.getLogger(__name__)


def to_condition(show_if: Any, step_id: Optional[int] = None) -> Optional[ConditionalRule]:
    """Stored showIf as a rule; malformed rules are dropped so the step shows"""
    if not show_if:
        return None
    try:
        return ConditionalRule.model_validate(show_if)
    except ValidationError as e:
        logger.warning(
            f"⚠️ Ignoring malformed showIf on funnel step {step_id}: {e.error_count()} error(s)"
        )
        return None


def to_step_definitions(steps: list[FunnelStep]) -> list[FunnelStepDefinition]:
    """Runtime definitions, indexed by authored order"""
    ordered = sorted(steps, key=lambda s: s.order)
    return [
        FunnelStepDefinition(
            index=index,
            type=step.type,
            name=step.name,
            config=step.config if isinstance(step.config, dict) else {},
            showIf=to_condition(step.show_if, step.id),
        )
        for index, step in enumerate(ordered)
    ]


def to_session_record(session: FlowSession) -> SessionRecord:
    return SessionRecord(
        id=session.id,
        funnelId=session.funnel_id,
        programId=session.program_id,
        organizationId=session.organization_id,
        currentStepIndex=session.current_step_index,
        completedStepIndex=session.completed_step_index,
        data=dict(session.data or {}),
        linkedUserId=session.user_id,
        linkedAt=session.linked_at,
        inviteId=session.invite_id,
        expiresAt=session.expires_at,
        completedAt=session.completed_at,
    )


class FunnelRepository:
    """Repository for funnel database operations"""

    @staticmethod
    def get_funnel_by_id(db: Session, funnel_id: int) -> Optional[Funnel]:
        return db.query(Funnel).filter(Funnel.id == funnel_id).first()

    @staticmethod
    def get_funnel_for_org(db: Session, funnel_id: int, organization_id: int) -> Optional[Funnel]:
        return (
            db.query(Funnel)
            .filter(Funnel.id == funnel_id, Funnel.organization_id == organization_id)
            .first()
        )

    @staticmethod
    def get_funnel_by_slug(
        db: Session, funnel_slug: str, program_slug: Optional[str] = None
    ) -> Optional[Funnel]:
        """Get a funnel by slug, narrowed to a program slug when given"""
        query = db.query(Funnel).filter(Funnel.slug == funnel_slug)
        if program_slug:
            query = query.join(Program, Program.id == Funnel.program_id).filter(
                Program.slug == program_slug
            )
        return query.order_by(Funnel.created_at.desc()).first()

    @staticmethod
    def list_funnels(
        db: Session, organization_id: int, program_id: Optional[int] = None
    ) -> list[Funnel]:
        query = db.query(Funnel).filter(Funnel.organization_id == organization_id)
        if program_id:
            query = query.filter(Funnel.program_id == program_id)
        return query.order_by(Funnel.created_at.desc(), Funnel.id.desc()).all()

    @staticmethod
    def count_funnels(db: Session, organization_id: int) -> int:
        return (
            db.query(func.count(Funnel.id))
            .filter(Funnel.organization_id == organization_id)
            .scalar()
        )

    @staticmethod
    def slug_taken(db: Session, program_id: int, slug: str) -> bool:
        return (
            db.query(Funnel.id)
            .filter(Funnel.program_id == program_id, Funnel.slug == slug)
            .first()
            is not None
        )

    @staticmethod
    def create_funnel(db: Session, **funnel_data) -> Funnel:
        funnel = Funnel(**funnel_data)
        db.add(funnel)
        db.commit()
        db.refresh(funnel)
        return funnel

    @staticmethod
    def replace_steps(db: Session, funnel: Funnel, steps: list[dict]) -> Funnel:
        """Replace the ordered step list of a funnel"""
        funnel.steps.clear()
        db.flush()
        for order, step_data in enumerate(steps):
            funnel.steps.append(FunnelStep(order=order, **step_data))
        funnel.step_count = len(steps)
        db.commit()
        db.refresh(funnel)
        return funnel

    @staticmethod
    def get_program(db: Session, program_id: int) -> Optional[Program]:
        return db.query(Program).filter(Program.id == program_id).first()

    @staticmethod
    def get_active_enrollment(
        db: Session, user_id: int, program_id: int
    ) -> Optional[ProgramEnrollment]:
        """The user's upcoming or active enrollment in a program"""
        return (
            db.query(ProgramEnrollment)
            .filter(
                ProgramEnrollment.user_id == user_id,
                ProgramEnrollment.program_id == program_id,
                ProgramEnrollment.status.in_(["upcoming", "active"]),
            )
            .order_by(ProgramEnrollment.id.desc())
            .first()
        )

    # Invite Methods
    @staticmethod
    def get_invite(db: Session, code: str) -> Optional[ProgramInvite]:
        return db.query(ProgramInvite).filter(ProgramInvite.id == code.upper()).first()

    @staticmethod
    def invite_code_exists(db: Session, code: str) -> bool:
        return db.query(ProgramInvite.id).filter(ProgramInvite.id == code).first() is not None

    @staticmethod
    def create_invite(db: Session, **invite_data) -> ProgramInvite:
        invite = ProgramInvite(**invite_data)
        db.add(invite)
        db.commit()
        db.refresh(invite)
        return invite


class SqlSessionBackend(SessionBackend):
    """Flow sessions stored in the flow_sessions table"""

    def __init__(self, db: Session, ttl_hours: int = FUNNEL_SESSION_TTL_HOURS):
        self.db = db
        self.ttl_hours = ttl_hours

    def _load(self, session_id: str) -> FlowSession:
        session = self.db.query(FlowSession).filter(FlowSession.id == session_id).first()
        if not session:
            raise SessionNotFoundError(session_id)
        return session

    def _commit(self, session: FlowSession) -> SessionRecord:
        try:
            self.db.commit()
            self.db.refresh(session)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"❌ Failed to write flow session {session.id}: {e}")
            raise SessionBackendError(str(e)) from e
        return to_session_record(session)

    def create_session(
        self,
        funnel_id: int,
        program_id: int,
        organization_id: int,
        current_step_index: int = 0,
        invite_id: Optional[str] = None,
        origin_domain: Optional[str] = None,
    ) -> str:
        session = FlowSession(
            funnel_id=funnel_id,
            program_id=program_id,
            organization_id=organization_id,
            invite_id=invite_id,
            origin_domain=origin_domain,
            current_step_index=current_step_index,
            completed_step_index=-1,
            data={},
            expires_at=utcnow() + timedelta(hours=self.ttl_hours),
        )
        self.db.add(session)
        record = self._commit(session)
        logger.info(f"🆕 Flow session {record.id} created for funnel {funnel_id}")
        return record.id

    def get_session(self, session_id: str) -> SessionLookup:
        try:
            session = self.db.query(FlowSession).filter(FlowSession.id == session_id).first()
        except SQLAlchemyError as e:
            logger.error(f"❌ Failed to read flow session {session_id}: {e}")
            raise SessionBackendError(str(e)) from e

        if not session:
            return SessionLookup(status=LookupStatus.NOT_FOUND)
        if session.completed_at is None and session.expires_at and session.expires_at < utcnow():
            return SessionLookup(status=LookupStatus.EXPIRED, session=to_session_record(session))
        return SessionLookup(status=LookupStatus.FOUND, session=to_session_record(session))

    def update_session(
        self,
        session_id: str,
        current_step_index: Optional[int] = None,
        completed_step_index: Optional[int] = None,
        data: Optional[dict[str, Any]] = None,
    ) -> SessionRecord:
        session = self._load(session_id)

        if current_step_index is not None:
            session.current_step_index = current_step_index
        if completed_step_index is not None:
            session.completed_step_index = max(session.completed_step_index, completed_step_index)
        if data:
            # Reassign so the JSON column is flagged dirty
            session.data = {**(session.data or {}), **data}

        return self._commit(session)

    def link_session(self, session_id: str, user_id: int) -> SessionRecord:
        session = self._load(session_id)
        session.user_id = user_id
        session.linked_at = utcnow()
        return self._commit(session)

    def mark_completed(self, session_id: str, completed_step_index: int) -> SessionRecord:
        session = self._load(session_id)
        session.completed_step_index = max(session.completed_step_index, completed_step_index)
        session.completed_at = utcnow()
        return self._commit(session)
