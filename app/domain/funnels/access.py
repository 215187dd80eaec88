"""Program enrollment - what a finished funnel unlocks"""

import logging
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...models import (
    Program,
    ProgramCohort,
    ProgramEnrollment,
    ProgramInvite,
    User,
    utcnow,
)
from .backend import AccessGrant, GrantResult, ProductDescriptor
from .repository import FunnelRepository
from .schemas import PAYMENT_WAIVED_STATUSES, SessionRecord

logger = logging.getLogger(__name__)

# Funnel answers copied onto the user's profile
PROFILE_FIELDS = (
    "goal",
    "goalTargetDate",
    "goalSummary",
    "identity",
    "workdayStyle",
    "businessStage",
    "obstacles",
    "goalImpact",
    "supportNeeds",
)


def extract_profile_data(data: dict[str, Any]) -> dict[str, Any]:
    """Pick the user-relevant answers out of a session data bag"""
    return {field: data[field] for field in PROFILE_FIELDS if data.get(field)}


class ProgramEnrollmentGrant(AccessGrant):
    """Enrolls the linked user into the funnel's program"""

    def __init__(self, db: Session):
        self.db = db

    async def grant_access(
        self, product: ProductDescriptor, session: SessionRecord
    ) -> GrantResult:
        if session.linkedUserId is None:
            logger.warning(f"⚠️ Session {session.id} not linked to any user, skipping enrollment")
            return GrantResult(success=False, reason="Session not linked to user", deferred=True)

        user = self.db.query(User).filter(User.id == session.linkedUserId).first()
        program = self.db.query(Program).filter(Program.id == product.program_id).first()
        if not user or not program:
            return GrantResult(success=False, reason="User or program not found")

        existing = FunnelRepository.get_active_enrollment(self.db, user.id, program.id)
        if existing:
            logger.info(f"ℹ️ User {user.id} already enrolled in program {program.id}")
            return GrantResult(success=True, enrollment_id=existing.id)

        try:
            enrollment = self._enroll(user, program, product, session)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"❌ Failed to enroll user {user.id} in program {program.id}: {e}")
            return GrantResult(success=False, reason="Enrollment failed")

        logger.info(
            f"✅ User {user.id} enrolled in program {program.id}, enrollment {enrollment.id}"
        )

        try:
            from ...email_service import send_enrollment_confirmation

            await send_enrollment_confirmation(
                to=user.email,
                user_name=user.full_name or user.email,
                program_name=program.name,
                starts_at=enrollment.started_at if enrollment.status == "upcoming" else None,
            )
        except Exception as e:
            logger.error(f"Failed to send enrollment confirmation to {user.email}: {e}")

        return GrantResult(success=True, enrollment_id=enrollment.id)

    def _open_cohort(self, program_id: int) -> Optional[ProgramCohort]:
        """Earliest cohort still taking enrollments"""
        return (
            self.db.query(ProgramCohort)
            .filter(
                ProgramCohort.program_id == program_id,
                ProgramCohort.enrollment_open.is_(True),
                ProgramCohort.status.in_(["upcoming", "active"]),
            )
            .order_by(ProgramCohort.start_date.asc())
            .first()
        )

    def _enroll(
        self,
        user: User,
        program: Program,
        product: ProductDescriptor,
        session: SessionRecord,
    ) -> ProgramEnrollment:
        now = utcnow()
        invite = None
        cohort = None

        if session.inviteId:
            invite = self.db.query(ProgramInvite).filter(ProgramInvite.id == session.inviteId).first()
            if invite:
                invite.use_count = (invite.use_count or 0) + 1
                invite.used_by = user.id
                invite.used_at = now
                if invite.target_cohort_id:
                    cohort = (
                        self.db.query(ProgramCohort)
                        .filter(ProgramCohort.id == invite.target_cohort_id)
                        .first()
                    )

        if cohort is None and program.program_type == "group":
            cohort = self._open_cohort(program.id)
            if cohort:
                cohort.current_enrollment = (cohort.current_enrollment or 0) + 1

        status = "active"
        started_at = now
        if cohort and cohort.start_date and cohort.start_date > now:
            status = "upcoming"
            started_at = cohort.start_date

        waived = invite is not None and invite.payment_status in PAYMENT_WAIVED_STATUSES
        payment = product.payment or {}

        enrollment = ProgramEnrollment(
            user_id=user.id,
            program_id=program.id,
            organization_id=product.organization_id,
            cohort_id=cohort.id if cohort else None,
            flow_session_id=session.id,
            amount_paid=0 if waived else (program.price_in_cents or 0),
            status=status,
            started_at=started_at,
            stripe_payment_intent_id=payment.get("stripePaymentIntentId"),
            stripe_checkout_session_id=payment.get("stripeCheckoutSessionId"),
            paid_at=now if payment.get("stripePaymentIntentId") else None,
        )
        self.db.add(enrollment)
        self.db.flush()

        user.organization_id = user.organization_id or product.organization_id
        user.current_program_id = program.id
        user.current_enrollment_id = enrollment.id
        user.profile_data = {**(user.profile_data or {}), **extract_profile_data(session.data)}

        self.db.commit()
        self.db.refresh(enrollment)
        return enrollment
