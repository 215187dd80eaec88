import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


def generate_public_id():
    """Generate a unique public ID for secure public access"""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what the DateTime columns store"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Organization(Base):
    """Coaching business (tenant). Funnels, programs and clients belong to one."""

    __tablename__ = "organizations"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    slug = Column(String(100), unique=True, index=True, nullable=False)
    plan = Column(String(50), nullable=True)  # starter, pro, scale - null until selected
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    programs = relationship("Program", back_populates="organization")
    members = relationship("User", back_populates="organization")


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    firebase_uid = Column(String(255), unique=True, index=True, nullable=False)
    email = Column(String(255), index=True, nullable=False)
    full_name = Column(String(255), nullable=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=True)
    is_coach = Column(Boolean, default=False, nullable=False)

    # Program the user was most recently enrolled in through a funnel
    current_program_id = Column(Integer, ForeignKey("programs.id"), nullable=True)
    current_enrollment_id = Column(Integer, nullable=True)

    # Answers carried over from funnels (goal, identity, obstacles...)
    profile_data = Column(JSON, default=dict, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    organization = relationship("Organization", back_populates="members")


class Program(Base):
    """Coaching program a funnel enrolls users into"""

    __tablename__ = "programs"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    slug = Column(String(100), nullable=False, index=True)
    description = Column(Text, nullable=True)
    program_type = Column(String(20), default="individual", nullable=False)  # individual, group
    price_in_cents = Column(Integer, default=0, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    organization = relationship("Organization", back_populates="programs")
    cohorts = relationship("ProgramCohort", back_populates="program")
    funnels = relationship("Funnel", back_populates="program")


class ProgramCohort(Base):
    """A dated run of a group program"""

    __tablename__ = "program_cohorts"

    id = Column(Integer, primary_key=True, index=True)
    program_id = Column(Integer, ForeignKey("programs.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    start_date = Column(DateTime, nullable=True)
    enrollment_open = Column(Boolean, default=True, nullable=False)
    # upcoming -> active -> completed
    status = Column(String(20), default="upcoming", nullable=False)
    current_enrollment = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, server_default=func.now())

    program = relationship("Program", back_populates="cohorts")


class ProgramEnrollment(Base):
    __tablename__ = "program_enrollments"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    program_id = Column(Integer, ForeignKey("programs.id"), nullable=False, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False)
    cohort_id = Column(Integer, ForeignKey("program_cohorts.id"), nullable=True)
    flow_session_id = Column(String(64), nullable=True)

    amount_paid = Column(Integer, default=0, nullable=False)  # cents
    # upcoming: cohort has not started yet, active: running
    status = Column(String(20), default="active", nullable=False, index=True)
    started_at = Column(DateTime, nullable=True)

    # Payment references collected by the payment step
    stripe_payment_intent_id = Column(String(255), nullable=True)
    stripe_checkout_session_id = Column(String(255), nullable=True)
    paid_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class ProgramInvite(Base):
    """Invite code for joining a program through a funnel"""

    __tablename__ = "program_invites"

    id = Column(String(32), primary_key=True)  # Short code, e.g. "ABC123"
    funnel_id = Column(Integer, ForeignKey("funnels.id"), nullable=False, index=True)
    program_id = Column(Integer, ForeignKey("programs.id"), nullable=False)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)

    email = Column(String(255), nullable=True)
    name = Column(String(255), nullable=True)

    # required, pre_paid, free
    payment_status = Column(String(20), default="required", nullable=False)
    pre_paid_note = Column(String(255), nullable=True)
    target_cohort_id = Column(Integer, ForeignKey("program_cohorts.id"), nullable=True)

    max_uses = Column(Integer, nullable=True)  # None means unlimited
    use_count = Column(Integer, default=0, nullable=False)
    used_by = Column(Integer, nullable=True)
    used_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)  # None means never

    created_at = Column(DateTime, server_default=func.now())
