"""
Funnel Models - authored step sequences and the sessions walking them
"""

import secrets

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base
from .models import generate_public_id


def generate_flow_session_id():
    """Opaque session token held by the browser"""
    return f"flow_{secrets.token_hex(12)}"


class Funnel(Base):
    """Coach-created acquisition flow that enrolls users into a program"""

    __tablename__ = "funnels"

    id = Column(Integer, primary_key=True, index=True)
    public_id = Column(
        String(36), unique=True, nullable=False, index=True, default=generate_public_id
    )
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False, index=True)
    program_id = Column(Integer, ForeignKey("programs.id"), nullable=False, index=True)

    name = Column(String(255), nullable=False)
    slug = Column(String(100), nullable=False, index=True)
    description = Column(Text, nullable=True)

    is_default = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    access_type = Column(String(20), default="public", nullable=False)  # public, invite_only
    default_payment_status = Column(String(20), default="required", nullable=False)

    step_count = Column(Integer, default=0, nullable=False)  # Denormalized for list views

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    program = relationship("Program", back_populates="funnels")
    steps = relationship(
        "FunnelStep",
        back_populates="funnel",
        order_by="FunnelStep.order",
        cascade="all, delete-orphan",
    )


class FunnelStep(Base):
    """One step of a funnel. Read-only while sessions run through it."""

    __tablename__ = "funnel_steps"

    id = Column(Integer, primary_key=True, index=True)
    funnel_id = Column(Integer, ForeignKey("funnels.id"), nullable=False, index=True)
    order = Column(Integer, nullable=False)  # 0-indexed position
    type = Column(String(50), nullable=False)
    name = Column(String(255), nullable=True)
    config = Column(JSON, default=dict, nullable=False)
    # {"field": ..., "operator": eq|neq|in|nin, "value": ...}
    show_if = Column(JSON, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    funnel = relationship("Funnel", back_populates="steps")


class FlowSession(Base):
    """Progress of one visitor through one funnel"""

    __tablename__ = "flow_sessions"

    id = Column(String(64), primary_key=True, default=generate_flow_session_id)
    funnel_id = Column(Integer, ForeignKey("funnels.id"), nullable=False, index=True)
    program_id = Column(Integer, ForeignKey("programs.id"), nullable=False)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False)

    # Set once the visitor signs in mid-funnel
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    linked_at = Column(DateTime, nullable=True)

    invite_id = Column(String(32), ForeignKey("program_invites.id"), nullable=True)

    # Progress: current is always a visible step or len(steps); completed never decreases
    current_step_index = Column(Integer, default=0, nullable=False)
    completed_step_index = Column(Integer, default=-1, nullable=False)

    # Answers and payment references collected by the steps
    data = Column(JSON, default=dict, nullable=False)

    origin_domain = Column(String(255), nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
    expires_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    funnel = relationship("Funnel")
    invite = relationship("ProgramInvite")
