"""Funnel domain schemas - Pydantic models for validation"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from ...shared.validators import validate_slug


class StepType(str, Enum):
    """Step kinds a coach can place in a funnel"""

    QUESTION = "question"
    SIGNUP = "signup"
    PAYMENT = "payment"
    SCHEDULING = "scheduling"
    GOAL_SETTING = "goal_setting"
    IDENTITY = "identity"
    ANALYZING = "analyzing"
    PLAN_REVEAL = "plan_reveal"
    TRANSFORMATION = "transformation"
    INFO = "info"
    SUCCESS = "success"


KNOWN_STEP_TYPES = frozenset(t.value for t in StepType)

RULE_OPERATORS = ("eq", "neq", "in", "nin")

# Payment statuses that let a session bypass payment steps
PAYMENT_WAIVED_STATUSES = ("pre_paid", "free")


class ConditionalRule(BaseModel):
    """showIf rule evaluated against the session data bag"""

    field: str
    operator: str
    value: Any = None


class FunnelStepDefinition(BaseModel):
    """Runtime view of an authored step"""

    index: int
    type: str
    name: Optional[str] = None
    config: dict = Field(default_factory=dict)
    showIf: Optional[ConditionalRule] = None

    @property
    def known(self) -> bool:
        return self.type in KNOWN_STEP_TYPES


class StepView(BaseModel):
    """What the client needs to render the current step"""

    index: int
    type: str
    name: Optional[str] = None
    config: dict = Field(default_factory=dict)
    # False for unrecognised step types; client shows a fallback with a continue button
    known: bool = True


class SessionRecord(BaseModel):
    """Storage-agnostic snapshot of a flow session"""

    id: str
    funnelId: int
    programId: int
    organizationId: int
    currentStepIndex: int
    completedStepIndex: int
    data: dict = Field(default_factory=dict)
    linkedUserId: Optional[int] = None
    linkedAt: Optional[datetime] = None
    inviteId: Optional[str] = None
    expiresAt: Optional[datetime] = None
    completedAt: Optional[datetime] = None


# ============================================================================
# RUNTIME REQUESTS / RESPONSES
# ============================================================================


class SessionCreateRequest(BaseModel):
    """Start a session on a funnel, by id or by slug within a program"""

    funnelId: Optional[int] = None
    funnelSlug: Optional[str] = None
    programSlug: Optional[str] = None
    inviteCode: Optional[str] = None


class SessionUpdateRequest(BaseModel):
    currentStepIndex: Optional[int] = None
    completedStepIndex: Optional[int] = None
    data: Optional[dict] = None

    @field_validator("currentStepIndex", "completedStepIndex")
    @classmethod
    def validate_index(cls, v):
        if v is not None and v < -1:
            raise ValueError("Step index cannot be below -1")
        return v


class StepCompleteRequest(BaseModel):
    data: dict = Field(default_factory=dict)
    redirectUrl: Optional[str] = None


class LinkSessionRequest(BaseModel):
    flowSessionId: str


class CompleteFunnelRequest(BaseModel):
    flowSessionId: str
    stripePaymentIntentId: Optional[str] = None
    stripeCheckoutSessionId: Optional[str] = None
    redirectUrl: Optional[str] = None


class SessionStateResponse(BaseModel):
    sessionId: str
    currentStepIndex: int
    completedStepIndex: int
    totalSteps: int
    terminal: bool
    data: dict = Field(default_factory=dict)
    step: Optional[StepView] = None
    linked: bool = False
    completed: bool = False
    # Empty funnels are terminal from the start
    noSteps: bool = False


class CompletionResponse(BaseModel):
    sessionId: str
    completed: bool = True
    alreadyCompleted: bool = False
    accessGranted: bool = False
    clearSession: bool = True
    redirectUrl: str
    enrollmentId: Optional[int] = None
    # Finished anonymously: sign in, link, then POST /funnel/complete
    requiresSignIn: bool = False


class StepAdvanceResponse(BaseModel):
    """Result of completing a step: either the next step or the completion outcome"""

    session: SessionStateResponse
    completion: Optional[CompletionResponse] = None


# ============================================================================
# COACH AUTHORING
# ============================================================================


class FunnelCreate(BaseModel):
    name: str
    slug: str
    programId: int
    description: Optional[str] = None
    accessType: str = "public"
    defaultPaymentStatus: str = "required"
    isDefault: bool = False

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        if not v or not v.strip():
            raise ValueError("Name is required")
        return v.strip()

    @field_validator("slug")
    @classmethod
    def validate_slug_format(cls, v):
        return validate_slug(v)

    @field_validator("accessType")
    @classmethod
    def validate_access_type(cls, v):
        if v not in ("public", "invite_only"):
            raise ValueError("accessType must be 'public' or 'invite_only'")
        return v

    @field_validator("defaultPaymentStatus")
    @classmethod
    def validate_payment_status(cls, v):
        if v not in ("required", "pre_paid", "free"):
            raise ValueError("Invalid payment status")
        return v


class StepInput(BaseModel):
    """Authored step; its position in the list becomes its order"""

    type: StepType
    name: Optional[str] = None
    config: dict = Field(default_factory=dict)
    showIf: Optional[ConditionalRule] = None

    @field_validator("showIf")
    @classmethod
    def validate_rule(cls, v):
        if v is None:
            return v
        if v.operator not in RULE_OPERATORS:
            raise ValueError(f"Unsupported operator '{v.operator}'")
        if v.operator in ("in", "nin") and not isinstance(v.value, list):
            raise ValueError(f"Operator '{v.operator}' needs a list value")
        return v


class StepsReplaceRequest(BaseModel):
    steps: list[StepInput]


class InviteCreate(BaseModel):
    email: Optional[str] = None
    name: Optional[str] = None
    paymentStatus: str = "required"
    prePaidNote: Optional[str] = None
    targetCohortId: Optional[int] = None
    maxUses: Optional[int] = None
    expiresAt: Optional[datetime] = None

    @field_validator("paymentStatus")
    @classmethod
    def validate_payment_status(cls, v):
        if v not in ("required", "pre_paid", "free"):
            raise ValueError("Invalid payment status")
        return v

    @field_validator("maxUses")
    @classmethod
    def validate_max_uses(cls, v):
        if v is not None and v <= 0:
            raise ValueError("maxUses must be greater than 0")
        return v


class StepResponse(BaseModel):
    id: int
    order: int
    type: str
    name: Optional[str] = None
    config: dict = Field(default_factory=dict)
    showIf: Optional[dict] = None


class FunnelResponse(BaseModel):
    id: int
    publicId: str
    programId: int
    name: str
    slug: str
    description: Optional[str] = None
    isActive: bool
    isDefault: bool
    accessType: str
    defaultPaymentStatus: str
    stepCount: int
    createdAt: Optional[datetime] = None
    steps: Optional[list[StepResponse]] = None


class InviteResponse(BaseModel):
    code: str
    funnelId: int
    paymentStatus: str
    maxUses: Optional[int] = None
    useCount: int
    expiresAt: Optional[datetime] = None
