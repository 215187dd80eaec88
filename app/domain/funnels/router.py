"""Funnel router - FastAPI endpoints for running and authoring funnels"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from ...auth import get_current_user
from ...config import SESSION_CREATE_LIMIT_PER_HOUR
from ...database import get_db
from ...models import ProgramInvite, User
from ...models_funnel import Funnel
from ...rate_limiter import create_rate_limiter
from .schemas import (
    CompleteFunnelRequest,
    CompletionResponse,
    FunnelCreate,
    FunnelResponse,
    InviteCreate,
    InviteResponse,
    LinkSessionRequest,
    SessionCreateRequest,
    SessionStateResponse,
    SessionUpdateRequest,
    StepAdvanceResponse,
    StepCompleteRequest,
    StepResponse,
    StepsReplaceRequest,
)
from .service import CoachFunnelService, FunnelService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/funnel", tags=["Funnels"])
coach_router = APIRouter(prefix="/coach/funnels", tags=["Coach Funnels"])

rate_limit_session_per_ip = create_rate_limiter(
    limit=SESSION_CREATE_LIMIT_PER_HOUR, window_seconds=3600, key_prefix="funnel_session"
)


def get_funnel_service(db: Session = Depends(get_db)) -> FunnelService:
    """Dependency injection for FunnelService"""
    return FunnelService(db)


def get_coach_funnel_service(db: Session = Depends(get_db)) -> CoachFunnelService:
    """Dependency injection for CoachFunnelService"""
    return CoachFunnelService(db)


def funnel_to_response(funnel: Funnel, include_steps: bool = False) -> FunnelResponse:
    steps = None
    if include_steps:
        steps = [
            StepResponse(
                id=s.id,
                order=s.order,
                type=s.type,
                name=s.name,
                config=s.config or {},
                showIf=s.show_if,
            )
            for s in funnel.steps
        ]
    return FunnelResponse(
        id=funnel.id,
        publicId=funnel.public_id,
        programId=funnel.program_id,
        name=funnel.name,
        slug=funnel.slug,
        description=funnel.description,
        isActive=funnel.is_active,
        isDefault=funnel.is_default,
        accessType=funnel.access_type,
        defaultPaymentStatus=funnel.default_payment_status,
        stepCount=funnel.step_count,
        createdAt=funnel.created_at,
        steps=steps,
    )


def invite_to_response(invite: ProgramInvite) -> InviteResponse:
    return InviteResponse(
        code=invite.id,
        funnelId=invite.funnel_id,
        paymentStatus=invite.payment_status,
        maxUses=invite.max_uses,
        useCount=invite.use_count,
        expiresAt=invite.expires_at,
    )


# ============================================================================
# PUBLIC RUNTIME
# ============================================================================


@router.post("/session", response_model=SessionStateResponse)
async def create_session(
    data: SessionCreateRequest,
    request: Request,
    service: FunnelService = Depends(get_funnel_service),
    _ip: None = Depends(rate_limit_session_per_ip),
):
    """Start a flow session on a funnel (anonymous)"""
    origin_domain = request.headers.get("host")
    return service.start_session(data, origin_domain=origin_domain)


@router.get("/session", response_model=SessionStateResponse)
async def get_session(
    sessionId: str = Query(...),
    service: FunnelService = Depends(get_funnel_service),
):
    """Restore a flow session. 404 when unknown, 410 when expired."""
    return service.get_session_state(sessionId)


@router.patch("/session/{session_id}", response_model=SessionStateResponse)
async def update_session(
    session_id: str,
    data: SessionUpdateRequest,
    service: FunnelService = Depends(get_funnel_service),
):
    return service.update_session(session_id, data)


@router.post("/session/{session_id}/steps/complete", response_model=StepAdvanceResponse)
async def complete_step(
    session_id: str,
    data: StepCompleteRequest,
    service: FunnelService = Depends(get_funnel_service),
):
    """Submit the current step and advance; finishes the funnel after the last step"""
    return await service.complete_step(session_id, data.data, data.redirectUrl)


@router.post("/session/{session_id}/back", response_model=SessionStateResponse)
async def go_back(
    session_id: str,
    service: FunnelService = Depends(get_funnel_service),
):
    return service.go_back(session_id)


@router.post("/link-session", response_model=SessionStateResponse)
async def link_session(
    data: LinkSessionRequest,
    current_user: User = Depends(get_current_user),
    service: FunnelService = Depends(get_funnel_service),
):
    """Attach the session the browser holds to the user who just signed in"""
    return service.link_session(data.flowSessionId, current_user)


@router.post("/complete", response_model=CompletionResponse)
async def complete_funnel(
    data: CompleteFunnelRequest,
    current_user: User = Depends(get_current_user),
    service: FunnelService = Depends(get_funnel_service),
):
    return await service.complete(data, current_user)


# ============================================================================
# COACH AUTHORING
# ============================================================================


@coach_router.get("", response_model=list[FunnelResponse])
async def list_funnels(
    programId: Optional[int] = Query(None),
    current_user: User = Depends(get_current_user),
    service: CoachFunnelService = Depends(get_coach_funnel_service),
):
    return [funnel_to_response(f) for f in service.list_funnels(current_user, programId)]


@coach_router.post("", response_model=FunnelResponse)
async def create_funnel(
    data: FunnelCreate,
    current_user: User = Depends(get_current_user),
    service: CoachFunnelService = Depends(get_coach_funnel_service),
):
    return funnel_to_response(service.create_funnel(data, current_user), include_steps=True)


@coach_router.get("/{funnel_id}", response_model=FunnelResponse)
async def get_funnel(
    funnel_id: int,
    current_user: User = Depends(get_current_user),
    service: CoachFunnelService = Depends(get_coach_funnel_service),
):
    return funnel_to_response(service.get_funnel(funnel_id, current_user), include_steps=True)


@coach_router.put("/{funnel_id}/steps", response_model=FunnelResponse)
async def replace_steps(
    funnel_id: int,
    data: StepsReplaceRequest,
    current_user: User = Depends(get_current_user),
    service: CoachFunnelService = Depends(get_coach_funnel_service),
):
    funnel = service.replace_steps(funnel_id, data, current_user)
    return funnel_to_response(funnel, include_steps=True)


@coach_router.post("/{funnel_id}/invites", response_model=InviteResponse)
async def create_invite(
    funnel_id: int,
    data: InviteCreate,
    current_user: User = Depends(get_current_user),
    service: CoachFunnelService = Depends(get_coach_funnel_service),
):
    return invite_to_response(service.create_invite(funnel_id, data, current_user))
