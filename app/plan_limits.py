"""
Plan limits for subscription-based funnel restrictions.
"""

from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from .models import Organization
from .models_funnel import Funnel

# Funnels an organization may own per plan
PLAN_LIMITS = {"starter": 1, "pro": 10, "scale": None}  # None means unlimited


def get_plan_limit(plan: Optional[str]) -> Optional[int]:
    """Get the funnel limit for a given plan. Returns None for unlimited, 0 for no plan."""
    if not plan:
        return 0  # No plan = no funnels allowed
    return PLAN_LIMITS.get(plan.lower(), PLAN_LIMITS["starter"])


def can_create_funnel(org: Organization, db: Session) -> tuple:
    """
    Check if the organization can create another funnel.
    Returns (can_create, error_message).
    """
    if not org.plan:
        return (False, "Please select a plan to start creating funnels.")

    limit = get_plan_limit(org.plan)
    if limit is None:
        return (True, None)

    current = (
        db.query(func.count(Funnel.id)).filter(Funnel.organization_id == org.id).scalar() or 0
    )
    if current >= limit:
        return (
            False,
            f"Funnel limit reached for your current plan ({current}/{limit}). Upgrade to add more funnels.",
        )

    return (True, None)
