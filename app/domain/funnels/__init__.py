"""Funnel domain - step sequencing, flow sessions and enrollment on completion"""

from .router import coach_router, router

__all__ = ["router", "coach_router"]
