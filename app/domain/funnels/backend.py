"""
Boundaries of the funnel runtime: where sessions are stored and who grants
access when a funnel finishes. The SQLAlchemy implementations live in
repository.py and access.py; tests plug in their own.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from .schemas import SessionRecord


class SessionNotFoundError(LookupError):
    pass


class SessionBackendError(Exception):
    """Session store could not be read or written. Safe to retry."""


class LookupStatus(str, Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"


@dataclass
class SessionLookup:
    status: LookupStatus
    session: Optional[SessionRecord] = None

    @property
    def found(self) -> bool:
        return self.status == LookupStatus.FOUND


@dataclass
class ProductDescriptor:
    """What a finished funnel unlocks"""

    program_id: int
    organization_id: int
    funnel_id: int
    payment: Optional[dict] = None


@dataclass
class GrantResult:
    success: bool
    enrollment_id: Optional[int] = None
    reason: Optional[str] = None
    # Nothing was decided yet (e.g. no signed-in user); the session stays open for a retry
    deferred: bool = False


class SessionBackend(ABC):
    """Durable home of flow sessions"""

    @abstractmethod
    def create_session(
        self,
        funnel_id: int,
        program_id: int,
        organization_id: int,
        current_step_index: int = 0,
        invite_id: Optional[str] = None,
        origin_domain: Optional[str] = None,
    ) -> str:
        ...

    @abstractmethod
    def get_session(self, session_id: str) -> SessionLookup:
        ...

    @abstractmethod
    def update_session(
        self,
        session_id: str,
        current_step_index: Optional[int] = None,
        completed_step_index: Optional[int] = None,
        data: Optional[dict[str, Any]] = None,
    ) -> SessionRecord:
        """Partial update. data merges into the bag; completed index never goes down."""

    @abstractmethod
    def link_session(self, session_id: str, user_id: int) -> SessionRecord:
        ...

    @abstractmethod
    def mark_completed(self, session_id: str, completed_step_index: int) -> SessionRecord:
        ...


class AccessGrant(ABC):
    """Unlocks the product once a session reaches the end of its funnel"""

    @abstractmethod
    async def grant_access(
        self, product: ProductDescriptor, session: SessionRecord
    ) -> GrantResult:
        ...
