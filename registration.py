"""
Registration state machine.

The phase (not open / open / closed) is derived from the clock and the
configured window. Creating a registration is only legal while the window is
open; reviewing is reserved for the tournament director and is not gated by
the window.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from auth import Role, Session
from database import AuditEntry, QualificationEntrant, Registration, RegistrationStore, Status

logger = logging.getLogger(__name__)


class Phase(Enum):
    """Registration phase. Only ever moves forward as time passes."""
    NOT_OPEN = "not_open"
    OPEN = "open"
    CLOSED = "closed"


class Forbidden(Exception):
    """An authenticated caller attempted an administrator-only action."""
    pass


class UnknownAction(ValueError):
    """The administrative action identifier is not recognised."""
    pass


class AdminAction(Enum):
    APPROVE = "approve"
    REJECT = "reject"
    WITHDRAW = "withdraw"

    @classmethod
    def parse(cls, value: str) -> "AdminAction":
        try:
            return cls(value)
        except ValueError:
            raise UnknownAction(f"Unknown action: {value!r}") from None


def _as_utc(instant: datetime) -> datetime:
    if instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RegistrationWindow:
    """The two instants bounding the registration period."""
    opens_at: datetime
    closes_at: datetime

    def __post_init__(self):
        object.__setattr__(self, "opens_at", _as_utc(self.opens_at))
        object.__setattr__(self, "closes_at", _as_utc(self.closes_at))
        if self.opens_at >= self.closes_at:
            raise ValueError("Registration must open before it closes")

    @classmethod
    def from_config(cls, cfg) -> "RegistrationWindow":
        return cls(cfg.REGISTRATION_OPENS_AT, cfg.REGISTRATION_CLOSES_AT)

    def phase_at(self, now: datetime) -> Phase:
        now = _as_utc(now)
        if now >= self.closes_at:
            return Phase.CLOSED
        if now >= self.opens_at:
            return Phase.OPEN
        return Phase.NOT_OPEN


@dataclass
class PageView:
    """A page to render and the values it needs."""
    name: str
    context: Dict[str, Any] = field(default_factory=dict)


def _base_context(session: Optional[Session]) -> Dict[str, Any]:
    ctx: Dict[str, Any] = {}
    if session is not None:
        ctx["username"] = session.display_name
    return ctx


class RegistrationService:
    """Decides which registration actions are legal and applies them to the store."""

    def __init__(
        self,
        store: RegistrationStore,
        window: RegistrationWindow,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.window = window
        self.clock = clock

    def phase(self) -> Phase:
        return self.window.phase_at(self.clock())

    def home(self, session: Optional[Session]) -> PageView:
        """Pick the landing page for the current phase and caller."""
        phase = self.phase()
        ctx = _base_context(session)

        if phase is Phase.NOT_OPEN:
            return PageView("home", ctx)
        if phase is Phase.CLOSED:
            return PageView("home_registrationclosed", ctx)
        if session is None:
            return PageView("home_registrationopen", ctx)

        registration = self.store.find_registration(session.subject_id)
        if registration is None:
            return PageView("registrationform", ctx)

        ctx["registration_status"] = registration.status.label
        ctx["td_comment"] = registration.reviewer_comment
        return PageView("registered", ctx)

    def register(
        self,
        session: Session,
        comment: Optional[str] = None,
        audit: Optional[AuditEntry] = None,
    ) -> bool:
        """
        Create a pending registration for the caller.

        Does nothing outside the open phase or when the caller already has a
        registration; the uniqueness constraint in the store settles
        concurrent duplicate submissions. The audit entry, if any, is stored
        only when the registration is.

        Returns:
            True if a new registration was stored
        """
        phase = self.phase()
        if phase is not Phase.OPEN:
            logger.info(f"Ignoring registration from {session.subject_id}: phase is {phase.value}")
            return False

        created = self.store.insert_registration(Registration(
            subject_id=session.subject_id,
            display_name=session.display_name,
            status=Status.PENDING,
            registrant_comment=comment or "",
        ), audit)
        if created:
            logger.info(f"New registration: {session.subject_id}")
        return created

    def _require_admin(self, role: Optional[Role]) -> None:
        if role is not Role.ADMINISTRATOR:
            raise Forbidden("Tournament director access required")

    def review(
        self,
        role: Optional[Role],
        action: AdminAction,
        subject_id: str,
        comment: Optional[str] = None,
        audit: Optional[AuditEntry] = None,
    ) -> int:
        """
        Apply a review decision.

        The audit entry, if any, commits or rolls back with the decision.

        Returns:
            Number of registrations changed (0 if the subject has none)

        Raises:
            Forbidden: If the caller is not the tournament director
        """
        self._require_admin(role)
        reviewer_comment = comment or ""

        if action is AdminAction.APPROVE:
            changed = self.store.approve_registration(subject_id, reviewer_comment, audit)
        elif action is AdminAction.REJECT:
            changed = self.store.reject_registration(subject_id, reviewer_comment, audit)
        else:
            changed = self.store.withdraw_registration(subject_id, audit)

        logger.info(f"Review {action.value} for {subject_id}: {changed} row(s) changed")
        return changed

    def registrations(self, role: Optional[Role]) -> List[Registration]:
        self._require_admin(role)
        return self.store.all_registrations()

    def registration(self, role: Optional[Role], subject_id: str) -> Optional[Registration]:
        self._require_admin(role)
        return self.store.find_registration(subject_id)

    def qualification(self) -> List[QualificationEntrant]:
        return self.store.qualification_entrants()
