"""Gate check-in: the active -> redeemed transition.

The decision is made by a single conditional UPDATE (`status='active'` in the
WHERE clause). Exactly one concurrent caller sees a changed row; everybody
else re-reads the ticket only to explain the rejection.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from sqlalchemy import select
from sqlalchemy.orm import Session

from . import store
from .credentials import is_well_formed
from .models import Ticket, TicketStatus

logger = logging.getLogger(__name__)


class VerdictKind(str, Enum):
    ACCEPTED = "ACCEPTED"
    ALREADY_REDEEMED = "ALREADY_REDEEMED"
    INVALID = "INVALID"
    VOID = "VOID"
    INACTIVE = "INACTIVE"


MESSAGES = {
    VerdictKind.ACCEPTED: "Check-in successful",
    VerdictKind.ALREADY_REDEEMED: "Ticket already used",
    VerdictKind.INVALID: "Invalid ticket",
    VerdictKind.VOID: "Ticket has been voided",
    VerdictKind.INACTIVE: "Ticket is not valid for this event",
}


@dataclass(frozen=True)
class Verdict:
    kind: VerdictKind
    ticket_id: str | None = None
    event_id: str | None = None
    redeemed_at: datetime | None = None

    @property
    def accepted(self) -> bool:
        return self.kind is VerdictKind.ACCEPTED

    def to_dict(self) -> dict:
        return {
            "verdict": self.kind.value,
            "message": MESSAGES[self.kind],
            "ticket_id": self.ticket_id,
            "event_id": self.event_id,
            "redeemed_at": self.redeemed_at.isoformat() if self.redeemed_at else None,
        }


INVALID = Verdict(VerdictKind.INVALID)


def redeem(db: Session, token: str, event_id: str | None = None, now: datetime | None = None) -> Verdict:
    """Consume `token` at a gate. Never raises for used/void/unknown tickets.

    `event_id`, when given, binds the check-in to that event: a valid ticket
    for another event is reported INACTIVE and left untouched.
    """
    if not is_well_formed(token):
        return INVALID

    now = now or store.utcnow()
    where = [Ticket.token == token, Ticket.status == TicketStatus.ACTIVE]
    if event_id:
        where.append(Ticket.event_id == event_id)

    with store.transient_errors(db):
        changed = store.conditional_update(
            db, Ticket, where, {"status": TicketStatus.REDEEMED, "redeemed_at": now}
        )
        ticket = store.get_ticket_by_token(db, token)

    if changed:
        logger.info("ticket %s redeemed for event %s", ticket.id, ticket.event_id)
        return Verdict(VerdictKind.ACCEPTED, ticket.id, ticket.event_id, now)

    if ticket is None:
        return INVALID
    if event_id and ticket.event_id != event_id:
        # gate bound to another event; its redemption state is not disclosed
        return Verdict(VerdictKind.INACTIVE, ticket.id, ticket.event_id)
    if ticket.status == TicketStatus.REDEEMED:
        return Verdict(VerdictKind.ALREADY_REDEEMED, ticket.id, ticket.event_id, store.as_utc(ticket.redeemed_at))
    if ticket.status == TicketStatus.VOID:
        return Verdict(VerdictKind.VOID, ticket.id, ticket.event_id)
    # active yet not consumed by this call; never reported as accepted
    return Verdict(VerdictKind.INACTIVE, ticket.id, ticket.event_id)


def lookup(db: Session, token: str) -> Ticket | None:
    """Read-only status check for gates recovering from an ambiguous timeout."""
    if not is_well_formed(token):
        return None
    with store.transient_errors(db):
        return store.get_ticket_by_token(db, token)


def void_ticket(db: Session, ticket_id: str) -> tuple[bool, Ticket | None]:
    """Administratively void an active ticket.

    Returns (changed, ticket). A redeemed or already void ticket is left as is.
    """
    with store.transient_errors(db):
        changed = store.conditional_update(
            db, Ticket, [Ticket.id == ticket_id, Ticket.status == TicketStatus.ACTIVE], {"status": TicketStatus.VOID}
        )
        ticket = db.execute(
            select(Ticket).where(Ticket.id == ticket_id).execution_options(populate_existing=True)
        ).scalar_one_or_none()
    if changed:
        logger.info("ticket %s voided", ticket_id)
    return changed, ticket
