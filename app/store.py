"""Data-access helpers shared by fulfillment and redemption.

Every state change that can race goes through one of two store primitives:
a unique constraint (orders by external reference, tickets by token and by
order unit) or `conditional_update`, which reports whether a row changed.
"""
import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, Iterator

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.orm import Session

from .errors import TransientStoreError
from .models import Order, RedemptionRecord, Ticket, TicketStatus

logger = logging.getLogger(__name__)

TOKEN_INSERT_ATTEMPTS = 5


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(ts: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes for DateTime(timezone=True) columns
    if ts is None or ts.tzinfo is not None:
        return ts
    return ts.replace(tzinfo=timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


@contextmanager
def transient_errors(db: Session) -> Iterator[None]:
    """Roll back and re-raise connection-level failures as TransientStoreError."""
    try:
        yield
    except (OperationalError, InterfaceError) as e:
        db.rollback()
        raise TransientStoreError(str(e.orig or e)) from e


def conditional_update(db: Session, model, where: list, values: dict) -> bool:
    """UPDATE model SET values WHERE where; commit; True iff a row changed."""
    result = db.execute(
        update(model).where(*where).values(**values).execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount > 0


# -------------------------
# Orders
# -------------------------
def get_order_by_reference(db: Session, external_reference: str) -> Order | None:
    return db.execute(
        select(Order).where(Order.external_reference == external_reference)
    ).scalar_one_or_none()


def insert_order_if_absent(db: Session, order: Order) -> bool:
    """Insert and commit `order`. False when the external reference already exists."""
    db.add(order)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return False
    return True


# -------------------------
# Tickets
# -------------------------
def count_tickets(db: Session, order_id: str) -> int:
    return db.execute(
        select(func.count()).select_from(Ticket).where(Ticket.order_id == order_id)
    ).scalar_one()


def tickets_for_order(db: Session, order_id: str) -> list[Ticket]:
    return list(
        db.execute(select(Ticket).where(Ticket.order_id == order_id).order_by(Ticket.seq)).scalars()
    )


def get_ticket_by_token(db: Session, token: str) -> Ticket | None:
    return db.execute(
        select(Ticket).where(Ticket.token == token).execution_options(populate_existing=True)
    ).scalar_one_or_none()


def _unit_exists(db: Session, order_id: str, seq: int) -> bool:
    return db.execute(
        select(Ticket.id).where(Ticket.order_id == order_id, Ticket.seq == seq)
    ).first() is not None


def insert_ticket(db: Session, order: Order, seq: int, token_factory: Callable[[], str]) -> Ticket | None:
    """Insert and commit unit `seq` of `order`.

    Returns None when another issuer already created that unit. A token
    collision regenerates the token and retries this single insert.
    """
    for _ in range(TOKEN_INSERT_ATTEMPTS):
        ticket = Ticket(
            id=new_id("tkt"),
            order_id=order.id,
            event_id=order.event_id,
            ticket_type_id=order.ticket_type_id,
            seq=seq,
            token=token_factory(),
            status=TicketStatus.ACTIVE,
        )
        db.add(ticket)
        try:
            db.commit()
            return ticket
        except IntegrityError:
            db.rollback()
            if _unit_exists(db, order.id, seq):
                logger.info("order %s unit %d already issued concurrently", order.id, seq)
                return None
            logger.warning("token collision on order %s unit %d, regenerating", order.id, seq)
    raise TransientStoreError(f"could not allocate a unique token for order {order.id} unit {seq}")


# -------------------------
# Audit
# -------------------------
def record_attempt(db: Session, **fields) -> None:
    """Append a RedemptionRecord. Advisory: failures are logged, never raised."""
    try:
        db.add(RedemptionRecord(**fields))
        db.commit()
    except Exception:
        db.rollback()
        logger.warning("could not write redemption record %s", fields.get("decision_id"), exc_info=True)
