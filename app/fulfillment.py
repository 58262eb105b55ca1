"""Payment confirmation -> Order + Tickets, exactly once.

The pipeline is safe to call any number of times with the same confirmation:

* no Order for the external reference  -> issue everything;
* Order with all of its tickets        -> duplicate delivery, no writes;
* Order with some tickets missing       -> top up the missing units only.

Issuance commits per row, so a crash or timeout at any point leaves a state
one of the three branches above picks up from. Delivery of the ticket email
runs after issuance and can only ever be logged and queued for resend.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from pydantic import BaseModel, Field, field_validator
from sqlalchemy.orm import Session, sessionmaker

from . import store
from .config import FULFILL_MAX_ATTEMPTS, FULFILL_RETRY_DELAY, MAX_QUANTITY
from .credentials import encode_qr_png, generate_token
from .errors import ReferenceNotFound, TransientStoreError
from .models import Event, Order, TicketType
from .notify import NotificationDispatcher, render_ticket_email
from .outbox import NotificationOutbox
from .security import is_valid_email

logger = logging.getLogger(__name__)


def clamp_quantity(value: Any) -> int:
    return max(1, min(MAX_QUANTITY, int(value)))


class Confirmation(BaseModel):
    external_reference: str = Field(min_length=1, max_length=255)
    event_id: str = Field(min_length=1)
    ticket_type_id: str = Field(min_length=1)
    quantity: int
    buyer_email: str
    buyer_name: str | None = None
    amount: int | None = None
    currency: str | None = None

    @field_validator("quantity", mode="before")
    @classmethod
    def _clamp(cls, v):
        return clamp_quantity(v)

    @field_validator("buyer_email")
    @classmethod
    def _email(cls, v: str) -> str:
        v = v.strip()
        if not is_valid_email(v):
            raise ValueError("buyer_email is not a valid email address")
        return v

    @classmethod
    def from_session(cls, session: dict) -> "Confirmation":
        """Build from a processor checkout session (metadata is untrusted)."""
        meta = session.get("metadata") or {}
        return cls(
            external_reference=session.get("id") or "",
            event_id=meta.get("event_id") or "",
            ticket_type_id=meta.get("ticket_type_id") or "",
            quantity=meta.get("quantity") or 1,
            buyer_email=meta.get("buyer_email") or session.get("customer_email") or "",
            buyer_name=meta.get("buyer_name") or None,
            amount=session.get("amount_total"),
            currency=session.get("currency"),
        )


@dataclass
class FulfillmentResult:
    order_id: str
    external_reference: str
    duplicate: bool = False
    resumed: bool = False
    issued: int = 0
    ticket_ids: list[str] = field(default_factory=list)
    delivery_id: str | None = None


class FulfillmentPipeline:
    def __init__(
        self,
        session_factory: sessionmaker,
        notifier: NotificationDispatcher,
        encoder: Callable[[str], bytes] = encode_qr_png,
        token_factory: Callable[[], str] = generate_token,
        outbox: NotificationOutbox | None = None,
        max_attempts: int = FULFILL_MAX_ATTEMPTS,
        retry_delay: float = FULFILL_RETRY_DELAY,
    ):
        self.session_factory = session_factory
        self.notifier = notifier
        self.encoder = encoder
        self.token_factory = token_factory
        self.outbox = outbox
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay

    async def fulfill(self, confirmation: Confirmation) -> FulfillmentResult:
        """Issue the order for `confirmation` and attempt delivery.

        Raises ReferenceNotFound (fatal for this confirmation) or, once the
        retry budget is spent, TransientStoreError (the caller should ask for
        redelivery). Everything else resolves to a FulfillmentResult.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                result = self._issue(confirmation)
                break
            except TransientStoreError as e:
                if attempt >= self.max_attempts:
                    logger.error("giving up on %s after %d attempts: %s", confirmation.external_reference, attempt, e)
                    raise
                logger.warning("transient store error on %s (attempt %d): %s", confirmation.external_reference, attempt, e)
                await asyncio.sleep(self.retry_delay * attempt)

        if result.duplicate:
            logger.info("duplicate delivery for %s, order %s already fulfilled", result.external_reference, result.order_id)
            return result

        try:
            result.delivery_id = await self.resend(result.order_id)
        except Exception as e:
            logger.exception("ticket email for order %s failed", result.order_id)
            if self.outbox is not None:
                await self.outbox.enqueue(result.order_id, reason=str(e) or type(e).__name__)
        return result

    def _issue(self, confirmation: Confirmation) -> FulfillmentResult:
        ref = confirmation.external_reference
        with self.session_factory() as db, store.transient_errors(db):
            order = store.get_order_by_reference(db, ref)
            resumed = False

            if order is None:
                order = self._new_order(db, confirmation)
                if not store.insert_order_if_absent(db, order):
                    # lost the insert race against a concurrent delivery of the same payment
                    existing = store.get_order_by_reference(db, ref)
                    logger.info("order for %s created concurrently, treating as duplicate", ref)
                    return FulfillmentResult(
                        order_id=existing.id if existing else "", external_reference=ref, duplicate=True
                    )
                logger.info("created order %s for %s (qty=%d)", order.id, ref, order.quantity)
            else:
                have = store.count_tickets(db, order.id)
                if have >= order.quantity:
                    return FulfillmentResult(order_id=order.id, external_reference=ref, duplicate=True)
                logger.warning("order %s has %d/%d tickets, resuming issuance", order.id, have, order.quantity)
                resumed = True

            issued = self._top_up(db, order)
            tickets = store.tickets_for_order(db, order.id)
            return FulfillmentResult(
                order_id=order.id,
                external_reference=ref,
                resumed=resumed,
                issued=issued,
                ticket_ids=[t.id for t in tickets],
            )

    def _new_order(self, db: Session, confirmation: Confirmation) -> Order:
        event = db.get(Event, confirmation.event_id)
        if event is None:
            raise ReferenceNotFound("event", confirmation.event_id)
        ticket_type = db.get(TicketType, confirmation.ticket_type_id)
        if ticket_type is None or ticket_type.event_id != event.id:
            raise ReferenceNotFound("ticket_type", confirmation.ticket_type_id)

        total = ticket_type.price_cents * confirmation.quantity
        if confirmation.amount is not None and confirmation.amount != total:
            logger.warning(
                "processor amount %s for %s differs from computed total %d",
                confirmation.amount, confirmation.external_reference, total,
            )

        return Order(
            id=store.new_id("ord"),
            external_reference=confirmation.external_reference,
            event_id=event.id,
            ticket_type_id=ticket_type.id,
            quantity=confirmation.quantity,
            buyer_email=confirmation.buyer_email,
            buyer_name=confirmation.buyer_name,
            currency=ticket_type.currency,
            total_cents=total,
        )

    def _top_up(self, db: Session, order: Order) -> int:
        present = {t.seq for t in store.tickets_for_order(db, order.id)}
        issued = 0
        for seq in range(1, order.quantity + 1):
            if seq in present:
                continue
            if store.insert_ticket(db, order, seq, self.token_factory) is not None:
                issued += 1
        return issued

    async def resend(self, order_id: str) -> str:
        """(Re)send the ticket email for an existing order. Returns the delivery id."""
        with self.session_factory() as db, store.transient_errors(db):
            order = db.get(Order, order_id)
            if order is None:
                raise ReferenceNotFound("order", order_id)
            event = db.get(Event, order.event_id)
            ticket_type = db.get(TicketType, order.ticket_type_id)
            tickets = store.tickets_for_order(db, order.id)

        subject, body, attachments = render_ticket_email(order, event, ticket_type, tickets, self.encoder)
        delivery_id = await self.notifier.send(order.buyer_email, subject, body, attachments)
        logger.info("sent %d tickets for order %s (delivery %s)", len(attachments), order.id, delivery_id)
        return delivery_id
