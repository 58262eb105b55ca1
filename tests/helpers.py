import itertools
from datetime import datetime, timezone

import httpx
from sqlalchemy import func, select

from app import store
from app.credentials import generate_token
from app.db import SessionLocal
from app.errors import NotificationFailure, ProcessorError
from app.fulfillment import Confirmation
from app.models import Event, Order, RedemptionRecord, Ticket, TicketType
from app.notify import NotificationDispatcher
from app.processor import PaymentProcessor
from app.security import sign_webhook

WEBHOOK_SECRET = "test_webhook_secret"
ADMIN_TOKEN = "test_admin_token"


class FakeNotifier(NotificationDispatcher):
    def __init__(self):
        self.sent = []
        self.fail = False

    async def send(self, recipient, subject, body, attachments):
        if self.fail:
            raise NotificationFailure("mail API unavailable")
        self.sent.append({"recipient": recipient, "subject": subject, "body": body, "attachments": attachments})
        return f"fake_{len(self.sent)}"


class FakeProcessor(PaymentProcessor):
    def __init__(self):
        self.sessions = []
        self.fail = False
        self._ids = itertools.count(1)

    async def create_session(self, *, amount, currency, customer_email, description, metadata):
        if self.fail:
            raise ProcessorError("processor unavailable")
        sid = f"cs_test_{next(self._ids)}"
        self.sessions.append(
            {"id": sid, "amount": amount, "currency": currency, "customer_email": customer_email, "metadata": metadata}
        )
        return {"session_id": sid, "redirect_url": f"https://pay.example/{sid}"}


def seed_catalogue(event_id="E1", ticket_type_id="T1", price_cents=1200, currency="EUR"):
    with SessionLocal() as db:
        db.add(Event(
            id=event_id,
            title=f"Show {event_id}",
            venue="Main Hall",
            start_at=datetime(2026, 12, 1, 20, 0, tzinfo=timezone.utc),
        ))
        db.add(TicketType(
            id=ticket_type_id, event_id=event_id, name="General Admission", price_cents=price_cents, currency=currency
        ))
        db.commit()


def confirmation(ref="pay_1", event_id="E1", ticket_type_id="T1", quantity=2, email="a@b.com", **kw) -> Confirmation:
    return Confirmation(
        external_reference=ref, event_id=event_id, ticket_type_id=ticket_type_id, quantity=quantity,
        buyer_email=email, **kw,
    )


def make_order(ref="pay_1", quantity=1, issued=None, event_id="E1", ticket_type_id="T1") -> tuple[Order, list[Ticket]]:
    """Persist an order directly, with `issued` of its `quantity` tickets (default: all)."""
    issued = quantity if issued is None else issued
    with SessionLocal() as db:
        order = Order(
            id=store.new_id("ord"), external_reference=ref, event_id=event_id, ticket_type_id=ticket_type_id,
            quantity=quantity, buyer_email="a@b.com", currency="EUR", total_cents=1200 * quantity,
        )
        assert store.insert_order_if_absent(db, order)
        tickets = [store.insert_ticket(db, order, seq, generate_token) for seq in range(1, issued + 1)]
    return order, tickets


def count_rows(model, **filters) -> int:
    with SessionLocal() as db:
        q = select(func.count()).select_from(model)
        for k, v in filters.items():
            q = q.where(getattr(model, k) == v)
        return db.execute(q).scalar_one()


def get_tickets(order_id: str) -> list[Ticket]:
    with SessionLocal() as db:
        return store.tickets_for_order(db, order_id)


def get_ticket(ticket_id: str) -> Ticket:
    with SessionLocal() as db:
        return db.get(Ticket, ticket_id)


def audit_rows() -> list[RedemptionRecord]:
    with SessionLocal() as db:
        return list(db.execute(select(RedemptionRecord).order_by(RedemptionRecord.id)).scalars())


def completed_event(ref="cs_1", event_id="E1", ticket_type_id="T1", quantity=2, email="a@b.com", name=""):
    return {
        "id": f"evt_{ref}",
        "type": "checkout.session.completed",
        "session": {
            "id": ref,
            "customer_email": email,
            "amount_total": 1200 * quantity,
            "currency": "eur",
            "metadata": {
                "event_id": event_id,
                "ticket_type_id": ticket_type_id,
                "quantity": str(quantity),
                "buyer_email": email,
                "buyer_name": name,
            },
        },
    }


async def post_webhook(client: httpx.AsyncClient, event: dict, secret: str = WEBHOOK_SECRET) -> httpx.Response:
    return await client.post(
        "/payments/webhook", content=sign_webhook(event, secret), headers={"Content-Type": "application/jose"}
    )


async def scan(client: httpx.AsyncClient, token: str, **extra) -> httpx.Response:
    headers = extra.pop("headers", None)
    return await client.post("/redeem", json={"token": token, **extra}, headers=headers)
