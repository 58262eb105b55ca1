import uuid
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from .db import get_db
from .deps import get_pipeline, require_admin
from .errors import NotificationFailure, ReferenceNotFound, TransientStoreError
from .fulfillment import FulfillmentPipeline
from .models import Event, RedemptionRecord, TicketType
from .redemption import void_ticket
from .store import as_utc, get_order_by_reference, tickets_for_order

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


def _iso(ts: datetime | None) -> str | None:
    ts = as_utc(ts)
    return ts.isoformat() if ts else None


# -------------------------
# Catalogue
# -------------------------
class CreateEventReq(BaseModel):
    title: str
    venue: str
    start_at: datetime


class CreateTicketTypeReq(BaseModel):
    name: str
    price_cents: int = Field(ge=0)
    currency: str = Field(default="EUR", min_length=3, max_length=3)


@router.post("/events")
def create_event(req: CreateEventReq, db: Session = Depends(get_db)):
    event = Event(id=f"evt_{uuid.uuid4().hex[:8]}", title=req.title, venue=req.venue, start_at=req.start_at)
    db.add(event)
    db.commit()
    return {"ok": True, "event_id": event.id, "title": event.title}


@router.get("/events")
def list_events(db: Session = Depends(get_db)):
    rows = db.execute(select(Event).order_by(Event.start_at.desc())).scalars().all()
    return [
        {"event_id": e.id, "title": e.title, "venue": e.venue, "start_at": _iso(e.start_at)}
        for e in rows
    ]


@router.post("/events/{event_id}/ticket-types")
def create_ticket_type(event_id: str, req: CreateTicketTypeReq, db: Session = Depends(get_db)):
    if db.get(Event, event_id) is None:
        raise HTTPException(404, detail="Event not found")
    tt = TicketType(
        id=f"tt_{uuid.uuid4().hex[:8]}",
        event_id=event_id,
        name=req.name,
        price_cents=req.price_cents,
        currency=req.currency.upper(),
    )
    db.add(tt)
    db.commit()
    return {"ok": True, "ticket_type_id": tt.id, "event_id": event_id}


# -------------------------
# Orders & tickets
# -------------------------
@router.get("/orders/{external_reference}")
def get_order(external_reference: str, db: Session = Depends(get_db)):
    order = get_order_by_reference(db, external_reference)
    if order is None:
        raise HTTPException(404, detail="Order not found")
    tickets = tickets_for_order(db, order.id)
    return {
        "order_id": order.id,
        "external_reference": order.external_reference,
        "event_id": order.event_id,
        "quantity": order.quantity,
        "total_cents": order.total_cents,
        "currency": order.currency,
        "buyer_email": order.buyer_email,
        "tickets": [
            {"ticket_id": t.id, "seq": t.seq, "status": t.status, "redeemed_at": _iso(t.redeemed_at)}
            for t in tickets
        ],
    }


@router.post("/tickets/{ticket_id}/void")
def void(ticket_id: str, db: Session = Depends(get_db)):
    changed, ticket = void_ticket(db, ticket_id)
    if ticket is None:
        raise HTTPException(404, detail="Ticket not found")
    if not changed:
        raise HTTPException(409, detail=f"Ticket is {ticket.status}")
    return {"ok": True, "ticket_id": ticket.id, "status": ticket.status}


@router.post("/orders/{order_id}/resend")
async def resend(order_id: str, pipeline: FulfillmentPipeline = Depends(get_pipeline)):
    try:
        delivery_id = await pipeline.resend(order_id)
    except ReferenceNotFound:
        raise HTTPException(404, detail="Order not found")
    except (NotificationFailure, TransientStoreError) as e:
        raise HTTPException(502, detail=f"resend failed: {e}")
    return {"ok": True, "order_id": order_id, "delivery_id": delivery_id}


# -------------------------
# Logs
# -------------------------
@router.get("/redemptions")
def get_redemptions(limit: int = 80, event_id: Optional[str] = None, db: Session = Depends(get_db)):
    q = select(RedemptionRecord)
    if event_id:
        q = q.where(RedemptionRecord.event_id == event_id)
    rows = db.execute(q.order_by(RedemptionRecord.id.desc()).limit(max(1, min(limit, 500)))).scalars().all()
    return [
        {
            "created_at": _iso(rec.created_at),
            "decision_id": rec.decision_id,
            "ticket_id": rec.ticket_id,
            "event_id": rec.event_id,
            "verdict": rec.verdict,
            "device_id": rec.device_id,
        }
        for rec in rows
    ]
