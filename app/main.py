import logging
import uuid

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError
from redis.asyncio import Redis
from sqlalchemy.orm import Session

from . import config
from .admin import router as admin_router
from .db import get_db, init_db
from .deps import get_pipeline, get_processor, get_redis
from .errors import ProcessorError, ReferenceNotFound, TransientStoreError
from .fulfillment import Confirmation, FulfillmentPipeline, clamp_quantity
from .idempotency import get_cached_response, request_fingerprint, set_cached_response
from .models import Event, TicketType
from .processor import COMPLETED_EVENT, PaymentProcessor, checkout_metadata
from .rate_limit import token_bucket
from .redemption import VerdictKind, lookup, redeem
from .security import is_valid_email, verify_webhook
from .store import as_utc, record_attempt

config.setup_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="Ticket Fulfillment Gate", version="1.0.0")
app.include_router(admin_router)

# Create DB tables (fine to do at import-time; migrations own production schemas)
init_db()

VERDICT_STATUS = {
    VerdictKind.ACCEPTED: 200,
    VerdictKind.ALREADY_REDEEMED: 409,
    VerdictKind.VOID: 410,
    VerdictKind.INACTIVE: 403,
    VerdictKind.INVALID: 404,
}


def _client(request: Request) -> tuple[str, str]:
    ip = request.client.host if request.client else "unknown"
    return ip, request.headers.get("user-agent", "")


async def _rate_limited(r: Redis, ip: str) -> bool:
    allowed = await token_bucket(
        r,
        key=f"redeem:{ip}",
        capacity=config.REDEEM_RATE_CAPACITY,
        refill_per_sec=config.REDEEM_RATE_CAPACITY / config.REDEEM_RATE_WINDOW_SECONDS,
    )
    return not allowed


# -------------------------
# Checkout
# -------------------------
class CheckoutReq(BaseModel):
    event_id: str
    ticket_type_id: str
    quantity: int = 1
    buyer_email: str
    buyer_name: str | None = None


@app.post("/checkout")
async def create_checkout(
    req: CheckoutReq,
    db: Session = Depends(get_db),
    processor: PaymentProcessor = Depends(get_processor),
):
    email = req.buyer_email.strip()
    if not is_valid_email(email):
        raise HTTPException(400, detail="buyer_email is required and must be a valid email address")

    event = db.get(Event, req.event_id)
    if event is None:
        raise HTTPException(404, detail="Event not found")
    ticket_type = db.get(TicketType, req.ticket_type_id)
    if ticket_type is None or ticket_type.event_id != event.id:
        raise HTTPException(404, detail="Ticket type not found")

    qty = clamp_quantity(req.quantity)
    amount = ticket_type.price_cents * qty
    try:
        session = await processor.create_session(
            amount=amount,
            currency=ticket_type.currency,
            customer_email=email,
            description=f"{event.title}: {ticket_type.name}",
            metadata=checkout_metadata(event.id, ticket_type.id, qty, email, req.buyer_name),
        )
    except ProcessorError:
        raise HTTPException(502, detail="PROCESSOR_UNAVAILABLE")

    return {
        "redirect_url": session["redirect_url"],
        "session_id": session["session_id"],
        "quantity": qty,
        "amount": amount,
        "currency": ticket_type.currency,
    }


# -------------------------
# Payment confirmation
# -------------------------
@app.post("/payments/webhook")
async def payments_webhook(request: Request, pipeline: FulfillmentPipeline = Depends(get_pipeline)):
    body = await request.body()
    try:
        event = verify_webhook(body, config.PROCESSOR_WEBHOOK_SECRET)
    except ValueError as e:
        logger.warning("rejected webhook: %s", e)
        raise HTTPException(400, detail=str(e))

    if event["type"] != COMPLETED_EVENT:
        return {"received": True}

    session = event.get("session")
    if not isinstance(session, dict):
        raise HTTPException(400, detail="INVALID_CONFIRMATION")
    try:
        confirmation = Confirmation.from_session(session)
    except ValidationError as e:
        logger.error("confirmation %s rejected: %s", event.get("id"), e.errors(include_url=False))
        raise HTTPException(400, detail="INVALID_CONFIRMATION")

    try:
        result = await pipeline.fulfill(confirmation)
    except ReferenceNotFound as e:
        # not retryable: answering 4xx stops the processor from redelivering
        logger.error("cannot fulfill %s: %s", confirmation.external_reference, e)
        return JSONResponse(status_code=422, content={"error": "REFERENCE_NOT_FOUND", "detail": str(e)})
    except TransientStoreError:
        raise HTTPException(503, detail="STORE_UNAVAILABLE")

    return {
        "received": True,
        "order_id": result.order_id,
        "duplicate": result.duplicate,
        "tickets_issued": result.issued,
    }


# -------------------------
# Gate
# -------------------------
class RedeemReq(BaseModel):
    token: str = Field(max_length=256)
    event_id: str | None = None
    device_id: str | None = Field(default=None, max_length=128)


class StatusReq(BaseModel):
    token: str = Field(max_length=256)


@app.post("/redeem")
async def redeem_ticket(
    req: RedeemReq,
    request: Request,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    r: Redis = Depends(get_redis),
    db: Session = Depends(get_db),
):
    decision_id = str(uuid.uuid4())
    ip, ua = _client(request)
    token = req.token.strip()
    fingerprint = request_fingerprint(token, req.event_id)

    # A retried scan of the same ticket with the same key gets the original verdict, not ALREADY_REDEEMED
    if idempotency_key:
        cached = await get_cached_response(r, "redeem", idempotency_key, fingerprint)
        if cached:
            return JSONResponse(cached, status_code=VERDICT_STATUS[VerdictKind(cached["verdict"])])

    if await _rate_limited(r, ip):
        record_attempt(
            db, decision_id=decision_id, ticket_id=None, event_id=req.event_id, verdict="RATE_LIMITED",
            device_id=req.device_id, ip=ip, user_agent=ua,
        )
        raise HTTPException(429, detail="RATE_LIMITED")

    try:
        verdict = redeem(db, token, event_id=req.event_id)
    except TransientStoreError as e:
        logger.error("redemption %s failed, store unavailable: %s", decision_id, e)
        raise HTTPException(503, detail="STORE_UNAVAILABLE")

    resp = verdict.to_dict()
    resp["decision_id"] = decision_id
    if idempotency_key:
        await set_cached_response(r, "redeem", idempotency_key, fingerprint, resp)

    record_attempt(
        db, decision_id=decision_id, ticket_id=verdict.ticket_id, event_id=verdict.event_id or req.event_id,
        verdict=verdict.kind.value, device_id=req.device_id, ip=ip, user_agent=ua,
    )
    return JSONResponse(resp, status_code=VERDICT_STATUS[verdict.kind])


@app.post("/redeem/status")
async def ticket_status(
    req: StatusReq,
    request: Request,
    r: Redis = Depends(get_redis),
    db: Session = Depends(get_db),
):
    ip, _ = _client(request)
    if await _rate_limited(r, ip):
        raise HTTPException(429, detail="RATE_LIMITED")

    try:
        ticket = lookup(db, req.token.strip())
    except TransientStoreError:
        raise HTTPException(503, detail="STORE_UNAVAILABLE")
    if ticket is None:
        raise HTTPException(404, detail="INVALID")

    redeemed_at = as_utc(ticket.redeemed_at)
    return {
        "status": ticket.status,
        "ticket_id": ticket.id,
        "event_id": ticket.event_id,
        "redeemed_at": redeemed_at.isoformat() if redeemed_at else None,
    }
