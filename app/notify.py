import base64
import logging
import os
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable

import httpx
from jinja2 import Environment, FileSystemLoader, select_autoescape

from .errors import NotificationFailure
from .models import Event, Order, Ticket, TicketType

logger = logging.getLogger(__name__)

templates = Environment(
    loader=FileSystemLoader(os.path.join(os.path.dirname(__file__), "templates")),
    autoescape=select_autoescape(["html"]),
)


@dataclass(frozen=True)
class Attachment:
    filename: str
    content: bytes
    content_type: str = "image/png"
    cid: str | None = None


class NotificationDispatcher(ABC):
    @abstractmethod
    async def send(self, recipient: str, subject: str, body: str, attachments: list[Attachment]) -> str:
        """Hand one message to the transport and return its delivery id."""


class HttpMailDispatcher(NotificationDispatcher):
    """Posts messages to a transactional mail API (`POST {api_url}/emails`)."""

    def __init__(self, api_url: str, api_key: str, sender: str, timeout: float = 10.0):
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.sender = sender
        self.timeout = timeout

    async def send(self, recipient: str, subject: str, body: str, attachments: list[Attachment]) -> str:
        payload = {
            "from": self.sender,
            "to": recipient,
            "subject": subject,
            "html": body,
            "attachments": [
                {
                    "filename": a.filename,
                    "content": base64.b64encode(a.content).decode("ascii"),
                    "content_type": a.content_type,
                    "cid": a.cid,
                }
                for a in attachments
            ],
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                r = await client.post(
                    f"{self.api_url}/emails",
                    json=payload,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
                r.raise_for_status()
                return str(r.json().get("id", ""))
        except (httpx.HTTPError, ValueError) as e:
            raise NotificationFailure(f"mail API rejected message to {recipient}: {e}") from e


class LogDispatcher(NotificationDispatcher):
    """Development transport: logs the message instead of sending it."""

    async def send(self, recipient: str, subject: str, body: str, attachments: list[Attachment]) -> str:
        delivery_id = f"log_{uuid.uuid4().hex[:12]}"
        logger.info("[mail] %s -> %s %r (%d attachments)", delivery_id, recipient, subject, len(attachments))
        return delivery_id


def format_money(cents: int, currency: str) -> str:
    return f"{cents / 100:.2f} {currency}"


def render_ticket_email(
    order: Order,
    event: Event | None,
    ticket_type: TicketType | None,
    tickets: list[Ticket],
    encoder: Callable[[str], bytes],
) -> tuple[str, str, list[Attachment]]:
    """Build (subject, html, attachments) for an order's ticket email."""
    title = event.title if event else "your event"
    attachments = []
    blocks = []
    for t in tickets:
        cid = f"ticket-{t.seq}@{order.id}"
        attachments.append(Attachment(filename=f"ticket-{t.seq}.png", content=encoder(t.token), cid=cid))
        blocks.append({"seq": t.seq, "cid": cid, "ref": t.id})

    html = templates.get_template("ticket_email.html").render(
        order=order,
        event=event,
        title=title,
        ticket_type_name=ticket_type.name if ticket_type else "Ticket",
        unit_price=format_money(ticket_type.price_cents, ticket_type.currency) if ticket_type else "",
        total=format_money(order.total_cents, order.currency),
        tickets=blocks,
    )
    return f"Your tickets: {title}", html, attachments
