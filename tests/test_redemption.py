from datetime import datetime, timedelta, timezone

from app.credentials import generate_token
from app.db import SessionLocal
from app.models import Ticket, TicketStatus
from app.redemption import VerdictKind, lookup, redeem, void_ticket
from tests.helpers import count_rows, get_ticket, make_order

T0 = datetime(2026, 12, 1, 19, 30, tzinfo=timezone.utc)


def test_first_scan_accepted_second_already_redeemed_with_winner_timestamp():
    _, [ticket] = make_order("pay_1", quantity=1)

    with SessionLocal() as db:
        first = redeem(db, ticket.token, now=T0)
    with SessionLocal() as db:
        second = redeem(db, ticket.token, now=T0 + timedelta(milliseconds=5))

    assert first.kind is VerdictKind.ACCEPTED
    assert first.ticket_id == ticket.id
    assert first.event_id == "E1"
    assert second.kind is VerdictKind.ALREADY_REDEEMED
    assert second.redeemed_at == T0

    stored = get_ticket(ticket.id)
    assert stored.status == TicketStatus.REDEEMED
    assert stored.redeemed_at.replace(tzinfo=timezone.utc) == T0


def test_repeated_scans_keep_first_timestamp():
    _, [ticket] = make_order("pay_1", quantity=1)

    verdicts = []
    for i in range(10):
        with SessionLocal() as db:
            verdicts.append(redeem(db, ticket.token, now=T0 + timedelta(milliseconds=i)))

    assert [v.kind for v in verdicts].count(VerdictKind.ACCEPTED) == 1
    assert all(v.redeemed_at == T0 for v in verdicts)


def test_unknown_and_malformed_tokens_are_invalid_without_mutation():
    _, [ticket] = make_order("pay_1", quantity=1)

    with SessionLocal() as db:
        for token in ("nonexistent", generate_token(), "", "x" * 200):
            verdict = redeem(db, token)
            assert verdict.kind is VerdictKind.INVALID
            assert verdict.ticket_id is None
            assert verdict.to_dict()["message"] == "Invalid ticket"

    assert count_rows(Ticket, status=TicketStatus.ACTIVE) == 1
    assert get_ticket(ticket.id).redeemed_at is None


def test_void_ticket_cannot_be_redeemed():
    _, [ticket] = make_order("pay_1", quantity=1)

    with SessionLocal() as db:
        changed, voided = void_ticket(db, ticket.id)
        assert changed
        assert voided.status == TicketStatus.VOID

        verdict = redeem(db, ticket.token)

    assert verdict.kind is VerdictKind.VOID
    assert verdict.redeemed_at is None
    assert get_ticket(ticket.id).status == TicketStatus.VOID


def test_redeemed_ticket_cannot_be_voided_or_reactivated():
    _, [ticket] = make_order("pay_1", quantity=1)

    with SessionLocal() as db:
        redeem(db, ticket.token, now=T0)
        changed, current = void_ticket(db, ticket.id)

    assert not changed
    assert current.status == TicketStatus.REDEEMED


def test_void_unknown_ticket():
    with SessionLocal() as db:
        assert void_ticket(db, "tkt_missing") == (False, None)


def test_gate_bound_to_other_event_reports_inactive_and_leaves_ticket_usable():
    _, [ticket] = make_order("pay_1", quantity=1)

    with SessionLocal() as db:
        wrong = redeem(db, ticket.token, event_id="E2")
    assert wrong.kind is VerdictKind.INACTIVE
    assert get_ticket(ticket.id).status == TicketStatus.ACTIVE

    with SessionLocal() as db:
        right = redeem(db, ticket.token, event_id="E1")
    assert right.kind is VerdictKind.ACCEPTED


def test_tickets_of_one_order_redeem_independently():
    _, tickets = make_order("pay_1", quantity=3)

    with SessionLocal() as db:
        kinds = [redeem(db, t.token).kind for t in tickets]

    assert kinds == [VerdictKind.ACCEPTED] * 3
    assert count_rows(Ticket, status=TicketStatus.REDEEMED) == 3


def test_lookup_is_read_only():
    _, [ticket] = make_order("pay_1", quantity=1)

    with SessionLocal() as db:
        assert lookup(db, ticket.token).status == TicketStatus.ACTIVE
        assert lookup(db, "nonexistent") is None
        redeem(db, ticket.token, now=T0)
        assert lookup(db, ticket.token).status == TicketStatus.REDEEMED


def test_gate_bound_to_other_event_never_sees_redemption_state():
    _, [used, voided] = make_order("pay_1", quantity=2)

    with SessionLocal() as db:
        redeem(db, used.token, event_id="E1", now=T0)
        void_ticket(db, voided.id)
        after_use = redeem(db, used.token, event_id="E2")
        after_void = redeem(db, voided.token, event_id="E2")

    assert after_use.kind is VerdictKind.INACTIVE
    assert after_use.redeemed_at is None
    assert after_void.kind is VerdictKind.INACTIVE
    assert get_ticket(used.id).status == TicketStatus.REDEEMED
