# scripts/sign_confirmation.py
import os  # read environment variables
import uuid  # generate event / session ids
import argparse  # parse CLI args

import httpx  # optional delivery to a running API

from app.security import sign_webhook  # same JWS scheme the webhook verifies


def main() -> None:  # main entrypoint
    parser = argparse.ArgumentParser(description="Sign (and optionally deliver) a checkout.session.completed webhook")
    parser.add_argument("--event-id", required=True)  # catalogue event
    parser.add_argument("--ticket-type-id", required=True)  # ticket type of that event
    parser.add_argument("--quantity", type=int, default=1)  # clamped to 1..10 on receipt
    parser.add_argument("--email", required=True)  # buyer email
    parser.add_argument("--name", default="")  # buyer name
    parser.add_argument("--session-id", default=None)  # reuse to simulate a redelivery
    parser.add_argument("--post", default=None, help="base URL to POST the webhook to, e.g. http://127.0.0.1:8000")
    args = parser.parse_args()  # parse args

    secret = os.environ.get("PROCESSOR_WEBHOOK_SECRET", "dev_secret_change_me")  # shared webhook secret
    session_id = args.session_id or f"cs_{uuid.uuid4().hex}"  # idempotency key of the order

    event = {  # processor event envelope
        "id": f"evt_{uuid.uuid4().hex}",
        "type": "checkout.session.completed",
        "session": {
            "id": session_id,
            "customer_email": args.email,
            "metadata": {
                "event_id": args.event_id,
                "ticket_type_id": args.ticket_type_id,
                "quantity": str(args.quantity),
                "buyer_email": args.email,
                "buyer_name": args.name,
            },
        },
    }

    body = sign_webhook(event, secret)  # compact JWS
    if not args.post:
        print(body)  # output body to stdout
        return

    r = httpx.post(f"{args.post.rstrip('/')}/payments/webhook", content=body, headers={"Content-Type": "application/jose"})
    print(r.status_code, r.text)  # show the API's answer


if __name__ == "__main__":  # run as script
    main()  # call main
