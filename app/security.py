import hmac
import json
import re

from jose import jws
from jose.exceptions import JWSError

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def verify_webhook(body: bytes, secret: str) -> dict:
    """Verify a processor webhook delivered as a compact HS256 JWS.

    Returns the decoded event. Raises ValueError with a short reason code.
    """
    try:
        payload = jws.verify(body.decode("ascii").strip(), secret, algorithms=["HS256"])
    except (JWSError, UnicodeDecodeError):
        raise ValueError("INVALID_SIGNATURE")

    try:
        event = json.loads(payload)
    except ValueError:
        raise ValueError("INVALID_PAYLOAD")

    if not isinstance(event, dict) or "type" not in event:
        raise ValueError("INVALID_PAYLOAD")
    return event


def sign_webhook(event: dict, secret: str) -> str:
    return jws.sign(json.dumps(event, separators=(",", ":")).encode(), secret, algorithm="HS256")


def is_valid_email(email: str | None) -> bool:
    if not email:
        return False
    return _EMAIL_RE.match(email.strip()) is not None


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())
