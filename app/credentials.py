import io
import re
import secrets

import segno

# 32 random bytes -> 43 url-safe characters
TOKEN_BYTES = 32
_TOKEN_RE = re.compile(r"^[A-Za-z0-9_-]{32,128}$")


def generate_token() -> str:
    return secrets.token_urlsafe(TOKEN_BYTES)


def is_well_formed(token: str) -> bool:
    return bool(token) and _TOKEN_RE.match(token) is not None


def encode_qr_png(token: str, scale: int = 8) -> bytes:
    """Render `token` as a QR code PNG."""
    qr = segno.make(token, error="m", micro=False)
    buf = io.BytesIO()
    qr.save(buf, kind="png", scale=scale, border=2)
    return buf.getvalue()
