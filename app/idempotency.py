import hashlib
import json

from .config import IDEMPOTENCY_TTL_SECONDS


def request_fingerprint(*parts: str | None) -> str:
    """Digest of the request fields a cached response is only valid for."""
    raw = "\x1f".join(p or "" for p in parts)
    return hashlib.sha256(raw.encode()).hexdigest()


def _key(scope: str, idem_key: str, fingerprint: str) -> str:
    return f"idem:{scope}:{idem_key}:{fingerprint}"


async def get_cached_response(redis, scope: str, idem_key: str, fingerprint: str) -> dict | None:
    raw = await redis.get(_key(scope, idem_key, fingerprint))
    return json.loads(raw) if raw else None


async def set_cached_response(
    redis, scope: str, idem_key: str, fingerprint: str, response: dict, ttl_seconds: int = IDEMPOTENCY_TTL_SECONDS
):
    await redis.setex(_key(scope, idem_key, fingerprint), ttl_seconds, json.dumps(response))
