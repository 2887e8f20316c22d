"""
HMAC-SHA256 payload signing.

Used both for outgoing merchant webhooks (X-Webhook-Signature) and for
verifying inbound provider callbacks (X-Callback-Signature). Signatures are
lowercase hex over the exact body bytes.
"""
import hashlib
import hmac
import json
from typing import Any


def canonical_json(payload: dict[str, Any]) -> bytes:
    """Serialise once; the same bytes are signed and sent"""
    return json.dumps(
        payload,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    ).encode("utf-8")


def sign_payload(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: str | None, secret: str) -> bool:
    """Constant-time comparison of the expected and received signatures"""
    if not signature or not secret:
        return False
    # תמיכה גם בפורמט "sha256=<hex>"
    if signature.startswith("sha256="):
        signature = signature[len("sha256="):]
    expected = sign_payload(body, secret).encode("ascii")
    # כותרת עם תווים שאינם ASCII מגיעה כ-latin-1; משווים bytes כדי לא לזרוק TypeError
    received = signature.strip().lower().encode("utf-8", "ignore")
    return hmac.compare_digest(expected, received)
