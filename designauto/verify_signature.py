import hmac
import hashlib
from typing import Any, Mapping, Optional

HOTTOK_HEADERS = ("X-Hotmart-Hottok", "X-Hotmart-Webhook-Token")


def verify_hottok(secret: str, token: Optional[str]) -> bool:
    """
    Verify the Hotmart shared-secret token (hottok).

    secret: HOTMART_SECRET configured for this deployment
    token: value sent by Hotmart, see extract_hottok
    """
    if not secret or not token:
        return False
    return hmac.compare_digest(secret.encode("utf-8"), str(token).strip().encode("utf-8"))


def extract_hottok(headers: Mapping[str, str], args: Mapping[str, str], payload: Any) -> Optional[str]:
    """Hotmart has sent the token in a header, the query string and the body over time."""
    for header in HOTTOK_HEADERS:
        value = headers.get(header)
        if value:
            return value
    for arg in ("hottok", "token"):
        value = args.get(arg)
        if value:
            return value
    if isinstance(payload, dict) and payload.get("hottok"):
        return str(payload["hottok"])
    return None


def verify_hmac_signature(secret: str, payload: bytes, signature_header: Optional[str]) -> bool:
    """
    Verify a provider HMAC-SHA256 signature (Doppus X-Doppus-Signature).

    secret: Doppus secret key as a string
    payload: Raw request body (bytes)
    signature_header: hex digest, with or without a 'sha256=' prefix
    """
    if not secret or not signature_header:
        return False

    received = signature_header.strip()
    if received.startswith("sha256="):
        received = received.split("=", 1)[1]

    mac = hmac.new(secret.encode("utf-8"), msg=payload, digestmod=hashlib.sha256)
    expected = mac.hexdigest()

    # Constant-time comparison
    return hmac.compare_digest(expected, received.lower())
