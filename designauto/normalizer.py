# designauto/normalizer.py
"""
Turn provider webhook payloads into a single Purchase record.

Hotmart and Doppus have both changed their payload layout over time, and the
same provider sends buyer data in different places depending on the event
(``data.buyer`` for purchases, ``data.subscription.subscriber`` for some
subscription events, a top-level ``customer`` for the newer Doppus format).
Every lookup tries the known locations first and then falls back to a bounded
depth-first search of the payload.
"""
import re
from dataclasses import asdict, dataclass
from typing import Any, Iterator, Optional, Sequence, Tuple

MAX_DEPTH = 12

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

GRANT_EVENTS = {
    "PURCHASE_APPROVED",
    "PURCHASE_COMPLETE",
    "SUBSCRIPTION_REACTIVATION",
    "PAYMENT_APPROVED",
    "SUBSCRIPTION_RENEWED",
}

# event -> subscription status after the revocation
REVOKE_EVENTS = {
    "PURCHASE_REFUNDED": "refunded",
    "PURCHASE_CHARGEBACK": "chargeback",
    "PURCHASE_CANCELED": "canceled",
    "PAYMENT_REFUNDED": "refunded",
    "PAYMENT_CHARGEBACK": "chargeback",
    "SUBSCRIPTION_EXPIRED": "expired",
}

CANCEL_EVENTS = {"SUBSCRIPTION_CANCELLATION", "SUBSCRIPTION_CANCELLED"}

DELAY_EVENTS = {"PURCHASE_DELAYED", "PURCHASE_PROTEST"}

APPROVED_STATUSES = {"APPROVED", "COMPLETED", "COMPLETE"}

DOPPUS_STATUS_EVENTS = {
    "approved": "PAYMENT_APPROVED",
    "paid": "PAYMENT_APPROVED",
    "refunded": "PAYMENT_REFUNDED",
    "canceled": "SUBSCRIPTION_CANCELLED",
    "cancelled": "SUBSCRIPTION_CANCELLED",
    "chargeback": "PAYMENT_CHARGEBACK",
    "expired": "SUBSCRIPTION_EXPIRED",
}

EMAIL_PATHS = (
    ("buyer", "email"),
    ("subscription", "subscriber", "email"),
    ("subscriber", "email"),
    ("customer", "email"),
    ("purchase", "customer", "email"),
    ("buyer_email",),
    ("email",),
)

PHONE_PATHS = (
    ("buyer", "checkout_phone"),
    ("buyer", "phone"),
    ("buyer", "address", "phone"),
    ("customer", "phone"),
    ("subscriber", "phone"),
    ("buyer_phone",),
)

NAME_PATHS = (
    ("buyer", "name"),
    ("customer", "name"),
    ("subscription", "subscriber", "name"),
    ("subscriber", "name"),
    ("buyer_name",),
)

TRANSACTION_PATHS = (
    ("purchase", "transaction"),
    ("purchase", "transaction_code"),
    ("transaction", "code"),
    ("transaction",),
    ("order", "code"),
)

PRODUCT_PATHS = (
    ("product", "id"),
    ("product", "code"),
    ("items", 0, "code"),
    ("items", 0, "id"),
)

OFFER_PATHS = (
    ("purchase", "offer", "code"),
    ("offer", "code"),
    ("items", 0, "offer", "code"),
    ("items", 0, "offer"),
)

PLAN_NAME_PATHS = (
    ("subscription", "plan", "name"),
    ("plan", "name"),
    ("items", 0, "name"),
    ("product", "name"),
)

PERSON_KEYS = {"buyer", "customer", "subscriber", "client", "cliente", "comprador", "user"}


@dataclass(frozen=True)
class Purchase:
    source: str
    event: str
    action: str
    email: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    transaction_id: Optional[str] = None
    product_id: Optional[str] = None
    offer_id: Optional[str] = None
    plan_name: Optional[str] = None
    purchase_status: Optional[str] = None

    @property
    def revoke_status(self) -> Optional[str]:
        return REVOKE_EVENTS.get(self.event)

    def to_dict(self) -> dict:
        return asdict(self)


def _roots(payload: dict) -> Tuple[dict, ...]:
    data = payload.get("data")
    if isinstance(data, dict):
        return (data, payload)
    return (payload,)


def _dig(obj: Any, path: Sequence) -> Any:
    for key in path:
        if isinstance(key, int):
            if not isinstance(obj, list) or len(obj) <= key:
                return None
        elif not isinstance(obj, dict):
            return None
        obj = obj[key] if isinstance(key, int) else obj.get(key)
    return obj


def _scalar(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (bool, dict, list)):
        return None
    text = str(value).strip()
    return text or None


def _first(payload: dict, paths: Sequence[Sequence]) -> Optional[str]:
    for root in _roots(payload):
        for path in paths:
            value = _scalar(_dig(root, path))
            if value:
                return value
    return None


def _walk(obj: Any, depth: int = 0) -> Iterator[Tuple[Optional[str], Any]]:
    """Yield (key, value) pairs depth first; list items come out with key None."""
    if depth > MAX_DEPTH:
        return
    if isinstance(obj, dict):
        for key, value in obj.items():
            yield str(key), value
            if isinstance(value, (dict, list)):
                yield from _walk(value, depth + 1)
    elif isinstance(obj, list):
        for item in obj:
            yield None, item
            if isinstance(item, (dict, list)):
                yield from _walk(item, depth + 1)


def _walk_people(obj: Any, depth: int = 0) -> Iterator[dict]:
    """Yield the dicts stored under buyer/customer-like keys."""
    if depth > MAX_DEPTH:
        return
    if isinstance(obj, dict):
        for key, value in obj.items():
            if isinstance(value, dict) and str(key).lower() in PERSON_KEYS:
                yield value
            if isinstance(value, (dict, list)):
                yield from _walk_people(value, depth + 1)
    elif isinstance(obj, list):
        for item in obj:
            yield from _walk_people(item, depth + 1)


def _looks_like_email(value: Any) -> bool:
    return isinstance(value, str) and bool(EMAIL_RE.match(value.strip()))


def find_email(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    for root in _roots(payload):
        for path in EMAIL_PATHS:
            value = _dig(root, path)
            if _looks_like_email(value):
                return value.strip().lower()
    # any *email key first, then any string shaped like an address
    for key, value in _walk(payload):
        if key and "email" in key.lower() and _looks_like_email(value):
            return value.strip().lower()
    for _key, value in _walk(payload):
        if _looks_like_email(value):
            return value.strip().lower()
    return None


def find_phone(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    phone = _first(payload, PHONE_PATHS)
    if phone:
        return phone
    for key, value in _walk(payload):
        if not key:
            continue
        lowered = key.lower()
        if "code" in lowered:
            continue
        if "phone" in lowered or "telefone" in lowered or "celular" in lowered:
            phone = _scalar(value)
            if phone:
                return phone
    return None


def find_name(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    name = _first(payload, NAME_PATHS)
    if name:
        return name
    for person in _walk_people(payload):
        for key in ("name", "full_name", "fullName", "nome"):
            name = _scalar(person.get(key))
            if name:
                return name
        first = _scalar(person.get("first_name") or person.get("firstName"))
        last = _scalar(person.get("last_name") or person.get("lastName"))
        if first and last:
            return f"{first} {last}"
    return None


def find_transaction_id(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    transaction = _first(payload, TRANSACTION_PATHS)
    if transaction:
        return transaction
    data = payload.get("data")
    if isinstance(data, dict):
        # flattened Doppus payloads keep the order id in data.code / data.id
        transaction = _scalar(data.get("code")) or _scalar(data.get("id"))
        if transaction:
            return transaction
    for key, value in _walk(payload):
        if not key:
            continue
        lowered = key.lower()
        if "date" in lowered:
            continue
        if "transaction" in lowered or "order" in lowered or "pedido" in lowered:
            transaction = _scalar(value)
            if transaction:
                return transaction
    return None


def _event_name(raw: Any) -> Optional[str]:
    text = _scalar(raw)
    if not text:
        return None
    return re.sub(r"[.\-\s]+", "_", text).upper()


def _doppus_status_event(payload: dict) -> Optional[str]:
    status = payload.get("status")
    if isinstance(status, dict):
        status = status.get("code") or status.get("name")
    status = _scalar(status)
    if not status:
        return None
    return DOPPUS_STATUS_EVENTS.get(status.lower())


def find_event(payload: Any, source: str, header_event: Optional[str] = None) -> str:
    if not isinstance(payload, dict):
        return "UNKNOWN"
    event = _event_name(payload.get("event")) or _event_name(payload.get("evento")) or _event_name(header_event)
    if event:
        return event
    if source == "doppus":
        event = _doppus_status_event(payload)
        if event:
            return event
        if isinstance(payload.get("customer"), dict) and isinstance(payload.get("items"), list) and "data" not in payload:
            return "PAYMENT_APPROVED"
    return "UNKNOWN"


def find_product(payload: Any) -> Tuple[Optional[str], Optional[str], Optional[str]]:
    if not isinstance(payload, dict):
        return None, None, None
    return _first(payload, PRODUCT_PATHS), _first(payload, OFFER_PATHS), _first(payload, PLAN_NAME_PATHS)


def classify(event: str, purchase_status: Optional[str] = None) -> str:
    if event in GRANT_EVENTS:
        if event == "PURCHASE_APPROVED" and purchase_status and purchase_status not in APPROVED_STATUSES:
            return "ignore"
        return "grant"
    if event in REVOKE_EVENTS:
        return "revoke"
    if event in CANCEL_EVENTS:
        return "cancel"
    if event in DELAY_EVENTS:
        return "delay"
    return "ignore"


def normalize(payload: Any, source: str, header_event: Optional[str] = None) -> Purchase:
    source = (source or "unknown").lower()
    if not isinstance(payload, dict):
        return Purchase(source=source, event="UNKNOWN", action="ignore")

    event = find_event(payload, source, header_event)
    status = _first(payload, (("purchase", "status"),))
    purchase_status = status.upper() if status else None
    product_id, offer_id, plan_name = find_product(payload)

    return Purchase(
        source=source,
        event=event,
        action=classify(event, purchase_status),
        email=find_email(payload),
        name=find_name(payload),
        phone=find_phone(payload),
        transaction_id=find_transaction_id(payload),
        product_id=product_id,
        offer_id=offer_id,
        plan_name=plan_name,
        purchase_status=purchase_status,
    )
