# designauto/entitlements.py
"""
Entitlement writer: turns normalized purchases into user and subscription rows.

Webhooks are delivered at least once and in no particular order, so every
handler here is written to be replayed safely:

* the webhook_logs table doubles as the ledger of what was already applied
  for a (source, transaction) pair;
* subscriptions.transaction_id and subscriptions.user_id are unique, so two
  concurrent deliveries cannot both insert a row;
* granting never shortens access that is already paid for.

Handlers only flush. process() owns the transaction and writes the outcome
back to the log row.
"""
import json
import logging
import re
import secrets
import unicodedata
from collections import namedtuple
from datetime import datetime, timedelta
from typing import Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError
from werkzeug.security import generate_password_hash

from .extensions import db
from .models import ProductMapping, Subscription, User, WebhookLog
from .normalizer import GRANT_EVENTS, REVOKE_EVENTS, Purchase, find_email, find_event, find_transaction_id, normalize

logger = logging.getLogger(__name__)

Plan = namedtuple("Plan", ["plan_type", "duration_days", "is_lifetime"])

# (keywords, plan type, days, lifetime), checked in order
PLAN_KEYWORDS = (
    (("vitalic", "lifetime"), "vitalicio", 0, True),
    (("anual", "annual", "yearly", "12 meses"), "anual", 365, False),
    (("semestral", "6 meses"), "semestral", 180, False),
    (("trimestral", "quarterly", "3 meses"), "trimestral", 90, False),
    (("mensal", "monthly"), "mensal", 30, False),
)

# access levels that billing events never overwrite
PRIVILEGED_LEVELS = {"admin", "designer_adm", "support"}

REVOKED_STATUSES = set(REVOKE_EVENTS.values())


class EntitlementError(RuntimeError):
    """Raised when a webhook cannot be applied; the log is marked as error."""


def _result(status: str, message: str, **details) -> dict:
    return {"status": status, "message": message, **details}


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _fold(text: str) -> str:
    """Lower-case and drop accents, so "Vitalício" matches "vitalic"."""
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch)).lower()


def resolve_plan(purchase: Purchase) -> Plan:
    if purchase.product_id:
        query = ProductMapping.query.filter_by(source=purchase.source, product_id=purchase.product_id)
        mapping = None
        if purchase.offer_id:
            mapping = query.filter_by(offer_id=purchase.offer_id).first()
        if mapping is None:
            mapping = query.filter_by(offer_id="").first()
        if mapping is not None:
            days = 0 if mapping.is_lifetime else mapping.duration_days
            return Plan(mapping.plan_type, days, mapping.is_lifetime)

    hint = _fold(" ".join(filter(None, (purchase.plan_name, purchase.product_id, purchase.offer_id))))
    for keywords, plan_type, days, lifetime in PLAN_KEYWORDS:
        if any(keyword in hint for keyword in keywords):
            return Plan(plan_type, days, lifetime)

    return Plan(current_app.config["DEFAULT_PLAN_TYPE"], current_app.config["DEFAULT_PLAN_DAYS"], False)


def _unique_username(email: str) -> str:
    base = re.sub(r"[^a-zA-Z0-9_.]", "", email.split("@")[0]) or "user"
    while True:
        candidate = f"{base}_{secrets.token_hex(3)}"
        if User.query.filter_by(username=candidate).first() is None:
            return candidate


def get_or_create_user(email: str, name: Optional[str] = None, phone: Optional[str] = None):
    """Return (user, created). Missing name/phone on an existing user are filled in."""
    email = email.strip().lower()
    user = User.query.filter_by(email=email).first()
    if user is not None:
        if phone and not user.phone:
            user.phone = phone
        if name and not user.name:
            user.name = name
        return user, False

    user = User(
        username=_unique_username(email),
        email=email,
        name=name or email.split("@")[0],
        phone=phone,
        # buyers set their own password through the reset flow
        password=generate_password_hash(secrets.token_urlsafe(24)),
        role="user",
        nivelacesso="free",
        acessovitalicio=False,
        isactive=True,
    )
    db.session.add(user)
    db.session.flush()
    logger.info("Created user %s for %s", user.id, email)
    return user, True


def _earlier_log(purchase: Purchase, log: WebhookLog, events, statuses) -> Optional[WebhookLog]:
    if not purchase.transaction_id:
        return None
    return (
        WebhookLog.query.filter(
            WebhookLog.source == purchase.source,
            WebhookLog.transaction_id == purchase.transaction_id,
            WebhookLog.event_type.in_(list(events)),
            WebhookLog.status.in_(list(statuses)),
            WebhookLog.id != log.id,
        )
        .order_by(WebhookLog.id)
        .first()
    )


def _locate_subscription(purchase: Purchase) -> Optional[Subscription]:
    if purchase.transaction_id:
        subscription = Subscription.query.filter_by(transaction_id=purchase.transaction_id).first()
        if subscription is not None:
            return subscription
    if purchase.email:
        user = User.query.filter_by(email=purchase.email).first()
        if user is not None:
            return user.subscription
    return None


def _is_stale(purchase: Purchase, subscription: Subscription) -> bool:
    # a subscription without a transaction (manual grant) never matches one that names a transaction
    return bool(purchase.transaction_id and subscription.transaction_id != purchase.transaction_id)


def grant(purchase: Purchase, log: WebhookLog) -> dict:
    """Create or upgrade the buyer's user and subscription."""
    if not purchase.email:
        return _result("error", "buyer email not found in payload")

    tx = purchase.transaction_id
    if _earlier_log(purchase, log, GRANT_EVENTS, ("processed",)):
        return _result("duplicate", f"transaction {tx} was already granted")
    if _earlier_log(purchase, log, REVOKE_EVENTS, ("processed", "ignored")):
        return _result("superseded", f"transaction {tx} was refunded or cancelled before approval arrived")

    plan = resolve_plan(purchase)
    user, created = get_or_create_user(purchase.email, purchase.name, purchase.phone)

    subscription = None
    if tx:
        subscription = Subscription.query.filter_by(transaction_id=tx).first()
        if subscription is not None and subscription.user_id != user.id:
            raise EntitlementError(f"transaction {tx} already belongs to user {subscription.user_id}")
        if subscription is not None and subscription.status == "active" and subscription.last_event in GRANT_EVENTS:
            return _result("duplicate", f"transaction {tx} is already active", userId=user.id)
    if subscription is None:
        subscription = user.subscription

    now = datetime.utcnow()
    plan_type = plan.plan_type
    lifetime = plan.is_lifetime
    expires = None if lifetime else now + timedelta(days=plan.duration_days)

    if not lifetime:
        if user.acessovitalicio:
            # lifetime access survives later time-boxed purchases
            lifetime, expires, plan_type = True, None, user.tipoplano or plan_type
        elif user.nivelacesso == "premium" and user.dataexpiracao and user.dataexpiracao > expires:
            expires, plan_type = user.dataexpiracao, user.tipoplano or plan_type

    if user.nivelacesso not in PRIVILEGED_LEVELS:
        user.nivelacesso = "premium"
    user.tipoplano = plan_type
    user.origemassinatura = purchase.source
    user.dataassinatura = now
    user.dataexpiracao = expires
    user.acessovitalicio = lifetime
    user.isactive = True

    if subscription is None:
        subscription = Subscription(user_id=user.id)
        db.session.add(subscription)
    subscription.plan_type = plan_type
    subscription.status = "active"
    subscription.origin = purchase.source
    if tx:
        subscription.transaction_id = tx
    subscription.last_event = purchase.event
    subscription.start_date = now
    subscription.end_date = expires
    subscription.webhook_data = log.payload
    subscription.canceled_at = None
    subscription.cancel_reason = None
    db.session.flush()

    logger.info("Granted %s to user %s (tx=%s, expires=%s)", plan_type, user.id, tx, expires)
    return _result(
        "processed",
        f"{plan_type} access granted to {user.email}",
        userId=user.id,
        userCreated=created,
        subscriptionId=subscription.id,
        planType=plan_type,
        lifetime=lifetime,
        expiresAt=_iso(expires),
    )


def revoke(purchase: Purchase, log: WebhookLog) -> dict:
    """Refund, chargeback or expiry: access ends now."""
    subscription = _locate_subscription(purchase)
    if subscription is None:
        return _result("ignored", f"no subscription found for {purchase.email or purchase.transaction_id}")
    if _is_stale(purchase, subscription):
        return _result(
            "ignored",
            f"transaction {purchase.transaction_id} is not the current one ({subscription.transaction_id})",
        )

    status = purchase.revoke_status or "canceled"
    if subscription.status == status and subscription.last_event == purchase.event:
        return _result("duplicate", f"subscription {subscription.id} is already {status}")

    now = datetime.utcnow()
    subscription.status = status
    subscription.last_event = purchase.event
    subscription.end_date = now
    subscription.canceled_at = now
    subscription.cancel_reason = purchase.event

    user = subscription.user
    if user.nivelacesso not in PRIVILEGED_LEVELS:
        user.nivelacesso = "free"
    user.dataexpiracao = now
    user.acessovitalicio = False
    db.session.flush()

    logger.info("Revoked access of user %s (%s, tx=%s)", user.id, purchase.event, subscription.transaction_id)
    return _result("processed", f"access revoked for {user.email}", userId=user.id, subscriptionStatus=status)


def cancel(purchase: Purchase, log: WebhookLog) -> dict:
    """Subscription will not renew; access is kept until dataexpiracao."""
    subscription = _locate_subscription(purchase)
    if subscription is None:
        return _result("ignored", f"no subscription found for {purchase.email or purchase.transaction_id}")
    if _is_stale(purchase, subscription):
        return _result(
            "ignored",
            f"transaction {purchase.transaction_id} is not the current one ({subscription.transaction_id})",
        )
    if subscription.status in REVOKED_STATUSES:
        return _result("ignored", f"subscription {subscription.id} is already {subscription.status}")

    subscription.status = "canceled"
    subscription.last_event = purchase.event
    subscription.canceled_at = datetime.utcnow()
    subscription.cancel_reason = "cancelled by provider"
    db.session.flush()

    user = subscription.user
    logger.info("Subscription %s of user %s cancelled, access until %s", subscription.id, user.id, user.dataexpiracao)
    return _result(
        "processed",
        f"subscription cancelled for {user.email}",
        userId=user.id,
        accessUntil=_iso(user.dataexpiracao),
    )


def delay(purchase: Purchase, log: WebhookLog) -> dict:
    subscription = _locate_subscription(purchase)
    if subscription is None or _is_stale(purchase, subscription):
        return _result("ignored", "no matching subscription for delayed payment")
    subscription.status = "delayed"
    subscription.last_event = purchase.event
    db.session.flush()
    return _result("processed", f"subscription {subscription.id} marked as delayed", userId=subscription.user_id)


def ignore(purchase: Purchase, log: WebhookLog) -> dict:
    return _result("ignored", f"event {purchase.event} requires no processing")


HANDLERS = {
    "grant": grant,
    "revoke": revoke,
    "cancel": cancel,
    "delay": delay,
    "ignore": ignore,
}


def record_webhook(source: str, payload, raw_body: bytes = b"", source_ip: Optional[str] = None,
                   header_event: Optional[str] = None) -> WebhookLog:
    """Insert the audit row before anything else happens."""
    if payload is not None:
        text = json.dumps(payload, ensure_ascii=False, default=str)
    else:
        text = (raw_body or b"").decode("utf-8", errors="replace")

    log = WebhookLog(
        source=source,
        event_type=find_event(payload, source, header_event),
        status="received",
        email=find_email(payload),
        transaction_id=find_transaction_id(payload),
        source_ip=source_ip,
        payload=text,
    )
    db.session.add(log)
    db.session.commit()
    logger.info("Recorded %s webhook %s (%s)", source, log.id, log.event_type)
    return log


def mark(log: WebhookLog, status: str, message: Optional[str] = None) -> dict:
    result = _result(status, message or status)
    _finish(log, result)
    db.session.commit()
    return result


def _finish(log: WebhookLog, result: dict) -> None:
    log.status = result["status"]
    log.error_message = result["message"] if result["status"] in ("error", "rejected") else None
    log.processing_result = json.dumps(result, default=str)


def process(log: WebhookLog) -> dict:
    """Apply a recorded webhook. Safe to call again on the same log."""
    if log.status == "processed":
        return _result("processed", "webhook already processed", skipped=True)

    payload = log.payload_json()
    if not isinstance(payload, dict):
        return mark(log, "error", "payload is not a JSON object")

    hint = log.event_type if log.event_type and log.event_type != "UNKNOWN" else None
    purchase = normalize(payload, log.source, hint)

    log.status = "processing"
    log.event_type = purchase.event
    log.email = purchase.email or log.email
    log.transaction_id = purchase.transaction_id or log.transaction_id
    db.session.commit()
    log_id = log.id

    try:
        result = HANDLERS[purchase.action](purchase, log)
        _finish(log, result)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        logger.warning("Concurrent delivery for webhook %s (tx=%s)", log_id, purchase.transaction_id)
        log = db.session.get(WebhookLog, log_id)
        if purchase.action == "grant" and _earlier_log(purchase, log, GRANT_EVENTS, ("processed",)):
            result = mark(log, "duplicate", "a concurrent delivery already recorded this transaction")
        else:
            # left as error so reprocess-pending retries it
            result = mark(log, "error", "conflicting concurrent write, retry pending")
    except Exception as exc:
        db.session.rollback()
        logger.exception("Failed to process webhook %s", log_id)
        log = db.session.get(WebhookLog, log_id)
        result = mark(log, "error", str(exc))

    result["webhookId"] = log_id
    return result


def admin_grant(user: User, plan_type: str, duration_days: Optional[int] = None, lifetime: bool = False) -> User:
    now = datetime.utcnow()
    days = duration_days or current_app.config["DEFAULT_PLAN_DAYS"]
    expires = None if lifetime else now + timedelta(days=days)

    if user.nivelacesso not in PRIVILEGED_LEVELS:
        user.nivelacesso = "premium"
    user.tipoplano = plan_type
    user.origemassinatura = "admin"
    user.dataassinatura = now
    user.dataexpiracao = expires
    user.acessovitalicio = lifetime

    subscription = user.subscription
    if subscription is None:
        subscription = Subscription(user_id=user.id)
        db.session.add(subscription)
    subscription.plan_type = plan_type
    subscription.status = "active"
    subscription.origin = "admin"
    # a refund for an older provider transaction must not undo a manual grant
    subscription.transaction_id = None
    subscription.last_event = "ADMIN_GRANT"
    subscription.start_date = now
    subscription.end_date = expires
    subscription.canceled_at = None
    subscription.cancel_reason = None
    db.session.commit()
    logger.info("Admin granted %s to user %s", plan_type, user.id)
    return user


def admin_revoke(user: User) -> User:
    now = datetime.utcnow()
    if user.nivelacesso not in PRIVILEGED_LEVELS:
        user.nivelacesso = "free"
    user.dataexpiracao = now
    user.acessovitalicio = False

    subscription = user.subscription
    if subscription is not None:
        subscription.status = "canceled"
        subscription.last_event = "ADMIN_REVOKE"
        subscription.end_date = now
        subscription.canceled_at = now
        subscription.cancel_reason = "revoked by admin"
    db.session.commit()
    logger.info("Admin revoked access of user %s", user.id)
    return user


def expire_overdue(now: Optional[datetime] = None) -> int:
    now = now or datetime.utcnow()
    users = User.query.filter(
        User.nivelacesso == "premium",
        User.acessovitalicio.is_(False),
        User.dataexpiracao.isnot(None),
        User.dataexpiracao < now,
    ).all()
    for user in users:
        user.nivelacesso = "free"
        subscription = user.subscription
        if subscription is not None and subscription.status in ("active", "canceled", "delayed"):
            subscription.status = "expired"
    db.session.commit()
    if users:
        logger.info("Expired %s overdue subscriptions", len(users))
    return len(users)
