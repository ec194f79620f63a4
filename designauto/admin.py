# designauto/admin.py
import hmac
import logging
from datetime import datetime, timedelta

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy import func, or_

from .entitlements import admin_grant, admin_revoke, process
from .extensions import db
from .models import ProductMapping, Subscription, User, WebhookLog

logger = logging.getLogger(__name__)

bp = Blueprint("admin", __name__, url_prefix="/api/admin")

MAX_LIMIT = 100
SOURCES = ("hotmart", "doppus")


def _error(message: str, status: int):
    return jsonify({"error": message}), status


@bp.before_request
def require_admin_token():
    expected = current_app.config.get("ADMIN_API_TOKEN", "")
    if not expected:
        return _error("admin API disabled: ADMIN_API_TOKEN is not configured", 503)

    token = request.headers.get("X-Admin-Token", "")
    auth = request.headers.get("Authorization", "")
    if auth.startswith("Bearer "):
        token = auth.split(" ", 1)[1].strip()

    if not token or not hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
        logger.warning("Rejected admin request to %s from %s", request.path, request.remote_addr)
        return _error("unauthorized", 401)
    return None


def _paginate(query, key: str, serialize):
    page = max(request.args.get("page", 1, type=int) or 1, 1)
    limit = min(max(request.args.get("limit", 20, type=int) or 20, 1), MAX_LIMIT)
    total = query.count()
    items = query.offset((page - 1) * limit).limit(limit).all()
    return jsonify({
        key: [serialize(item) for item in items],
        "totalCount": total,
        "page": page,
        "limit": limit,
    })


def _counts(rows) -> dict:
    return {(key or "unknown"): count for key, count in rows}


# --- webhook logs ---------------------------------------------------------

@bp.route("/webhook-logs", methods=["GET"])
def list_webhook_logs():
    query = WebhookLog.query
    status = request.args.get("status")
    source = request.args.get("source")
    event_type = request.args.get("event_type") or request.args.get("eventType")
    search = (request.args.get("search") or "").strip()

    if status:
        query = query.filter(WebhookLog.status == status)
    if source:
        query = query.filter(WebhookLog.source == source)
    if event_type:
        query = query.filter(WebhookLog.event_type == event_type)
    if search:
        pattern = f"%{search}%"
        query = query.filter(or_(
            WebhookLog.email.ilike(pattern),
            WebhookLog.transaction_id.ilike(pattern),
            WebhookLog.payload.ilike(pattern),
        ))

    return _paginate(query.order_by(WebhookLog.id.desc()), "logs", lambda log: log.to_dict())


@bp.route("/webhook-logs/<int:log_id>", methods=["GET"])
def get_webhook_log(log_id):
    log = db.session.get(WebhookLog, log_id)
    if log is None:
        return _error("webhook log not found", 404)
    return jsonify(log.to_dict(with_payload=True))


@bp.route("/webhook-logs/<int:log_id>/reprocess", methods=["POST"])
def reprocess_webhook_log(log_id):
    log = db.session.get(WebhookLog, log_id)
    if log is None:
        return _error("webhook log not found", 404)
    if log.status == "processing":
        return _error("webhook is already being processed", 409)
    if log.status == "processed":
        return _error("webhook was already processed successfully", 409)

    log.retry_count = (log.retry_count or 0) + 1
    db.session.commit()
    logger.info("Reprocessing webhook %s (attempt %s)", log_id, log.retry_count)

    result = process(log)
    return jsonify({"success": result["status"] != "error", "result": result})


@bp.route("/webhook-stats", methods=["GET"])
def webhook_stats():
    since = datetime.utcnow() - timedelta(hours=24)
    return jsonify({
        "total": WebhookLog.query.count(),
        "last24h": WebhookLog.query.filter(WebhookLog.created_at >= since).count(),
        "byStatus": _counts(db.session.query(WebhookLog.status, func.count(WebhookLog.id)).group_by(WebhookLog.status)),
        "bySource": _counts(db.session.query(WebhookLog.source, func.count(WebhookLog.id)).group_by(WebhookLog.source)),
        "byEventType": _counts(
            db.session.query(WebhookLog.event_type, func.count(WebhookLog.id)).group_by(WebhookLog.event_type)
        ),
    })


@bp.route("/webhooks/failed", methods=["GET"])
def list_failed_webhooks():
    query = WebhookLog.query.filter(WebhookLog.status == "error")
    source = request.args.get("source")
    if source:
        query = query.filter(WebhookLog.source == source)
    return _paginate(query.order_by(WebhookLog.id.desc()), "logs", lambda log: log.to_dict())


# --- product mappings -----------------------------------------------------

def _mapping_fields(data: dict):
    """Validate a mapping body. Returns (fields, error message)."""
    product_name = (data.get("productName") or "").strip()
    plan_type = (data.get("planType") or "").strip()
    if not product_name or not plan_type:
        return None, "productName and planType are required"

    source = (data.get("source") or "hotmart").strip().lower()
    if source not in SOURCES:
        return None, f"source must be one of {', '.join(SOURCES)}"

    is_lifetime = bool(data.get("isLifetime"))
    duration_days = 0
    if not is_lifetime:
        try:
            duration_days = int(data.get("durationDays"))
        except (TypeError, ValueError):
            return None, "durationDays must be an integer"
        if duration_days <= 0:
            return None, "durationDays must be positive"

    return {
        "source": source,
        "product_id": str(data.get("productId") or "").strip(),
        "offer_id": str(data.get("offerId") or "").strip(),
        "product_name": product_name,
        "plan_type": plan_type,
        "duration_days": duration_days,
        "is_lifetime": is_lifetime,
    }, None


def _find_duplicate_mapping(fields: dict, exclude_id=None):
    query = ProductMapping.query.filter_by(
        source=fields["source"], product_id=fields["product_id"], offer_id=fields["offer_id"]
    )
    if exclude_id is not None:
        query = query.filter(ProductMapping.id != exclude_id)
    return query.first()


@bp.route("/product-mappings", methods=["GET"])
def list_product_mappings():
    query = ProductMapping.query
    source = request.args.get("source")
    if source:
        query = query.filter_by(source=source)
    return jsonify([m.to_dict() for m in query.order_by(ProductMapping.product_name).all()])


@bp.route("/product-mappings", methods=["POST"])
def create_product_mapping():
    fields, problem = _mapping_fields(request.get_json(silent=True) or {})
    if problem:
        return _error(problem, 400)
    if _find_duplicate_mapping(fields):
        return _error("a mapping for this product and offer already exists", 409)

    mapping = ProductMapping(**fields)
    db.session.add(mapping)
    db.session.commit()
    logger.info("Created product mapping %s", mapping)
    return jsonify(mapping.to_dict()), 201


@bp.route("/product-mappings/<int:mapping_id>", methods=["GET"])
def get_product_mapping(mapping_id):
    mapping = db.session.get(ProductMapping, mapping_id)
    if mapping is None:
        return _error("mapping not found", 404)
    return jsonify(mapping.to_dict())


@bp.route("/product-mappings/<int:mapping_id>", methods=["PUT"])
def update_product_mapping(mapping_id):
    mapping = db.session.get(ProductMapping, mapping_id)
    if mapping is None:
        return _error("mapping not found", 404)

    fields, problem = _mapping_fields(request.get_json(silent=True) or {})
    if problem:
        return _error(problem, 400)
    if _find_duplicate_mapping(fields, exclude_id=mapping_id):
        return _error("another mapping for this product and offer already exists", 409)

    for key, value in fields.items():
        setattr(mapping, key, value)
    db.session.commit()
    return jsonify(mapping.to_dict())


@bp.route("/product-mappings/<int:mapping_id>", methods=["DELETE"])
def delete_product_mapping(mapping_id):
    mapping = db.session.get(ProductMapping, mapping_id)
    if mapping is None:
        return _error("mapping not found", 404)
    db.session.delete(mapping)
    db.session.commit()
    return jsonify({"success": True})


# --- users and subscriptions ----------------------------------------------

@bp.route("/users", methods=["GET"])
def list_users():
    query = User.query
    search = (request.args.get("search") or "").strip()
    nivelacesso = request.args.get("nivelacesso")
    origem = request.args.get("origemassinatura")

    if search:
        pattern = f"%{search}%"
        query = query.filter(or_(User.email.ilike(pattern), User.name.ilike(pattern), User.username.ilike(pattern)))
    if nivelacesso:
        query = query.filter(User.nivelacesso == nivelacesso)
    if origem:
        query = query.filter(User.origemassinatura == origem)

    return _paginate(query.order_by(User.id.desc()), "users", lambda user: user.to_dict())


@bp.route("/users/<int:user_id>", methods=["GET"])
def get_user(user_id):
    user = db.session.get(User, user_id)
    if user is None:
        return _error("user not found", 404)
    return jsonify(user.to_dict(with_subscription=True))


@bp.route("/users/<int:user_id>/entitlement", methods=["PUT"])
def update_user_entitlement(user_id):
    user = db.session.get(User, user_id)
    if user is None:
        return _error("user not found", 404)

    data = request.get_json(silent=True) or {}
    if data.get("revoke"):
        admin_revoke(user)
        return jsonify(user.to_dict(with_subscription=True))

    plan_type = (data.get("plan_type") or data.get("planType") or "").strip()
    if not plan_type:
        return _error("plan_type is required", 400)
    lifetime = bool(data.get("lifetime"))
    duration_days = data.get("duration_days", data.get("durationDays"))
    if duration_days is not None:
        try:
            duration_days = int(duration_days)
        except (TypeError, ValueError):
            return _error("duration_days must be an integer", 400)
        if duration_days <= 0:
            return _error("duration_days must be positive", 400)

    admin_grant(user, plan_type, duration_days, lifetime)
    return jsonify(user.to_dict(with_subscription=True))


@bp.route("/subscriptions", methods=["GET"])
def list_subscriptions():
    query = Subscription.query
    status = request.args.get("status")
    origin = request.args.get("origin")
    if status:
        query = query.filter(Subscription.status == status)
    if origin:
        query = query.filter(Subscription.origin == origin)
    return _paginate(query.order_by(Subscription.updated_at.desc()), "subscriptions", lambda sub: sub.to_dict())


@bp.route("/platform-metrics", methods=["GET"])
def platform_metrics():
    now = datetime.utcnow()
    since = now - timedelta(hours=24)
    active = Subscription.query.filter(Subscription.status == "active")

    return jsonify({
        "totalUsers": User.query.count(),
        "premiumUsers": User.query.filter(
            User.nivelacesso == "premium",
            or_(User.acessovitalicio.is_(True), User.dataexpiracao > now),
        ).count(),
        "lifetimeUsers": User.query.filter(User.acessovitalicio.is_(True)).count(),
        "activeSubscriptions": active.count(),
        "subscriptionsByOrigin": _counts(
            db.session.query(Subscription.origin, func.count(Subscription.id))
            .filter(Subscription.status == "active")
            .group_by(Subscription.origin)
        ),
        "subscriptionsByPlan": _counts(
            db.session.query(Subscription.plan_type, func.count(Subscription.id))
            .filter(Subscription.status == "active")
            .group_by(Subscription.plan_type)
        ),
        "webhooksLast24h": WebhookLog.query.filter(WebhookLog.created_at >= since).count(),
        "failedWebhooks": WebhookLog.query.filter(WebhookLog.status == "error").count(),
    })
