# designauto/app.py
import json
import logging
from datetime import datetime

from flask import Blueprint, current_app, jsonify, request

from .entitlements import mark, process, record_webhook
from .extensions import db
from .verify_signature import extract_hottok, verify_hmac_signature, verify_hottok

logger = logging.getLogger(__name__)

bp = Blueprint("webhooks", __name__)

FORM_MIMETYPES = ("application/x-www-form-urlencoded", "multipart/form-data")

# outcomes the provider should see as a successful delivery
ACCEPTED_STATUSES = ("processed", "duplicate", "superseded", "ignored")


def read_payload():
    """Return (raw body, parsed payload or None). Hotmart's legacy postback is form-encoded."""
    body = request.get_data(cache=True)
    if request.mimetype in FORM_MIMETYPES:
        return body, request.form.to_dict()
    if not body:
        return body, None
    try:
        return body, json.loads(body)
    except ValueError:
        return body, None


def _ack(success: bool, message: str, webhook_id=None):
    # Providers retry anything but 200, so every outcome is acknowledged
    return jsonify({
        "success": success,
        "message": message,
        "webhookId": webhook_id,
        "timestamp": datetime.utcnow().isoformat(),
    }), 200


def _authenticate(source: str, body: bytes, token) -> str:
    """Return a problem description, or an empty string when the call is authentic."""
    if source == "hotmart":
        secret = current_app.config.get("HOTMART_SECRET", "")
        if not secret:
            logger.warning("HOTMART_SECRET is not configured; hottok not checked")
            return ""
        if not verify_hottok(secret, token):
            return "invalid or missing hottok"
    elif source == "doppus":
        secret = current_app.config.get("DOPPUS_SECRET_KEY", "")
        signature = request.headers.get("X-Doppus-Signature", "")
        if secret and signature and not verify_hmac_signature(secret, body, signature):
            return "invalid Doppus signature"
    return ""


def receive(source: str):
    try:
        body, payload = read_payload()
        token = extract_hottok(request.headers, request.args, payload) if source == "hotmart" else None
        if isinstance(payload, dict) and "hottok" in payload:
            payload = {k: v for k, v in payload.items() if k != "hottok"}
        header_event = request.headers.get("X-Doppus-Event") if source == "doppus" else None

        log = record_webhook(source, payload, body, request.remote_addr, header_event)
        logger.debug("%s webhook %s payload=%s", source, log.id, (log.payload or "")[:2000])

        if payload is None:
            result = mark(log, "error", "body is not valid JSON or form data")
            return _ack(False, result["message"], log.id)

        problem = _authenticate(source, body, token)
        if problem:
            if current_app.config.get("WEBHOOK_STRICT_AUTH", True):
                logger.warning("Rejected %s webhook %s: %s", source, log.id, problem)
                result = mark(log, "rejected", problem)
                return _ack(False, result["message"], log.id)
            logger.warning("%s webhook %s: %s, processing anyway", source, log.id, problem)

        result = process(log)
        logger.info("%s webhook %s -> %s: %s", source, log.id, result["status"], result["message"])
        return _ack(result["status"] in ACCEPTED_STATUSES, result["message"], log.id)

    except Exception:
        logger.exception("Unhandled error receiving %s webhook", source)
        db.session.rollback()
        return _ack(False, "internal error, webhook acknowledged")


@bp.route("/", methods=["GET"])
@bp.route("/status", methods=["GET"])
def health():
    return jsonify({"status": "ok"}), 200


@bp.route("/webhook/hotmart", methods=["POST"])
@bp.route("/api/webhooks/hotmart", methods=["POST"])
def hotmart_webhook():
    return receive("hotmart")


@bp.route("/webhook/doppus", methods=["POST"])
@bp.route("/api/webhooks/doppus", methods=["POST"])
def doppus_webhook():
    return receive("doppus")
