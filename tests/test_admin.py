import json

from designauto.extensions import db
from designauto.models import ProductMapping, User, WebhookLog

from conftest import HOTTOK


def _send(client, payload, token=HOTTOK):
    return client.post(
        "/webhook/hotmart", data=json.dumps(payload), content_type="application/json",
        headers={"X-Hotmart-Hottok": token},
    )


def test_admin_requires_token(client):
    assert client.get("/api/admin/webhook-logs").status_code == 401
    r = client.get("/api/admin/webhook-logs", headers={"Authorization": "Bearer nope"})
    assert r.status_code == 401
    assert r.json == {"error": "unauthorized"}


def test_admin_accepts_x_admin_token_header(client):
    r = client.get("/api/admin/webhook-logs", headers={"X-Admin-Token": "admin-test"})
    assert r.status_code == 200


def test_admin_disabled_without_configured_token(app, client, admin_headers):
    app.config["ADMIN_API_TOKEN"] = ""
    assert client.get("/api/admin/webhook-logs", headers=admin_headers).status_code == 503


def test_list_and_filter_webhook_logs(client, admin_headers, hotmart_event):
    _send(client, hotmart_event(email="first@example.com", transaction="T1"))
    _send(client, hotmart_event(email="second@example.com", transaction="T2"))
    _send(client, hotmart_event(email="third@example.com", transaction="T3"), token="wrong")

    r = client.get("/api/admin/webhook-logs", headers=admin_headers)
    assert r.status_code == 200
    assert r.json["totalCount"] == 3
    assert [log["transactionId"] for log in r.json["logs"]] == ["T3", "T2", "T1"]
    assert "payload" not in r.json["logs"][0]

    r = client.get("/api/admin/webhook-logs?status=rejected", headers=admin_headers)
    assert [log["email"] for log in r.json["logs"]] == ["third@example.com"]

    r = client.get("/api/admin/webhook-logs?search=second", headers=admin_headers)
    assert r.json["totalCount"] == 1

    r = client.get("/api/admin/webhook-logs?eventType=PURCHASE_APPROVED&limit=1&page=2", headers=admin_headers)
    assert r.json["totalCount"] == 3
    assert r.json["limit"] == 1
    assert r.json["logs"][0]["transactionId"] == "T2"


def test_get_webhook_log(client, admin_headers, hotmart_event):
    webhook_id = _send(client, hotmart_event()).json["webhookId"]

    r = client.get(f"/api/admin/webhook-logs/{webhook_id}", headers=admin_headers)
    assert r.status_code == 200
    assert json.loads(r.json["payload"])["event"] == "PURCHASE_APPROVED"
    assert r.json["processingResult"]["status"] == "processed"

    assert client.get("/api/admin/webhook-logs/999", headers=admin_headers).status_code == 404


def test_reprocess_rejected_webhook(client, admin_headers, hotmart_event):
    webhook_id = _send(client, hotmart_event(), token="wrong").json["webhookId"]
    assert User.query.count() == 0

    r = client.post(f"/api/admin/webhook-logs/{webhook_id}/reprocess", headers=admin_headers)

    assert r.status_code == 200
    assert r.json["success"] is True
    assert r.json["result"]["status"] == "processed"
    log = db.session.get(WebhookLog, webhook_id)
    assert log.retry_count == 1
    assert User.query.count() == 1

    r = client.post(f"/api/admin/webhook-logs/{webhook_id}/reprocess", headers=admin_headers)
    assert r.status_code == 409


def test_reprocess_in_progress_conflicts(client, admin_headers, hotmart_event):
    webhook_id = _send(client, hotmart_event(), token="wrong").json["webhookId"]
    log = db.session.get(WebhookLog, webhook_id)
    log.status = "processing"
    db.session.commit()

    r = client.post(f"/api/admin/webhook-logs/{webhook_id}/reprocess", headers=admin_headers)
    assert r.status_code == 409


def test_webhook_stats_and_failed_list(client, admin_headers, hotmart_event):
    _send(client, hotmart_event())
    _send(client, hotmart_event(email=None, transaction="T2"))

    stats = client.get("/api/admin/webhook-stats", headers=admin_headers).json
    assert stats["total"] == 2
    assert stats["last24h"] == 2
    assert stats["byStatus"] == {"processed": 1, "error": 1}
    assert stats["bySource"] == {"hotmart": 2}
    assert stats["byEventType"] == {"PURCHASE_APPROVED": 2}

    failed = client.get("/api/admin/webhooks/failed", headers=admin_headers).json
    assert failed["totalCount"] == 1
    assert failed["logs"][0]["transactionId"] == "T2"


def test_product_mapping_crud(client, admin_headers):
    body = {
        "productId": "5974664",
        "offerId": "aukjngrt",
        "productName": "DesignAuto Anual",
        "planType": "anual",
        "durationDays": 365,
    }

    r = client.post("/api/admin/product-mappings", json=body, headers=admin_headers)
    assert r.status_code == 201
    mapping_id = r.json["id"]
    assert r.json["source"] == "hotmart"

    assert client.post("/api/admin/product-mappings", json=body, headers=admin_headers).status_code == 409

    r = client.post("/api/admin/product-mappings", json={"productId": "1"}, headers=admin_headers)
    assert r.status_code == 400
    r = client.post("/api/admin/product-mappings", json={**body, "offerId": "x", "durationDays": "abc"},
                    headers=admin_headers)
    assert r.status_code == 400
    r = client.post("/api/admin/product-mappings", json={**body, "source": "stripe"}, headers=admin_headers)
    assert r.status_code == 400

    r = client.put(f"/api/admin/product-mappings/{mapping_id}",
                   json={**body, "planType": "vitalicio", "isLifetime": True}, headers=admin_headers)
    assert r.status_code == 200
    assert r.json["isLifetime"] is True
    assert r.json["durationDays"] == 0

    r = client.get("/api/admin/product-mappings", headers=admin_headers)
    assert [m["planType"] for m in r.json] == ["vitalicio"]

    assert client.get(f"/api/admin/product-mappings/{mapping_id}", headers=admin_headers).status_code == 200
    assert client.delete(f"/api/admin/product-mappings/{mapping_id}", headers=admin_headers).json == {"success": True}
    assert client.get(f"/api/admin/product-mappings/{mapping_id}", headers=admin_headers).status_code == 404
    assert ProductMapping.query.count() == 0


def test_update_mapping_to_existing_combination_conflicts(client, admin_headers):
    base = {"productId": "1", "productName": "A", "planType": "mensal", "durationDays": 30}
    client.post("/api/admin/product-mappings", json={**base, "offerId": "a"}, headers=admin_headers)
    second = client.post("/api/admin/product-mappings", json={**base, "offerId": "b"}, headers=admin_headers).json

    r = client.put(f"/api/admin/product-mappings/{second['id']}", json={**base, "offerId": "a"}, headers=admin_headers)
    assert r.status_code == 409


def test_users_and_manual_entitlement(client, admin_headers, hotmart_event):
    _send(client, hotmart_event())
    db.session.add(User(username="free", email="free@example.com", password="x"))
    db.session.commit()

    r = client.get("/api/admin/users?nivelacesso=premium", headers=admin_headers)
    assert [u["email"] for u in r.json["users"]] == ["comprador@example.com"]

    r = client.get("/api/admin/users?search=free@", headers=admin_headers)
    assert r.json["totalCount"] == 1
    free_id = r.json["users"][0]["id"]

    r = client.get(f"/api/admin/users/{free_id}", headers=admin_headers)
    assert r.json["subscription"] is None

    r = client.put(f"/api/admin/users/{free_id}/entitlement", json={}, headers=admin_headers)
    assert r.status_code == 400

    r = client.put(f"/api/admin/users/{free_id}/entitlement", json={"plan_type": "vitalicio", "lifetime": True},
                   headers=admin_headers)
    assert r.status_code == 200
    assert r.json["acessovitalicio"] is True
    assert r.json["isPremium"] is True
    assert r.json["subscription"]["origin"] == "admin"

    r = client.put(f"/api/admin/users/{free_id}/entitlement", json={"revoke": True}, headers=admin_headers)
    assert r.json["nivelacesso"] == "free"
    assert r.json["subscription"]["status"] == "canceled"

    assert client.get("/api/admin/users/999", headers=admin_headers).status_code == 404


def test_subscriptions_and_platform_metrics(client, admin_headers, hotmart_event, doppus_event):
    _send(client, hotmart_event())
    client.post("/webhook/doppus", json=doppus_event())
    db.session.add(User(username="free", email="free@example.com", password="x"))
    db.session.commit()

    r = client.get("/api/admin/subscriptions?origin=doppus", headers=admin_headers)
    assert r.json["totalCount"] == 1
    assert r.json["subscriptions"][0]["transactionId"] == "DP0001"

    metrics = client.get("/api/admin/platform-metrics", headers=admin_headers).json
    assert metrics["totalUsers"] == 3
    assert metrics["premiumUsers"] == 2
    assert metrics["lifetimeUsers"] == 0
    assert metrics["activeSubscriptions"] == 2
    assert metrics["subscriptionsByOrigin"] == {"hotmart": 1, "doppus": 1}
    assert metrics["subscriptionsByPlan"] == {"anual": 1, "mensal": 1}
    assert metrics["webhooksLast24h"] == 2
    assert metrics["failedWebhooks"] == 0
