import pytest

from designauto import create_app
from designauto.entitlements import process, record_webhook
from designauto.extensions import db as _db

HOTTOK = "hottok-test"
DOPPUS_KEY = "doppus-test"
ADMIN_TOKEN = "admin-test"


@pytest.fixture
def app():
    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": "sqlite://",
        "HOTMART_SECRET": HOTTOK,
        "DOPPUS_SECRET_KEY": DOPPUS_KEY,
        "ADMIN_API_TOKEN": ADMIN_TOKEN,
        "WEBHOOK_STRICT_AUTH": True,
        "DEFAULT_PLAN_TYPE": "mensal",
        "DEFAULT_PLAN_DAYS": 30,
    })
    with app.app_context():
        _db.create_all()
        yield app
        _db.session.remove()
        _db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {ADMIN_TOKEN}"}


def _hotmart_event(event="PURCHASE_APPROVED", email="comprador@example.com", transaction="HP0001",
                   plan="Plano Anual", status="APPROVED", product_id=5974664, offer="aukjngrt",
                   phone="+5511999887766", name="Maria Compradora"):
    buyer = {"name": name}
    if email:
        buyer["email"] = email
    if phone:
        buyer["checkout_phone"] = phone

    purchase = {"status": status}
    if transaction:
        purchase["transaction"] = transaction
    if offer:
        purchase["offer"] = {"code": offer}

    data = {"buyer": buyer, "purchase": purchase}
    if product_id:
        data["product"] = {"id": product_id, "name": "DesignAuto"}
    if plan:
        data["subscription"] = {"plan": {"name": plan}, "subscriber": {"code": "SUB123"}}

    return {"id": "evt-1", "event": event, "version": "2.0.0", "data": data}


def _doppus_event(email="doppus@example.com", transaction="DP0001", product="PREMIUM_MENSAL", status="approved"):
    return {
        "id": transaction,
        "customer": {"email": email, "name": "Joao Doppus", "phone": "+5511888776655"},
        "items": [{"code": product, "name": "DesignAuto"}],
        "transaction": {"code": transaction},
        "status": {"code": status},
    }


@pytest.fixture
def hotmart_event():
    return _hotmart_event


@pytest.fixture
def doppus_event():
    return _doppus_event


@pytest.fixture
def deliver(app):
    """Record and process a payload the same way the receiver does, minus HTTP."""
    def _deliver(payload, source="hotmart"):
        log = record_webhook(source, payload)
        return log, process(log)
    return _deliver
