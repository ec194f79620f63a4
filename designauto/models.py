# designauto/models.py
import json
from datetime import datetime

from .extensions import db


def _iso(value):
    return value.isoformat() if value else None


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(255), unique=True, nullable=False)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    name = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(64), nullable=True)
    password = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(32), nullable=False, default="user")

    # entitlement flags
    nivelacesso = db.Column(db.String(32), nullable=False, default="free")
    origemassinatura = db.Column(db.String(32), nullable=True)
    tipoplano = db.Column(db.String(64), nullable=True)
    dataassinatura = db.Column(db.DateTime, nullable=True)
    dataexpiracao = db.Column(db.DateTime, nullable=True)
    acessovitalicio = db.Column(db.Boolean, nullable=False, default=False)

    isactive = db.Column(db.Boolean, nullable=False, default=True)
    criadoem = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    atualizadoem = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    subscription = db.relationship("Subscription", back_populates="user", uselist=False)

    @property
    def is_premium(self) -> bool:
        if self.nivelacesso != "premium":
            return False
        if self.acessovitalicio:
            return True
        return self.dataexpiracao is not None and self.dataexpiracao > datetime.utcnow()

    def to_dict(self, with_subscription: bool = False) -> dict:
        data = {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "name": self.name,
            "phone": self.phone,
            "role": self.role,
            "nivelacesso": self.nivelacesso,
            "origemassinatura": self.origemassinatura,
            "tipoplano": self.tipoplano,
            "dataassinatura": _iso(self.dataassinatura),
            "dataexpiracao": _iso(self.dataexpiracao),
            "acessovitalicio": self.acessovitalicio,
            "isactive": self.isactive,
            "isPremium": self.is_premium,
            "criadoem": _iso(self.criadoem),
        }
        if with_subscription:
            data["subscription"] = self.subscription.to_dict() if self.subscription else None
        return data

    def __repr__(self):
        return f"<User id={self.id} email={self.email} nivel={self.nivelacesso}>"


class Subscription(db.Model):
    __tablename__ = "subscriptions"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), unique=True, nullable=False)
    plan_type = db.Column(db.String(64), nullable=False, default="premium")
    status = db.Column(db.String(32), nullable=False, default="active")
    origin = db.Column(db.String(32), nullable=True)
    transaction_id = db.Column(db.String(128), unique=True, nullable=True)
    last_event = db.Column(db.String(64), nullable=True)
    start_date = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    end_date = db.Column(db.DateTime, nullable=True)
    webhook_data = db.Column(db.Text, nullable=True)
    canceled_at = db.Column(db.DateTime, nullable=True)
    cancel_reason = db.Column(db.String(255), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    user = db.relationship("User", back_populates="subscription")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "userId": self.user_id,
            "planType": self.plan_type,
            "status": self.status,
            "origin": self.origin,
            "transactionId": self.transaction_id,
            "lastEvent": self.last_event,
            "startDate": _iso(self.start_date),
            "endDate": _iso(self.end_date),
            "canceledAt": _iso(self.canceled_at),
            "cancelReason": self.cancel_reason,
            "updatedAt": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<Subscription id={self.id} user={self.user_id} status={self.status} tx={self.transaction_id}>"


class WebhookLog(db.Model):
    __tablename__ = "webhook_logs"

    id = db.Column(db.Integer, primary_key=True)
    source = db.Column(db.String(32), nullable=False, index=True)
    event_type = db.Column(db.String(64), nullable=False, index=True)
    status = db.Column(db.String(32), nullable=False, default="received", index=True)
    email = db.Column(db.String(255), nullable=True, index=True)
    transaction_id = db.Column(db.String(128), nullable=True, index=True)
    source_ip = db.Column(db.String(64), nullable=True)
    payload = db.Column(db.Text, nullable=True)
    error_message = db.Column(db.Text, nullable=True)
    processing_result = db.Column(db.Text, nullable=True)
    retry_count = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def payload_json(self):
        """Stored payload decoded, or None when the provider sent something that is not JSON."""
        if not self.payload:
            return None
        try:
            return json.loads(self.payload)
        except ValueError:
            return None

    def to_dict(self, with_payload: bool = False) -> dict:
        data = {
            "id": self.id,
            "source": self.source,
            "eventType": self.event_type,
            "status": self.status,
            "email": self.email,
            "transactionId": self.transaction_id,
            "sourceIp": self.source_ip,
            "errorMessage": self.error_message,
            "retryCount": self.retry_count,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }
        if with_payload:
            data["payload"] = self.payload
            data["processingResult"] = json.loads(self.processing_result) if self.processing_result else None
        return data

    def __repr__(self):
        return f"<WebhookLog id={self.id} source={self.source} event={self.event_type} status={self.status}>"


class ProductMapping(db.Model):
    __tablename__ = "product_mappings"
    __table_args__ = (
        db.UniqueConstraint("source", "product_id", "offer_id", name="uq_product_mappings_source_product_offer"),
    )

    id = db.Column(db.Integer, primary_key=True)
    source = db.Column(db.String(32), nullable=False, default="hotmart")
    product_id = db.Column(db.String(128), nullable=False, default="")
    offer_id = db.Column(db.String(128), nullable=False, default="")
    product_name = db.Column(db.String(255), nullable=False)
    plan_type = db.Column(db.String(64), nullable=False)
    duration_days = db.Column(db.Integer, nullable=False, default=30)
    is_lifetime = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "source": self.source,
            "productId": self.product_id,
            "offerId": self.offer_id,
            "productName": self.product_name,
            "planType": self.plan_type,
            "durationDays": self.duration_days,
            "isLifetime": self.is_lifetime,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<ProductMapping {self.source}:{self.product_id}/{self.offer_id} -> {self.plan_type}>"
