from sqlalchemy import Index

from minicrm.billing.utils import utcnow
from minicrm.extensions import db


class WebhookEvent(db.Model):
    __tablename__ = "webhook_events"

    id = db.Column(db.Integer, primary_key=True)
    provider = db.Column(db.String(20), nullable=False)
    event_id = db.Column(db.String(255), nullable=True)  # gateway delivery id, when sent
    event_type = db.Column(db.String(100), nullable=False)
    gateway_ref = db.Column(db.String(255), nullable=True)
    outcome = db.Column(db.String(20), nullable=False)  # applied | ignored | rejected
    received_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    processed_at = db.Column(db.DateTime, nullable=True)

    __table_args__ = (
        Index("idx_webhook_provider_event", "provider", "event_id", unique=True),
    )
