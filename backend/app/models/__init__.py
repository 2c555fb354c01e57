"""SQLAlchemy models for the subscription reconciler.

All models are imported here so that Alembic's autogenerate can discover
them via Base.metadata. If you add a new model, import it in this file.
"""

from app.models.outbox import OutboxEntry
from app.models.subscription import Subscription
from app.models.user import User
from app.models.webhook_event import WebhookEventRecord

__all__ = [
    "OutboxEntry",
    "Subscription",
    "User",
    "WebhookEventRecord",
]
