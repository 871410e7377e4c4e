"""SQLAlchemy models for the Kitab API.

All models are imported here so that Alembic's autogenerate can discover
them via Base.metadata. If you add a new model, import it in this file.
"""

from kitab.models.subscription import Subscription
from kitab.models.user import User
from kitab.models.webhook_event import ProcessedWebhookEvent

__all__ = [
    "ProcessedWebhookEvent",
    "Subscription",
    "User",
]
