"""Shared API dependencies: single import point for all routers.

Re-exports the database session, authentication and payment gateway
dependencies so that router modules can import everything from one place::

    from kitab.api.deps import get_db, get_current_active_user
"""

from kitab.auth.dependencies import get_current_active_user, get_current_user
from kitab.billing.dependencies import get_stripe_gateway, get_waafipay_gateway
from kitab.database import get_db

__all__ = [
    "get_db",
    "get_current_user",
    "get_current_active_user",
    "get_stripe_gateway",
    "get_waafipay_gateway",
]
