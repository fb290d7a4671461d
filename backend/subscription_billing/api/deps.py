"""Shared API dependencies — single import point for all routers.

Re-exports database session, authentication, and access-gating dependencies
so that router modules can import everything they need from one place::

    from subscription_billing.api.deps import get_db, require_access
"""

from subscription_billing.auth.dependencies import get_current_active_user, get_current_user
from subscription_billing.billing.dependencies import (
    get_access_decision,
    get_bypass_policy,
    require_access,
)
from subscription_billing.database import get_db

__all__ = [
    "get_db",
    "get_current_user",
    "get_current_active_user",
    "get_bypass_policy",
    "get_access_decision",
    "require_access",
]
