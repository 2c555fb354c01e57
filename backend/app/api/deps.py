"""Shared API dependencies: single import point for all routers.

Re-exports the billing context and authentication dependencies so that
router modules can import everything they need from one place::

    from app.api.deps import get_context, get_current_user_id
"""

from fastapi import Request

from app.auth.dependencies import get_current_user_id
from app.billing.context import BillingContext


def get_context(request: Request) -> BillingContext:
    """The billing context built by ``create_app``."""
    return request.app.state.billing


__all__ = [
    "get_context",
    "get_current_user_id",
]
