"""
Request context management for tenant-scoped tracing.

Carries request_id, organization_id and user_id across logs and error
tracking. Uses contextvars for async-safe context propagation, so background
module installs keep the organization of the request that scheduled them.

Usage:
    # In the API layer
    set_request_id(generate_request_id())
    set_organization_id(organization_id)

    # In error handlers
    capture_exception(exc, context=get_context_dict())
"""

from contextvars import ContextVar
from typing import Optional
import uuid

import structlog

__all__ = [
    "set_request_id",
    "get_request_id",
    "generate_request_id",
    "set_user_id",
    "get_user_id",
    "set_organization_id",
    "get_organization_id",
    "clear_context",
    "get_context_dict",
]

_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
_user_id: ContextVar[Optional[str]] = ContextVar("user_id", default=None)
_organization_id: ContextVar[Optional[str]] = ContextVar("organization_id", default=None)


def generate_request_id() -> str:
    """
    Generate a new request ID.

    Format: req_{16 hex chars}
    Example: req_a1b2c3d4e5f6g7h8
    """
    return f"req_{uuid.uuid4().hex[:16]}"


def set_request_id(request_id: str) -> None:
    """Set request ID for current async context."""
    _request_id.set(request_id)
    structlog.contextvars.bind_contextvars(request_id=request_id)


def get_request_id() -> Optional[str]:
    return _request_id.get()


def set_user_id(user_id: str) -> None:
    _user_id.set(user_id)


def get_user_id() -> Optional[str]:
    return _user_id.get()


def set_organization_id(organization_id: str) -> None:
    """Set the tenant for the current context and bind it to log lines."""
    _organization_id.set(organization_id)
    structlog.contextvars.bind_contextvars(organization_id=organization_id)


def get_organization_id() -> Optional[str]:
    return _organization_id.get()


def clear_context() -> None:
    """
    Clear all context variables.

    Called at end of request to prevent context leaking.
    """
    _request_id.set(None)
    _user_id.set(None)
    _organization_id.set(None)
    structlog.contextvars.clear_contextvars()


def get_context_dict() -> dict:
    """Get all context variables as dict, for enriching error reports."""
    return {
        "request_id": get_request_id(),
        "user_id": get_user_id(),
        "organization_id": get_organization_id(),
    }
