"""
Unified error capture with Sentry integration.

Provides centralized exception reporting with:
- Automatic Sentry error tracking (when a DSN is configured)
- Structured logging with tenant context enrichment
- Custom fingerprinting for error grouping

Usage:
    # Capture an exception
    capture_exception(exc, context={"instance_name": "odoo_acme_1a2b3c4d"})

    # Capture a message (non-exception event)
    capture_message("Circuit breaker opened", level="warning")

    # Context manager for best-effort operations
    with ErrorHandler("cleanup_expired_keys"):
        store.cleanup_expired()
"""

import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import sentry_sdk
import structlog
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from erpgate.core.context import get_context_dict, get_organization_id, get_request_id

logger = structlog.get_logger(__name__)

__all__ = [
    "init_sentry",
    "capture_exception",
    "capture_message",
    "ErrorHandler",
    "is_sentry_enabled",
]

_sentry_initialized: bool = False


def init_sentry(
    dsn: str,
    environment: str = "production",
    traces_sample_rate: float = 0.1,
    release: Optional[str] = None,
) -> bool:
    """
    Initialize Sentry SDK for error tracking.

    Returns:
        True if initialization successful, False otherwise
    """
    global _sentry_initialized

    if not dsn:
        logger.info("Sentry disabled (no DSN provided)")
        return False

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            traces_sample_rate=traces_sample_rate,
            release=release or os.environ.get("GIT_COMMIT_SHA"),
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
                LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
            ],
            ignore_errors=[KeyboardInterrupt, SystemExit],
            before_send=_before_send,
        )
    except Exception as e:
        logger.error("Failed to initialize Sentry", error=str(e))
        return False

    _sentry_initialized = True
    logger.info("Sentry initialized", environment=environment, traces_sample_rate=traces_sample_rate)
    return True


def _before_send(event: Dict[str, Any], hint: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Tag every event with the request and tenant it belongs to."""
    request_id = get_request_id()
    if request_id:
        event.setdefault("tags", {})["request_id"] = request_id

    organization_id = get_organization_id()
    if organization_id:
        event.setdefault("tags", {})["organization_id"] = organization_id

    return event


def is_sentry_enabled() -> bool:
    return _sentry_initialized


def capture_exception(
    exc: BaseException,
    context: Optional[Dict[str, Any]] = None,
    level: str = "error",
    fingerprint: Optional[list[str]] = None,
    tags: Optional[Dict[str, str]] = None,
) -> Optional[str]:
    """
    Capture an exception with Sentry and structured logging.

    Args:
        exc: Exception to capture
        context: Additional context dict (e.g., {"instance_name": "odoo_acme_1a2b3c4d"})
        level: Severity level (debug, info, warning, error, fatal)
        fingerprint: Custom grouping fingerprint for Sentry
        tags: Additional tags for filtering in Sentry

    Returns:
        Sentry event ID or None if not sent
    """
    enriched_context = {
        **get_context_dict(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "error_type": type(exc).__name__,
        **(context or {}),
    }

    # structlog has no "fatal" method; critical is the highest level it knows
    log_func = logger.critical if level == "fatal" else getattr(logger, level, logger.error)
    log_func("Exception captured", exc_info=exc, **enriched_context)

    if _sentry_initialized:
        try:
            with sentry_sdk.push_scope() as scope:
                for key, value in enriched_context.items():
                    if value is not None:
                        scope.set_extra(key, value)
                for key, value in (tags or {}).items():
                    scope.set_tag(key, value)
                if fingerprint:
                    scope.fingerprint = fingerprint
                scope.level = level
                return sentry_sdk.capture_exception(exc)
        except Exception as e:
            logger.warning("Failed to send exception to Sentry", error=str(e))

    return None


def capture_message(
    message: str,
    level: str = "info",
    context: Optional[Dict[str, Any]] = None,
    tags: Optional[Dict[str, str]] = None,
) -> Optional[str]:
    """
    Capture a message with Sentry (for non-exception events).

    Used for circuit breaker state changes and operational warnings that
    should be visible without an exception attached.
    """
    enriched_context = {
        **get_context_dict(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        **(context or {}),
    }

    log_func = getattr(logger, level, logger.info)
    log_func(message, **enriched_context)

    if _sentry_initialized:
        try:
            with sentry_sdk.push_scope() as scope:
                for key, value in enriched_context.items():
                    if value is not None:
                        scope.set_extra(key, value)
                for key, value in (tags or {}).items():
                    scope.set_tag(key, value)
                scope.level = level
                return sentry_sdk.capture_message(message, level=level)
        except Exception as e:
            logger.warning("Failed to send message to Sentry", error=str(e))

    return None


class ErrorHandler:
    """
    Context manager for best-effort operations with automatic capture.

    Usage:
        # Suppress and capture errors
        with ErrorHandler("cleanup_expired_keys"):
            store.cleanup_expired()

        # Re-raise after capturing
        with ErrorHandler("install_modules", reraise=True):
            await installer.install_for_organization(org_id)

    Args:
        operation: Name of the operation (for grouping in Sentry)
        context: Additional context dict
        capture: Whether to send to Sentry (default: True)
        reraise: Whether to re-raise exception (default: False)
    """

    def __init__(
        self,
        operation: str,
        context: Optional[Dict[str, Any]] = None,
        capture: bool = True,
        reraise: bool = False,
        fingerprint: Optional[list[str]] = None,
    ):
        self.operation = operation
        self.context = context or {}
        self.capture = capture
        self.reraise = reraise
        self.fingerprint = fingerprint or [operation]
        self.event_id: Optional[str] = None

    def __enter__(self) -> "ErrorHandler":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        if exc_val is not None:
            if self.capture:
                self.event_id = capture_exception(
                    exc_val,
                    context={"operation": self.operation, **self.context},
                    fingerprint=self.fingerprint + [type(exc_val).__name__],
                )
            else:
                logger.warning("Operation failed", operation=self.operation, error=str(exc_val), **self.context)
            return not self.reraise

        return False
