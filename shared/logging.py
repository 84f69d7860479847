"""
Shared logging configuration for the Subscription Entitlements service.

Log lines are JSON rendered by structlog. Each line carries the service name
and whatever correlation context is active: the HTTP request id, the
customer (and product) an access check is about, and the webhook delivery
being processed. Credentials never reach the output.
"""

import logging
import sys
import time
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Correlation context, reset by the HTTP middleware after every request
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
customer_id_var: ContextVar[Optional[str]] = ContextVar("customer_id", default=None)
product_id_var: ContextVar[Optional[str]] = ContextVar("product_id", default=None)
webhook_id_var: ContextVar[Optional[str]] = ContextVar("webhook_id", default=None)

_CONTEXT_VARS = {
    "request_id": request_id_var,
    "customer_id": customer_id_var,
    "product_id": product_id_var,
    "webhook_id": webhook_id_var,
}

REDACTED = "[REDACTED]"
SENSITIVE_KEYS = frozenset({
    "authorization",
    "api_token",
    "platform_api_token",
    "webhook_secret",
    "webhook_signature",
    "webhook-signature",
})


def configure_logging(service_name: str, log_level: str = "info") -> None:
    """Configure structured logging for a service."""

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            add_service_context,
            add_correlation_context,
            redact_sensitive,
            add_timestamp,
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )


def add_service_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add the service name, taken from "<service>.<component>" logger names."""
    logger_name = event_dict.get("logger", "")
    if "." in logger_name:
        event_dict.setdefault("service", logger_name.split(".")[0])
    return event_dict


def add_correlation_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add active correlation ids. Explicit keyword arguments win."""
    for key, var in _CONTEXT_VARS.items():
        value = var.get()
        if value and key not in event_dict:
            event_dict[key] = value
    return event_dict


def redact_sensitive(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Mask platform credentials and webhook signatures."""
    for key in list(event_dict):
        if key.lower() in SENSITIVE_KEYS and event_dict[key]:
            event_dict[key] = REDACTED
    return event_dict


def add_timestamp(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add high-precision timestamp to log events."""
    event_dict["timestamp"] = time.time()
    return event_dict


def set_request_id(request_id: Optional[str] = None) -> str:
    """Set request ID in context, generating one when the caller sent none."""
    if request_id is None:
        request_id = str(uuid.uuid4())
    request_id_var.set(request_id)
    return request_id


def set_customer_context(customer_id: Optional[str] = None, product_id: Optional[str] = None):
    """Attach the customer (and product) being checked to later log lines."""
    if customer_id:
        customer_id_var.set(customer_id)
    if product_id:
        product_id_var.set(product_id)


def set_webhook_context(webhook_id: Optional[str] = None):
    """Attach the webhook delivery id to later log lines."""
    if webhook_id:
        webhook_id_var.set(webhook_id)


def clear_context():
    """Clear all context variables."""
    for var in _CONTEXT_VARS.values():
        var.set(None)


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
