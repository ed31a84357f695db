"""
Shared helpers: logging and clock utilities.
"""
import logging
import sys
from datetime import datetime, timezone

from chatbot_rbac.core import config


_configured = False


def _configure_root() -> None:
    global _configured
    if _configured:
        return
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    root = logging.getLogger("chatbot_rbac")
    root.addHandler(handler)
    root.setLevel(config.LOG_LEVEL)
    root.propagate = False
    _configured = True


def get_logger(name: str) -> logging.Logger:
    """
    Return a logger under the package namespace.

    Usage:
        log = get_logger(__name__)
        log.info(f"Role {role.id} created")
    """
    _configure_root()
    if not name.startswith("chatbot_rbac"):
        name = f"chatbot_rbac.{name}"
    return logging.getLogger(name)


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (the storage convention)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime | None) -> datetime | None:
    """Normalize an aware datetime to naive UTC; naive values are assumed UTC."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
