"""Conversation-scoped logging context.

Every inbound webhook is handled as its own asyncio task, so the conversation
being processed is kept in a ContextVar and stamped onto each log record.

Usage:
    from agenda.core.logging_context import set_conversation_id

    set_conversation_id("3f2a...")
    logger.info("Processing inbound message")  # → [3f2a...] Processing ...
"""

import logging
from contextvars import ContextVar

from agenda.core.config import settings

_conversation_id: ContextVar[str] = ContextVar("conversation_id", default="-")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(conversation_id)s] %(message)s"


def set_conversation_id(conversation_id: str) -> None:
    """Set the correlation id for the current async context."""
    _conversation_id.set(conversation_id)


def get_conversation_id() -> str:
    return _conversation_id.get()


class ConversationIdFilter(logging.Filter):
    """Injects conversation_id into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.conversation_id = _conversation_id.get()  # type: ignore[attr-defined]
        return True


def configure_logging(level: str | None = None) -> None:
    """Install a root handler whose records always carry ``conversation_id``."""
    handler = logging.StreamHandler()
    handler.addFilter(ConversationIdFilter())
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level or settings.LOG_LEVEL)

    # Reduce verbosity of third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
