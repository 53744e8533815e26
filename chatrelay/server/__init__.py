"""HTTP relay server and client-facing event channel.

The FastAPI application lives in chatrelay.server.app; import it from
there with create_app().
"""

from chatrelay.server.events import (
    SSE_HEADERS,
    EventForwarder,
    EventKind,
    QueueEventForwarder,
    adapt_text_response,
    format_sse,
)

__all__ = [
    "SSE_HEADERS",
    "EventForwarder",
    "EventKind",
    "QueueEventForwarder",
    "adapt_text_response",
    "format_sse",
]
