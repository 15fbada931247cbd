"""
Coach Modules Package

Streaming AI coach pipeline.

Modules:
- context: Bounded prompt context (metrics summary + recent conversation)
- events: TokenEvent / ErrorKind / CancellationToken shared by the pipeline
- provider: Streaming completions from the upstream model provider
- relay: SSE relay from a provider stream to one client
- safety: Input checks and intent classification

Usage:
    from services.coach_modules import ContextBuilder, ProviderGateway, StreamRelay
"""

from .context import (
    ChatMessage,
    CoachContext,
    ContextBuilder,
    DOMAIN_PRIORITY,
    estimate_tokens,
    render_context,
)
from .events import (
    CancellationToken,
    ErrorKind,
    TokenEvent,
    TokenKind,
)
from .provider import (
    GatewayState,
    ProviderGateway,
    ProviderStream,
)
from .relay import (
    SSE_HEADERS,
    StreamRelay,
    StreamSession,
    StreamSessionRegistry,
    session_registry,
)
from .safety import (
    check_input,
    classify_intent,
)

__all__ = [
    # Context
    "ChatMessage",
    "CoachContext",
    "ContextBuilder",
    "DOMAIN_PRIORITY",
    "estimate_tokens",
    "render_context",
    # Events
    "CancellationToken",
    "ErrorKind",
    "TokenEvent",
    "TokenKind",
    # Provider
    "GatewayState",
    "ProviderGateway",
    "ProviderStream",
    # Relay
    "SSE_HEADERS",
    "StreamRelay",
    "StreamSession",
    "StreamSessionRegistry",
    "session_registry",
    # Safety
    "check_input",
    "classify_intent",
]
