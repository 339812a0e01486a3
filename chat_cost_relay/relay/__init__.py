"""
Streaming relay for chat completions.

Provides the relay invocation and the SSE framing it relies on.
"""

from .streaming import ChatRequest, ChatTurn, RelayStream, StreamingRelay

__all__ = ["ChatRequest", "ChatTurn", "RelayStream", "StreamingRelay"]
