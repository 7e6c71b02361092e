"""
Call-scoped error taxonomy.

None of these should ever escape a call's WebSocket handler; each one is
handled (logged, recovered, or turned into a spoken apology) inside the
pipeline that owns the call.
"""

from typing import Optional


class CallBridgeError(Exception):
    """Base class for errors raised inside a single call."""
    pass


class TranscriptionProviderError(CallBridgeError):
    """The live transcription connection failed or reported an error."""
    pass


class MalformedToolArguments(CallBridgeError):
    """Tool-call arguments streamed by the model are not a JSON object."""

    def __init__(self, raw_arguments: str, reason: str = ""):
        self.raw_arguments = raw_arguments
        self.reason = reason
        super().__init__(f"Malformed tool arguments ({reason}): {raw_arguments[:200]!r}")


class ToolExecutionError(CallBridgeError):
    """A tool handler failed or timed out."""

    def __init__(self, tool_name: str, message: str):
        self.tool_name = tool_name
        super().__init__(f"Tool '{tool_name}' failed: {message}")


class ToolChainDepthExceeded(CallBridgeError):
    """The model kept chaining tool calls past the configured maximum."""

    def __init__(self, max_depth: int, last_tool: Optional[str] = None):
        self.max_depth = max_depth
        self.last_tool = last_tool
        super().__init__(f"Tool chain exceeded max depth {max_depth} (last tool: {last_tool})")


class SynthesisError(CallBridgeError):
    """Text-to-speech failed for a single reply fragment."""

    def __init__(self, sequence_index: int, message: str):
        self.sequence_index = sequence_index
        super().__init__(f"Synthesis failed for fragment {sequence_index}: {message}")


class TransportSendError(CallBridgeError):
    """Sending to the Twilio media stream failed; fatal to the current call."""
    pass
