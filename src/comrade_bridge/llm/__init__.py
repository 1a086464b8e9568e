"""Provider wire protocols: request builders, parsers, retry and transport."""

from comrade_bridge.llm.builders import ProviderRequest, build_probe, build_request
from comrade_bridge.llm.capabilities import ProviderCapabilities, capabilities_for
from comrade_bridge.llm.response_parser import parse_response
from comrade_bridge.llm.retry import retry
from comrade_bridge.llm.stream_parser import Frame, FrameKind, LineBuffer, parse_frame
from comrade_bridge.llm.transport import HttpTransport, StreamPhase, StreamState

__all__ = [
    "Frame",
    "FrameKind",
    "HttpTransport",
    "LineBuffer",
    "ProviderCapabilities",
    "ProviderRequest",
    "StreamPhase",
    "StreamState",
    "build_probe",
    "build_request",
    "capabilities_for",
    "parse_frame",
    "parse_response",
    "retry",
]
