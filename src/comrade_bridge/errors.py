"""Error taxonomy and provider error classification.

Every failure that crosses the bridge boundary is a ``BridgeError`` with a
canonical ``code``.  Whether an error is retryable depends on that code
alone, so retry decisions are reproducible for a given error.

Classification precedence (``classify_error``):

  1. explicit provider ``type`` / ``code`` field in the error body
  2. HTTP status code (when it carries a specific meaning)
  3. message-substring heuristics (context length, rate limit, auth, ...)
"""

from __future__ import annotations

import email.utils
import enum
import json
import logging
import re
import time
from typing import Any, Mapping

import httpx

_logger = logging.getLogger(__name__)


class ErrorCode(str, enum.Enum):
    """Canonical error codes."""

    INVALID_REQUEST = "invalid_request"
    INVALID_API_KEY = "invalid_api_key"
    AUTHENTICATION_ERROR = "authentication_error"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    MODEL_NOT_FOUND = "model_not_found"
    QUOTA_EXCEEDED = "quota_exceeded"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    CONTEXT_LENGTH_EXCEEDED = "context_length_exceeded"
    SERVER_ERROR = "server_error"
    SERVER_OVERLOADED = "server_overloaded"
    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    API_ERROR = "api_error"
    INVALID_RESPONSE = "invalid_response"
    RESOURCE_EXHAUSTED = "resource_exhausted"
    CONFIGURATION_ERROR = "configuration_error"
    UNSUPPORTED_PROVIDER = "unsupported_provider"
    TOOL_EXECUTION_FAILED = "tool_execution_failed"


RETRYABLE_CODES: frozenset[ErrorCode] = frozenset({
    ErrorCode.RATE_LIMIT_EXCEEDED,
    ErrorCode.SERVER_ERROR,
    ErrorCode.SERVER_OVERLOADED,
    ErrorCode.NETWORK_ERROR,
    ErrorCode.TIMEOUT,
})


def is_retryable(code: ErrorCode | str) -> bool:
    """Whether errors with *code* may be retried."""
    try:
        return ErrorCode(code) in RETRYABLE_CODES
    except ValueError:
        return False


class BridgeError(Exception):
    """A classified bridge failure.

    ``retryable`` is derived from ``code`` and cannot be set independently.
    ``partial_content`` holds whatever a stream already delivered before
    failing, so callers can keep it.
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode | str,
        provider: str = "unknown",
        status_code: int | None = None,
        retry_after: float | None = None,
        suggested_fix: str | None = None,
        original_cause: BaseException | Any = None,
        partial_content: str = "",
    ) -> None:
        super().__init__(message)
        self.message = message
        try:
            self.code: ErrorCode | str = ErrorCode(code)
        except ValueError:
            self.code = code
        self.provider = provider
        self.status_code = status_code
        self.retry_after = retry_after
        self.suggested_fix = (
            suggested_fix
            if suggested_fix is not None
            else suggest_fix(self.code, provider, message, retry_after)
        )
        self.original_cause = original_cause
        self.partial_content = partial_content

    @property
    def retryable(self) -> bool:
        return is_retryable(self.code)

    def to_dict(self) -> dict[str, Any]:
        code = self.code.value if isinstance(self.code, ErrorCode) else self.code
        return {
            "message": self.message,
            "code": code,
            "provider": self.provider,
            "status_code": self.status_code,
            "retry_after": self.retry_after,
            "retryable": self.retryable,
            "suggested_fix": self.suggested_fix,
        }

    def __repr__(self) -> str:
        return (
            f"BridgeError(code={self.code!s}, provider={self.provider!r}, "
            f"status_code={self.status_code!r}, message={self.message!r})"
        )


# ---------------------------------------------------------------------------
# Suggested fixes
# ---------------------------------------------------------------------------

def _context_length_fix(provider: str, message: str) -> str:
    fix = "The message is too long for the model's context window."
    current = re.search(r"(\d+)\s*tokens?", message, re.IGNORECASE)
    maximum = re.search(r"maximum.*?(\d+)\s*tokens?", message, re.IGNORECASE)
    if current and maximum:
        cur, top = int(current.group(1)), int(maximum.group(1))
        fix += (
            f" Current: {cur} tokens, Maximum: {top} tokens"
            f" ({cur - top} tokens over limit)."
        )
    fix += (
        " Try shortening the message or conversation history,"
        " or use a model with a larger context window."
    )
    if provider == "ollama":
        fix += " Check if a larger variant of your model is available."
    return fix


def suggest_fix(
    code: ErrorCode | str,
    provider: str,
    message: str = "",
    retry_after: float | None = None,
) -> str | None:
    """Human-readable remediation for a canonical code, if one is known."""
    name = provider.upper()
    if code in (ErrorCode.INVALID_API_KEY, ErrorCode.AUTHENTICATION_ERROR):
        return (
            f"Verify your {name} API key in settings. Ensure it is valid and has "
            "the necessary permissions."
        )
    if code == ErrorCode.RATE_LIMIT_EXCEEDED:
        wait = f"{retry_after:g} seconds" if retry_after else "a few moments"
        return f"Rate limit exceeded. Wait {wait} before retrying, or check your {name} plan limits."
    if code == ErrorCode.CONTEXT_LENGTH_EXCEEDED:
        return _context_length_fix(provider, message)
    if code == ErrorCode.QUOTA_EXCEEDED:
        return f"Your {name} quota has been exceeded. Check your billing settings."
    if code == ErrorCode.MODEL_NOT_FOUND:
        if provider == "ollama":
            return "The model is not installed. Pull it with `ollama pull <model>` or fix the model name."
        return f"The specified model is not available. Check the model name for {name}."
    if code in (ErrorCode.SERVER_ERROR, ErrorCode.SERVER_OVERLOADED):
        return f"{name} server error. This is usually temporary; try again in a few moments."
    if code == ErrorCode.NETWORK_ERROR:
        if provider == "ollama":
            return "Cannot reach Ollama. Start it with `ollama serve` or check the endpoint configuration."
        return f"Cannot connect to {name}. Check your network connection and endpoint configuration."
    if code == ErrorCode.TIMEOUT:
        return "Request timed out. Try a shorter message or increase the timeout setting."
    if code == ErrorCode.FORBIDDEN:
        return f"Access forbidden. Check your {name} API key permissions and account status."
    if code == ErrorCode.CONFIGURATION_ERROR:
        return "Check the agent configuration (provider, model and endpoint)."
    if code == ErrorCode.UNSUPPORTED_PROVIDER:
        return "Use one of the supported providers: openai, anthropic, ollama, custom."
    if code == ErrorCode.RESOURCE_EXHAUSTED:
        return "The streamed response grew too large. Ask for a shorter answer or raise the stream limit."
    return None


# ---------------------------------------------------------------------------
# Retry-After parsing
# ---------------------------------------------------------------------------

def parse_retry_after(headers: Mapping[str, str] | None) -> float | None:
    """Seconds to wait according to ``Retry-After`` (or ``retry-after-ms``)."""
    if not headers:
        return None
    lowered = {k.lower(): v for k, v in headers.items()}
    value = lowered.get("retry-after")
    if value:
        value = value.strip()
        try:
            seconds = float(value)
        except ValueError:
            try:
                parsed = email.utils.parsedate_to_datetime(value)
            except (TypeError, ValueError):
                return None
            if parsed is None or parsed.tzinfo is None:
                return None
            return max(parsed.timestamp() - time.time(), 0.0)
        return seconds if seconds >= 0 else None
    value_ms = lowered.get("retry-after-ms")
    if value_ms:
        try:
            return max(float(value_ms) / 1000.0, 0.0)
        except ValueError:
            return None
    return None


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

# Provider ``type`` / ``code`` field → canonical code
_OPENAI_CODES: dict[str, ErrorCode] = {
    "context_length_exceeded": ErrorCode.CONTEXT_LENGTH_EXCEEDED,
    "max_tokens_exceeded": ErrorCode.CONTEXT_LENGTH_EXCEEDED,
    "rate_limit_exceeded": ErrorCode.RATE_LIMIT_EXCEEDED,
    "rate_limit_error": ErrorCode.RATE_LIMIT_EXCEEDED,
    "invalid_api_key": ErrorCode.INVALID_API_KEY,
    "authentication_error": ErrorCode.AUTHENTICATION_ERROR,
    "invalid_request_error": ErrorCode.INVALID_REQUEST,
    "insufficient_quota": ErrorCode.QUOTA_EXCEEDED,
    "quota_exceeded": ErrorCode.QUOTA_EXCEEDED,
    "model_not_found": ErrorCode.MODEL_NOT_FOUND,
    "server_error": ErrorCode.SERVER_ERROR,
    "internal_server_error": ErrorCode.SERVER_ERROR,
    "service_unavailable": ErrorCode.SERVER_OVERLOADED,
    "timeout": ErrorCode.TIMEOUT,
    "network_error": ErrorCode.NETWORK_ERROR,
}

_ANTHROPIC_TYPES: dict[str, ErrorCode] = {
    "invalid_request_error": ErrorCode.INVALID_REQUEST,
    "authentication_error": ErrorCode.AUTHENTICATION_ERROR,
    "permission_error": ErrorCode.FORBIDDEN,
    "not_found_error": ErrorCode.NOT_FOUND,
    "request_too_large": ErrorCode.CONTEXT_LENGTH_EXCEEDED,
    "rate_limit_error": ErrorCode.RATE_LIMIT_EXCEEDED,
    "api_error": ErrorCode.SERVER_ERROR,
    "overloaded_error": ErrorCode.SERVER_OVERLOADED,
}

_STATUS_CODES: dict[int, ErrorCode] = {
    401: ErrorCode.INVALID_API_KEY,
    403: ErrorCode.FORBIDDEN,
    404: ErrorCode.NOT_FOUND,
    408: ErrorCode.TIMEOUT,
    413: ErrorCode.CONTEXT_LENGTH_EXCEEDED,
    429: ErrorCode.RATE_LIMIT_EXCEEDED,
    529: ErrorCode.SERVER_OVERLOADED,
}

# (keywords that must all appear, code), checked in order
_MESSAGE_HEURISTICS: list[tuple[tuple[str, ...], ErrorCode]] = [
    (("context length",), ErrorCode.CONTEXT_LENGTH_EXCEEDED),
    (("context window",), ErrorCode.CONTEXT_LENGTH_EXCEEDED),
    (("maximum context",), ErrorCode.CONTEXT_LENGTH_EXCEEDED),
    (("too many tokens",), ErrorCode.CONTEXT_LENGTH_EXCEEDED),
    (("rate limit",), ErrorCode.RATE_LIMIT_EXCEEDED),
    (("too many requests",), ErrorCode.RATE_LIMIT_EXCEEDED),
    (("api key",), ErrorCode.INVALID_API_KEY),
    (("unauthorized",), ErrorCode.AUTHENTICATION_ERROR),
    (("authentication",), ErrorCode.AUTHENTICATION_ERROR),
    (("quota",), ErrorCode.QUOTA_EXCEEDED),
    (("billing",), ErrorCode.QUOTA_EXCEEDED),
    (("model", "not found"), ErrorCode.MODEL_NOT_FOUND),
    (("connection", "refused"), ErrorCode.NETWORK_ERROR),
    (("timed out",), ErrorCode.TIMEOUT),
    (("timeout",), ErrorCode.TIMEOUT),
    (("overloaded",), ErrorCode.SERVER_OVERLOADED),
]


def _code_from_type(provider: str, type_or_code: str, message: str) -> ErrorCode | None:
    table = _ANTHROPIC_TYPES if provider == "anthropic" else _OPENAI_CODES
    code = table.get(type_or_code)
    if code is None:
        # Unknown explicit code: let the status and message decide
        return None
    if code == ErrorCode.INVALID_REQUEST:
        # Providers report context overflow as a generic invalid request
        refined = _code_from_message(message)
        if refined == ErrorCode.CONTEXT_LENGTH_EXCEEDED:
            return refined
    return code


def _code_from_status(provider: str, status: int | None) -> ErrorCode | None:
    if status is None or status < 400:
        return None
    if provider == "ollama" and status == 404:
        return ErrorCode.MODEL_NOT_FOUND
    if status in _STATUS_CODES:
        return _STATUS_CODES[status]
    if status >= 500:
        return ErrorCode.SERVER_ERROR
    return None


def _code_from_message(message: str) -> ErrorCode | None:
    lower = message.lower()
    for keywords, code in _MESSAGE_HEURISTICS:
        if all(kw in lower for kw in keywords):
            return code
    return None


def _decode_body(body: Any) -> Any:
    if isinstance(body, (bytes, bytearray)):
        body = body.decode("utf-8", errors="replace")
    if isinstance(body, str):
        stripped = body.strip()
        if not stripped:
            return {}
        try:
            return json.loads(stripped)
        except json.JSONDecodeError:
            return stripped
    return body if body is not None else {}


def extract_error_fields(body: Any) -> tuple[str | None, str]:
    """Pull ``(type_or_code, message)`` out of any provider error body.

    Handles ``{"error": {"type"|"code", "message"}}`` (OpenAI, Anthropic),
    ``{"error": "text"}`` (Ollama), flat ``{"type", "message"}`` and plain
    text bodies.
    """
    body = _decode_body(body)
    if isinstance(body, str):
        return None, body
    if not isinstance(body, Mapping):
        return None, str(body)
    err = body.get("error", body)
    if isinstance(err, str):
        return None, err
    if not isinstance(err, Mapping):
        return None, str(err)
    # Numeric codes (e.g. {"code": 500}) repeat the status and are skipped
    kinds = [k for k in (err.get("code"), err.get("type")) if isinstance(k, str) and k]
    kind = kinds[0] if kinds else None
    if kind == "error":
        # Anthropic wraps errors as {"type": "error", "error": {...}}
        kind = None
    message = err.get("message") or body.get("message") or ""
    return kind, str(message)


def classify_error(
    provider: str,
    status: int | None = None,
    headers: Mapping[str, str] | None = None,
    body: Any = None,
) -> BridgeError:
    """Map an HTTP status + provider error payload to a ``BridgeError``."""
    kind, message = extract_error_fields(body)

    code: ErrorCode | None = None
    if kind:
        code = _code_from_type(provider, kind, message)
    if code is None:
        code = _code_from_status(provider, status)
    if code is None:
        code = _code_from_message(message)
    if code is None:
        code = ErrorCode.INVALID_REQUEST if status and 400 <= status < 500 else ErrorCode.API_ERROR

    if not message:
        message = f"HTTP {status}" if status else "Unknown provider error"

    retry_after = parse_retry_after(headers) if code == ErrorCode.RATE_LIMIT_EXCEEDED else None
    _logger.debug(
        "Classified %s error status=%s kind=%s -> %s",
        provider, status, kind, code.value,
    )
    return BridgeError(
        f"{provider} error: {message}",
        code,
        provider=provider,
        status_code=status,
        retry_after=retry_after,
        original_cause=body,
    )


def error_from_exception(provider: str, exc: BaseException) -> BridgeError:
    """Wrap an ``httpx`` exception in a ``BridgeError``."""
    if isinstance(exc, BridgeError):
        return exc
    if isinstance(exc, httpx.TimeoutException):
        code = ErrorCode.TIMEOUT
    elif isinstance(exc, httpx.TransportError):
        code = ErrorCode.NETWORK_ERROR
    elif isinstance(exc, httpx.DecodingError):
        code = ErrorCode.INVALID_RESPONSE
    else:
        code = ErrorCode.API_ERROR
    detail = str(exc) or type(exc).__name__
    return BridgeError(
        f"{provider} request failed: {detail}",
        code,
        provider=provider,
        original_cause=exc,
    )
