"""Scan failure taxonomy and its mapping to user-facing messages."""

from __future__ import annotations

import asyncio
import json
from enum import Enum

import httpx


class ScanFailureKind(str, Enum):
    INVALID_INPUT = "INVALID_INPUT"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    TIMEOUT = "TIMEOUT"
    NETWORK_UNREACHABLE = "NETWORK_UNREACHABLE"
    PAYLOAD_TOO_LARGE = "PAYLOAD_TOO_LARGE"
    SERVER_UNAVAILABLE = "SERVER_UNAVAILABLE"
    MISCONFIGURED = "MISCONFIGURED"
    UNKNOWN = "UNKNOWN"


# Error codes returned by the classification endpoint.
LIMIT_REACHED = "LIMIT_REACHED"
CONFIGURATION_ERROR = "CONFIGURATION_ERROR"

_MESSAGES: dict[str, dict[ScanFailureKind, str]] = {
    "ar": {
        ScanFailureKind.INVALID_INPUT: "يرجى إضافة صورة أو كتابة المكونات أولاً.",
        ScanFailureKind.QUOTA_EXCEEDED: "لقد استنفدت عمليات الفحص المجانية. قم بالترقية للمتابعة.",
        ScanFailureKind.TIMEOUT: "استغرق التحليل وقتاً طويلاً. يرجى المحاولة مرة أخرى.",
        ScanFailureKind.NETWORK_UNREACHABLE: "لا يوجد اتصال بالإنترنت. يرجى التحقق من الشبكة والمحاولة مجدداً.",
        ScanFailureKind.PAYLOAD_TOO_LARGE: "حجم الصورة كبير جداً. سيتم تقليل الدقة تلقائياً في المحاولة القادمة.",
        ScanFailureKind.SERVER_UNAVAILABLE: "خوادم التحليل مشغولة حالياً. يرجى المحاولة بعد لحظات.",
        ScanFailureKind.MISCONFIGURED: "خطأ في إعدادات التطبيق. يرجى التواصل مع الدعم.",
        ScanFailureKind.UNKNOWN: "حدث خطأ غير متوقع أثناء التحليل. حاول مرة أخرى.",
    },
    "en": {
        ScanFailureKind.INVALID_INPUT: "Add a photo or type the ingredients first.",
        ScanFailureKind.QUOTA_EXCEEDED: "You have used all free scans. Upgrade to continue.",
        ScanFailureKind.TIMEOUT: "The analysis took too long. Please try again.",
        ScanFailureKind.NETWORK_UNREACHABLE: "No internet connection. Check your network and try again.",
        ScanFailureKind.PAYLOAD_TOO_LARGE: "The image is too large. Resolution will be reduced on the next attempt.",
        ScanFailureKind.SERVER_UNAVAILABLE: "The analysis service is busy. Please try again in a moment.",
        ScanFailureKind.MISCONFIGURED: "The app is misconfigured. Please contact support.",
        ScanFailureKind.UNKNOWN: "An unexpected error occurred during analysis. Please try again.",
    },
}


def user_message(kind: ScanFailureKind, language: str = "ar") -> str:
    """Return the user-facing message for a failure kind."""
    table = _MESSAGES.get(language, _MESSAGES["en"])
    return table[kind]


class ScanError(Exception):
    """A classified scan failure.

    ``detail`` is technical context for logs; callers show
    ``user_message(kind)`` instead.
    """

    def __init__(
        self,
        kind: ScanFailureKind,
        detail: str = "",
        *,
        status_code: int | None = None,
    ) -> None:
        super().__init__(detail or kind.value)
        self.kind = kind
        self.detail = detail
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.kind not in (
            ScanFailureKind.MISCONFIGURED,
            ScanFailureKind.QUOTA_EXCEEDED,
            ScanFailureKind.INVALID_INPUT,
        )


def _error_code(body) -> str:
    if isinstance(body, dict):
        return str(body.get("error", "") or body.get("code", ""))
    if isinstance(body, str):
        try:
            parsed = json.loads(body)
        except ValueError:
            return body
        return _error_code(parsed)
    return ""


def classify_http_error(status_code: int, body=None) -> ScanError:
    """Map a non-2xx response from the classification endpoint to a ScanError."""
    code = _error_code(body)
    upper = code.upper()

    if LIMIT_REACHED in upper:
        kind = ScanFailureKind.QUOTA_EXCEEDED
    elif CONFIGURATION_ERROR in upper.replace(" ", "_"):
        kind = ScanFailureKind.MISCONFIGURED
    elif status_code in (408, 504):
        kind = ScanFailureKind.TIMEOUT
    elif status_code == 413:
        kind = ScanFailureKind.PAYLOAD_TOO_LARGE
    elif status_code in (429, 500, 502, 503):
        kind = ScanFailureKind.SERVER_UNAVAILABLE
    else:
        kind = ScanFailureKind.UNKNOWN

    return ScanError(kind, f"HTTP {status_code}: {code}".strip(), status_code=status_code)


# Substring heuristics for SDK exceptions that carry no structured status.
_MESSAGE_RULES: list[tuple[tuple[str, ...], ScanFailureKind]] = [
    (("limit_reached",), ScanFailureKind.QUOTA_EXCEEDED),
    (("missing_api_key", "api key", "api_key_invalid"), ScanFailureKind.MISCONFIGURED),
    (("deadline", "timed out", "timeout", "504"), ScanFailureKind.TIMEOUT),
    (("fetch failed", "network", "connection"), ScanFailureKind.NETWORK_UNREACHABLE),
    (("413", "too large", "payload"), ScanFailureKind.PAYLOAD_TOO_LARGE),
    (
        ("429", "500", "503", "overloaded", "unavailable", "exhausted", "internal server error"),
        ScanFailureKind.SERVER_UNAVAILABLE,
    ),
]


def classify_exception(exc: BaseException) -> ScanError:
    """Classify an arbitrary exception raised while issuing a scan request."""
    if isinstance(exc, ScanError):
        return exc
    if isinstance(exc, httpx.HTTPStatusError):
        response = exc.response
        try:
            body = response.json()
        except ValueError:
            body = response.text
        return classify_http_error(response.status_code, body)
    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
        return ScanError(ScanFailureKind.TIMEOUT, str(exc))
    if isinstance(exc, (httpx.NetworkError, ConnectionError)):
        return ScanError(ScanFailureKind.NETWORK_UNREACHABLE, str(exc))

    message = str(exc).lower()
    for needles, kind in _MESSAGE_RULES:
        if any(n in message for n in needles):
            return ScanError(kind, str(exc))
    return ScanError(ScanFailureKind.UNKNOWN, f"{type(exc).__name__}: {exc}")
