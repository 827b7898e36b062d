"""Classification backend base class and factory."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from ..models import ScanRequest, ScanResult

if TYPE_CHECKING:
    from ..config import ScanConfig


class ClassificationBackend(ABC):
    """Abstract base for halal classification of ingredient images or text."""

    #: True when the service behind the backend counts scans against the free
    #: tier itself. Otherwise the caller records each successful scan.
    server_enforces_quota: bool = False

    @abstractmethod
    async def classify(self, request: ScanRequest) -> ScanResult:
        """Classify one request.

        Returns a result with confidence 0 when the backend reports a failure
        in-band. Transport and service failures are raised.
        """
        ...


def create_backend(config: ScanConfig) -> ClassificationBackend:
    """Create a classification backend based on configuration."""
    backend_name = config.classifier.backend

    match backend_name:
        case "http":
            from .http import HttpClassificationBackend

            return HttpClassificationBackend(
                endpoint=config.classifier.http.endpoint,
                timeout=config.classifier.http.timeout,
            )
        case "gemini":
            from .gemini import GeminiClassificationBackend

            return GeminiClassificationBackend(
                api_key=config.classifier.gemini.api_key,
                model=config.classifier.gemini.model,
            )
        case "claude":
            from .claude import ClaudeClassificationBackend

            return ClaudeClassificationBackend(
                api_key=config.classifier.claude.api_key,
                model=config.classifier.claude.model,
            )
        case _:
            raise ValueError(
                f"Unknown classifier backend: {backend_name!r} "
                f"(choose http / gemini / claude)"
            )
