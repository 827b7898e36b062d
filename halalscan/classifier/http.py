"""Classification through the hosted analysis endpoint."""

from __future__ import annotations

import logging

import httpx

from ..errors import ScanError, ScanFailureKind, classify_http_error
from ..models import ScanRequest, ScanResult
from . import ClassificationBackend

logger = logging.getLogger(__name__)


class HttpClassificationBackend(ClassificationBackend):
    """POST images or text to the analysis endpoint.

    The endpoint enforces the free-scan limit itself and answers 403 with
    ``{"error": "LIMIT_REACHED"}`` once it is exhausted.
    """

    server_enforces_quota = True

    def __init__(
        self,
        endpoint: str = "",
        timeout: float = 60.0,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._endpoint = endpoint
        self._timeout = timeout
        self._client = client

    def _payload(self, request: ScanRequest) -> dict:
        payload: dict = {"language": request.language}
        if request.images:
            payload["images"] = [img.data for img in request.images]
            payload["mimeTypes"] = [img.mime_type for img in request.images]
        if request.text:
            payload["text"] = request.text
        return payload

    def _headers(self, request: ScanRequest) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "x-user-id": request.identity or "anonymous",
        }
        if request.access_token:
            headers["Authorization"] = f"Bearer {request.access_token}"
        return headers

    async def classify(self, request: ScanRequest) -> ScanResult:
        if not self._endpoint:
            raise ScanError(
                ScanFailureKind.MISCONFIGURED,
                "analysis endpoint is not configured "
                "(set classifier.http.endpoint or HALAL_SCAN_ENDPOINT)",
            )

        client = self._client or httpx.AsyncClient(timeout=self._timeout)
        try:
            logger.debug(
                "POST %s: %d image(s), text=%s",
                self._endpoint,
                len(request.images),
                bool(request.text),
            )
            response = await client.post(
                self._endpoint,
                json=self._payload(request),
                headers=self._headers(request),
            )
        finally:
            if self._client is None:
                await client.aclose()

        if response.is_error:
            try:
                body = response.json()
            except ValueError:
                body = response.text
            raise classify_http_error(response.status_code, body)

        try:
            return ScanResult.from_dict(response.json())
        except ValueError as e:
            raise ScanError(ScanFailureKind.UNKNOWN, f"unreadable analysis response: {e}") from e
