"""Gemini API backend for halal classification."""

from __future__ import annotations

import base64

from ..errors import ScanError, ScanFailureKind
from ..models import ScanRequest, ScanResult
from . import ClassificationBackend
from .prompt import (
    IMAGE_INSTRUCTION,
    SYSTEM_PROMPT,
    TEXT_INSTRUCTION,
    language_instruction,
    parse_result,
)


class GeminiClassificationBackend(ClassificationBackend):
    """Classify products by calling Google Gemini directly."""

    def __init__(self, api_key: str = "", model: str = "gemini-2.5-flash") -> None:
        self._api_key = api_key
        self._model = model

    async def classify(self, request: ScanRequest) -> ScanResult:
        if not self._api_key:
            raise ScanError(
                ScanFailureKind.MISCONFIGURED,
                "Gemini API key is not set. "
                "Check the config file or the GEMINI_API_KEY environment variable.",
            )

        try:
            import google.generativeai as genai
        except ImportError:
            raise ImportError(
                "google-generativeai SDK is required: pip install google-generativeai"
            ) from None

        genai.configure(api_key=self._api_key)
        model = genai.GenerativeModel(
            self._model,
            system_instruction=f"{SYSTEM_PROMPT}\n{language_instruction(request.language)}",
            generation_config={
                "response_mime_type": "application/json",
                "temperature": 0.1,
                "top_p": 0.95,
                "top_k": 40,
            },
        )

        parts: list = []
        for image in request.images:
            parts.append(
                {"mime_type": image.mime_type, "data": base64.b64decode(image.data)}
            )
        if request.text:
            parts.append(TEXT_INSTRUCTION + request.text)
        else:
            parts.append(IMAGE_INSTRUCTION)

        response = await model.generate_content_async(parts)
        try:
            return parse_result(response.text)
        except ValueError as e:
            raise ScanError(ScanFailureKind.UNKNOWN, f"unreadable Gemini response: {e}") from e
