"""Claude API backend for halal classification."""

from __future__ import annotations

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


class ClaudeClassificationBackend(ClassificationBackend):
    """Classify products using Claude's vision capability."""

    def __init__(self, api_key: str = "", model: str = "claude-sonnet-4-5-20250929") -> None:
        self._api_key = api_key
        self._model = model

    async def classify(self, request: ScanRequest) -> ScanResult:
        if not self._api_key:
            raise ScanError(
                ScanFailureKind.MISCONFIGURED,
                "Anthropic API key is not set. "
                "Check the config file or the ANTHROPIC_API_KEY environment variable.",
            )

        try:
            import anthropic
        except ImportError:
            raise ImportError(
                "anthropic SDK is required: pip install anthropic"
            ) from None

        content: list[dict] = []
        for image in request.images:
            content.append(
                {
                    "type": "image",
                    "source": {
                        "type": "base64",
                        "media_type": image.mime_type,
                        "data": image.data,
                    },
                }
            )
        if request.text:
            content.append({"type": "text", "text": TEXT_INSTRUCTION + request.text})
        else:
            content.append({"type": "text", "text": IMAGE_INSTRUCTION})

        client = anthropic.AsyncAnthropic(api_key=self._api_key)
        response = await client.messages.create(
            model=self._model,
            max_tokens=2048,
            temperature=0.1,
            system=f"{SYSTEM_PROMPT}\n{language_instruction(request.language)}",
            messages=[{"role": "user", "content": content}],
        )

        try:
            return parse_result(response.content[0].text)
        except ValueError as e:
            raise ScanError(ScanFailureKind.UNKNOWN, f"unreadable Claude response: {e}") from e
