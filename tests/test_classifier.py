"""Tests for classification backends (mocked transports and SDKs)."""

import base64
import json
import sys
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from halalscan.classifier import ClassificationBackend, create_backend
from halalscan.classifier.claude import ClaudeClassificationBackend
from halalscan.classifier.gemini import GeminiClassificationBackend
from halalscan.classifier.http import HttpClassificationBackend
from halalscan.classifier.prompt import language_instruction, parse_result
from halalscan.config import load_config
from halalscan.errors import ScanError, ScanFailureKind
from halalscan.models import HalalStatus, ScanRequest, Transferable

ENDPOINT = "https://example.test/functions/v1/analyze"

RESULT = {
    "status": "HARAM",
    "reason": "Contains gelatin of pork origin",
    "ingredientsDetected": [
        {"name": "Sugar", "status": "HALAL"},
        {"name": "Pork gelatin", "status": "HARAM"},
    ],
    "confidence": 95,
}


def _image_request(**kwargs):
    payload = base64.b64encode(b"\xff\xd8jpeg").decode()
    return ScanRequest(
        images=[Transferable(data=payload, mime_type="image/jpeg")],
        language="en",
        **kwargs,
    )


def _backend(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpClassificationBackend(ENDPOINT, client=client)


class TestParseResult:
    def test_plain_json(self):
        result = parse_result(json.dumps(RESULT))
        assert result.status is HalalStatus.HARAM
        assert result.confidence == 95
        assert [i.name for i in result.ingredients] == ["Sugar", "Pork gelatin"]

    def test_markdown_fences(self):
        text = f"```json\n{json.dumps(RESULT)}\n```"
        assert parse_result(text).status is HalalStatus.HARAM

    def test_missing_ingredient_status_is_doubtful(self):
        data = dict(RESULT, ingredientsDetected=[{"name": "E471"}])
        result = parse_result(json.dumps(data))
        assert result.ingredients[0].status is HalalStatus.DOUBTFUL

    def test_confidence_is_clamped(self):
        result = parse_result(json.dumps(dict(RESULT, confidence=140)))
        assert result.confidence == 100

    @pytest.mark.parametrize(
        "text",
        ["not json", "[]", json.dumps({"reason": "no status"}), json.dumps(dict(RESULT, status="MAYBE"))],
    )
    def test_invalid(self, text):
        with pytest.raises(ValueError):
            parse_result(text)

    def test_language_instruction(self):
        assert "Arabic" in language_instruction("ar")
        assert "English" in language_instruction("xx")


class TestCreateBackend:
    def test_default_is_http(self):
        backend = create_backend(load_config())
        assert isinstance(backend, HttpClassificationBackend)
        assert isinstance(backend, ClassificationBackend)

    def test_gemini(self):
        config = load_config()
        config.classifier.backend = "gemini"
        assert isinstance(create_backend(config), GeminiClassificationBackend)

    def test_claude(self):
        config = load_config()
        config.classifier.backend = "claude"
        assert isinstance(create_backend(config), ClaudeClassificationBackend)

    def test_unknown(self):
        config = load_config()
        config.classifier.backend = "unknown"
        with pytest.raises(ValueError, match="Unknown classifier backend"):
            create_backend(config)

    def test_only_hosted_endpoint_counts_scans(self):
        assert HttpClassificationBackend.server_enforces_quota is True
        assert GeminiClassificationBackend.server_enforces_quota is False
        assert ClaudeClassificationBackend.server_enforces_quota is False


class TestHttpBackend:
    @pytest.mark.asyncio
    async def test_success(self):
        seen = {}

        def handler(request):
            seen["headers"] = request.headers
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=RESULT)

        backend = _backend(handler)
        result = await backend.classify(_image_request(identity="user-1", access_token="tok"))

        assert result.status is HalalStatus.HARAM
        assert seen["headers"]["x-user-id"] == "user-1"
        assert seen["headers"]["authorization"] == "Bearer tok"
        assert seen["body"]["language"] == "en"
        assert seen["body"]["mimeTypes"] == ["image/jpeg"]
        assert base64.b64decode(seen["body"]["images"][0]) == b"\xff\xd8jpeg"
        assert "text" not in seen["body"]

    @pytest.mark.asyncio
    async def test_text_request_and_anonymous_identity(self):
        seen = {}

        def handler(request):
            seen["headers"] = request.headers
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=RESULT)

        backend = _backend(handler)
        await backend.classify(ScanRequest(text="sugar, gelatin", language="ar"))

        assert seen["body"]["text"] == "sugar, gelatin"
        assert "images" not in seen["body"]
        assert seen["headers"]["x-user-id"] == "anonymous"
        assert "authorization" not in seen["headers"]

    @pytest.mark.asyncio
    async def test_reported_failure_is_returned(self):
        failure = {"status": "NON_FOOD", "reason": "Image size too large", "ingredientsDetected": [], "confidence": 0}
        backend = _backend(lambda request: httpx.Response(200, json=failure))

        result = await backend.classify(_image_request())

        assert result.is_failure
        assert result.reason == "Image size too large"

    @pytest.mark.asyncio
    async def test_limit_reached(self):
        backend = _backend(lambda request: httpx.Response(403, json={"error": "LIMIT_REACHED"}))

        with pytest.raises(ScanError) as exc:
            await backend.classify(_image_request())
        assert exc.value.kind is ScanFailureKind.QUOTA_EXCEEDED

    @pytest.mark.asyncio
    async def test_gateway_timeout(self):
        backend = _backend(lambda request: httpx.Response(504, text="upstream timeout"))

        with pytest.raises(ScanError) as exc:
            await backend.classify(_image_request())
        assert exc.value.kind is ScanFailureKind.TIMEOUT

    @pytest.mark.asyncio
    async def test_unreadable_body(self):
        backend = _backend(lambda request: httpx.Response(200, text="<html>"))

        with pytest.raises(ScanError) as exc:
            await backend.classify(_image_request())
        assert exc.value.kind is ScanFailureKind.UNKNOWN

    @pytest.mark.asyncio
    async def test_missing_endpoint(self):
        with pytest.raises(ScanError) as exc:
            await HttpClassificationBackend("").classify(_image_request())
        assert exc.value.kind is ScanFailureKind.MISCONFIGURED


class TestClaudeBackend:
    @pytest.mark.asyncio
    async def test_requires_api_key(self):
        with pytest.raises(ScanError) as exc:
            await ClaudeClassificationBackend(api_key="").classify(_image_request())
        assert exc.value.kind is ScanFailureKind.MISCONFIGURED

    @pytest.mark.asyncio
    async def test_classify_mocked(self):
        mock_response = MagicMock()
        mock_response.content = [MagicMock(text=json.dumps(RESULT))]

        mock_client = AsyncMock()
        mock_client.messages.create = AsyncMock(return_value=mock_response)

        mock_anthropic = MagicMock()
        mock_anthropic.AsyncAnthropic.return_value = mock_client

        with patch.dict(sys.modules, {"anthropic": mock_anthropic}):
            backend = ClaudeClassificationBackend(api_key="test-key")
            result = await backend.classify(_image_request())

        assert result.status is HalalStatus.HARAM
        kwargs = mock_client.messages.create.call_args.kwargs
        content = kwargs["messages"][0]["content"]
        assert content[0]["type"] == "image"
        assert content[0]["source"]["media_type"] == "image/jpeg"
        assert "English" in kwargs["system"]

    @pytest.mark.asyncio
    async def test_unreadable_response(self):
        mock_response = MagicMock()
        mock_response.content = [MagicMock(text="I cannot help with that")]
        mock_client = AsyncMock()
        mock_client.messages.create = AsyncMock(return_value=mock_response)
        mock_anthropic = MagicMock()
        mock_anthropic.AsyncAnthropic.return_value = mock_client

        with patch.dict(sys.modules, {"anthropic": mock_anthropic}):
            with pytest.raises(ScanError) as exc:
                await ClaudeClassificationBackend(api_key="k").classify(_image_request())
        assert exc.value.kind is ScanFailureKind.UNKNOWN


class TestGeminiBackend:
    @pytest.mark.asyncio
    async def test_requires_api_key(self):
        with pytest.raises(ScanError) as exc:
            await GeminiClassificationBackend(api_key="").classify(_image_request())
        assert exc.value.kind is ScanFailureKind.MISCONFIGURED

    @pytest.mark.asyncio
    async def test_classify_mocked(self):
        mock_model = MagicMock()
        mock_model.generate_content_async = AsyncMock(
            return_value=MagicMock(text=json.dumps(RESULT))
        )
        mock_genai = MagicMock()
        mock_genai.GenerativeModel.return_value = mock_model
        mock_google = MagicMock()
        mock_google.generativeai = mock_genai

        with patch.dict(
            sys.modules, {"google": mock_google, "google.generativeai": mock_genai}
        ):
            backend = GeminiClassificationBackend(api_key="test-key")
            result = await backend.classify(ScanRequest(text="gelatin", language="ar"))

        assert result.status is HalalStatus.HARAM
        mock_genai.configure.assert_called_once_with(api_key="test-key")
        parts = mock_model.generate_content_async.call_args.args[0]
        assert parts[-1].endswith("gelatin")
        config = mock_genai.GenerativeModel.call_args.kwargs["generation_config"]
        assert config["response_mime_type"] == "application/json"
