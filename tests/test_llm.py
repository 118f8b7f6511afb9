"""Tests for storysync.llm — HttpLLM, EchoLLM, UnconfiguredLLM, build_llm."""

import pytest
import httpx
from unittest.mock import AsyncMock, MagicMock, patch

from storysync.config import Settings
from storysync.llm import EchoLLM, HttpLLM, ServiceError, UnconfiguredLLM, build_llm


# ---------------------------------------------------------------------------
# EchoLLM / UnconfiguredLLM
# ---------------------------------------------------------------------------

class TestEchoLLM:
    async def test_returns_prompt_unchanged(self) -> None:
        llm = EchoLLM()
        assert await llm("game_master", "hello world") == "hello world"


class TestUnconfiguredLLM:
    async def test_every_call_fails(self) -> None:
        with pytest.raises(ServiceError, match="not configured"):
            await UnconfiguredLLM()("companion", "prompt")


def _mock_response(body: dict, status: int = 200) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = body
    resp.raise_for_status = MagicMock(
        side_effect=None if status < 400 else httpx.HTTPStatusError(
            "", request=MagicMock(), response=resp
        )
    )
    return resp


def _gemini_body(text: str) -> dict:
    return {"candidates": [{"content": {"parts": [{"text": text}]}}]}


# ---------------------------------------------------------------------------
# HttpLLM: Gemini format
# ---------------------------------------------------------------------------

class TestHttpLLMGemini:
    @pytest.fixture
    def llm(self) -> HttpLLM:
        return HttpLLM(api_key="secret", model="gemini-1.5-flash")

    async def test_happy_path_strips_text(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(return_value=_mock_response(_gemini_body("  The altar hums.\n")))
        with patch("httpx.AsyncClient.post", mock_post):
            result = await llm("game_master", "Resolve.")
        assert result == "The altar hums."

    async def test_posts_to_generate_content(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(return_value=_mock_response(_gemini_body("ok")))
        with patch("httpx.AsyncClient.post", mock_post):
            await llm("game_master", "prompt")
        url = mock_post.call_args[0][0]
        assert url == (
            "https://generativelanguage.googleapis.com/v1beta/models/"
            "gemini-1.5-flash:generateContent"
        )

    async def test_key_sent_as_query_param_not_header(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(return_value=_mock_response(_gemini_body("ok")))
        with patch("httpx.AsyncClient.post", mock_post):
            await llm("game_master", "prompt")
        assert mock_post.call_args.kwargs["params"] == {"key": "secret"}
        assert "Authorization" not in mock_post.call_args.kwargs["headers"]

    async def test_body_carries_prompt_and_generation_config(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(return_value=_mock_response(_gemini_body("ok")))
        with patch("httpx.AsyncClient.post", mock_post):
            await llm("game_master", "my prompt")
        body = mock_post.call_args.kwargs["json"]
        assert body["contents"][0]["parts"][0]["text"] == "my prompt"
        assert body["generationConfig"] == {"temperature": 0.6, "maxOutputTokens": 400}

    async def test_malformed_response_raises_service_error(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(return_value=_mock_response({"candidates": []}))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(ServiceError, match="Unexpected response format"):
                await llm("game_master", "prompt")

    async def test_non_json_body_raises_service_error(self, llm: HttpLLM) -> None:
        resp = _mock_response({})
        resp.json.side_effect = ValueError("not json")
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=resp)):
            with pytest.raises(ServiceError, match="non-JSON"):
                await llm("game_master", "prompt")


# ---------------------------------------------------------------------------
# HttpLLM: KoboldCpp format
# ---------------------------------------------------------------------------

class TestHttpLLMKoboldCpp:
    @pytest.fixture
    def llm(self) -> HttpLLM:
        return HttpLLM(provider_url="http://localhost:5001", provider_format="koboldcpp")

    async def test_posts_to_correct_url(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(return_value=_mock_response({"results": [{"text": "ok"}]}))
        with patch("httpx.AsyncClient.post", mock_post):
            await llm("companion", "prompt")
        assert mock_post.call_args[0][0] == "http://localhost:5001/api/v1/generate"
        assert mock_post.call_args.kwargs["json"] == {"prompt": "prompt"}

    async def test_bearer_token_sent_when_api_key_set(self) -> None:
        llm = HttpLLM(provider_url="http://localhost:5001/", api_key="tok", provider_format="koboldcpp")
        mock_post = AsyncMock(return_value=_mock_response({"results": [{"text": "ok"}]}))
        with patch("httpx.AsyncClient.post", mock_post):
            await llm("companion", "prompt")
        assert mock_post.call_args.kwargs["headers"]["Authorization"] == "Bearer tok"
        assert mock_post.call_args.kwargs["params"] == {}

    async def test_connect_error_raises_service_error(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(side_effect=httpx.ConnectError("refused"))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(ServiceError, match="Cannot connect"):
                await llm("companion", "prompt")

    async def test_timeout_raises_service_error(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(side_effect=httpx.TimeoutException("timeout"))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(ServiceError, match="timed out"):
                await llm("companion", "prompt")

    async def test_http_error_raises_service_error(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(return_value=_mock_response({}, status=503))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(ServiceError, match="HTTP 503"):
                await llm("companion", "prompt")

    @pytest.mark.parametrize("exc", [
        httpx.ReadError("connection reset"),
        httpx.RemoteProtocolError("Server disconnected without sending a response."),
        httpx.WriteError("broken pipe"),
    ])
    async def test_other_transport_errors_raise_service_error(self, llm: HttpLLM, exc) -> None:
        mock_post = AsyncMock(side_effect=exc)
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(ServiceError, match="request failed"):
                await llm("companion", "prompt")


# ---------------------------------------------------------------------------
# HttpLLM: OpenAI format
# ---------------------------------------------------------------------------

class TestHttpLLMOpenAI:
    @pytest.fixture
    def llm(self) -> HttpLLM:
        return HttpLLM(
            provider_url="http://localhost:8080",
            provider_format="openai",
            model="mistral-7b",
        )

    async def test_posts_model_to_completions(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(return_value=_mock_response({"choices": [{"text": "ok"}]}))
        with patch("httpx.AsyncClient.post", mock_post):
            await llm("game_master", "prompt")
        assert mock_post.call_args[0][0] == "http://localhost:8080/v1/completions"
        assert mock_post.call_args.kwargs["json"]["model"] == "mistral-7b"

    async def test_malformed_response_raises_service_error(self, llm: HttpLLM) -> None:
        body = {"results": [{"text": "kobold format accidentally"}]}
        mock_post = AsyncMock(return_value=_mock_response(body))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(ServiceError, match="Unexpected response format"):
                await llm("game_master", "prompt")


# ---------------------------------------------------------------------------
# build_llm
# ---------------------------------------------------------------------------

class TestBuildLLM:
    def test_gemini_without_key_is_unconfigured(self) -> None:
        assert isinstance(build_llm(Settings(api_key="")), UnconfiguredLLM)

    def test_gemini_with_key(self) -> None:
        assert isinstance(build_llm(Settings(api_key="k")), HttpLLM)

    def test_kobold_needs_no_key(self) -> None:
        s = Settings(provider_format="koboldcpp", provider_url="http://localhost:5001")
        assert isinstance(build_llm(s), HttpLLM)

    def test_missing_url_is_unconfigured(self) -> None:
        s = Settings(provider_format="openai", provider_url="")
        assert isinstance(build_llm(s), UnconfiguredLLM)
