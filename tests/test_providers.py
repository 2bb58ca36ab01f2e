"""Tests for provider adapters: status mapping, request building and error classification."""

import json
from unittest.mock import AsyncMock, patch

import aiohttp
import pytest

from services.generation.providers import (
    HeyGenProvider,
    ShotstackProvider,
    StubGenerationProvider,
    VeoProvider,
    build_providers,
    classify_http_failure,
)
from services.generation.providers.heygen import estimate_progress, map_status
from services.generation.providers.shotstack import map_status as map_shotstack_status
from shared.config import ServiceConfig
from shared.enums import JobState, ProviderType
from shared.exceptions import (
    TerminalProviderError,
    TransientProviderError,
    ValidationError,
)
from shared.models import ProviderStatus


class TestErrorClassification:
    """HTTP failures split into transient and terminal errors."""

    @pytest.mark.parametrize("status", [500, 502, 503, 408, 429])
    def test_transient(self, status: int) -> None:
        error = classify_http_failure("heygen", status, "try later")
        assert isinstance(error, TransientProviderError)
        assert error.status_code == status

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 422])
    def test_terminal(self, status: int) -> None:
        error = classify_http_failure("veo", status, "bad request")
        assert isinstance(error, TerminalProviderError)
        assert "veo request failed" in str(error)


def _mock_session(mock_session_class, method: str, body=None, error: Exception | None = None) -> AsyncMock:
    mock_session = AsyncMock()
    mock_response = AsyncMock()
    if error is not None:
        mock_response.raise_for_status.side_effect = error
    else:
        mock_response.raise_for_status.return_value = None
    if isinstance(body, Exception):
        mock_response.json.side_effect = body
    else:
        mock_response.json.return_value = body
    getattr(mock_session, method).return_value.__aenter__.return_value = mock_response
    mock_session_class.return_value = mock_session
    return mock_session


class TestHttpProviderRequests:
    """Provider HTTP calls go through the shared client and map failures."""

    @pytest.fixture
    def provider(self) -> VeoProvider:
        return VeoProvider(api_key="veo-key", base_url="https://veo.test/v1beta", model="veo-test")

    @pytest.mark.asyncio
    async def test_get_sends_api_key(self, provider: VeoProvider) -> None:
        with patch("aiohttp.ClientSession") as mock_session_class:
            session = _mock_session(mock_session_class, "get", {"name": "operations/op1", "done": False})
            status = await provider.get_status("operations/op1")

        assert status.state is JobState.PROCESSING
        _, kwargs = session.get.call_args
        assert session.get.call_args.args[0] == "https://veo.test/v1beta/operations/op1"
        assert kwargs["headers"]["x-goog-api-key"] == "veo-key"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("status", "expected"),
        [(503, TransientProviderError), (429, TransientProviderError), (404, TerminalProviderError)],
    )
    async def test_error_status_is_classified(self, provider: VeoProvider, status: int, expected: type) -> None:
        error = aiohttp.ClientResponseError(request_info=AsyncMock(), history=(), status=status, message="nope")
        with patch("aiohttp.ClientSession") as mock_session_class:
            _mock_session(mock_session_class, "post", error=error)
            with pytest.raises(expected) as raised:
                await provider.submit({"prompt": "intro"})
        assert raised.value.status_code == status

    @pytest.mark.asyncio
    async def test_malformed_json_is_transient(self, provider: VeoProvider) -> None:
        with patch("aiohttp.ClientSession") as mock_session_class:
            _mock_session(mock_session_class, "get", json.JSONDecodeError("Expecting value", "<html>", 0))
            with pytest.raises(TransientProviderError, match="malformed JSON"):
                await provider.get_status("operations/op1")

    @pytest.mark.asyncio
    async def test_non_object_body_is_transient(self, provider: VeoProvider) -> None:
        with patch("aiohttp.ClientSession") as mock_session_class:
            _mock_session(mock_session_class, "get", ["unexpected"])
            with pytest.raises(TransientProviderError, match="unexpected response body"):
                await provider.get_status("operations/op1")

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self, provider: VeoProvider) -> None:
        with patch("aiohttp.ClientSession") as mock_session_class:
            session = _mock_session(mock_session_class, "get", {})
            session.get.side_effect = aiohttp.ClientConnectionError("reset")
            with pytest.raises(TransientProviderError):
                await provider.get_status("operations/op1")


class TestHeyGenProvider:
    """HeyGen request building and status mapping."""

    @pytest.fixture
    def provider(self) -> HeyGenProvider:
        return HeyGenProvider(
            api_key="test-key",
            base_url="https://heygen.test",
            default_avatar_id="Brandon_expressive2_public",
            webhook_url=None,
            test_mode=False,
        )

    def test_status_vocabulary(self) -> None:
        assert map_status("completed") is JobState.COMPLETED
        assert map_status("FAILED") is JobState.FAILED
        assert map_status("processing") is JobState.PROCESSING
        assert map_status("waiting") is JobState.PENDING
        assert map_status("something_new") is JobState.PROCESSING
        assert map_status(None) is JobState.PROCESSING

    def test_progress_estimate(self) -> None:
        assert estimate_progress("completed", None) == 100
        assert estimate_progress("processing", None) == 50
        assert estimate_progress("processing", 290) == 10
        assert estimate_progress("processing", 30) == 90
        assert estimate_progress("failed", 30) == 0

    def test_requires_audio_url(self, provider: HeyGenProvider) -> None:
        with pytest.raises(ValidationError):
            provider.validate_request({"avatar_id": "abc"})
        provider.validate_request({"audio_url": "https://cdn.test/narration.mp3"})

    def test_build_request_for_avatar(self, provider: HeyGenProvider) -> None:
        request = provider.build_request({"audio_url": "https://cdn.test/a.mp3"})
        video_input = request["video_inputs"][0]

        assert video_input["character"] == {
            "type": "avatar",
            "avatar_id": "Brandon_expressive2_public",
            "scale": 1.0,
            "avatar_style": "normal",
        }
        assert video_input["voice"] == {"type": "audio", "audio_url": "https://cdn.test/a.mp3"}
        assert request["dimension"] == {"width": 1280, "height": 720}
        assert "callback_url" not in request

    def test_build_request_for_talking_photo(self, provider: HeyGenProvider) -> None:
        request = provider.build_request(
            {"audio_url": "https://cdn.test/a.mp3", "avatar_id": "TP-photo123", "webhook_url": "https://hook.test"}
        )
        character = request["video_inputs"][0]["character"]
        assert character["type"] == "talking_photo"
        assert character["talking_photo_id"] == "photo123"
        assert request["callback_url"] == "https://hook.test"

    @pytest.mark.asyncio
    async def test_submit_returns_video_id(self, provider: HeyGenProvider) -> None:
        with patch.object(provider, "_request", AsyncMock(return_value={"data": {"video_id": "vid-1"}})) as request:
            handle = await provider.submit({"audio_url": "https://cdn.test/a.mp3"})

        assert handle == "vid-1"
        method, url, body = request.call_args.args
        assert method == "POST"
        assert url == "https://heygen.test/v2/video/generate"
        assert body["video_inputs"][0]["voice"]["audio_url"] == "https://cdn.test/a.mp3"

    @pytest.mark.asyncio
    async def test_submit_error_is_terminal(self, provider: HeyGenProvider) -> None:
        response = {"error": {"message": "avatar not found"}, "data": None}
        with patch.object(provider, "_request", AsyncMock(return_value=response)):
            with pytest.raises(TerminalProviderError, match="avatar not found"):
                await provider.submit({"audio_url": "https://cdn.test/a.mp3"})

    @pytest.mark.asyncio
    async def test_get_status_completed(self, provider: HeyGenProvider) -> None:
        response = {"data": {"status": "completed", "video_url": "https://cdn.test/v.mp4", "duration": 12.5}}
        with patch.object(provider, "_request", AsyncMock(return_value=response)) as request:
            status = await provider.get_status("vid-1")

        assert status.state is JobState.COMPLETED
        assert status.result_ref == "https://cdn.test/v.mp4"
        assert status.progress_percent == 100
        assert status.duration_seconds == 12.5
        assert request.call_args.kwargs["params"] == {"video_id": "vid-1"}

    @pytest.mark.asyncio
    async def test_get_status_failed(self, provider: HeyGenProvider) -> None:
        response = {"data": {"status": "failed", "error": {"message": "quota exceeded"}}}
        with patch.object(provider, "_request", AsyncMock(return_value=response)):
            status = await provider.get_status("vid-1")

        assert status.state is JobState.FAILED
        assert status.error_message == "quota exceeded"
        assert status.result_ref is None

    @pytest.mark.asyncio
    async def test_get_status_without_data_is_transient(self, provider: HeyGenProvider) -> None:
        with patch.object(provider, "_request", AsyncMock(return_value={"message": "busy"})):
            with pytest.raises(TransientProviderError):
                await provider.get_status("vid-1")

    def test_parse_webhook(self, provider: HeyGenProvider) -> None:
        handle, status = provider.parse_webhook(
            {"event_type": "avatar_video.success", "event_data": {"video_id": "vid-1", "url": "https://cdn.test/v.mp4"}}
        )
        assert handle == "vid-1"
        assert status.state is JobState.COMPLETED
        assert status.result_ref == "https://cdn.test/v.mp4"

        _, failed = provider.parse_webhook(
            {"event_type": "avatar_video.fail", "event_data": {"video_id": "vid-2", "msg": "render error"}}
        )
        assert failed.state is JobState.FAILED
        assert failed.error_message == "render error"

        with pytest.raises(ValidationError):
            provider.parse_webhook({"event_type": "avatar_video.unknown", "event_data": {"video_id": "vid-3"}})


class TestVeoProvider:
    """Veo long-running operation mapping."""

    @pytest.fixture
    def provider(self) -> VeoProvider:
        return VeoProvider(api_key="veo-key", base_url="https://veo.test/v1beta", model="veo-test")

    def test_validate_request(self, provider: VeoProvider) -> None:
        with pytest.raises(ValidationError):
            provider.validate_request({})
        with pytest.raises(ValidationError):
            provider.validate_request({"prompt": "intro", "aspect_ratio": "4:3"})
        provider.validate_request({"prompt": "intro", "aspect_ratio": "9:16", "resolution": "1080p"})

    def test_build_request(self, provider: VeoProvider) -> None:
        request = provider.build_request({"prompt": "A calm intro", "negative_prompt": "text"})
        assert request == {
            "instances": [{"prompt": "A calm intro"}],
            "parameters": {"aspectRatio": "16:9", "resolution": "720p", "negativePrompt": "text"},
        }

    def test_operation_url(self, provider: VeoProvider) -> None:
        assert provider.operation_url("models/veo-test/operations/abc") == (
            "https://veo.test/v1beta/models/veo-test/operations/abc"
        )
        assert provider.operation_url("abc") == "https://veo.test/v1beta/operations/abc"

    @pytest.mark.asyncio
    async def test_submit_returns_operation_name(self, provider: VeoProvider) -> None:
        with patch.object(provider, "_request", AsyncMock(return_value={"name": "models/veo-test/operations/op1"})) as request:
            handle = await provider.submit({"prompt": "intro"})

        assert handle == "models/veo-test/operations/op1"
        assert request.call_args.args[1] == "https://veo.test/v1beta/models/veo-test:predictLongRunning"

    def test_status_from_operation(self, provider: VeoProvider) -> None:
        running = provider.status_from_operation({"done": False, "metadata": {"progressPercent": 35}})
        assert running.state is JobState.PROCESSING
        assert running.progress_percent == 35

        done = provider.status_from_operation(
            {
                "done": True,
                "response": {
                    "generateVideoResponse": {"generatedSamples": [{"video": {"uri": "https://files.test/v.mp4"}}]}
                },
            }
        )
        assert done.state is JobState.COMPLETED
        assert done.result_ref == "https://files.test/v.mp4"

        failed = provider.status_from_operation({"done": True, "error": {"message": "quota exceeded"}})
        assert failed.state is JobState.FAILED
        assert failed.error_message == "quota exceeded"

        filtered = provider.status_from_operation(
            {"done": True, "response": {"generateVideoResponse": {"raiMediaFilteredReasons": ["unsafe content"]}}}
        )
        assert filtered.state is JobState.FAILED
        assert filtered.error_message == "unsafe content"

    def test_prepare_download_url_adds_key(self, provider: VeoProvider) -> None:
        assert provider.prepare_download_url("https://files.test/v.mp4?alt=media") == (
            "https://files.test/v.mp4?alt=media&key=veo-key"
        )
        assert provider.prepare_download_url("https://files.test/v.mp4?key=other") == (
            "https://files.test/v.mp4?key=other"
        )
        assert provider.prepare_download_url("file:///tmp/v.mp4") == "file:///tmp/v.mp4"


class TestShotstackProvider:
    """Shotstack render stages and timeline pass-through."""

    @pytest.fixture
    def provider(self) -> ShotstackProvider:
        return ShotstackProvider(api_key="ss-key", base_url="https://shotstack.test", environment="sandbox")

    def test_status_vocabulary(self) -> None:
        assert map_shotstack_status("queued") is JobState.PENDING
        for stage in ("fetching", "rendering", "saving"):
            assert map_shotstack_status(stage) is JobState.PROCESSING
        assert map_shotstack_status("done") is JobState.COMPLETED
        assert map_shotstack_status("failed") is JobState.FAILED
        assert map_shotstack_status("preprocessing") is JobState.PENDING
        assert map_shotstack_status(None) is JobState.PENDING

    def test_environment_selects_api_path(self) -> None:
        assert ShotstackProvider(api_key="k", base_url="https://shotstack.test", environment="production").base_url == (
            "https://shotstack.test/edit/v1"
        )
        assert ShotstackProvider(api_key="k", base_url="https://shotstack.test", environment="stage").base_url == (
            "https://shotstack.test/edit/stage"
        )
        with pytest.raises(ValueError):
            ShotstackProvider(api_key="k", environment="staging-eu")

    def test_validate_request(self, provider: ShotstackProvider) -> None:
        with pytest.raises(ValidationError):
            provider.validate_request({})
        with pytest.raises(ValidationError):
            provider.validate_request({"timeline": {"tracks": []}, "output": "mp4"})
        provider.validate_request({"timeline": {"tracks": []}})

    def test_build_request_passes_timeline_through(self, provider: ShotstackProvider) -> None:
        timeline = {"soundtrack": {"src": "https://cdn.test/a.mp3"}, "tracks": [{"clips": [{"start": 0}]}]}
        request = provider.build_request({"timeline": timeline, "callback": "https://api.test/hooks/shotstack"})
        assert request == {
            "timeline": timeline,
            "output": {"format": "mp4", "resolution": "hd"},
            "callback": "https://api.test/hooks/shotstack",
        }
        custom = provider.build_request({"timeline": timeline, "output": {"format": "mp4", "resolution": "1080"}})
        assert custom["output"] == {"format": "mp4", "resolution": "1080"}
        assert "callback" not in custom

    @pytest.mark.asyncio
    async def test_submit_returns_render_id(self, provider: ShotstackProvider) -> None:
        response = {"success": True, "message": "Created", "response": {"id": "render-1", "message": "Render Successfully Queued"}}
        with patch.object(provider, "_request", AsyncMock(return_value=response)) as request:
            handle = await provider.submit({"timeline": {"tracks": []}})

        assert handle == "render-1"
        assert request.call_args.args[:2] == ("POST", "https://shotstack.test/edit/stage/render")

    @pytest.mark.asyncio
    async def test_submit_without_id_is_terminal(self, provider: ShotstackProvider) -> None:
        with patch.object(provider, "_request", AsyncMock(return_value={"success": False, "message": "Bad timeline"})):
            with pytest.raises(TerminalProviderError, match="Bad timeline"):
                await provider.submit({"timeline": {"tracks": []}})

    @pytest.mark.asyncio
    async def test_get_status(self, provider: ShotstackProvider) -> None:
        rendering = {"response": {"id": "render-1", "status": "rendering"}}
        done = {"response": {"id": "render-1", "status": "done", "url": "https://cdn.test/render-1.mp4"}}
        with patch.object(provider, "_request", AsyncMock(side_effect=[rendering, done])) as request:
            first = await provider.get_status("render-1")
            second = await provider.get_status("render-1")

        assert request.call_args.args == ("GET", "https://shotstack.test/edit/stage/render/render-1")
        assert first.state is JobState.PROCESSING
        assert first.progress_percent == 50
        assert second.state is JobState.COMPLETED
        assert second.result_ref == "https://cdn.test/render-1.mp4"

    def test_failed_render_carries_error(self, provider: ShotstackProvider) -> None:
        status = provider.status_from_render({"status": "failed", "error": "Asset could not be fetched"})
        assert status.state is JobState.FAILED
        assert status.error_message == "Asset could not be fetched"

    def test_headers_carry_api_key(self, provider: ShotstackProvider) -> None:
        assert provider._headers()["x-api-key"] == "ss-key"

    @pytest.mark.asyncio
    async def test_cancel_is_unsupported(self, provider: ShotstackProvider) -> None:
        assert await provider.cancel("render-1") is False

    def test_parse_webhook(self, provider: ShotstackProvider) -> None:
        handle, status = provider.parse_webhook(
            {"type": "edit", "action": "render", "id": "render-2", "status": "done", "url": "https://cdn.test/r2.mp4"}
        )
        assert handle == "render-2"
        assert status.state is JobState.COMPLETED
        assert status.result_ref == "https://cdn.test/r2.mp4"

        with pytest.raises(ValidationError):
            provider.parse_webhook({"id": "render-2", "status": "rendering"})
        with pytest.raises(ValidationError):
            provider.parse_webhook({"status": "done"})


class TestStubProvider:
    """Scripted stub behaviour."""

    @pytest.mark.asyncio
    async def test_default_script(self, tmp_path) -> None:
        provider = StubGenerationProvider(result_dir=tmp_path)
        handle = await provider.submit({"prompt": "hello"})

        states = [(await provider.get_status(handle)).state for _ in range(4)]
        assert states == [JobState.PROCESSING, JobState.PROCESSING, JobState.COMPLETED, JobState.COMPLETED]

        final = await provider.get_status(handle)
        assert final.result_ref.startswith("file://")
        assert (tmp_path / f"{handle}.mp4").stat().st_size == 32 * 64

    @pytest.mark.asyncio
    async def test_script_exceptions_are_raised(self) -> None:
        provider = StubGenerationProvider(
            script=[TransientProviderError("flaky"), ProviderStatus(state=JobState.FAILED, error_message="no")]
        )
        handle = await provider.submit({"prompt": "hello"})
        with pytest.raises(TransientProviderError):
            await provider.get_status(handle)
        assert (await provider.get_status(handle)).state is JobState.FAILED

    @pytest.mark.asyncio
    async def test_unknown_handle_is_terminal(self) -> None:
        with pytest.raises(TerminalProviderError):
            await StubGenerationProvider().get_status("stub-missing")


class TestBuildProviders:
    """Only configured providers are registered."""

    def test_unconfigured_providers_are_skipped(self) -> None:
        settings = ServiceConfig()
        settings.set("heygen_api_key", None)
        settings.set("veo_api_key", None)
        settings.set("shotstack_api_key", None)
        settings.set("generation_enable_stub", False)
        assert build_providers(settings) == {}

    def test_configured_providers(self, tmp_path) -> None:
        settings = ServiceConfig()
        settings.set("heygen_api_key", "h-key")
        settings.set("veo_api_key", "v-key")
        settings.set("shotstack_api_key", "s-key")
        settings.set("shotstack_environment", "production")
        settings.set("generation_enable_stub", True)
        settings.set("media_root", str(tmp_path))

        providers = build_providers(settings)
        assert set(providers) == {
            ProviderType.HEYGEN,
            ProviderType.VEO,
            ProviderType.SHOTSTACK,
            ProviderType.STUB,
        }
        assert providers[ProviderType.HEYGEN].api_key == "h-key"
        assert providers[ProviderType.SHOTSTACK].base_url == "https://api.shotstack.io/edit/v1"
