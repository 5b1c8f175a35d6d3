import asyncio
import json

import httpx
import pytest

from gijiroku.errors import (
    AuthFailed,
    InvalidFormat,
    MalformedUpstreamResponse,
    MissingInput,
    NoCredential,
    PayloadTooLarge,
    RateLimited,
    Timeout,
    UpstreamError,
)
from gijiroku.models import Config, TranscriptionRequest
from gijiroku.providers import MIB
from gijiroku.transcriber import azure_locale, transcribe

OPENAI_ENV = {"OPENAI_API_KEY": "sk-server"}


def _run(request, handler, config=None, environ=None):
    async def main():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await transcribe(request, config or Config(), client=client, environ=environ or {})

    return asyncio.run(main())


def _unexpected(request):
    raise AssertionError(f"unexpected call to {request.url}")


def test_openai_transcription():
    seen = []

    def handler(request):
        seen.append(request)
        assert request.url.path == "/v1/audio/transcriptions"
        return httpx.Response(200, json={"text": " こんにちは、皆さん。 "})

    request = TranscriptionRequest(audio_bytes=b"RIFF....", mime_type="audio/wav", file_name="a.wav")
    result = _run(request, handler, environ=OPENAI_ENV)

    assert result.text == "こんにちは、皆さん。"
    assert result.provider_id == "openai"
    assert result.metadata["model"] == "whisper-1"
    assert seen[0].headers["Authorization"] == "Bearer sk-server"
    assert b"whisper-1" in seen[0].content


def test_oversized_audio_is_rejected_before_any_call():
    request = TranscriptionRequest(audio_bytes=b"\0" * (15 * MIB))

    with pytest.raises(PayloadTooLarge) as excinfo:
        _run(request, _unexpected, environ=OPENAI_ENV)

    assert excinfo.value.status_code == 413
    assert excinfo.value.details["size"] == 15 * MIB
    assert excinfo.value.details["limit"] == 10 * MIB


def test_empty_audio_is_missing_input():
    with pytest.raises(MissingInput):
        _run(TranscriptionRequest(audio_bytes=b""), _unexpected, environ=OPENAI_ENV)


def test_missing_key_makes_no_call():
    with pytest.raises(NoCredential):
        _run(TranscriptionRequest(audio_bytes=b"audio"), _unexpected)


@pytest.mark.parametrize(
    "status, error",
    [(400, InvalidFormat), (401, AuthFailed), (403, AuthFailed), (429, RateLimited), (503, UpstreamError)],
)
def test_openai_status_mapping(status, error):
    def handler(request):
        return httpx.Response(status, json={"error": {"message": "nope"}})

    with pytest.raises(error) as excinfo:
        _run(TranscriptionRequest(audio_bytes=b"audio"), handler, environ=OPENAI_ENV)

    assert excinfo.value.details["status"] == status
    assert excinfo.value.details["provider"] == "openai"
    assert "nope" in excinfo.value.details["body"]


def test_key_format_warning_is_reported():
    def handler(request):
        return httpx.Response(200, json={"text": "hello"})

    result = _run(TranscriptionRequest(audio_bytes=b"audio", api_key="abc"), handler)
    assert "sk-" in result.metadata["key_warning"]


def test_webspeech_accepts_recognised_text():
    request = TranscriptionRequest(audio_bytes="予算の確認をします".encode("utf-8"), provider_id="webspeech")
    result = _run(request, _unexpected)
    assert result.text == "予算の確認をします"


def test_webspeech_rejects_binary_audio():
    request = TranscriptionRequest(audio_bytes=b"\xff\xfe\x00\x81", provider_id="webspeech")
    with pytest.raises(InvalidFormat):
        _run(request, _unexpected)


def test_assemblyai_polls_until_completed():
    polls = []

    def handler(request):
        if request.url.path == "/v2/upload":
            assert request.headers["Authorization"] == "aai-key"
            return httpx.Response(200, json={"upload_url": "https://cdn.assemblyai.com/upload/1"})
        if request.method == "POST" and request.url.path == "/v2/transcript":
            body = json.loads(request.content)
            assert body["audio_url"] == "https://cdn.assemblyai.com/upload/1"
            assert body["language_code"] == "ja"
            return httpx.Response(200, json={"id": "t1", "status": "queued"})
        if request.url.path == "/v2/transcript/t1":
            polls.append(request)
            if len(polls) < 3:
                return httpx.Response(200, json={"id": "t1", "status": "processing"})
            return httpx.Response(200, json={"id": "t1", "status": "completed", "text": "議事録テスト"})
        raise AssertionError(request.url)

    config = Config(assemblyai_api_key="aai-key", poll_interval=0.0)
    result = _run(TranscriptionRequest(audio_bytes=b"audio", provider_id="assemblyai"), handler, config=config)

    assert result.text == "議事録テスト"
    assert len(polls) == 3


def test_assemblyai_error_status():
    def handler(request):
        if request.url.path == "/v2/upload":
            return httpx.Response(200, json={"upload_url": "u"})
        if request.url.path == "/v2/transcript":
            return httpx.Response(200, json={"id": "t1"})
        return httpx.Response(200, json={"status": "error", "error": "audio too short"})

    config = Config(assemblyai_api_key="aai-key", poll_interval=0.0)
    with pytest.raises(UpstreamError) as excinfo:
        _run(TranscriptionRequest(audio_bytes=b"audio", provider_id="assemblyai"), handler, config=config)
    assert "audio too short" in str(excinfo.value)


def test_malformed_json_keeps_raw_body():
    def handler(request):
        return httpx.Response(200, text="<html>gateway</html>")

    config = Config(assemblyai_api_key="aai-key")
    with pytest.raises(MalformedUpstreamResponse) as excinfo:
        _run(TranscriptionRequest(audio_bytes=b"audio", provider_id="assemblyai"), handler, config=config)
    assert excinfo.value.details["body"] == "<html>gateway</html>"


def test_slow_provider_times_out():
    async def handler(request):
        await asyncio.sleep(5)
        return httpx.Response(200, json={"upload_url": "u"})

    config = Config(assemblyai_api_key="aai-key", request_timeout=0.05)
    with pytest.raises(Timeout) as excinfo:
        _run(TranscriptionRequest(audio_bytes=b"audio", provider_id="assemblyai"), handler, config=config)
    assert excinfo.value.status_code == 504


def test_network_failure_is_upstream_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    config = Config(assemblyai_api_key="aai-key")
    with pytest.raises(UpstreamError):
        _run(TranscriptionRequest(audio_bytes=b"audio", provider_id="assemblyai"), handler, config=config)


def test_azure_no_match_is_empty_text():
    def handler(request):
        assert request.url.host == "westus.stt.speech.microsoft.com"
        assert request.url.params["language"] == "ja-JP"
        assert request.headers["Ocp-Apim-Subscription-Key"] == "az-key"
        return httpx.Response(200, json={"RecognitionStatus": "NoMatch"})

    request = TranscriptionRequest(audio_bytes=b"audio", provider_id="azure", region="westus")
    result = _run(request, handler, config=Config(azure_speech_key="az-key"))
    assert result.text == ""


def test_azure_success_uses_display_text():
    def handler(request):
        return httpx.Response(200, json={"RecognitionStatus": "Success", "DisplayText": "Hello there."})

    request = TranscriptionRequest(audio_bytes=b"audio", provider_id="azure", language="en")
    result = _run(request, handler, config=Config(azure_speech_key="az-key"))
    assert result.text == "Hello there."
    assert result.language == "en-US"


@pytest.mark.parametrize("nbest", [{"Display": "stray"}, [], "text"])
def test_azure_success_with_odd_nbest_is_empty_text(nbest):
    def handler(request):
        return httpx.Response(200, json={"RecognitionStatus": "Success", "NBest": nbest})

    request = TranscriptionRequest(audio_bytes=b"audio", provider_id="azure")
    result = _run(request, handler, config=Config(azure_speech_key="az-key"))
    assert result.text == ""


def test_azure_success_falls_back_to_best_alternative():
    def handler(request):
        return httpx.Response(200, json={"RecognitionStatus": "Success", "NBest": [{"Display": "こんにちは。"}]})

    request = TranscriptionRequest(audio_bytes=b"audio", provider_id="azure")
    result = _run(request, handler, config=Config(azure_speech_key="az-key"))
    assert result.text == "こんにちは。"


def test_azure_locale():
    assert azure_locale("ja") == "ja-JP"
    assert azure_locale("en-GB") == "en-GB"
