"""Audio transcription backends and the orchestrator in front of them."""

from __future__ import annotations

import asyncio
import importlib.util
import logging
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Protocol, Type

import httpx

from .client import client_scope, openai_client, openai_errors
from .errors import (
    InvalidFormat,
    MalformedUpstreamResponse,
    MissingInput,
    PayloadTooLarge,
    Timeout,
    UpstreamError,
    classify_upstream_failure,
    parse_json,
)
from .models import Config, TranscriptionRequest, TranscriptionResult
from .providers import MIB, TRANSCRIPTION, get_descriptor, provider_max_bytes, resolve_credential

logger = logging.getLogger(__name__)

OPENAI_BASE_URL = "https://api.openai.com/v1"
ASSEMBLYAI_BASE_URL = "https://api.assemblyai.com/v2"
AZURE_STT_URL = "https://{region}.stt.speech.microsoft.com/speech/recognition/conversation/cognitiveservices/v1"
AZURE_BATCH_URL = "https://{region}.api.cognitive.microsoft.com/speechtotext/v3.0/transcriptions"

AZURE_LOCALES = {
    "ja": "ja-JP",
    "en": "en-US",
    "zh": "zh-CN",
    "ko": "ko-KR",
    "fr": "fr-FR",
    "de": "de-DE",
    "es": "es-ES",
}


class TranscriptionBackend(Protocol):
    """Common interface for transcription backends."""

    provider_id: str

    async def probe(self) -> str:
        """Run a cheap round trip and return a status message; raise on failure."""

    async def transcribe(self, request: TranscriptionRequest) -> TranscriptionResult:
        """Return the recognised text for the request's audio."""


def _field(obj: Any, name: str, default: Any = None) -> Any:
    if isinstance(obj, dict):
        return obj.get(name, default)
    return default


def _coerce_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _require_dict(payload: Any, provider_id: str) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        raise MalformedUpstreamResponse(
            f"{provider_id} returned an unexpected response shape",
            provider=provider_id,
            body=str(payload)[:500],
        )
    return payload


def azure_locale(language: str) -> str:
    if "-" in language:
        return language
    return AZURE_LOCALES.get(language.lower(), language)


class OpenAIBackend:
    """Hosted transcription using the OpenAI audio API."""

    provider_id = "openai"

    def __init__(self, client: httpx.AsyncClient, api_key: Optional[str], config: Config, region: Optional[str] = None) -> None:
        self._sdk = openai_client(client, api_key, OPENAI_BASE_URL)
        self._config = config

    async def probe(self) -> str:
        with openai_errors(self.provider_id):
            page = await self._sdk.models.list()
        models = list(page.data)
        whisper = any(m.id == "whisper-1" for m in models)
        return f"OpenAI API reachable ({len(models)} models, whisper-1 {'available' if whisper else 'not listed'})"

    async def transcribe(self, request: TranscriptionRequest) -> TranscriptionResult:
        model = request.model or self._config.openai_transcription_model
        options: Dict[str, Any] = {}
        if request.language:
            options["language"] = request.language
        with openai_errors(self.provider_id):
            response = await self._sdk.audio.transcriptions.create(
                model=model,
                file=(request.file_name, request.audio_bytes, request.mime_type),
                response_format="json",
                **options,
            )
        text = getattr(response, "text", None)
        if not isinstance(text, str):
            raise MalformedUpstreamResponse(
                f"{self.provider_id} returned an unexpected response shape",
                provider=self.provider_id,
                body=str(response)[:500],
            )
        return TranscriptionResult(
            text=text.strip(),
            provider_id=self.provider_id,
            language=request.language,
            metadata={"model": model},
        )


class AssemblyAIBackend:
    """Hosted transcription using AssemblyAI's upload then poll flow."""

    provider_id = "assemblyai"

    def __init__(self, client: httpx.AsyncClient, api_key: Optional[str], config: Config, region: Optional[str] = None) -> None:
        self._client = client
        self._api_key = api_key
        self._config = config

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": self._api_key or ""}

    async def _upload(self, content: bytes) -> str:
        response = await self._client.post(f"{ASSEMBLYAI_BASE_URL}/upload", headers=self._headers(), content=content)
        if response.is_error:
            raise classify_upstream_failure(response, self.provider_id)
        payload = _require_dict(parse_json(response, self.provider_id), self.provider_id)
        upload_url = payload.get("upload_url")
        if not upload_url:
            raise MalformedUpstreamResponse("AssemblyAI upload response missing upload_url", provider=self.provider_id)
        return upload_url

    async def probe(self) -> str:
        await self._upload(b"test")
        return "AssemblyAI API reachable"

    async def transcribe(self, request: TranscriptionRequest) -> TranscriptionResult:
        audio_url = await self._upload(request.audio_bytes)
        response = await self._client.post(
            f"{ASSEMBLYAI_BASE_URL}/transcript",
            headers=self._headers(),
            json={
                "audio_url": audio_url,
                "language_code": request.language,
                "punctuate": True,
                "format_text": True,
            },
        )
        if response.is_error:
            raise classify_upstream_failure(response, self.provider_id)
        transcript_id = _require_dict(parse_json(response, self.provider_id), self.provider_id).get("id")
        if not transcript_id:
            raise MalformedUpstreamResponse("AssemblyAI transcript response missing id", provider=self.provider_id)

        # Polling is part of the single attempt; the orchestrator's deadline bounds it.
        while True:
            response = await self._client.get(f"{ASSEMBLYAI_BASE_URL}/transcript/{transcript_id}", headers=self._headers())
            if response.is_error:
                raise classify_upstream_failure(response, self.provider_id)
            payload = _require_dict(parse_json(response, self.provider_id), self.provider_id)
            status = payload.get("status")
            if status == "completed":
                return TranscriptionResult(
                    text=_coerce_text(payload.get("text")),
                    provider_id=self.provider_id,
                    language=request.language,
                    metadata={"transcript_id": transcript_id},
                )
            if status == "error":
                raise UpstreamError(
                    f"AssemblyAI transcription failed: {payload.get('error') or 'unknown error'}",
                    provider=self.provider_id,
                    transcript_id=transcript_id,
                )
            logger.debug("AssemblyAI transcript %s is %s", transcript_id, status)
            await asyncio.sleep(self._config.poll_interval)


class AzureSpeechBackend:
    """Short-audio recognition through the Azure Speech REST endpoint."""

    provider_id = "azure"

    def __init__(self, client: httpx.AsyncClient, api_key: Optional[str], config: Config, region: Optional[str] = None) -> None:
        self._client = client
        self._api_key = api_key
        self._region = region or config.azure_region

    def _headers(self) -> Dict[str, str]:
        return {"Ocp-Apim-Subscription-Key": self._api_key or ""}

    async def probe(self) -> str:
        response = await self._client.get(AZURE_BATCH_URL.format(region=self._region), headers=self._headers())
        if response.is_error:
            raise classify_upstream_failure(response, self.provider_id)
        return f"Azure Speech API reachable (region {self._region})"

    async def transcribe(self, request: TranscriptionRequest) -> TranscriptionResult:
        locale = azure_locale(request.language)
        headers = self._headers()
        headers["Content-Type"] = request.mime_type or "audio/wav"
        headers["Accept"] = "application/json"
        response = await self._client.post(
            AZURE_STT_URL.format(region=self._region),
            params={"language": locale, "format": "detailed"},
            headers=headers,
            content=request.audio_bytes,
        )
        if response.is_error:
            raise classify_upstream_failure(response, self.provider_id)
        payload = _require_dict(parse_json(response, self.provider_id), self.provider_id)
        status = payload.get("RecognitionStatus")
        if status in ("NoMatch", "InitialSilenceTimeout"):
            text = ""
        elif status == "Success":
            text = _coerce_text(payload.get("DisplayText"))
            if not text:
                best = payload.get("NBest")
                text = _coerce_text(_field(best[0], "Display")) if isinstance(best, list) and best else ""
        else:
            raise UpstreamError(f"Azure Speech recognition failed: {status}", provider=self.provider_id)
        return TranscriptionResult(
            text=text,
            provider_id=self.provider_id,
            language=locale,
            metadata={"region": self._region, "recognition_status": status},
        )


class WebSpeechBackend:
    """Browser-side recognition; the client uploads the text it recognised."""

    provider_id = "webspeech"

    def __init__(self, client: httpx.AsyncClient, api_key: Optional[str], config: Config, region: Optional[str] = None) -> None:
        pass

    async def probe(self) -> str:
        return "Web Speech recognition runs in the browser; no server round trip needed"

    async def transcribe(self, request: TranscriptionRequest) -> TranscriptionResult:
        try:
            text = request.audio_bytes.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise InvalidFormat(
                "The webspeech provider expects the browser's recognised text as UTF-8, not audio. "
                "Choose a server-side provider to upload audio.",
                provider=self.provider_id,
            ) from exc
        return TranscriptionResult(text=text.strip(), provider_id=self.provider_id, language=request.language)


_whisper_lock = threading.Lock()
_whisper_models: Dict[str, Any] = {}


def whisper_available() -> bool:
    return importlib.util.find_spec("whisper") is not None


def _load_whisper(model_name: str) -> Any:
    with _whisper_lock:
        if model_name not in _whisper_models:
            try:
                import whisper  # type: ignore
                import torch
            except Exception as exc:  # pragma: no cover - optional dependency
                raise UpstreamError(
                    "The `openai-whisper` package is required for offline transcription. "
                    "Install it with `pip install 'gijiroku[offline]'`."
                ) from exc
            device = "cuda" if torch.cuda.is_available() else "cpu"
            logger.info("Loading Whisper model %s on %s", model_name, device)
            _whisper_models[model_name] = whisper.load_model(model_name, device=device)
        return _whisper_models[model_name]


class WhisperBackend:
    """Local transcription using the `openai-whisper` package."""

    provider_id = "offline"

    def __init__(self, client: httpx.AsyncClient, api_key: Optional[str], config: Config, region: Optional[str] = None) -> None:
        self.model_name = config.whisper_model

    async def probe(self) -> str:
        if not whisper_available():
            raise UpstreamError("The `openai-whisper` package is not installed", provider=self.provider_id)
        return f"Local Whisper available (model {self.model_name})"

    def _run(self, request: TranscriptionRequest) -> str:
        model = _load_whisper(self.model_name)
        suffix = Path(request.file_name).suffix or ".wav"
        with tempfile.NamedTemporaryFile(suffix=suffix) as fh:
            fh.write(request.audio_bytes)
            fh.flush()
            result = model.transcribe(fh.name, language=request.language or None, task="transcribe", temperature=0.0)
        return result.get("text", "").strip()

    async def transcribe(self, request: TranscriptionRequest) -> TranscriptionResult:
        text = await asyncio.to_thread(self._run, request)
        return TranscriptionResult(
            text=text,
            provider_id=self.provider_id,
            language=request.language,
            metadata={"model": self.model_name},
        )


BACKENDS: Dict[str, Type[TranscriptionBackend]] = {
    "webspeech": WebSpeechBackend,
    "openai": OpenAIBackend,
    "assemblyai": AssemblyAIBackend,
    "azure": AzureSpeechBackend,
    "offline": WhisperBackend,
}


def get_backend(
    provider_id: str,
    client: httpx.AsyncClient,
    api_key: Optional[str],
    config: Config,
    region: Optional[str] = None,
) -> TranscriptionBackend:
    """Return the backend registered for ``provider_id``."""

    get_descriptor(provider_id, TRANSCRIPTION)
    return BACKENDS[provider_id](client, api_key, config, region)


async def transcribe(
    request: TranscriptionRequest,
    config: Config,
    client: Optional[httpx.AsyncClient] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> TranscriptionResult:
    """Validate the request, call the provider once and normalise the result."""

    descriptor = get_descriptor(request.provider_id, TRANSCRIPTION)
    if not request.audio_bytes:
        raise MissingInput("No audio file was provided.")

    size = len(request.audio_bytes)
    limit = provider_max_bytes(descriptor)
    if size > limit:
        raise PayloadTooLarge(
            f"File is {size / MIB:.1f} MiB; the limit is {limit / MIB:.0f} MiB. Split the recording or compress it.",
            size=size,
            limit=limit,
        )

    credential = resolve_credential(descriptor, request.api_key, config, environ)

    logger.info(
        "Transcribing %s (%d bytes, %s) with %s, language=%s",
        request.file_name,
        size,
        request.mime_type,
        descriptor.id,
        request.language,
    )
    async with client_scope(client, config.request_timeout) as http:
        backend = get_backend(descriptor.id, http, credential.value, config, region=request.region)
        try:
            result = await asyncio.wait_for(backend.transcribe(request), timeout=config.request_timeout)
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise Timeout(
                f"{descriptor.label} did not answer within {config.request_timeout:.0f} seconds",
                provider=descriptor.id,
                timeout=config.request_timeout,
            ) from exc
        except httpx.RequestError as exc:
            raise UpstreamError(f"Could not reach {descriptor.label}: {exc}", provider=descriptor.id) from exc

    if credential.warning:
        result.metadata["key_warning"] = credential.warning
    logger.info("Transcription with %s finished: %d characters", descriptor.id, len(result.text))
    return result


__all__ = [
    "BACKENDS",
    "AssemblyAIBackend",
    "AzureSpeechBackend",
    "OpenAIBackend",
    "TranscriptionBackend",
    "WebSpeechBackend",
    "WhisperBackend",
    "azure_locale",
    "get_backend",
    "transcribe",
    "whisper_available",
]
