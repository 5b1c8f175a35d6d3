"""FastAPI application for the gijiroku minutes service."""

from __future__ import annotations

import logging
import os
from typing import AsyncIterator, Dict, List, Mapping, Optional

import httpx
from fastapi import (
    Depends,
    FastAPI,
    File,
    Form,
    HTTPException,
    Query,
    Request,
    Response,
    UploadFile,
    status,
)
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .. import __version__
from ..client import build_client
from ..config import ConfigError, load_config, store_path
from ..errors import GijirokuError, MissingInput, PayloadTooLarge
from ..extractor import extract
from ..health import check_provider, environment_flags, public_status
from ..minutes import generate_minutes, generate_minutes_with_fallback
from ..models import AudioRecord, Config, MinutesRecord, TranscriptionRequest
from ..pipeline import process_recording
from ..providers import AI, MIB, SERVING_MAX_BYTES, TRANSCRIPTION, list_providers
from ..storage import RecordStore
from ..transcriber import transcribe

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}

app = FastAPI(
    title="gijiroku API",
    description="Speech-to-text and meeting minutes generation backed by interchangeable providers.",
    version=__version__,
)


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str


class TranscribeResponse(BaseModel):
    transcript: str
    success: bool = True
    provider: str
    language: Optional[str] = None
    warning: Optional[str] = None


class MinutesPayload(BaseModel):
    meetingName: str
    date: str
    participants: str
    agenda: str
    mainPoints: List[str]
    decisions: str
    todos: str


class GenerateMinutesRequest(BaseModel):
    transcript: Optional[str] = None
    provider: Optional[str] = None
    language: Optional[str] = None
    apiKey: Optional[str] = None
    model: Optional[str] = None
    fallback: bool = False


class GenerateMinutesResponse(BaseModel):
    minutes: MinutesPayload
    rawText: str
    provider: str
    model: str
    promptVersion: str
    fallbackReason: Optional[str] = None


class CheckRequest(BaseModel):
    apiKey: Optional[str] = None
    region: Optional[str] = None


class CheckResponse(BaseModel):
    available: bool
    success: bool
    message: str
    configured: bool
    validFormat: bool
    warning: Optional[str] = None


class ProviderPayload(BaseModel):
    id: str
    kind: str
    label: str
    requiresKey: bool
    keySource: str
    costTier: str
    freeQuota: Optional[str] = None


class RecordPayload(BaseModel):
    id: str
    fileName: str
    transcript: str
    minutes: MinutesPayload
    createdAt: str


def get_config() -> Config:
    return load_config()


def get_environ() -> Mapping[str, str]:
    return os.environ


async def get_http_client(config: Config = Depends(get_config)) -> AsyncIterator[httpx.AsyncClient]:
    async with build_client(config.request_timeout) as client:
        yield client


def get_store(config: Config = Depends(get_config)) -> RecordStore:
    return RecordStore(store_path(config))


def _minutes_payload(minutes: MinutesRecord) -> MinutesPayload:
    return MinutesPayload(**minutes.to_dict())


def _record_payload(record: AudioRecord) -> RecordPayload:
    return RecordPayload(**record.to_dict())


@app.exception_handler(GijirokuError)
async def handle_pipeline_error(request: Request, exc: GijirokuError) -> JSONResponse:
    logger.warning("%s %s failed with %s: %s", request.method, request.url.path, exc.kind, exc)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.exception_handler(ConfigError)
async def handle_config_error(request: Request, exc: ConfigError) -> JSONResponse:
    logger.error("%s %s: configuration error: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"error": str(exc), "kind": "ConfigError"})


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("%s %s failed unexpectedly", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error", "kind": "InternalError"})


async def _read_upload(file: UploadFile) -> bytes:
    """Read an upload, stopping one byte past the serving cap."""

    if file.size is not None and file.size > SERVING_MAX_BYTES:
        size = file.size
    else:
        data = await file.read(SERVING_MAX_BYTES + 1)
        if len(data) <= SERVING_MAX_BYTES:
            return data
        size = len(data)
    raise PayloadTooLarge(
        f"File is over {SERVING_MAX_BYTES / MIB:.0f} MiB. Split the recording or compress it.",
        size=size,
        limit=SERVING_MAX_BYTES,
    )


@app.get("/health", response_model=HealthResponse)
async def healthcheck() -> HealthResponse:
    return HealthResponse(version=__version__)


@app.get("/providers", response_model=List[ProviderPayload])
async def providers(kind: Optional[str] = Query(None)) -> List[ProviderPayload]:
    return [
        ProviderPayload(
            id=d.id,
            kind=d.kind,
            label=d.label,
            requiresKey=d.requires_key,
            keySource=d.key_source,
            costTier=d.cost_tier,
            freeQuota=d.free_quota,
        )
        for d in list_providers(kind)
    ]


@app.post("/transcribe", response_model=TranscribeResponse)
async def transcribe_audio(
    file: Optional[UploadFile] = File(None),
    api_key: Optional[str] = Form(None, alias="apiKey"),
    language: Optional[str] = Form(None),
    model: Optional[str] = Form(None),
    provider: Optional[str] = Form(None),
    region: Optional[str] = Form(None),
    config: Config = Depends(get_config),
    client: httpx.AsyncClient = Depends(get_http_client),
    environ: Mapping[str, str] = Depends(get_environ),
) -> TranscribeResponse:
    if file is None:
        raise MissingInput("No file was provided. Upload the recording in the 'file' field.")
    audio = await _read_upload(file)
    request = TranscriptionRequest(
        audio_bytes=audio,
        mime_type=file.content_type or "application/octet-stream",
        language=language or config.language,
        provider_id=provider or config.transcription_provider,
        api_key=api_key,
        file_name=file.filename or "audio",
        model=model,
        region=region,
    )
    result = await transcribe(request, config, client=client, environ=environ)
    return TranscribeResponse(
        transcript=result.text,
        provider=result.provider_id,
        language=result.language,
        warning=result.metadata.get("key_warning"),
    )


@app.post("/generate-minutes", response_model=GenerateMinutesResponse)
async def generate_minutes_route(
    payload: GenerateMinutesRequest,
    config: Config = Depends(get_config),
    client: httpx.AsyncClient = Depends(get_http_client),
    environ: Mapping[str, str] = Depends(get_environ),
) -> GenerateMinutesResponse:
    if not payload.transcript or not payload.transcript.strip():
        raise MissingInput("No transcript was provided.")
    language = payload.language or config.language
    provider = payload.provider or config.ai_provider
    if payload.fallback:
        draft = await generate_minutes_with_fallback(
            payload.transcript, provider, config, client=client, user_key=payload.apiKey, language=language, environ=environ
        )
    else:
        draft = await generate_minutes(
            payload.transcript,
            provider,
            config,
            client=client,
            user_key=payload.apiKey,
            language=language,
            model=payload.model,
            environ=environ,
        )
    return GenerateMinutesResponse(
        minutes=_minutes_payload(extract(draft.text, language=language)),
        rawText=draft.text,
        provider=draft.provider_id,
        model=draft.model,
        promptVersion=draft.prompt_version,
        fallbackReason=draft.fallback_reason,
    )


@app.get("/check-env")
async def check_env(
    config: Config = Depends(get_config),
    environ: Mapping[str, str] = Depends(get_environ),
) -> Dict[str, bool]:
    return environment_flags(config, environ)


@app.get("/public-status")
async def public_status_route(
    config: Config = Depends(get_config),
    client: httpx.AsyncClient = Depends(get_http_client),
    environ: Mapping[str, str] = Depends(get_environ),
) -> JSONResponse:
    payload = await public_status(config, client=client, environ=environ)
    return JSONResponse(content=payload, headers=CORS_HEADERS)


@app.options("/public-status")
async def public_status_preflight() -> Response:
    return Response(status_code=status.HTTP_200_OK, headers=CORS_HEADERS)


def _kind_for(provider_id: str, kind: Optional[str]) -> str:
    if kind:
        return kind
    if any(d.id == provider_id for d in list_providers(TRANSCRIPTION)):
        return TRANSCRIPTION
    return AI


async def _check(
    provider_id: str,
    kind: Optional[str],
    body: Optional[CheckRequest],
    config: Config,
    client: httpx.AsyncClient,
    environ: Mapping[str, str],
) -> CheckResponse:
    result = await check_provider(
        provider_id,
        _kind_for(provider_id, kind),
        config,
        client=client,
        user_key=body.apiKey if body else None,
        region=body.region if body else None,
        environ=environ,
    )
    return CheckResponse(
        available=result.reachable,
        success=result.reachable,
        message=result.message,
        configured=result.configured,
        validFormat=result.valid_format,
        warning=result.warning,
    )


@app.get("/check-{provider_id}", response_model=CheckResponse)
async def check_provider_get(
    provider_id: str,
    kind: Optional[str] = Query(None),
    config: Config = Depends(get_config),
    client: httpx.AsyncClient = Depends(get_http_client),
    environ: Mapping[str, str] = Depends(get_environ),
) -> CheckResponse:
    return await _check(provider_id, kind, None, config, client, environ)


@app.post("/check-{provider_id}", response_model=CheckResponse)
async def check_provider_post(
    provider_id: str,
    body: Optional[CheckRequest] = None,
    kind: Optional[str] = Query(None),
    config: Config = Depends(get_config),
    client: httpx.AsyncClient = Depends(get_http_client),
    environ: Mapping[str, str] = Depends(get_environ),
) -> CheckResponse:
    return await _check(provider_id, kind, body, config, client, environ)


@app.post("/process", response_model=RecordPayload, status_code=status.HTTP_201_CREATED)
async def process(
    file: Optional[UploadFile] = File(None),
    api_key: Optional[str] = Form(None, alias="apiKey"),
    ai_api_key: Optional[str] = Form(None, alias="aiApiKey"),
    language: Optional[str] = Form(None),
    provider: Optional[str] = Form(None),
    ai_provider: Optional[str] = Form(None, alias="aiProvider"),
    region: Optional[str] = Form(None),
    config: Config = Depends(get_config),
    client: httpx.AsyncClient = Depends(get_http_client),
    store: RecordStore = Depends(get_store),
    environ: Mapping[str, str] = Depends(get_environ),
) -> RecordPayload:
    if file is None:
        raise MissingInput("No file was provided. Upload the recording in the 'file' field.")
    record = await process_recording(
        await _read_upload(file),
        file.filename or "audio",
        config,
        store=store,
        client=client,
        mime_type=file.content_type or "application/octet-stream",
        transcription_provider=provider,
        ai_provider=ai_provider,
        api_key=api_key,
        ai_api_key=ai_api_key,
        language=language,
        region=region,
        environ=environ,
    )
    return _record_payload(record)


@app.get("/records", response_model=List[RecordPayload])
async def list_records(store: RecordStore = Depends(get_store)) -> List[RecordPayload]:
    return [_record_payload(record) for record in store.list()]


@app.get("/records/{record_id}", response_model=RecordPayload)
async def get_record(record_id: str, store: RecordStore = Depends(get_store)) -> RecordPayload:
    record = store.get(record_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Record {record_id} not found")
    return _record_payload(record)


@app.delete("/records/{record_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_record(record_id: str, store: RecordStore = Depends(get_store)) -> Response:
    store.delete(record_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.delete("/records", status_code=status.HTTP_204_NO_CONTENT)
async def clear_records(store: RecordStore = Depends(get_store)) -> Response:
    store.clear()
    return Response(status_code=status.HTTP_204_NO_CONTENT)
