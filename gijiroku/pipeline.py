"""End-to-end processing: audio in, saved minutes record out."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Mapping, Optional

import httpx

from .client import client_scope
from .errors import EmptyTranscript
from .extractor import extract
from .minutes import generate_minutes, generate_minutes_with_fallback
from .models import AudioRecord, Config, TranscriptionRequest
from .storage import RecordStore
from .transcriber import transcribe

logger = logging.getLogger(__name__)


async def process_recording(
    audio_bytes: bytes,
    file_name: str,
    config: Config,
    store: Optional[RecordStore] = None,
    client: Optional[httpx.AsyncClient] = None,
    mime_type: str = "application/octet-stream",
    transcription_provider: Optional[str] = None,
    ai_provider: Optional[str] = None,
    api_key: Optional[str] = None,
    ai_api_key: Optional[str] = None,
    language: Optional[str] = None,
    region: Optional[str] = None,
    fallback: bool = True,
    environ: Optional[Mapping[str, str]] = None,
) -> AudioRecord:
    """Transcribe, draft, extract and (when ``store`` is given) save one recording."""

    lang = language or config.language
    request = TranscriptionRequest(
        audio_bytes=audio_bytes,
        mime_type=mime_type,
        language=lang,
        provider_id=transcription_provider or config.transcription_provider,
        api_key=api_key,
        file_name=file_name,
        region=region,
    )
    async with client_scope(client, config.request_timeout) as http:
        result = await transcribe(request, config, client=http, environ=environ)
        if not result.text.strip():
            raise EmptyTranscript(
                "The provider returned an empty transcript. Check that the recording contains speech and try again.",
                provider=result.provider_id,
            )

        preferred = ai_provider or config.ai_provider
        if fallback:
            draft = await generate_minutes_with_fallback(
                result.text, preferred, config, client=http, user_key=ai_api_key, language=lang, environ=environ
            )
        else:
            draft = await generate_minutes(
                result.text, preferred, config, client=http, user_key=ai_api_key, language=lang, environ=environ
            )

    record = AudioRecord(
        id=uuid.uuid4().hex,
        file_name=file_name,
        transcript=result.text,
        minutes=extract(draft.text, language=lang),
        created_at=datetime.now(timezone.utc),
    )
    if store is not None:
        store.save(record)
    logger.info("Processed %s as record %s (minutes by %s)", file_name, record.id, draft.provider_id)
    return record
