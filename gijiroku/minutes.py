"""Minutes generation through a text-generation provider."""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Mapping, Optional, Protocol, Type

import httpx

from .client import client_scope, openai_client, openai_errors
from .errors import (
    EmptyTranscript,
    GijirokuError,
    MalformedUpstreamResponse,
    NoCredential,
    Timeout,
    UpstreamError,
    parse_json,
    upstream_error_from_response,
)
from .models import Config, MinutesDraft
from .providers import AI, get_descriptor, resolve_credential
from .summarizer import build_draft

logger = logging.getLogger(__name__)

OPENAI_BASE_URL = "https://api.openai.com/v1"
GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1"
DEEPSEEK_BASE_URL = "https://api.deepseek.com"

# Bump when the section labels below change; the extractor anchors on them.
PROMPT_VERSION = "2"

FALLBACK_ORDER = ("gemini", "deepseek", "openai")
RULE_BASED = "rule-based"

SYSTEM_PROMPTS = {
    "ja": "あなたは会議の議事録を作成する専門家です。",
    "en": "You are an expert at writing meeting minutes.",
}

PROMPT_TEMPLATES = {
    "ja": """以下は会議の文字起こしです。この内容をもとに、わかりやすく簡潔な議事録を作成してください。
【出力形式】各項目は「見出し：内容」の形で、見出しを変えずに出力してください。
会議名：
日時：
参加者：
議題：
主な発言：（1行に1項目の箇条書き、先頭に「・」）
決定事項：
TODO：（担当者がわかる場合は「担当者が〜」の形で記載）
※繰り返しや言い間違い、言い直しは省略し、同じ内容は1回だけ記載してください。
※TODOの担当者は文字起こしから推定できる場合は必ず残してください。

文字起こし:
{transcript}""",
    "en": """The following is a meeting transcript. Write clear and concise meeting minutes from it.
[Output format] Write every section as "Heading: content" and keep the headings exactly as given.
Meeting Name:
Date:
Participants:
Agenda:
Main Points: (one bullet per line, starting with "-")
Decisions:
Action Items: (name the owner when it can be inferred, e.g. "Alice: send the report")
* Drop repetitions, false starts and self-corrections; state each point only once.
* Keep the owner of every action item whenever the transcript lets you infer it.

Transcript:
{transcript}""",
}

TRUNCATION_NOTES = {
    "ja": "\n\n（注：文字起こしが長すぎるため、一部のみを処理しています）",
    "en": "\n\n(Note: the transcript was too long; only the first part was processed.)",
}

SENTENCE_ENDS = ("。", ".", "！", "？", "!", "?")


def build_prompt(transcript: str, language: str = "ja") -> str:
    template = PROMPT_TEMPLATES.get(language, PROMPT_TEMPLATES["ja"])
    return template.format(transcript=transcript)


def truncate_transcript(transcript: str, max_chars: int, language: str = "ja") -> str:
    """Cut an over-long transcript back to the last full sentence within ``max_chars``."""

    if max_chars <= 0 or len(transcript) <= max_chars:
        return transcript
    cut = transcript[:max_chars]
    last_end = max(cut.rfind(mark) for mark in SENTENCE_ENDS)
    if last_end > 0:
        cut = cut[: last_end + 1]
    logger.info("Transcript truncated from %d to %d characters", len(transcript), len(cut))
    return cut + TRUNCATION_NOTES.get(language, TRUNCATION_NOTES["ja"])


class MinutesBackend(Protocol):
    """Provider adapter boundary for minutes generation."""

    provider_id: str
    model: str

    async def probe(self) -> str:
        """Run a cheap metadata call and return a status message; raise on failure."""

    async def generate(self, prompt: str, system: str) -> str:
        """Return the model's free-form answer to ``prompt``."""


class _ChatCompletionsBackend:
    """OpenAI-compatible chat completions through the ``openai`` SDK."""

    provider_id = ""
    base_url = ""
    temperature = 0.3

    def __init__(self, client: httpx.AsyncClient, api_key: Optional[str], model: str) -> None:
        self._sdk = openai_client(client, api_key, self.base_url)
        self.model = model

    async def probe(self) -> str:
        with openai_errors(self.provider_id, upstream_error_from_response):
            page = await self._sdk.models.list()
        return f"{self.provider_id} API reachable ({len(page.data)} models)"

    async def generate(self, prompt: str, system: str) -> str:
        with openai_errors(self.provider_id, upstream_error_from_response):
            completion = await self._sdk.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": prompt},
                ],
                temperature=self.temperature,
            )
        if not completion.choices:
            raise MalformedUpstreamResponse(
                f"{self.provider_id} response did not contain a message",
                provider=self.provider_id,
                body=str(completion)[:500],
            )
        return completion.choices[0].message.content or ""


class OpenAIChatBackend(_ChatCompletionsBackend):
    provider_id = "openai"
    base_url = OPENAI_BASE_URL


class DeepSeekBackend(_ChatCompletionsBackend):
    provider_id = "deepseek"
    base_url = DEEPSEEK_BASE_URL
    temperature = 0.2


class GeminiBackend:
    provider_id = "gemini"

    def __init__(self, client: httpx.AsyncClient, api_key: Optional[str], model: str) -> None:
        self._client = client
        self._api_key = api_key
        self.model = model if model.startswith("models/") else f"models/{model}"

    async def probe(self) -> str:
        response = await self._client.get(f"{GEMINI_BASE_URL}/models", params={"key": self._api_key})
        if response.is_error:
            raise upstream_error_from_response(response, self.provider_id)
        payload = parse_json(response, self.provider_id)
        count = len(payload.get("models") or []) if isinstance(payload, dict) else 0
        return f"Gemini API reachable ({count} models)"

    async def generate(self, prompt: str, system: str) -> str:
        response = await self._client.post(
            f"{GEMINI_BASE_URL}/{self.model}:generateContent",
            params={"key": self._api_key},
            json={
                "contents": [{"parts": [{"text": f"{system}\n\n{prompt}"}]}],
                "generationConfig": {"temperature": 0.1, "topP": 0.8, "maxOutputTokens": 4096},
            },
        )
        if response.is_error:
            raise upstream_error_from_response(response, self.provider_id)
        payload = parse_json(response, self.provider_id)
        try:
            parts = payload["candidates"][0]["content"]["parts"]
        except (KeyError, IndexError, TypeError) as exc:
            raise MalformedUpstreamResponse(
                "gemini response did not contain a candidate",
                provider=self.provider_id,
                body=str(payload)[:500],
            ) from exc
        return "".join(part.get("text", "") for part in parts if isinstance(part, dict))


BACKENDS: Dict[str, Type[MinutesBackend]] = {
    "gemini": GeminiBackend,
    "deepseek": DeepSeekBackend,
    "openai": OpenAIChatBackend,
}


def _model_for(provider_id: str, config: Config) -> str:
    return {
        "gemini": config.gemini_model,
        "deepseek": config.deepseek_model,
        "openai": config.openai_chat_model,
    }[provider_id]


def get_backend(
    provider_id: str,
    client: httpx.AsyncClient,
    api_key: Optional[str],
    config: Config,
    model: Optional[str] = None,
) -> MinutesBackend:
    get_descriptor(provider_id, AI)
    return BACKENDS[provider_id](client, api_key, model or _model_for(provider_id, config))


async def generate_minutes(
    transcript: str,
    provider_id: str,
    config: Config,
    client: Optional[httpx.AsyncClient] = None,
    user_key: Optional[str] = None,
    language: Optional[str] = None,
    model: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> MinutesDraft:
    """Ask one LLM provider for a minutes draft of ``transcript``."""

    if not transcript or not transcript.strip():
        raise EmptyTranscript("The transcript is empty; nothing to summarise.")

    descriptor = get_descriptor(provider_id, AI)
    credential = resolve_credential(descriptor, user_key, config, environ)
    lang = language or config.language
    prompt = build_prompt(truncate_transcript(transcript.strip(), config.max_transcript_chars, lang), lang)
    system = SYSTEM_PROMPTS.get(lang, SYSTEM_PROMPTS["ja"])

    async with client_scope(client, config.request_timeout) as http:
        backend = get_backend(descriptor.id, http, credential.value, config, model)
        logger.info("Generating minutes with %s (%s), %d characters of transcript", descriptor.id, backend.model, len(transcript))
        try:
            text = await asyncio.wait_for(backend.generate(prompt, system), timeout=config.request_timeout)
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise Timeout(
                f"{descriptor.label} did not answer within {config.request_timeout:.0f} seconds",
                provider=descriptor.id,
                timeout=config.request_timeout,
            ) from exc
        except httpx.RequestError as exc:
            raise UpstreamError(f"Could not reach {descriptor.label}: {exc}", provider=descriptor.id) from exc

    if not text or not text.strip():
        raise MalformedUpstreamResponse(
            f"{descriptor.label} returned an empty answer",
            provider=descriptor.id,
            model=backend.model,
        )
    return MinutesDraft(text=text, provider_id=descriptor.id, model=backend.model, prompt_version=PROMPT_VERSION)


def fallback_order(preferred: str) -> List[str]:
    """Preferred provider first, then the rest in quality order."""

    if preferred not in FALLBACK_ORDER:
        logger.warning("Unknown AI provider %s; using the default order", preferred)
        return list(FALLBACK_ORDER)
    return [preferred] + [p for p in FALLBACK_ORDER if p != preferred]


def rule_based_minutes(transcript: str, language: str = "ja", reason: Optional[str] = None) -> MinutesDraft:
    """Draft minutes locally, without any provider."""

    return MinutesDraft(
        text=build_draft(transcript, language),
        provider_id=RULE_BASED,
        model="summarizer",
        prompt_version=PROMPT_VERSION,
        fallback_reason=reason,
    )


async def generate_minutes_with_fallback(
    transcript: str,
    preferred: str,
    config: Config,
    client: Optional[httpx.AsyncClient] = None,
    user_key: Optional[str] = None,
    language: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> MinutesDraft:
    """Try each AI provider in turn; return the first draft produced.

    A caller-supplied key only applies to the preferred provider. Providers
    without any credential are skipped. When at least one provider was tried
    and every attempt failed, the minutes are drafted by
    :func:`rule_based_minutes`. When no provider has a key, ``NoCredential``
    is raised.
    """

    if not transcript or not transcript.strip():
        raise EmptyTranscript("The transcript is empty; nothing to summarise.")

    order = fallback_order(preferred)
    failures: List[str] = []
    for provider_id in order:
        key = user_key if provider_id == preferred else None
        try:
            return await generate_minutes(
                transcript,
                provider_id,
                config,
                client=client,
                user_key=key,
                language=language,
                environ=environ,
            )
        except NoCredential as exc:
            logger.debug("Skipping %s: %s", provider_id, exc)
        except GijirokuError as exc:
            logger.warning("Minutes generation with %s failed: %s", provider_id, exc)
            failures.append(f"{provider_id}: {exc}")

    if not failures:
        raise NoCredential(
            "No API key is available for any AI provider. Provide an apiKey or configure a server key.",
            providers=", ".join(order),
        )
    logger.warning("All AI providers failed; drafting minutes without a model")
    return rule_based_minutes(transcript, language or config.language, reason="; ".join(failures))


__all__ = [
    "BACKENDS",
    "FALLBACK_ORDER",
    "PROMPT_VERSION",
    "RULE_BASED",
    "DeepSeekBackend",
    "GeminiBackend",
    "MinutesBackend",
    "OpenAIChatBackend",
    "build_prompt",
    "fallback_order",
    "generate_minutes",
    "generate_minutes_with_fallback",
    "get_backend",
    "rule_based_minutes",
    "truncate_transcript",
]
