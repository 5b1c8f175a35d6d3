"""Provider registry and credential resolution.

Every provider the service can talk to is described once here. Call sites
select behaviour through the backend classes registered in
:mod:`gijiroku.transcriber` and :mod:`gijiroku.minutes`, keyed by the ids
defined below.
"""

from __future__ import annotations

import logging
import os
from typing import List, Mapping, Optional

from .errors import NoCredential, UnknownProvider
from .models import Config, Credential, ProviderDescriptor

logger = logging.getLogger(__name__)

MIB = 1024 * 1024
SERVING_MAX_BYTES = 10 * MIB

TRANSCRIPTION = "transcription"
AI = "ai"

_DESCRIPTORS = (
    ProviderDescriptor(
        id="webspeech",
        kind=TRANSCRIPTION,
        label="Browser Web Speech API",
        requires_key=False,
        key_source="none",
        cost_tier="free",
        free_quota="unlimited (runs in the browser)",
    ),
    ProviderDescriptor(
        id="openai",
        kind=TRANSCRIPTION,
        label="OpenAI Whisper",
        requires_key=True,
        key_source="user",
        cost_tier="paid",
        env_var="OPENAI_API_KEY",
        key_prefix="sk-",
        max_bytes=25 * MIB,
    ),
    ProviderDescriptor(
        id="assemblyai",
        kind=TRANSCRIPTION,
        label="AssemblyAI",
        requires_key=True,
        key_source="user",
        cost_tier="freemium",
        free_quota="5 hours per month",
        env_var="ASSEMBLYAI_API_KEY",
    ),
    ProviderDescriptor(
        id="azure",
        kind=TRANSCRIPTION,
        label="Azure Speech Services",
        requires_key=True,
        key_source="user",
        cost_tier="freemium",
        free_quota="5 hours per month",
        env_var="AZURE_SPEECH_KEY",
    ),
    ProviderDescriptor(
        id="offline",
        kind=TRANSCRIPTION,
        label="Local Whisper model",
        requires_key=False,
        key_source="none",
        cost_tier="free",
        free_quota="unlimited (local compute)",
    ),
    ProviderDescriptor(
        id="gemini",
        kind=AI,
        label="Google Gemini",
        requires_key=True,
        key_source="env",
        cost_tier="freemium",
        free_quota="free tier with rate limits",
        env_var="GEMINI_API_KEY",
        min_key_length=21,
    ),
    ProviderDescriptor(
        id="deepseek",
        kind=AI,
        label="DeepSeek",
        requires_key=True,
        key_source="env",
        cost_tier="low",
        env_var="DEEPSEEK_API_KEY",
        key_prefix="sk-",
    ),
    ProviderDescriptor(
        id="openai",
        kind=AI,
        label="OpenAI GPT",
        requires_key=True,
        key_source="env",
        cost_tier="paid",
        env_var="OPENAI_API_KEY",
        key_prefix="sk-",
    ),
)

# Config attribute holding a persisted key for each env var.
_CONFIG_KEY_FIELDS = {
    "OPENAI_API_KEY": "openai_api_key",
    "GEMINI_API_KEY": "gemini_api_key",
    "DEEPSEEK_API_KEY": "deepseek_api_key",
    "ASSEMBLYAI_API_KEY": "assemblyai_api_key",
    "AZURE_SPEECH_KEY": "azure_speech_key",
}


def list_providers(kind: Optional[str] = None) -> List[ProviderDescriptor]:
    return [d for d in _DESCRIPTORS if kind is None or d.kind == kind]


def get_descriptor(provider_id: str, kind: str) -> ProviderDescriptor:
    for descriptor in _DESCRIPTORS:
        if descriptor.id == provider_id and descriptor.kind == kind:
            return descriptor
    known = ", ".join(d.id for d in list_providers(kind))
    raise UnknownProvider(f"Unknown {kind} provider '{provider_id}'. Choose one of: {known}", provider=provider_id)


def provider_max_bytes(descriptor: ProviderDescriptor) -> int:
    """Effective upload cap: the serving layer's cap unless the upstream is stricter."""

    if descriptor.max_bytes is None:
        return SERVING_MAX_BYTES
    return min(SERVING_MAX_BYTES, descriptor.max_bytes)


def server_key(
    descriptor: ProviderDescriptor,
    config: Optional[Config] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Optional[str]:
    """Return the server-configured key: environment first, then the config file."""

    if descriptor.env_var is None:
        return None
    env = os.environ if environ is None else environ
    value = (env.get(descriptor.env_var) or "").strip()
    if value:
        return value
    if config is not None:
        stored = getattr(config, _CONFIG_KEY_FIELDS[descriptor.env_var], None)
        if stored and stored.strip():
            return stored.strip()
    return None


def check_key_format(descriptor: ProviderDescriptor, key: str) -> Optional[str]:
    """Return a warning when the key does not look like the vendor's format."""

    if descriptor.key_prefix and not key.startswith(descriptor.key_prefix):
        return f"{descriptor.label} keys usually start with '{descriptor.key_prefix}'"
    if descriptor.min_key_length and len(key) < descriptor.min_key_length:
        return f"{descriptor.label} keys are usually longer than {descriptor.min_key_length - 1} characters"
    return None


def resolve_credential(
    descriptor: ProviderDescriptor,
    user_key: Optional[str] = None,
    config: Optional[Config] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Credential:
    """Pick the key for a request: caller-supplied, then server-configured.

    The format check only produces a warning. Vendors change key prefixes and a
    heuristic miss must not lock out a working key.
    """

    if not descriptor.requires_key:
        return Credential(value=None, source="none")

    candidate = (user_key or "").strip()
    source = "user"
    if not candidate:
        candidate = server_key(descriptor, config, environ) or ""
        source = "env"
    if not candidate:
        hint = f" or set {descriptor.env_var}" if descriptor.env_var else ""
        raise NoCredential(
            f"No API key available for {descriptor.label}. Provide an apiKey{hint}.",
            provider=descriptor.id,
        )

    warning = check_key_format(descriptor, candidate)
    if warning:
        logger.warning("Key for %s failed the format check (%s); using it anyway", descriptor.id, source)
    logger.debug("Using %s key for %s", source, descriptor.id)
    return Credential(value=candidate, source=source, valid_format=warning is None, warning=warning)


__all__ = [
    "AI",
    "SERVING_MAX_BYTES",
    "TRANSCRIPTION",
    "check_key_format",
    "get_descriptor",
    "list_providers",
    "provider_max_bytes",
    "resolve_credential",
    "server_key",
]
