"""Provider availability checks.

A check never raises for provider-side problems: missing keys, timeouts,
network errors and non-2xx answers all become an unreachable
:class:`ProviderStatus` with a readable message.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence

import httpx

from . import minutes, transcriber
from .client import client_scope
from .errors import GijirokuError, NoCredential
from .models import Config, ProviderStatus
from .providers import AI, TRANSCRIPTION, get_descriptor, list_providers, resolve_credential, server_key

logger = logging.getLogger(__name__)


def _backend(provider_id: str, kind: str, client: httpx.AsyncClient, key: Optional[str], config: Config, region: Optional[str]) -> Any:
    if kind == TRANSCRIPTION:
        return transcriber.get_backend(provider_id, client, key, config, region=region)
    return minutes.get_backend(provider_id, client, key, config)


async def check_provider(
    provider_id: str,
    kind: str,
    config: Config,
    client: Optional[httpx.AsyncClient] = None,
    user_key: Optional[str] = None,
    region: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> ProviderStatus:
    descriptor = get_descriptor(provider_id, kind)
    try:
        credential = resolve_credential(descriptor, user_key, config, environ)
    except NoCredential as exc:
        return ProviderStatus(provider_id=provider_id, configured=False, valid_format=False, reachable=False, message=str(exc))

    status = ProviderStatus(
        provider_id=provider_id,
        configured=True,
        valid_format=credential.valid_format,
        reachable=False,
        warning=credential.warning,
    )
    async with client_scope(client, config.probe_timeout) as http:
        backend = _backend(provider_id, kind, http, credential.value, config, region)
        try:
            status.message = await asyncio.wait_for(backend.probe(), timeout=config.probe_timeout)
        except (asyncio.TimeoutError, httpx.TimeoutException):
            status.message = f"{descriptor.label} did not answer within {config.probe_timeout:.0f} seconds"
        except httpx.RequestError as exc:
            status.message = f"Could not reach {descriptor.label}: {exc}"
        except GijirokuError as exc:
            status.message = str(exc)
        else:
            status.reachable = True

    if not status.reachable:
        logger.warning("Health check for %s failed: %s", provider_id, status.message)
    return status


async def check_providers(
    provider_ids: Sequence[str],
    kind: str,
    config: Config,
    client: Optional[httpx.AsyncClient] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> List[ProviderStatus]:
    """Check several providers concurrently; one failure never hides another's result."""

    async with client_scope(client, config.probe_timeout) as http:
        results = await asyncio.gather(
            *(check_provider(pid, kind, config, client=http, environ=environ) for pid in provider_ids),
            return_exceptions=True,
        )

    statuses: List[ProviderStatus] = []
    for provider_id, result in zip(provider_ids, results):
        if isinstance(result, BaseException):
            logger.warning("Health check for %s raised unexpectedly: %s", provider_id, result)
            statuses.append(
                ProviderStatus(
                    provider_id=provider_id,
                    configured=False,
                    valid_format=False,
                    reachable=False,
                    message=f"Check failed: {result}",
                )
            )
        else:
            statuses.append(result)
    return statuses


async def public_status(
    config: Config,
    client: Optional[httpx.AsyncClient] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, Any]:
    """Aggregate status of every AI provider, safe to expose without authentication."""

    ids = [d.id for d in list_providers(AI)]
    statuses = await check_providers(ids, AI, config, client=client, environ=environ)
    configured = sum(1 for s in statuses if s.configured)
    summary = {
        "totalConfigured": configured,
        "totalApis": len(statuses),
        "allConfigured": configured == len(statuses),
        "validFormats": sum(1 for s in statuses if s.valid_format),
        "reachable": sum(1 for s in statuses if s.reachable),
    }
    return {
        "success": True,
        "message": f"{configured}/{len(statuses)} AI providers configured",
        "apiStatus": {s.provider_id: s.to_dict() for s in statuses},
        "summary": summary,
    }


def environment_flags(config: Config, environ: Optional[Mapping[str, str]] = None) -> Dict[str, bool]:
    """Which providers have a server-side key. Never exposes the key itself."""

    flags: Dict[str, bool] = {}
    for descriptor in list_providers():
        if descriptor.env_var is None:
            continue
        flags[descriptor.id] = flags.get(descriptor.id, False) or server_key(descriptor, config, environ) is not None
    flags["aiAvailable"] = any(flags.get(d.id, False) for d in list_providers(AI))
    return flags


__all__ = ["check_provider", "check_providers", "environment_flags", "public_status"]
