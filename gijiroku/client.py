"""Shared helpers for the outbound HTTP client."""

from __future__ import annotations

from contextlib import asynccontextmanager, contextmanager
from typing import AsyncIterator, Callable, Iterator, Optional

import httpx
import openai

from .errors import (
    GijirokuError,
    MalformedUpstreamResponse,
    Timeout,
    UpstreamError,
    classify_upstream_failure,
    truncate_body,
)

USER_AGENT = "gijiroku/0.1"


def build_client(timeout: float) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=timeout, headers={"User-Agent": USER_AGENT})


@asynccontextmanager
async def client_scope(client: Optional[httpx.AsyncClient], timeout: float) -> AsyncIterator[httpx.AsyncClient]:
    """Yield the caller's client, or a short-lived one closed on exit."""

    if client is not None:
        yield client
        return
    async with build_client(timeout) as owned:
        yield owned


def openai_client(client: httpx.AsyncClient, api_key: Optional[str], base_url: str) -> openai.AsyncOpenAI:
    """An SDK client for OpenAI-compatible APIs that sends through ``client``."""

    return openai.AsyncOpenAI(
        api_key=api_key,
        base_url=base_url,
        http_client=client,
        timeout=client.timeout,
        max_retries=0,
    )


@contextmanager
def openai_errors(
    provider_id: str,
    translate: Callable[[httpx.Response, str], GijirokuError] = classify_upstream_failure,
) -> Iterator[None]:
    """Re-raise SDK exceptions as the matching :class:`GijirokuError`."""

    try:
        yield
    except openai.APIStatusError as exc:
        raise translate(exc.response, provider_id) from exc
    except openai.APIResponseValidationError as exc:
        raise MalformedUpstreamResponse(
            f"{provider_id} returned an unexpected response shape",
            provider=provider_id,
            body=truncate_body(exc.response.text),
        ) from exc
    except openai.APITimeoutError as exc:
        raise Timeout(f"{provider_id} did not answer in time", provider=provider_id) from exc
    except openai.APIConnectionError as exc:
        raise UpstreamError(f"Could not reach {provider_id}: {exc}", provider=provider_id) from exc
