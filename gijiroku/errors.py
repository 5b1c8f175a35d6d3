"""Typed failures raised by the transcription and minutes pipeline."""

from __future__ import annotations

from typing import Any, Dict, Optional

import httpx

RAW_BODY_LIMIT = 500


class GijirokuError(Exception):
    """Base exception carrying an HTTP status and diagnostic details."""

    status_code = 500

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = {k: v for k, v in details.items() if v is not None}

    @property
    def kind(self) -> str:
        return type(self).__name__

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.message, "kind": self.kind}
        if self.details:
            payload["details"] = self.details
        return payload


class MissingInput(GijirokuError):
    status_code = 400


class NoCredential(GijirokuError):
    status_code = 400


class UnknownProvider(GijirokuError):
    status_code = 400


class PayloadTooLarge(GijirokuError):
    status_code = 413

    def __init__(self, message: str, *, size: Optional[int] = None, limit: Optional[int] = None, **details: Any) -> None:
        super().__init__(message, size=size, limit=limit, **details)
        self.size = size
        self.limit = limit


class InvalidFormat(GijirokuError):
    status_code = 400


class AuthFailed(GijirokuError):
    status_code = 401


class RateLimited(GijirokuError):
    status_code = 429


class UpstreamError(GijirokuError):
    status_code = 500


class MalformedUpstreamResponse(GijirokuError):
    status_code = 500


class Timeout(GijirokuError):
    status_code = 504


class EmptyTranscript(GijirokuError):
    status_code = 400


class StorageFailure(GijirokuError):
    """Raised inside the record store; never escapes its public methods."""


def truncate_body(text: str, limit: int = RAW_BODY_LIMIT) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def classify_upstream_failure(response: httpx.Response, provider_id: str) -> GijirokuError:
    """Map a non-2xx transcription response onto the error taxonomy."""

    status = response.status_code
    body = truncate_body(response.text)
    details = {"status": status, "provider": provider_id, "body": body}
    if status == 400:
        return InvalidFormat(f"{provider_id} rejected the audio (invalid format or parameters)", **details)
    if status in (401, 403):
        return AuthFailed(f"{provider_id} rejected the API key", **details)
    if status == 413:
        return PayloadTooLarge(f"{provider_id} rejected the audio as too large", **details)
    if status == 429:
        return RateLimited(f"{provider_id} rate limit reached, try again later", **details)
    return UpstreamError(f"{provider_id} request failed with status {status}", **details)


def upstream_error_from_response(response: httpx.Response, provider_id: str) -> UpstreamError:
    status = response.status_code
    return UpstreamError(
        f"{provider_id} request failed with status {status}",
        status=status,
        provider=provider_id,
        body=truncate_body(response.text),
    )


def parse_json(response: httpx.Response, provider_id: str) -> Any:
    """Decode a JSON body or fail with the raw text attached."""

    try:
        return response.json()
    except ValueError as exc:
        raise MalformedUpstreamResponse(
            f"{provider_id} returned a response that is not valid JSON",
            status=response.status_code,
            provider=provider_id,
            body=truncate_body(response.text),
        ) from exc


__all__ = [
    "AuthFailed",
    "EmptyTranscript",
    "GijirokuError",
    "InvalidFormat",
    "MalformedUpstreamResponse",
    "MissingInput",
    "NoCredential",
    "PayloadTooLarge",
    "RateLimited",
    "StorageFailure",
    "Timeout",
    "UnknownProvider",
    "UpstreamError",
    "classify_upstream_failure",
    "parse_json",
    "truncate_body",
    "upstream_error_from_response",
]
