"""Dataclasses describing the values passed through the gijiroku pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


@dataclass(frozen=True, slots=True)
class ProviderDescriptor:
    """Static description of a transcription or AI provider."""

    id: str
    kind: str
    label: str
    requires_key: bool
    key_source: str
    cost_tier: str = "paid"
    free_quota: Optional[str] = None
    env_var: Optional[str] = None
    key_prefix: Optional[str] = None
    min_key_length: int = 0
    max_bytes: Optional[int] = None


@dataclass(frozen=True, slots=True)
class Credential:
    """The key chosen for a request and where it came from."""

    value: Optional[str]
    source: str
    valid_format: bool = True
    warning: Optional[str] = None


@dataclass(slots=True)
class TranscriptionRequest:
    audio_bytes: bytes
    mime_type: str = "application/octet-stream"
    language: str = "ja"
    provider_id: str = "openai"
    api_key: Optional[str] = None
    file_name: str = "audio"
    model: Optional[str] = None
    region: Optional[str] = None


@dataclass(slots=True)
class TranscriptionResult:
    text: str
    provider_id: str
    language: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class MinutesDraft:
    """Free-form minutes text, from an LLM or the rule-based drafter."""

    text: str
    provider_id: str
    model: str
    prompt_version: str
    fallback_reason: Optional[str] = None


@dataclass(slots=True)
class MinutesRecord:
    """Fixed-schema meeting minutes. Every field is always populated."""

    meeting_name: str
    date: str
    participants: str
    agenda: str
    main_points: List[str]
    decisions: str
    todos: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "meetingName": self.meeting_name,
            "date": self.date,
            "participants": self.participants,
            "agenda": self.agenda,
            "mainPoints": list(self.main_points),
            "decisions": self.decisions,
            "todos": self.todos,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "MinutesRecord":
        return cls(
            meeting_name=payload["meetingName"],
            date=payload["date"],
            participants=payload["participants"],
            agenda=payload["agenda"],
            main_points=list(payload.get("mainPoints") or []),
            decisions=payload["decisions"],
            todos=payload["todos"],
        )


@dataclass(slots=True)
class AudioRecord:
    """Represents a stored transcript and minutes pair."""

    id: str
    file_name: str
    transcript: str
    minutes: MinutesRecord
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "fileName": self.file_name,
            "transcript": self.transcript,
            "minutes": self.minutes.to_dict(),
            "createdAt": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "AudioRecord":
        return cls(
            id=payload["id"],
            file_name=payload["fileName"],
            transcript=payload["transcript"],
            minutes=MinutesRecord.from_dict(payload["minutes"]),
            created_at=datetime.fromisoformat(payload["createdAt"]),
        )


@dataclass(slots=True)
class ProviderStatus:
    provider_id: str
    configured: bool
    valid_format: bool
    reachable: bool
    message: str = ""
    warning: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "providerId": self.provider_id,
            "configured": self.configured,
            "validFormat": self.valid_format,
            "reachable": self.reachable,
            "message": self.message,
        }
        if self.warning:
            payload["warning"] = self.warning
        return payload


@dataclass(frozen=True, slots=True)
class Config:
    """User configuration stored on disk."""

    transcription_provider: str = "openai"
    ai_provider: str = "gemini"
    language: str = "ja"
    openai_transcription_model: str = "whisper-1"
    openai_chat_model: str = "gpt-4o"
    gemini_model: str = "models/gemini-1.5-flash"
    deepseek_model: str = "deepseek-chat"
    azure_region: str = "eastus"
    whisper_model: str = "base"
    request_timeout: float = 60.0
    probe_timeout: float = 10.0
    poll_interval: float = 1.0
    max_transcript_chars: int = 6666
    store_path: Optional[str] = None
    openai_api_key: Optional[str] = None
    gemini_api_key: Optional[str] = None
    deepseek_api_key: Optional[str] = None
    assemblyai_api_key: Optional[str] = None
    azure_speech_key: Optional[str] = None
