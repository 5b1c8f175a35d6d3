import asyncio
import io
from datetime import datetime, timezone

import httpx
import pytest
from fastapi import UploadFile
from fastapi.testclient import TestClient

from gijiroku.api import _read_upload, app, get_config, get_environ, get_http_client, get_store
from gijiroku.config import ConfigError
from gijiroku.errors import PayloadTooLarge
from gijiroku.models import AudioRecord, Config, MinutesRecord
from gijiroku.providers import MIB, SERVING_MAX_BYTES
from gijiroku.storage import RecordStore

GEMINI_KEY = "AIza" + "x" * 35
DRAFT = "会議名：週次定例\n日時：2025-01-10\n主な発言：\n・予算確認\n・スケジュール調整\n決定事項：\n来月継続\nTODO：\n山田が議事録送付"


def _upstream(request):
    if request.url.host == "generativelanguage.googleapis.com":
        if request.method == "GET":
            return httpx.Response(200, json={"models": []})
        return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": DRAFT}]}}]})
    return httpx.Response(500, text="unavailable")


@pytest.fixture
def store(tmp_path):
    return RecordStore(db_path=tmp_path / "records.db")


@pytest.fixture
def client(store):
    async def http_client():
        async with httpx.AsyncClient(transport=httpx.MockTransport(_upstream)) as c:
            yield c

    app.dependency_overrides[get_config] = lambda: Config()
    app.dependency_overrides[get_environ] = lambda: {"GEMINI_API_KEY": GEMINI_KEY}
    app.dependency_overrides[get_http_client] = http_client
    app.dependency_overrides[get_store] = lambda: store
    yield TestClient(app)
    app.dependency_overrides.clear()


def _record(record_id: str) -> AudioRecord:
    return AudioRecord(
        id=record_id,
        file_name="standup.wav",
        transcript="本文",
        minutes=MinutesRecord(
            meeting_name="朝会",
            date="2025-01-10",
            participants="不明",
            agenda="不明",
            main_points=["進捗"],
            decisions="特になし",
            todos="特になし",
        ),
        created_at=datetime(2025, 1, 10, 9, 0, tzinfo=timezone.utc),
    )


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_providers_route(client):
    ids = {p["id"] for p in client.get("/providers", params={"kind": "ai"}).json()}
    assert ids == {"gemini", "deepseek", "openai"}


def test_transcribe_rejects_oversized_upload(client):
    files = {"file": ("big.wav", b"\0" * (15 * MIB), "audio/wav")}
    response = client.post("/transcribe", files=files, data={"provider": "openai"})

    assert response.status_code == 413
    body = response.json()
    assert body["kind"] == "PayloadTooLarge"
    assert body["details"]["size"] > 10 * MIB
    assert body["details"]["limit"] == 10485760


def test_transcribe_without_file(client):
    response = client.post("/transcribe", data={"provider": "openai"})
    assert response.status_code == 400
    assert response.json()["kind"] == "MissingInput"


def test_transcribe_without_key(client):
    files = {"file": ("a.wav", b"audio", "audio/wav")}
    response = client.post("/transcribe", files=files, data={"provider": "assemblyai"})
    assert response.status_code == 400
    assert response.json()["kind"] == "NoCredential"


def test_transcribe_webspeech_text(client):
    files = {"file": ("speech.txt", "おはようございます".encode("utf-8"), "text/plain")}
    response = client.post("/transcribe", files=files, data={"provider": "webspeech"})
    assert response.status_code == 200
    assert response.json()["transcript"] == "おはようございます"


def test_generate_minutes_requires_transcript(client):
    response = client.post("/generate-minutes", json={})
    assert response.status_code == 400
    assert response.json()["kind"] == "MissingInput"


def test_generate_minutes(client):
    response = client.post("/generate-minutes", json={"transcript": "本文", "provider": "gemini"})

    assert response.status_code == 200
    body = response.json()
    assert body["provider"] == "gemini"
    assert body["minutes"]["meetingName"] == "週次定例"
    assert body["minutes"]["mainPoints"] == ["予算確認", "スケジュール調整"]
    assert body["rawText"] == DRAFT


def test_generate_minutes_upstream_failure(client):
    response = client.post(
        "/generate-minutes",
        json={"transcript": "本文", "provider": "openai", "apiKey": "sk-user"},
    )
    assert response.status_code == 500
    assert response.json()["details"]["status"] == 500


def test_generate_minutes_falls_back_to_rule_based_draft(client):
    app.dependency_overrides[get_environ] = lambda: {}
    response = client.post(
        "/generate-minutes",
        json={"transcript": "予算を承認しました。", "provider": "openai", "apiKey": "sk-user", "fallback": True},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["provider"] == "rule-based"
    assert "openai" in body["fallbackReason"]
    assert "承認" in body["minutes"]["decisions"]


def test_config_error_is_rendered_as_json(client):
    def broken_config():
        raise ConfigError("Config file is not valid JSON")

    app.dependency_overrides[get_config] = broken_config
    response = client.get("/check-env")

    assert response.status_code == 500
    assert response.json() == {"error": "Config file is not valid JSON", "kind": "ConfigError"}


def test_unexpected_error_is_rendered_as_json(client):
    def broken_environ():
        raise RuntimeError("boom")

    app.dependency_overrides[get_environ] = broken_environ
    response = TestClient(app, raise_server_exceptions=False).get("/check-env")

    assert response.status_code == 500
    assert response.headers["content-type"] == "application/json"
    assert response.json() == {"error": "Internal server error", "kind": "InternalError"}


def test_read_upload_stops_past_the_cap():
    upload = UploadFile(file=io.BytesIO(b"\0" * (SERVING_MAX_BYTES + 10)), filename="big.wav")

    with pytest.raises(PayloadTooLarge) as excinfo:
        asyncio.run(_read_upload(upload))

    assert upload.file.tell() == SERVING_MAX_BYTES + 1
    assert excinfo.value.details["limit"] == SERVING_MAX_BYTES


def test_read_upload_trusts_declared_size():
    upload = UploadFile(file=io.BytesIO(b"audio"), filename="big.wav", size=SERVING_MAX_BYTES + 5)

    with pytest.raises(PayloadTooLarge) as excinfo:
        asyncio.run(_read_upload(upload))

    assert upload.file.tell() == 0
    assert excinfo.value.details["size"] == SERVING_MAX_BYTES + 5


def test_read_upload_returns_small_payload():
    upload = UploadFile(file=io.BytesIO(b"audio"), filename="a.wav")
    assert asyncio.run(_read_upload(upload)) == b"audio"


def test_check_env(client):
    flags = client.get("/check-env").json()
    assert flags["gemini"] is True
    assert flags["openai"] is False
    assert flags["aiAvailable"] is True


def test_check_provider(client):
    assert client.get("/check-gemini").json()["available"] is True

    missing = client.get("/check-deepseek").json()
    assert missing["available"] is False
    assert missing["configured"] is False

    with_key = client.post("/check-openai", json={"apiKey": "sk-user"}).json()
    assert with_key["configured"] is True
    assert with_key["available"] is False


def test_public_status_allows_cross_origin(client):
    response = client.get("/public-status")
    assert response.status_code == 200
    assert response.headers["access-control-allow-origin"] == "*"
    assert response.json()["summary"]["totalConfigured"] == 1

    preflight = client.options("/public-status")
    assert preflight.status_code == 200
    assert preflight.headers["access-control-allow-origin"] == "*"


def test_process_saves_record(client, store):
    files = {"file": ("speech.txt", "予算を確認しました。".encode("utf-8"), "text/plain")}
    response = client.post("/process", files=files, data={"provider": "webspeech", "aiProvider": "gemini"})

    assert response.status_code == 201
    body = response.json()
    assert body["fileName"] == "speech.txt"
    assert body["minutes"]["meetingName"] == "週次定例"
    assert store.get(body["id"]) is not None


def test_records_routes(client, store):
    store.save(_record("r1"))
    store.save(_record("r2"))

    assert [r["id"] for r in client.get("/records").json()] == ["r2", "r1"]
    assert client.get("/records/r1").json()["minutes"]["meetingName"] == "朝会"
    assert client.get("/records/missing").status_code == 404

    assert client.delete("/records/r1").status_code == 204
    assert store.get("r1") is None

    assert client.delete("/records").status_code == 204
    assert store.list() == []
