import asyncio
import json

import httpx
import pytest

from gijiroku.errors import EmptyTranscript, MalformedUpstreamResponse, NoCredential, Timeout, UpstreamError
from gijiroku.extractor import extract
from gijiroku.minutes import (
    PROMPT_VERSION,
    RULE_BASED,
    build_prompt,
    fallback_order,
    generate_minutes,
    generate_minutes_with_fallback,
    truncate_transcript,
)
from gijiroku.models import Config

DRAFT = "会議名：週次定例\n主な発言：\n・予算確認\n決定事項：来月継続\nTODO：山田が議事録送付"
GEMINI_KEY = "AIza" + "x" * 35


def _gemini_ok(request):
    assert request.url.params["key"] == GEMINI_KEY
    assert request.url.path == "/v1/models/gemini-1.5-flash:generateContent"
    return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": DRAFT}]}}]})


def _chat_ok(content):
    return httpx.Response(
        200,
        json={
            "id": "chatcmpl-1",
            "object": "chat.completion",
            "created": 0,
            "model": "gpt-4o",
            "choices": [{"index": 0, "message": {"role": "assistant", "content": content}, "finish_reason": "stop"}],
        },
    )


def _run(coro_factory, handler):
    async def main():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await coro_factory(client)

    return asyncio.run(main())


def _unexpected(request):
    raise AssertionError(f"unexpected call to {request.url}")


def test_prompt_lists_every_section_label():
    ja = build_prompt("テスト", "ja")
    for label in ("会議名", "日時", "参加者", "議題", "主な発言", "決定事項", "TODO"):
        assert f"{label}：" in ja
    assert ja.endswith("テスト")

    en = build_prompt("test", "en")
    for label in ("Meeting Name", "Date", "Participants", "Agenda", "Main Points", "Decisions", "Action Items"):
        assert f"{label}:" in en


def test_truncate_transcript_cuts_at_sentence_end():
    text = "最初の文です。二番目の文です。三番目の文です。"
    cut = truncate_transcript(text, 12)
    assert cut.startswith("最初の文です。")
    assert "二番目" not in cut
    assert "注" in cut
    assert truncate_transcript(text, 1000) == text


def test_empty_transcript_makes_no_call():
    with pytest.raises(EmptyTranscript):
        _run(lambda c: generate_minutes("  \n", "gemini", Config(), client=c, environ={}), _unexpected)


def test_missing_key_makes_no_call():
    with pytest.raises(NoCredential):
        _run(lambda c: generate_minutes("本文", "gemini", Config(), client=c, environ={}), _unexpected)


def test_gemini_generation():
    draft = _run(
        lambda c: generate_minutes("本文", "gemini", Config(), client=c, user_key=GEMINI_KEY, environ={}),
        _gemini_ok,
    )
    assert draft.text == DRAFT
    assert draft.provider_id == "gemini"
    assert draft.prompt_version == PROMPT_VERSION


def test_deepseek_generation_uses_chat_completions():
    seen = []

    def handler(request):
        seen.append(request)
        assert request.url.host == "api.deepseek.com"
        assert request.headers["Authorization"] == "Bearer sk-deep"
        return _chat_ok(DRAFT)

    draft = _run(
        lambda c: generate_minutes("本文", "deepseek", Config(), client=c, environ={"DEEPSEEK_API_KEY": "sk-deep"}),
        handler,
    )
    body = json.loads(seen[0].content)
    assert body["model"] == "deepseek-chat"
    assert body["messages"][0]["role"] == "system"
    assert "本文" in body["messages"][1]["content"]
    assert draft.text == DRAFT


def test_non_2xx_is_upstream_error_with_body():
    def handler(request):
        return httpx.Response(500, text="internal failure")

    with pytest.raises(UpstreamError) as excinfo:
        _run(
            lambda c: generate_minutes("本文", "openai", Config(), client=c, environ={"OPENAI_API_KEY": "sk-x"}),
            handler,
        )
    assert excinfo.value.details["status"] == 500
    assert excinfo.value.details["body"] == "internal failure"


def test_fallback_order():
    assert fallback_order("deepseek") == ["deepseek", "gemini", "openai"]
    assert fallback_order("unknown") == ["gemini", "deepseek", "openai"]


def test_fallback_skips_failed_and_unconfigured_providers():
    def handler(request):
        if request.url.host == "generativelanguage.googleapis.com":
            return httpx.Response(503, text="overloaded")
        assert request.url.host == "api.openai.com"
        return _chat_ok(DRAFT)

    environ = {"GEMINI_API_KEY": GEMINI_KEY, "OPENAI_API_KEY": "sk-open"}
    draft = _run(
        lambda c: generate_minutes_with_fallback("本文", "gemini", Config(), client=c, environ=environ),
        handler,
    )
    assert draft.provider_id == "openai"


def test_fallback_drafts_rule_based_minutes_when_every_provider_fails():
    def handler(request):
        return httpx.Response(500, text="down")

    transcript = "予算は承認されました。山田さんが金曜日までに資料を送付します。"
    environ = {"OPENAI_API_KEY": "sk-open"}
    draft = _run(
        lambda c: generate_minutes_with_fallback(
            transcript, "gemini", Config(), client=c, user_key=GEMINI_KEY, environ=environ
        ),
        handler,
    )
    assert draft.provider_id == RULE_BASED
    assert draft.prompt_version == PROMPT_VERSION
    assert "gemini" in draft.fallback_reason
    assert "openai" in draft.fallback_reason

    record = extract(draft.text, language="ja")
    assert record.participants == "山田"
    assert "承認" in record.decisions
    assert "送付" in record.todos


def test_fallback_rule_based_draft_follows_language():
    def handler(request):
        return httpx.Response(503, text="overloaded")

    draft = _run(
        lambda c: generate_minutes_with_fallback(
            "Alice: We agreed on the budget.", "gemini", Config(), client=c, user_key=GEMINI_KEY, language="en", environ={}
        ),
        handler,
    )
    assert draft.provider_id == RULE_BASED
    record = extract(draft.text, language="en")
    assert record.participants == "Alice"
    assert "agreed on the budget" in record.decisions


def test_fallback_empty_transcript_makes_no_call():
    with pytest.raises(EmptyTranscript):
        _run(
            lambda c: generate_minutes_with_fallback(" ", "gemini", Config(), client=c, user_key=GEMINI_KEY, environ={}),
            _unexpected,
        )


def test_empty_answer_is_malformed():
    def handler(request):
        return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": "  \n"}]}}]})

    with pytest.raises(MalformedUpstreamResponse) as excinfo:
        _run(
            lambda c: generate_minutes("本文", "gemini", Config(), client=c, user_key=GEMINI_KEY, environ={}),
            handler,
        )
    assert excinfo.value.details["provider"] == "gemini"


def test_fallback_moves_past_empty_answer():
    def handler(request):
        if request.url.host == "generativelanguage.googleapis.com":
            return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": ""}]}}]})
        assert request.url.host == "api.deepseek.com"
        return _chat_ok(DRAFT)

    environ = {"DEEPSEEK_API_KEY": "sk-deep"}
    draft = _run(
        lambda c: generate_minutes_with_fallback("本文", "gemini", Config(), client=c, user_key=GEMINI_KEY, environ=environ),
        handler,
    )
    assert draft.provider_id == "deepseek"
    assert draft.text == DRAFT
    assert draft.fallback_reason is None


def test_slow_provider_times_out():
    async def handler(request):
        await asyncio.sleep(5)
        return httpx.Response(200, json={"candidates": []})

    with pytest.raises(Timeout) as excinfo:
        _run(
            lambda c: generate_minutes(
                "本文", "gemini", Config(request_timeout=0.05), client=c, user_key=GEMINI_KEY, environ={}
            ),
            handler,
        )
    assert excinfo.value.status_code == 504
    assert excinfo.value.details["provider"] == "gemini"


def test_non_json_answer_keeps_raw_body():
    def handler(request):
        return httpx.Response(200, text="<html>oops</html>")

    with pytest.raises(MalformedUpstreamResponse) as excinfo:
        _run(
            lambda c: generate_minutes("本文", "gemini", Config(), client=c, user_key=GEMINI_KEY, environ={}),
            handler,
        )
    assert excinfo.value.details["body"] == "<html>oops</html>"
    assert excinfo.value.details["status"] == 200


def test_fallback_without_any_key_raises_no_credential():
    with pytest.raises(NoCredential):
        _run(lambda c: generate_minutes_with_fallback("本文", "gemini", Config(), client=c, environ={}), _unexpected)
