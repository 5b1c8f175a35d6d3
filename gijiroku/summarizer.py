"""Rule-based minutes drafts for when no AI provider can answer.

The draft uses the same section labels as the prompt templates, so
:func:`gijiroku.extractor.extract` parses it like any model answer.
"""

from __future__ import annotations

import math
import re
from collections import Counter
from datetime import date
from typing import Iterable, List, Optional

from .extractor import LABELS

_WORD_RE = re.compile(r"[A-Za-z0-9']+")
_CJK_RUN_RE = re.compile(r"[\u3040-\u30ff\u3400-\u9fff]+")
_SENTENCE_RE = re.compile(r"(?<=[。．！？.!?])\s*|\n+")
_FILLER_RE = re.compile(r"(?:えーと|えっと|えー+|あのー+|うーん|んー+)[、,]?\s*|\b(?:um+|uh+)\b,?\s*", re.IGNORECASE)

_PARTICIPANT_PATTERNS = {
    "ja": re.compile(r"([\u4e00-\u9fff\u30a0-\u30ff]{1,6})(?:さん|様|氏|部長|課長)"),
    "en": re.compile(r"^([A-Z][a-z]+):", re.MULTILINE),
}

_TOPICS = {
    "ja": {
        "予算・費用": ("予算", "費用", "コスト", "金額", "価格", "万円"),
        "スケジュール": ("スケジュール", "日程", "期限", "納期", "来週", "来月"),
        "技術・開発": ("開発", "技術", "システム", "実装", "テスト", "リリース"),
        "営業・顧客": ("営業", "顧客", "お客様", "売上", "販売"),
        "人事・組織": ("採用", "人事", "組織", "チーム", "メンバー"),
        "プロジェクト管理": ("プロジェクト", "進捗", "タスク", "課題", "リスク"),
    },
    "en": {
        "budget": ("budget", "cost", "price", "spend"),
        "schedule": ("schedule", "deadline", "timeline", "next week", "next month"),
        "development": ("develop", "release", "test", "system", "feature"),
        "sales": ("sales", "customer", "client", "revenue"),
        "team": ("hiring", "team", "staff", "member"),
        "project management": ("project", "progress", "task", "risk", "milestone"),
    },
}

_DECISION_WORDS = {
    "ja": ("決定", "決まり", "決め", "合意", "承認", "ことにし", "方針"),
    "en": ("decided", "agreed", "approved", "we will go with", "resolved"),
}

_ACTION_WORDS = {
    "ja": ("お願い", "までに", "担当", "対応します", "やります", "確認します", "送付", "準備します"),
    "en": ("will send", "will prepare", "will check", "action item", "follow up", "to do", "assigned", "by next"),
}


class Summarizer:
    """A naive frequency based summariser.

    Sentences are ranked by TF-IDF inspired word importance scoring and the
    highest ranking ones are returned in their original order. Japanese text
    has no spaces, so runs of kana and kanji are scored as character bigrams.
    """

    def __init__(self, max_sentences: int = 5) -> None:
        self.max_sentences = max_sentences

    def top_sentences(self, sentences: List[str]) -> List[str]:
        if len(sentences) <= self.max_sentences:
            return list(sentences)
        scores = self._score_sentences(sentences)
        ranked = sorted(range(len(sentences)), key=lambda i: scores[i], reverse=True)
        return [sentences[i] for i in sorted(ranked[: self.max_sentences])]

    def summarise(self, transcript: str) -> str:
        return " ".join(self.top_sentences(split_sentences(transcript)))

    def _score_sentences(self, sentences: List[str]) -> List[float]:
        words_per_sentence = [_tokenize(sentence) for sentence in sentences]
        idf_scores = _inverse_document_frequency(words_per_sentence)

        sentence_scores = []
        for words in words_per_sentence:
            tf = _term_frequency(words)
            sentence_scores.append(sum(tf.get(word, 0.0) * idf_scores.get(word, 0.0) for word in words))
        return sentence_scores


def clean_transcript(text: str) -> str:
    return _FILLER_RE.sub("", text).strip()


def split_sentences(text: str) -> List[str]:
    return [s.strip() for s in _SENTENCE_RE.split(text.strip()) if s and s.strip()]


def _tokenize(sentence: str) -> List[str]:
    tokens = [match.group(0).lower() for match in _WORD_RE.finditer(sentence)]
    for run in _CJK_RUN_RE.findall(sentence):
        if len(run) == 1:
            tokens.append(run)
        tokens.extend(run[i : i + 2] for i in range(len(run) - 1))
    return tokens


def _term_frequency(words: Iterable[str]) -> Counter:
    counter: Counter[str] = Counter(words)
    total = sum(counter.values()) or 1
    return Counter({word: count / total for word, count in counter.items()})


def _inverse_document_frequency(docs: List[List[str]]) -> Counter:
    doc_count = len(docs)
    counter: Counter[str] = Counter()
    for doc in docs:
        counter.update(set(doc))
    return Counter({word: math.log(doc_count / (1 + count)) + 1 for word, count in counter.items()})


def _matching(sentences: List[str], words: Iterable[str]) -> List[str]:
    words = tuple(w.lower() for w in words)
    return [s for s in sentences if any(w in s.lower() for w in words)]


def _participants(text: str, language: str) -> List[str]:
    pattern = _PARTICIPANT_PATTERNS.get(language, _PARTICIPANT_PATTERNS["ja"])
    names: List[str] = []
    for name in pattern.findall(text):
        if name not in names:
            names.append(name)
    return names


def _topics(sentences: List[str], language: str) -> List[str]:
    table = _TOPICS.get(language, _TOPICS["ja"])
    counts = {topic: len(_matching(sentences, words)) for topic, words in table.items()}
    return [topic for topic, count in sorted(counts.items(), key=lambda kv: kv[1], reverse=True) if count][:3]


def build_draft(transcript: str, language: str = "ja", today: Optional[date] = None, max_points: int = 5) -> str:
    """Return a minutes draft in the labelled-section format of the prompt templates."""

    labels = LABELS.get(language, LABELS["ja"])
    lang = language if language in LABELS else "ja"
    sentences = split_sentences(clean_transcript(transcript))

    topics = _topics(sentences, lang)
    if lang == "ja":
        agenda = "、".join(topics) + "について" if topics else labels.unknown
        meeting_name = f"{topics[0]}に関する会議" if topics else labels.default_meeting_name
        bullet = "・"
        separator = "、"
    else:
        agenda = ", ".join(topics) if topics else labels.unknown
        meeting_name = f"Meeting on {topics[0]}" if topics else labels.default_meeting_name
        bullet = "- "
        separator = ", "

    decisions = _matching(sentences, _DECISION_WORDS[lang])
    actions = [s for s in _matching(sentences, _ACTION_WORDS[lang]) if s not in decisions]
    points = Summarizer(max_sentences=max_points).top_sentences(sentences)

    lines = [
        f"{labels.meeting_name}: {meeting_name}",
        f"{labels.date}: {(today or date.today()).isoformat()}",
        f"{labels.participants}: {separator.join(_participants(transcript, lang)) or labels.unknown}",
        f"{labels.agenda}: {agenda}",
        f"{labels.main_points}:",
    ]
    lines.extend(f"{bullet}{point}" for point in points)
    lines.append(f"{labels.decisions}:")
    lines.extend(decisions or [labels.none])
    lines.append(f"{labels.todos}:")
    lines.extend(actions or [labels.none])
    return "\n".join(lines)


__all__ = ["Summarizer", "build_draft", "clean_transcript", "split_sentences"]
