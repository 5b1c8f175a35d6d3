"""Best-effort extraction of a MinutesRecord from an LLM minutes draft.

The grammar is a contract with the prompt templates in
:mod:`gijiroku.minutes` (``PROMPT_VERSION``): each section appears as
``<label><separator><content>`` where the separator is a half-width or
full-width colon. The first occurrence of a label wins. Sections that cannot
be located fall back to fixed defaults, so a record is always returned.
If a model stops using the labels, extraction quality drops to the defaults
without raising.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date
from typing import List, Optional, Pattern

from .models import MinutesRecord

_SEPARATOR = r"[ \t]*[:：]"
_DECORATION_BEFORE = r"(?<![A-Za-z])(?:■|\*\*|#+[ \t]*)?"
_DECORATION_AFTER = r"(?:\*\*)?"
_BULLET_RE = re.compile(r"^(?:[-*•●]|\d+[.)、])\s*")
_ITEM_SPLIT_RE = re.compile(r"[\n・]")


@dataclass(frozen=True)
class LabelSet:
    meeting_name: str
    date: str
    participants: str
    agenda: str
    main_points: str
    decisions: str
    todos: str
    default_meeting_name: str
    unknown: str
    none: str


LABELS = {
    "ja": LabelSet(
        meeting_name="会議名",
        date="日時",
        participants="参加者",
        agenda="議題",
        main_points="主な発言",
        decisions="決定事項",
        todos="TODO",
        default_meeting_name="会議",
        unknown="不明",
        none="特になし",
    ),
    "en": LabelSet(
        meeting_name="Meeting Name",
        date="Date",
        participants="Participants",
        agenda="Agenda",
        main_points="Main Points",
        decisions="Decisions",
        todos="Action Items",
        default_meeting_name="Meeting",
        unknown="Unknown",
        none="None",
    ),
}


def _header(label: str) -> Pattern[str]:
    return re.compile(
        _DECORATION_BEFORE + re.escape(label) + _DECORATION_AFTER + _SEPARATOR,
        re.IGNORECASE,
    )


def _line_value(draft: str, label: str) -> Optional[str]:
    match = re.search(_header(label).pattern + r"[ \t]*(.+)", draft, re.IGNORECASE)
    if match is None:
        return None
    value = match.group(1).strip()
    return value or None


def _span(draft: str, label: str, until: Optional[str] = None) -> Optional[str]:
    """Text after ``label`` up to the ``until`` header, or to the end of the draft."""

    start = _header(label).search(draft)
    if start is None:
        return None
    rest = draft[start.end():]
    if until is not None:
        end = _header(until).search(rest)
        if end is not None:
            rest = rest[: end.start()]
    return rest


def split_items(block: str) -> List[str]:
    items = []
    for piece in _ITEM_SPLIT_RE.split(block):
        item = _BULLET_RE.sub("", piece.strip()).strip()
        if item:
            items.append(item)
    return items


def extract(draft: str, language: str = "ja", today: Optional[date] = None) -> MinutesRecord:
    """Parse ``draft`` into a fully populated :class:`MinutesRecord`. Never raises."""

    labels = LABELS.get(language, LABELS["ja"])
    text = draft or ""

    main_block = _span(text, labels.main_points, until=labels.decisions)
    decisions = (_span(text, labels.decisions, until=labels.todos) or "").strip()
    todos = (_span(text, labels.todos) or "").strip()

    return MinutesRecord(
        meeting_name=_line_value(text, labels.meeting_name) or labels.default_meeting_name,
        date=_line_value(text, labels.date) or (today or date.today()).isoformat(),
        participants=_line_value(text, labels.participants) or labels.unknown,
        agenda=_line_value(text, labels.agenda) or labels.unknown,
        main_points=split_items(main_block) if main_block else [],
        decisions=decisions or labels.none,
        todos=todos or labels.none,
    )


__all__ = ["LABELS", "LabelSet", "extract", "split_items"]
