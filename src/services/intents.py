# src/services/intents.py
# 음성 응답(최종 transcript) → 의도 분류. 단순 문구 매칭
from __future__ import annotations

import enum
import re
from typing import Iterable, Pattern


class Intent(str, enum.Enum):
    taken = "taken"
    snooze = "snooze"
    unknown = "unknown"


# "먹었다" 계열
TAKEN_PHRASES = (
    "taken",
    "done",
    "okay",
    "ok",
    "yes",
    "sure",
    "got it",
    "took it",
    "i took it",
    "completed",
    "finished",
    "take",
    "swallowed",
)

# "나중에" 계열
SNOOZE_PHRASES = (
    "later",
    "snooze",
    "remind me later",
    "not now",
    "wait",
    "hold on",
    "skip",
    "in a bit",
    "after",
    "few minutes",
    "5 minutes",
    "remind",
    "postpone",
)


def _compile(phrases: Iterable[str]) -> Pattern[str]:
    # 단어 경계 기준 매칭 ("ok"가 "book"에 걸리지 않도록)
    alternatives = sorted((re.escape(p) for p in phrases), key=len, reverse=True)
    return re.compile(r"\b(?:%s)\b" % "|".join(alternatives))


_TAKEN_RE = _compile(TAKEN_PHRASES)
_SNOOZE_RE = _compile(SNOOZE_PHRASES)


def normalize_transcript(text: str) -> str:
    return " ".join((text or "").lower().split())


def classify_intent(transcript: str) -> Intent:
    """taken 문구가 먼저 우선함. 둘 다 없으면 unknown"""
    text = normalize_transcript(transcript)
    if not text:
        return Intent.unknown
    if _TAKEN_RE.search(text):
        return Intent.taken
    if _SNOOZE_RE.search(text):
        return Intent.snooze
    return Intent.unknown
