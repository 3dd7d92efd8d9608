"""
AI feedback collaborator for EatLock.

The LogRepository hands decrypted content to a FeedbackGenerator and
encrypts whatever comes back. Generators run in-process: content never
leaves the device through this interface.

The default KeywordFeedbackGenerator is rule based. It spots keywords
(resisting, specific foods, times of day, struggling), decides whether the
entry reads as a success, estimates the calories that were not eaten and
picks an encouraging message.

Generators MUST NOT log the content they receive.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from src.models.action_log import LogType

# =============================================================================
# Keyword tables
# =============================================================================

SUCCESS_KEYWORDS: tuple[str, ...] = (
    "我慢", "止め", "控え", "やめ", "抑え", "セーブ", "断念", "回避", "我慢でき", "やめられ",
    "resisted", "skipped", "stopped", "held back", "avoided", "said no", "didn't eat",
)

FAILURE_KEYWORDS: tuple[str, ...] = (
    "食べ過ぎ", "食べてしまっ", "失敗", "だめ", "後悔",
    "overate", "gave in", "binged", "failed", "regret", "ate too much",
)

STRUGGLE_KEYWORDS: tuple[str, ...] = (
    "誘惑", "我慢中", "葛藤", "迷っ", "欲しい", "食べたい",
    "tempted", "craving", "want to eat", "struggling", "torn",
)

TIME_KEYWORDS: tuple[str, ...] = (
    "夜中", "深夜", "夜", "寝る前", "朝", "昼", "夕方", "間食",
    "midnight", "late night", "before bed", "snack",
)

CALORIE_TABLE: dict[str, int] = {
    "アイス": 200,
    "ケーキ": 350,
    "チョコ": 150,
    "お菓子": 200,
    "スイーツ": 300,
    "デザート": 250,
    "ジュース": 150,
    "炭酸": 120,
    "ラーメン": 600,
    "揚げ物": 400,
    "ポテチ": 300,
    "クッキー": 180,
    "ice cream": 200,
    "cake": 350,
    "chocolate": 150,
    "candy": 200,
    "dessert": 250,
    "juice": 150,
    "soda": 120,
    "ramen": 600,
    "fried": 400,
    "chips": 300,
    "cookie": 180,
}

# Estimate when no known food is mentioned
DEFAULT_CALORIE_RANGE = (100, 300)

SUCCESS_MESSAGES: tuple[str, ...] = (
    "Great call! You prevented {calories} kcal 🎉",
    "Well resisted! That saved {calories} kcal ✨",
    "That willpower is wonderful. Your body thanks you for {calories} kcal 😊",
    "A strong choice. {calories} kcal avoided and one step closer to your goal 💪",
    "Amazing! You beat {calories} kcal worth of temptation 🌟",
    "Excellent self-control! {calories} kcal prevented, that must feel good ✨",
)

SUPPORT_MESSAGES: tuple[str, ...] = (
    "It's okay, let's try again next time 💪 Small steps matter most",
    "Sounds like today was a hard day 😌 Tomorrow is a fresh chance, I'm cheering for you!",
    "Sometimes you need to be kind to yourself ✨ Looking forward to your next try",
    "It doesn't have to be perfect 😊 Keeping at it is what counts",
    "Everyone has days like this 🤗 You'll do better next time",
    "Reflecting on it is already an achievement 🌱 Let's get ready for the next one",
)


# =============================================================================
# Collaborator contract
# =============================================================================

@dataclass(frozen=True)
class FeedbackResult:
    """Plaintext feedback plus the calorie estimate that goes with it."""

    feedback: str
    prevented_calories: int | None = None
    is_successful: bool = False

    def __repr__(self) -> str:
        return (
            f"FeedbackResult(prevented_calories={self.prevented_calories}, "
            f"is_successful={self.is_successful})"
        )


@runtime_checkable
class FeedbackGenerator(Protocol):
    """Plaintext in, plaintext out. Raise on failure; never return partial output."""

    async def generate(self, content: str) -> FeedbackResult:
        ...


# =============================================================================
# Keyword rules
# =============================================================================

def extract_keywords(text: str) -> list[str]:
    """Every known keyword found in text, in table order."""
    lowered = text.lower()
    vocabulary = (*SUCCESS_KEYWORDS, *CALORIE_TABLE, *TIME_KEYWORDS, *STRUGGLE_KEYWORDS)
    return [keyword for keyword in vocabulary if keyword in lowered]


def _mentions(text: str, keywords: tuple[str, ...]) -> bool:
    lowered = text.lower()
    return any(keyword in lowered for keyword in keywords)


def is_successful(text: str) -> bool:
    """A failure keyword always wins; otherwise an entry reads as a success."""
    if _mentions(text, FAILURE_KEYWORDS):
        return False
    return True


def determine_log_type(text: str) -> LogType:
    """Suggest a category for an entry from its wording."""
    if _mentions(text, STRUGGLE_KEYWORDS):
        return LogType.STRUGGLE
    return LogType.SUCCESS if is_successful(text) else LogType.FAILURE


class KeywordFeedbackGenerator:
    """
    Default on-device feedback generator.

    Args:
        rng: Random source for message choice and the default calorie
            estimate; inject a seeded Random for deterministic output
    """

    def __init__(self, rng: random.Random | None = None) -> None:
        self._rng = rng or random.Random()

    async def generate(self, content: str) -> FeedbackResult:
        successful = is_successful(content)
        calories = self.estimate_prevented_calories(content, successful)

        if successful:
            message = self._rng.choice(SUCCESS_MESSAGES).format(calories=calories)
        else:
            message = self._rng.choice(SUPPORT_MESSAGES)

        return FeedbackResult(
            feedback=message,
            prevented_calories=calories,
            is_successful=successful,
        )

    def estimate_prevented_calories(self, content: str, successful: bool) -> int:
        if not successful:
            return 0
        lowered = content.lower()
        total = sum(kcal for food, kcal in CALORIE_TABLE.items() if food in lowered)
        if total > 0:
            return total
        low, high = DEFAULT_CALORIE_RANGE
        return self._rng.randint(low, high)


__all__ = [
    "CALORIE_TABLE",
    "FeedbackGenerator",
    "FeedbackResult",
    "KeywordFeedbackGenerator",
    "determine_log_type",
    "extract_keywords",
    "is_successful",
]
