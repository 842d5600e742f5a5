"""Shared kernel value objects."""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP


def round_half_up(value: float) -> int:
    """Round to the nearest integer with .5 going away from zero."""
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class WordCount:
    value: int

    def __post_init__(self) -> None:
        if self.value < 0:
            raise ValueError("Word count cannot be negative")

    @classmethod
    def of(cls, text: str) -> "WordCount":
        return cls(len((text or "").split()))


@dataclass(frozen=True)
class ToleranceBand:
    """Inclusive word-count band around a revision target."""

    target: int
    tolerance_percent: float
    min_acceptable: int
    max_acceptable: int

    def __post_init__(self) -> None:
        if self.min_acceptable > self.max_acceptable:
            raise ValueError("Tolerance band is inverted")

    @classmethod
    def around(cls, target: int, tolerance_percent: float) -> "ToleranceBand":
        if target <= 0:
            raise ValueError("Target word count must be positive")
        if not 0 <= tolerance_percent < 100:
            raise ValueError("Tolerance percent must be in [0, 100)")
        ratio = tolerance_percent / 100
        return cls(
            target=target,
            tolerance_percent=tolerance_percent,
            min_acceptable=round_half_up(target * (1 - ratio)),
            max_acceptable=round_half_up(target * (1 + ratio)),
        )

    def classify(self, word_count: int) -> str:
        if word_count < self.min_acceptable:
            return "under_target"
        if word_count > self.max_acceptable:
            return "over_target"
        return "within_tolerance"

    def contains(self, word_count: int) -> bool:
        return self.min_acceptable <= word_count <= self.max_acceptable
