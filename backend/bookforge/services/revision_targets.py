"""Per-chapter reduction targets for word-count revisions.

Higher priority means more cuttable. A chapter's share of the cut is
proportional to its length, scaled by its priority, and never exceeds the
maximum cut ratio of the chapter.
"""
from __future__ import annotations

from typing import Optional

from bookforge.schemas.quality import ChapterIssues
from bookforge.shared_kernel.value_objects import round_half_up

NEUTRAL_PRIORITY = 50
SCENE_NOT_EARNED_POINTS = 30
EXPOSITION_POINTS_PER_ISSUE = 5
EXPOSITION_MAX_POINTS = 25
PACING_POINTS = {
    "no_plot_advancement": 10,
    "too_slow": 8,
    "repetitive": 7,
}
PACING_DEFAULT_POINTS = 5
ISSUE_SCORE_CAP = 80
MIN_PRIORITY = 20
DEFAULT_MAX_CUT_RATIO = 0.3


def calculate_priority_score(issues: Optional[ChapterIssues]) -> int:
    if issues is None:
        return NEUTRAL_PRIORITY

    score = 0
    if issues.scene_purpose is not None and not issues.scene_purpose.earned:
        score += SCENE_NOT_EARNED_POINTS
    score += min(EXPOSITION_MAX_POINTS, len(issues.exposition_issues) * EXPOSITION_POINTS_PER_ISSUE)
    for pacing in issues.pacing_issues:
        score += PACING_POINTS.get(pacing.issue, PACING_DEFAULT_POINTS)

    score = min(score, ISSUE_SCORE_CAP)
    score = max(MIN_PRIORITY, score)
    return max(0, min(100, score))


def priority_multiplier(priority_score: int) -> float:
    """Map [0, 100] onto [0.75, 1.25], centred on the neutral score."""
    return 1 + (priority_score - NEUTRAL_PRIORITY) / 200


def proportional_cut(word_count: int, words_to_cut: int, total_word_count: int) -> int:
    if total_word_count <= 0 or words_to_cut <= 0:
        return 0
    return round_half_up(word_count * words_to_cut / total_word_count)


def chapter_target_word_count(
    word_count: int,
    words_to_cut: int,
    total_word_count: int,
    priority_score: int,
    max_cut_ratio: float = DEFAULT_MAX_CUT_RATIO,
) -> int:
    base = proportional_cut(word_count, words_to_cut, total_word_count)
    adjusted = round_half_up(base * priority_multiplier(priority_score))
    floor = round_half_up(word_count * (1 - max_cut_ratio))
    return min(word_count, max(floor, word_count - adjusted))


def reduction_percent(original_word_count: int, target_word_count: int) -> float:
    if original_word_count <= 0:
        return 0.0
    return (original_word_count - target_word_count) / original_word_count * 100
