import json

import pytest

from bookforge.schemas.quality import ChapterIssues, PacingIssue, ScenePurpose
from bookforge.services.condenser import ChapterCondenser, build_condensation_prompt, extract_json_object
from bookforge.shared_kernel.exceptions import MalformedResponseError, RateLimitError

from conftest import FakeLLMClient


def condensed_reply(content="Shorter prose.", **extra):
    payload = {
        "condensedContent": content,
        "cutsExplanation": [{"whatWasCut": "Harbour description", "why": "Redundant", "wordsRemoved": 40}],
        "preservedElements": ["The betrayal"],
        "wordCount": 2,
    }
    payload.update(extra)
    return json.dumps(payload)


def test_extract_json_object_handles_fences_and_chatter():
    assert extract_json_object('```json\n{"a": 1}\n```') == {"a": 1}
    assert extract_json_object('Sure! {"a": {"b": 2}} Hope this helps.') == {"a": {"b": 2}}


@pytest.mark.parametrize("reply", ["", "   ", "no braces at all", "[1, 2, 3]", "{broken json"])
def test_extract_json_object_rejects_bad_replies(reply):
    with pytest.raises(MalformedResponseError):
        extract_json_object(reply)


def test_prompt_mentions_target_and_known_issues():
    issues = ChapterIssues(
        scene_purpose=ScenePurpose(earned=False, reasoning="Nothing changes"),
        pacing_issues=[PacingIssue(issue="too_slow", location="opening", suggestion="Start in the storm")],
    )

    messages = build_condensation_prompt("Once upon a time.", 417, 16.6, issues, 1, "The Storm")

    system, user = messages[0]["content"], messages[1]["content"]
    assert "16.6%" in system
    assert "~417 words" in system
    assert "NOT EARNED - Nothing changes" in system
    assert "too_slow at opening: Start in the storm" in system
    assert "Chapter 1: The Storm" in user
    assert user.endswith("Once upon a time.")


def test_prompt_without_issues_has_no_issue_block():
    messages = build_condensation_prompt("Text.", 100, 10.0, None, 2, None)

    assert "KNOWN ISSUES" not in messages[0]["content"]
    assert "Chapter 2\n" in messages[1]["content"]


@pytest.mark.asyncio
async def test_condense_parses_structured_reply(settings):
    llm = FakeLLMClient([condensed_reply()])
    condenser = ChapterCondenser(llm, settings)

    result = await condenser.condense("A long chapter.", target_word_count=2, reduction_percent=50.0, chapter_number=3)

    assert result.condensed_content == "Shorter prose."
    assert result.cuts_explanation[0].what_was_cut == "Harbour description"
    assert result.cuts_explanation[0].words_removed == 40
    assert result.preserved_elements == ["The betrayal"]
    call = llm.calls[0]
    assert call["response_format"] == {"type": "json_object"}
    assert call["temperature"] == settings.REVISION_CONDENSE_TEMPERATURE


@pytest.mark.asyncio
async def test_condense_rejects_missing_content(settings):
    condenser = ChapterCondenser(FakeLLMClient([json.dumps({"cutsExplanation": []})]), settings)

    with pytest.raises(MalformedResponseError):
        await condenser.condense("A long chapter.", target_word_count=2, reduction_percent=50.0)


@pytest.mark.asyncio
async def test_condense_rejects_blank_content(settings):
    condenser = ChapterCondenser(FakeLLMClient([condensed_reply(content="   ")]), settings)

    with pytest.raises(MalformedResponseError):
        await condenser.condense("A long chapter.", target_word_count=2, reduction_percent=50.0)


@pytest.mark.asyncio
async def test_condense_propagates_rate_limit(settings):
    condenser = ChapterCondenser(FakeLLMClient([RateLimitError("slow down")]), settings)

    with pytest.raises(RateLimitError):
        await condenser.condense("A long chapter.", target_word_count=2, reduction_percent=50.0)
