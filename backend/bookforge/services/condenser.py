"""AI chapter condensation used by word-count revisions."""
from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from bookforge.core.config import Settings
from bookforge.schemas.quality import ChapterIssues
from bookforge.schemas.revision import CondensationResult
from bookforge.services.llm_client import LLMClient
from bookforge.shared_kernel.exceptions import MalformedResponseError

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def extract_json_object(text: str) -> Dict[str, Any]:
    """Parse the first JSON object in a model reply, tolerating code fences and chatter."""
    if not text or not text.strip():
        raise MalformedResponseError("Empty response from model")
    cleaned = _FENCE_RE.sub("", text.strip())
    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError:
        start = cleaned.find("{")
        end = cleaned.rfind("}")
        if start == -1 or end <= start:
            raise MalformedResponseError("No JSON object found in model response") from None
        try:
            payload = json.loads(cleaned[start:end + 1])
        except json.JSONDecodeError as exc:
            raise MalformedResponseError(f"Invalid JSON in model response: {exc.msg}") from exc
    if not isinstance(payload, dict):
        raise MalformedResponseError("Model response is not a JSON object")
    return payload


def _issue_context(issues: Optional[ChapterIssues]) -> str:
    if issues is None:
        return ""
    lines: List[str] = ["KNOWN ISSUES TO ADDRESS (from editorial analysis):"]
    if issues.scene_purpose is not None:
        if issues.scene_purpose.earned:
            lines.append("- Scene purpose: earned")
        else:
            lines.append(f"- Scene purpose: NOT EARNED - {issues.scene_purpose.reasoning}")
    if issues.exposition_issues:
        lines.append("- Exposition issues:")
        lines.extend(
            f'  * {item.issue}: "{item.quote}" - {item.suggestion}' for item in issues.exposition_issues
        )
    if issues.pacing_issues:
        lines.append("- Pacing issues:")
        lines.extend(
            f"  * {item.issue} at {item.location}: {item.suggestion}" for item in issues.pacing_issues
        )
    return "\n".join(lines) if len(lines) > 1 else ""


def build_condensation_prompt(
    content: str,
    target_word_count: int,
    reduction_percent: float,
    issues: Optional[ChapterIssues],
    chapter_number: int,
    chapter_title: Optional[str],
) -> List[Dict[str, str]]:
    system = f"""You are a senior editor who reduces word count without losing the story.

Condense this chapter by about {reduction_percent:.1f}% (target: ~{target_word_count} words) while keeping:
- every plot-critical event and revelation
- character development moments
- essential dialogue and voice
- narrative momentum and hooks

{_issue_context(issues)}

Cut first:
1. Telling instead of showing
2. Info dumps
3. Backstory that is not plot-critical
4. Repetitive passages
5. Scenes that do not earn their place
6. Redundant description and stacked modifiers
7. On-the-nose dialogue

Output pure prose only: no markdown, no headers, scene breaks as a blank line.

Reply with a JSON object:
{{
  "condensedContent": "the full condensed chapter",
  "cutsExplanation": [{{"whatWasCut": "...", "why": "...", "wordsRemoved": 150}}],
  "preservedElements": ["..."],
  "wordCount": {target_word_count}
}}"""
    heading = f"Chapter {chapter_number}" + (f": {chapter_title}" if chapter_title else "")
    user = f"Condense this chapter to about {target_word_count} words.\n\n{heading}\n\n{content}"
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": user},
    ]


class ChapterCondenser:
    """Produces a structured condensation of one chapter."""

    def __init__(self, llm_client: LLMClient, settings: Optional[Settings] = None) -> None:
        if settings is None:
            from bookforge.core.config import settings as default_settings

            settings = default_settings
        self.llm_client = llm_client
        self.temperature = settings.REVISION_CONDENSE_TEMPERATURE
        self.max_tokens = settings.CHAPTER_MAX_TOKENS

    async def condense(
        self,
        content: str,
        target_word_count: int,
        reduction_percent: float,
        issues: Optional[ChapterIssues] = None,
        chapter_number: int = 0,
        chapter_title: Optional[str] = None,
    ) -> CondensationResult:
        messages = build_condensation_prompt(
            content, target_word_count, reduction_percent, issues, chapter_number, chapter_title
        )
        response = await self.llm_client.chat(
            messages,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            response_format={"type": "json_object"},
        )
        payload = extract_json_object(response)
        try:
            result = CondensationResult.model_validate(payload)
        except PydanticValidationError as exc:
            logger.warning("Condensation for chapter %s failed validation: %s", chapter_number, exc)
            raise MalformedResponseError(
                "Condensation response failed validation",
                details={"errors": exc.errors(include_url=False)},
            ) from exc
        if not result.condensed_content.strip():
            raise MalformedResponseError("Condensation response has no content")
        return result
