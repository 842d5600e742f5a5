"""
Word-count revision service.

A revision session takes a book from its current length toward a target:
per-chapter targets are computed from length and quality findings, the AI
proposes a condensed version of each chapter, and the user approves or
rejects each proposal. The first approval copies the source version into a
new version; every approval writes into that copy, leaving the source intact.

Session states: calculating -> ready -> in_progress -> completed, with
abandoned reachable from any state but completed.
"""
from __future__ import annotations

from datetime import datetime
import logging
from typing import Callable, List, Optional
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from bookforge.core.config import Settings
from bookforge.infrastructure.event_bus import EventBus
from bookforge.infrastructure.observability.metrics import PROPOSALS_GENERATED_TOTAL
from bookforge.models.chapter import Chapter, ChapterEdit, ChapterStatus
from bookforge.models.revision import (
    ACTIVE_REVISION_STATUSES,
    ChapterReductionProposal,
    ProposalStatus,
    RevisionSession,
    RevisionStatus,
    UserDecision,
)
from bookforge.models.types import utc_now
from bookforge.schemas.quality import QualityFindings
from bookforge.schemas.revision import ChapterTarget, CompletionValidation, RevisionProgress
from bookforge.services import revision_targets
from bookforge.services.book_versioning import BookVersioningService
from bookforge.services.chapter_scope import active_version_id, chapters_in_version
from bookforge.services.condenser import ChapterCondenser
from bookforge.services.quality_signals import EditorialQualitySignals, QualitySignalProvider
from bookforge.shared_kernel.domain_events import ProposalAppliedEvent
from bookforge.shared_kernel.exceptions import (
    EntityNotFoundError,
    ExternalServiceError,
    InvalidStateTransitionError,
    TransientProviderError,
    ValidationError,
)
from bookforge.shared_kernel.value_objects import ToleranceBand, WordCount

logger = logging.getLogger(__name__)

REVISION_EDIT_TYPE = "word_count_revision"
GENERATABLE_STATUSES = (ProposalStatus.PENDING, ProposalStatus.READY, ProposalStatus.ERROR)
REJECTABLE_STATUSES = (ProposalStatus.PENDING, ProposalStatus.READY, ProposalStatus.ERROR)


class RevisionService:
    """Service for word-count revision sessions"""

    def __init__(
        self,
        db: AsyncSession,
        condenser: ChapterCondenser,
        quality_signals: Optional[QualitySignalProvider] = None,
        *,
        event_bus: Optional[EventBus] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if settings is None:
            from bookforge.core.config import settings as default_settings

            settings = default_settings
        self.db = db
        self.condenser = condenser
        self.quality_signals = quality_signals or EditorialQualitySignals()
        self.event_bus = event_bus
        self.settings = settings
        self._clock = clock
        self.versioning = BookVersioningService(db, clock=clock)

    # ------------------------------------------------------------------ reads

    async def get_revision(self, session_id: UUID) -> RevisionSession:
        revision = await self.db.get(RevisionSession, session_id, populate_existing=True)
        if revision is None:
            raise EntityNotFoundError(f"Revision {session_id} not found", details={"revision_id": str(session_id)})
        return revision

    async def get_active_revision(self, book_id: UUID) -> Optional[RevisionSession]:
        return await self.db.scalar(
            select(RevisionSession)
            .where(RevisionSession.book_id == book_id, RevisionSession.status.in_(ACTIVE_REVISION_STATUSES))
            .order_by(RevisionSession.created_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )

    async def get_proposal(self, proposal_id: UUID) -> ChapterReductionProposal:
        proposal = await self.db.get(ChapterReductionProposal, proposal_id, populate_existing=True)
        if proposal is None:
            raise EntityNotFoundError(f"Proposal {proposal_id} not found", details={"proposal_id": str(proposal_id)})
        return proposal

    async def get_proposals(self, session_id: UUID) -> List[ChapterReductionProposal]:
        """Proposals of a session, most cuttable first."""
        result = await self.db.scalars(
            select(ChapterReductionProposal)
            .join(Chapter, Chapter.id == ChapterReductionProposal.chapter_id)
            .where(ChapterReductionProposal.revision_id == session_id)
            .order_by(ChapterReductionProposal.priority_score.desc(), Chapter.chapter_number)
            .execution_options(populate_existing=True)
        )
        return list(result.all())

    # -------------------------------------------------------------- lifecycle

    async def start_revision(
        self,
        book_id: UUID,
        target_word_count: int,
        tolerance_percent: Optional[float] = None,
    ) -> RevisionSession:
        """Start a session for the book, or return the one already running."""
        if tolerance_percent is None:
            tolerance_percent = self.settings.REVISION_DEFAULT_TOLERANCE_PERCENT
        try:
            band = ToleranceBand.around(target_word_count, tolerance_percent)
        except ValueError as exc:
            raise ValidationError(str(exc), details={"target_word_count": target_word_count}) from exc

        try:
            await self.versioning.claim_book(book_id)
            existing = await self.get_active_revision(book_id)
            if existing is not None:
                # Rollback expires loaded rows; keep the id
                existing_id = existing.id
                await self.db.rollback()
                logger.info("Book %s already has revision %s in progress", book_id, existing_id)
                return await self.get_revision(existing_id)

            source_version_id = await active_version_id(self.db, book_id)
            chapters = await self._completed_chapters(book_id, source_version_id)
            if not chapters:
                raise ValidationError(
                    "Book has no completed chapters to revise",
                    details={"book_id": str(book_id)},
                )
            current_word_count = sum(chapter.word_count for chapter in chapters)
            report_id, findings = await self.quality_signals.chapter_issues(self.db, book_id)

            revision = RevisionSession(
                book_id=book_id,
                editorial_report_id=report_id,
                source_version_id=source_version_id,
                current_word_count=current_word_count,
                target_word_count=band.target,
                tolerance_percent=band.tolerance_percent,
                min_acceptable=band.min_acceptable,
                max_acceptable=band.max_acceptable,
                words_to_cut=max(0, current_word_count - band.target),
                status=RevisionStatus.CALCULATING,
                chapters_total=len(chapters),
            )
            self.db.add(revision)
            await self.db.flush()
            await self._store_targets(revision, chapters, findings)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Started revision %s for book %s: %d -> %d words (cut %d across %d chapters)",
            revision.id,
            book_id,
            revision.current_word_count,
            revision.target_word_count,
            revision.words_to_cut,
            revision.chapters_total,
        )
        return await self.get_revision(revision.id)

    async def calculate_chapter_targets(self, session_id: UUID) -> List[ChapterTarget]:
        """Compute and store per-chapter targets for a session still calculating."""
        try:
            revision = await self.get_revision(session_id)
            if revision.status != RevisionStatus.CALCULATING:
                raise InvalidStateTransitionError(
                    f"Revision is {revision.status.value}, targets are already calculated",
                    details={"revision_id": str(session_id)},
                )
            chapters = await self._completed_chapters(revision.book_id, revision.source_version_id)
            _, findings = await self.quality_signals.chapter_issues(self.db, revision.book_id)
            targets = await self._store_targets(revision, chapters, findings)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        return targets

    async def abandon_revision(self, session_id: UUID) -> RevisionSession:
        """Stop the session. Edits already applied stay in the target version."""
        revision = await self.get_revision(session_id)
        if revision.status == RevisionStatus.ABANDONED:
            return revision
        if revision.status == RevisionStatus.COMPLETED:
            raise InvalidStateTransitionError(
                "Cannot abandon a completed revision",
                details={"revision_id": str(session_id)},
            )
        result = await self.db.execute(
            update(RevisionSession)
            .where(RevisionSession.id == session_id, RevisionSession.status.in_(ACTIVE_REVISION_STATUSES))
            .values(status=RevisionStatus.ABANDONED, updated_at=self._clock())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            # Lost a race with the last decision or another abandon
            return await self.abandon_revision(session_id)
        await self.db.commit()
        logger.info("Revision %s abandoned", session_id)
        return await self.get_revision(session_id)

    # -------------------------------------------------------------- proposals

    async def generate_proposal(self, session_id: UUID, chapter_id: UUID) -> ChapterReductionProposal:
        """Ask the AI for a condensed chapter.

        Bad or missing output leaves the proposal in error with a message and
        touches nothing else. A provider rate limit puts the proposal back to
        pending and propagates.
        """
        revision = await self.get_revision(session_id)
        if revision.is_terminal:
            raise InvalidStateTransitionError(
                f"Revision is {revision.status.value}",
                details={"revision_id": str(session_id)},
            )
        proposal = await self.db.scalar(
            select(ChapterReductionProposal).where(
                ChapterReductionProposal.revision_id == session_id,
                ChapterReductionProposal.chapter_id == chapter_id,
            )
        )
        if proposal is None:
            raise EntityNotFoundError(
                f"No proposal for chapter {chapter_id} in revision {session_id}",
                details={"revision_id": str(session_id), "chapter_id": str(chapter_id)},
            )

        proposal_id = proposal.id
        result = await self.db.execute(
            update(ChapterReductionProposal)
            .where(
                ChapterReductionProposal.id == proposal_id,
                ChapterReductionProposal.status.in_(GENERATABLE_STATUSES),
                ChapterReductionProposal.user_decision == UserDecision.PENDING,
            )
            .values(status=ProposalStatus.GENERATING, error_message=None, updated_at=self._clock())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            proposal = await self.get_proposal(proposal_id)
            raise InvalidStateTransitionError(
                f"Proposal is {proposal.status.value} and cannot be generated",
                details={"proposal_id": str(proposal_id)},
            )
        await self.db.commit()

        chapter = await self.db.get(Chapter, chapter_id)
        if chapter is None or not (chapter.content or "").strip():
            PROPOSALS_GENERATED_TOTAL.labels(outcome="error").inc()
            return await self._mark_proposal_error(proposal.id, "Chapter has no content to condense")

        try:
            condensed = await self.condenser.condense(
                chapter.content,
                target_word_count=proposal.target_word_count,
                reduction_percent=proposal.reduction_percent,
                issues=proposal.quality_issues,
                chapter_number=chapter.chapter_number,
                chapter_title=chapter.title,
            )
        except TransientProviderError:
            await self._set_proposal_status(proposal.id, ProposalStatus.PENDING)
            PROPOSALS_GENERATED_TOTAL.labels(outcome="rate_limited").inc()
            raise
        except ExternalServiceError as exc:
            logger.warning("Condensation failed for proposal %s: %s", proposal.id, exc)
            PROPOSALS_GENERATED_TOTAL.labels(outcome="error").inc()
            return await self._mark_proposal_error(proposal.id, str(exc))
        except Exception as exc:
            await self._mark_proposal_error(proposal.id, f"Unexpected error: {exc}")
            PROPOSALS_GENERATED_TOTAL.labels(outcome="error").inc()
            raise

        condensed_word_count = WordCount.of(condensed.condensed_content).value
        await self.db.execute(
            update(ChapterReductionProposal)
            .where(ChapterReductionProposal.id == proposal.id)
            .values(
                status=ProposalStatus.READY,
                condensed_content=condensed.condensed_content,
                condensed_word_count=condensed_word_count,
                actual_reduction=proposal.original_word_count - condensed_word_count,
                cuts_explanation=condensed.cuts_explanation,
                preserved_elements=condensed.preserved_elements,
                generated_at=self._clock(),
                error_message=None,
                updated_at=self._clock(),
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        PROPOSALS_GENERATED_TOTAL.labels(outcome="ready").inc()
        logger.info(
            "Proposal %s ready: %d -> %d words (target %d)",
            proposal.id,
            proposal.original_word_count,
            condensed_word_count,
            proposal.target_word_count,
        )
        return await self.get_proposal(proposal.id)

    async def generate_pending_proposals(self, session_id: UUID) -> List[ChapterReductionProposal]:
        """Generate every pending or failed proposal, most cuttable first."""
        generated = []
        for proposal in await self.get_proposals(session_id):
            if proposal.status not in (ProposalStatus.PENDING, ProposalStatus.ERROR):
                continue
            if proposal.user_decision != UserDecision.PENDING:
                continue
            generated.append(await self.generate_proposal(session_id, proposal.chapter_id))
        return generated

    async def approve_proposal(self, proposal_id: UUID) -> ChapterReductionProposal:
        """Apply a ready proposal to the session's target version.

        Runs in one transaction. The first approval of a session allocates the
        target version and clones the source chapters into it; concurrent
        approvals agree on a single target version through the conditional
        update on the session row.
        """
        try:
            proposal = await self.get_proposal(proposal_id)
            revision = await self.get_revision(proposal.revision_id)
            if revision.is_terminal:
                raise InvalidStateTransitionError(
                    f"Revision is {revision.status.value}",
                    details={"revision_id": str(revision.id)},
                )
            now = self._clock()
            result = await self.db.execute(
                update(ChapterReductionProposal)
                .where(
                    ChapterReductionProposal.id == proposal_id,
                    ChapterReductionProposal.status == ProposalStatus.READY,
                    ChapterReductionProposal.condensed_content.is_not(None),
                )
                .values(
                    status=ProposalStatus.APPLIED,
                    user_decision=UserDecision.APPROVED,
                    decision_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise InvalidStateTransitionError(
                    f"Proposal is {proposal.status.value}, only ready proposals can be approved",
                    details={"proposal_id": str(proposal_id)},
                )

            target_version_id = await self._ensure_target_version(revision)
            source_chapter = await self.db.get(Chapter, proposal.chapter_id)
            target_chapter = await self.db.scalar(
                select(Chapter).where(
                    Chapter.version_id == target_version_id,
                    Chapter.chapter_number == source_chapter.chapter_number,
                )
            )
            if target_chapter is None:
                raise EntityNotFoundError(
                    f"Chapter {source_chapter.chapter_number} missing from version {target_version_id}",
                    details={"version_id": str(target_version_id)},
                )

            await self.db.execute(
                update(Chapter)
                .where(Chapter.id == target_chapter.id)
                .values(
                    content=proposal.condensed_content,
                    word_count=proposal.condensed_word_count,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            self.db.add(
                ChapterEdit(
                    chapter_id=target_chapter.id,
                    version_id=target_version_id,
                    edit_type=REVISION_EDIT_TYPE,
                    edited_content=proposal.condensed_content,
                    word_count=proposal.condensed_word_count,
                    notes=(
                        f"Condensed from {proposal.original_word_count} to "
                        f"{proposal.condensed_word_count} words"
                    ),
                    created_at=now,
                )
            )
            await self.db.flush()
            await self._recompute_progress(revision.id)
            await self.versioning.update_version_stats(target_version_id, commit=False)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info("Applied proposal %s to version %s", proposal_id, target_version_id)
        if self.event_bus is not None:
            await self.event_bus.publish(
                ProposalAppliedEvent(
                    revision_id=revision.id,
                    proposal_id=proposal_id,
                    chapter_number=source_chapter.chapter_number,
                    words_removed=proposal.actual_reduction or 0,
                )
            )
        return await self.get_proposal(proposal_id)

    async def reject_proposal(self, proposal_id: UUID, notes: Optional[str] = None) -> ChapterReductionProposal:
        """Reject a proposal. It counts as reviewed; no content changes."""
        try:
            proposal = await self.get_proposal(proposal_id)
            revision = await self.get_revision(proposal.revision_id)
            if revision.is_terminal:
                raise InvalidStateTransitionError(
                    f"Revision is {revision.status.value}",
                    details={"revision_id": str(revision.id)},
                )
            now = self._clock()
            result = await self.db.execute(
                update(ChapterReductionProposal)
                .where(
                    ChapterReductionProposal.id == proposal_id,
                    ChapterReductionProposal.user_decision == UserDecision.PENDING,
                    ChapterReductionProposal.status.in_(REJECTABLE_STATUSES),
                )
                .values(
                    status=ProposalStatus.REJECTED,
                    user_decision=UserDecision.REJECTED,
                    user_notes=notes,
                    decision_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise InvalidStateTransitionError(
                    f"Proposal is {proposal.status.value} and cannot be rejected",
                    details={"proposal_id": str(proposal_id)},
                )
            await self._recompute_progress(revision.id)
            target_version_id = await self.db.scalar(
                select(RevisionSession.target_version_id).where(RevisionSession.id == revision.id)
            )
            if target_version_id is not None:
                await self.versioning.update_version_stats(target_version_id, commit=False)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        logger.info("Rejected proposal %s", proposal_id)
        return await self.get_proposal(proposal_id)

    # --------------------------------------------------------------- progress

    async def get_progress(self, session_id: UUID) -> RevisionProgress:
        revision = await self.get_revision(session_id)
        band = self._band(revision)
        current = revision.current_word_count - revision.words_cut_so_far
        if revision.chapters_total:
            percent_complete = round(revision.chapters_reviewed / revision.chapters_total * 100, 1)
        else:
            percent_complete = 100.0
        return RevisionProgress(
            revision_id=revision.id,
            status=revision.status.value,
            original_word_count=revision.current_word_count,
            current_word_count=current,
            target_word_count=revision.target_word_count,
            min_acceptable=revision.min_acceptable,
            max_acceptable=revision.max_acceptable,
            words_cut_so_far=revision.words_cut_so_far,
            words_remaining_to_cut=max(0, revision.words_to_cut - revision.words_cut_so_far),
            percent_complete=percent_complete,
            chapters_reviewed=revision.chapters_reviewed,
            chapters_total=revision.chapters_total,
            is_within_tolerance=band.contains(current),
        )

    async def validate_completion(self, session_id: UUID) -> CompletionValidation:
        revision = await self.get_revision(session_id)
        band = self._band(revision)
        current = revision.current_word_count - revision.words_cut_so_far
        status = band.classify(current)
        messages = {
            "under_target": f"{current} words is below the minimum of {band.min_acceptable}",
            "over_target": f"{current} words is above the maximum of {band.max_acceptable}",
            "within_tolerance": f"{current} words is within {band.min_acceptable}-{band.max_acceptable}",
        }
        return CompletionValidation(
            is_valid=status == "within_tolerance",
            status=status,
            current_word_count=current,
            min_acceptable=band.min_acceptable,
            max_acceptable=band.max_acceptable,
            message=messages[status],
        )

    # ---------------------------------------------------------------- helpers

    async def _completed_chapters(self, book_id: UUID, version_id: Optional[UUID]) -> List[Chapter]:
        chapters = (await self.db.scalars(chapters_in_version(book_id, version_id))).all()
        return [chapter for chapter in chapters if chapter.status == ChapterStatus.COMPLETED]

    def _chapter_targets(
        self,
        chapters: List[Chapter],
        words_to_cut: int,
        findings: QualityFindings,
    ) -> List[ChapterTarget]:
        total = sum(chapter.word_count for chapter in chapters)
        targets = []
        for chapter in chapters:
            issues = findings.for_chapter(chapter.id, chapter.chapter_number)
            score = revision_targets.calculate_priority_score(issues)
            target = revision_targets.chapter_target_word_count(
                chapter.word_count,
                words_to_cut,
                total,
                score,
                max_cut_ratio=self.settings.REVISION_MAX_CHAPTER_CUT_RATIO,
            )
            targets.append(
                ChapterTarget(
                    chapter_id=chapter.id,
                    chapter_number=chapter.chapter_number,
                    original_word_count=chapter.word_count,
                    target_word_count=target,
                    reduction_percent=round(revision_targets.reduction_percent(chapter.word_count, target), 2),
                    priority_score=score,
                    issues=issues,
                )
            )
        return targets

    async def _store_targets(
        self,
        revision: RevisionSession,
        chapters: List[Chapter],
        findings: QualityFindings,
    ) -> List[ChapterTarget]:
        targets = self._chapter_targets(chapters, revision.words_to_cut, findings)
        for target in targets:
            self.db.add(
                ChapterReductionProposal(
                    revision_id=revision.id,
                    chapter_id=target.chapter_id,
                    original_word_count=target.original_word_count,
                    target_word_count=target.target_word_count,
                    reduction_percent=target.reduction_percent,
                    priority_score=target.priority_score,
                    quality_issues=target.issues,
                    status=ProposalStatus.PENDING,
                    user_decision=UserDecision.PENDING,
                )
            )
        revision.chapters_total = len(targets)
        revision.status = RevisionStatus.READY
        await self.db.flush()
        return targets

    async def _ensure_target_version(self, revision: RevisionSession) -> UUID:
        """Return the session's target version, creating it on the first approval."""
        now = self._clock()
        claimed = await self.db.execute(
            update(RevisionSession)
            .where(RevisionSession.id == revision.id, RevisionSession.target_version_id.is_(None))
            .values(updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount == 1:
            version = await self.versioning.allocate_version(
                revision.book_id,
                name=f"Editorial Revision {now:%d/%m/%Y}",
                auto_created=True,
            )
            await self.versioning.clone_chapters(revision.book_id, revision.source_version_id, version.id)
            await self.db.execute(
                update(RevisionSession)
                .where(RevisionSession.id == revision.id)
                .values(target_version_id=version.id)
                .execution_options(synchronize_session=False)
            )
            logger.info("Revision %s writes into new version %s", revision.id, version.id)
            return version.id
        return await self.db.scalar(
            select(RevisionSession.target_version_id).where(RevisionSession.id == revision.id)
        )

    async def _recompute_progress(self, session_id: UUID) -> None:
        reviewed = await self.db.scalar(
            select(func.count(ChapterReductionProposal.id)).where(
                ChapterReductionProposal.revision_id == session_id,
                ChapterReductionProposal.user_decision != UserDecision.PENDING,
            )
        )
        words_cut = await self.db.scalar(
            select(func.coalesce(func.sum(ChapterReductionProposal.actual_reduction), 0)).where(
                ChapterReductionProposal.revision_id == session_id,
                ChapterReductionProposal.status == ProposalStatus.APPLIED,
            )
        )
        total = await self.db.scalar(
            select(RevisionSession.chapters_total).where(RevisionSession.id == session_id)
        )
        now = self._clock()
        values = {"chapters_reviewed": reviewed, "words_cut_so_far": words_cut, "updated_at": now}
        if reviewed >= total:
            values.update(status=RevisionStatus.COMPLETED, completed_at=now)
        else:
            values.update(status=RevisionStatus.IN_PROGRESS)
        await self.db.execute(
            update(RevisionSession)
            .where(RevisionSession.id == session_id, RevisionSession.status.in_(ACTIVE_REVISION_STATUSES))
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    async def _set_proposal_status(self, proposal_id: UUID, status: ProposalStatus) -> None:
        await self.db.execute(
            update(ChapterReductionProposal)
            .where(ChapterReductionProposal.id == proposal_id)
            .values(status=status, updated_at=self._clock())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    async def _mark_proposal_error(self, proposal_id: UUID, message: str) -> ChapterReductionProposal:
        await self.db.execute(
            update(ChapterReductionProposal)
            .where(ChapterReductionProposal.id == proposal_id)
            .values(status=ProposalStatus.ERROR, error_message=message, updated_at=self._clock())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return await self.get_proposal(proposal_id)

    @staticmethod
    def _band(revision: RevisionSession) -> ToleranceBand:
        return ToleranceBand(
            target=revision.target_word_count,
            tolerance_percent=revision.tolerance_percent,
            min_acceptable=revision.min_acceptable,
            max_acceptable=revision.max_acceptable,
        )
