from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Set

from loguru import logger

from .config import MatchingConfig, TitleMatchPolicy
from .exact_match import DeterministicMatcher, IdentifierMatch
from .pipeline_types import (
    MatchCandidate,
    MatchType,
    RawImportItem,
    ReviewStatus,
    RowState,
    TitleMatch,
)
from .ports import ActivitySink, CatalogLookup, ProgressReporter
from .resilience import CancelToken
from .title_match import FuzzyTitleMatcher, decide

ACTIVITY_ENTITY = "CSV_Import"
ACTIVITY_EVENT = "CSV_MATCHING_COMPLETED"

PROGRESS_START = 5
PROGRESS_LOADED = 10
PROGRESS_ROWS_SPAN = 80
PROGRESS_ROWS_MAX = 90
PROGRESS_SUMMARY = 95
PROGRESS_DONE = 100

_MATCHED_STATES = {RowState.SKU_HIT, RowState.BARCODE_HIT, RowState.TITLE_HIT}


def review_status(confidence: float, policy: TitleMatchPolicy) -> ReviewStatus:
    if confidence > policy.auto_match_above:
        return ReviewStatus.AUTO_MATCHED
    if confidence > policy.review_above:
        return ReviewStatus.NEEDS_REVIEW
    return ReviewStatus.NO_MATCH


def match_data(item: RawImportItem, canonical_title: Optional[str] = None, canonical_sku: Optional[str] = None) -> Dict[str, Optional[str]]:
    return {
        "rawTitle": item.title,
        "rawSku": item.sku,
        "rawBarcode": item.barcode,
        "canonicalTitle": canonical_title,
        "canonicalSku": canonical_sku,
    }


@dataclass
class RowResult:
    item_id: str
    state: RowState
    candidates: List[MatchCandidate]
    error: Optional[str] = None


@dataclass
class BatchResult:
    job_id: str
    total: int
    processed: int = 0
    matched: int = 0
    ambiguous: int = 0
    no_match: int = 0
    errored: int = 0
    cancelled: bool = False
    rows: List[RowResult] = field(default_factory=list)

    @property
    def candidates(self) -> List[MatchCandidate]:
        return [c for row in self.rows for c in row.candidates]

    def add(self, row: RowResult) -> None:
        self.rows.append(row)
        self.processed += 1
        if row.state in _MATCHED_STATES:
            self.matched += 1
        elif row.state == RowState.AMBIGUOUS:
            self.ambiguous += 1
        else:
            self.no_match += 1
        if row.error is not None:
            self.errored += 1

    def summary(self) -> Dict[str, object]:
        return {
            "processed": self.processed,
            "matched": self.matched,
            "ambiguous": self.ambiguous,
            "noMatch": self.no_match,
            "errored": self.errored,
            "totalItems": self.total,
            "cancelled": self.cancelled,
        }


class BatchMatcher:
    """
    SKU -> barcode -> fuzzy title -> NONE cascade over imported rows.

    Rows are processed in insertion order, in sub-batches of
    `config.batch.sub_batch_size`. A failing row becomes a NONE
    placeholder carrying the error; it never stops the batch.
    """

    def __init__(
        self,
        catalog: CatalogLookup,
        config: Optional[MatchingConfig] = None,
        activity: Optional[ActivitySink] = None,
        progress: Optional[ProgressReporter] = None,
    ):
        self.config = config or MatchingConfig()
        self.policy = self.config.title_match
        self.exact = DeterministicMatcher(catalog, self.policy, self.config.calls)
        self.fuzzy = FuzzyTitleMatcher(catalog, self.policy, self.config.calls)
        self.activity = activity
        self.progress = progress
        self._last_percent = 0

    # ---------------------------
    # Per-row cascade
    # ---------------------------

    def _identifier_candidate(self, item: RawImportItem, hit: IdentifierMatch) -> MatchCandidate:
        return MatchCandidate(
            item_id=item.item_id,
            variant_id=hit.variant.variant_id,
            match_type=hit.match_type,
            confidence=hit.confidence,
            status=review_status(hit.confidence, self.policy),
            match_data=match_data(item, hit.variant.title, hit.variant.sku),
        )

    def _title_candidate(self, item: RawImportItem, m: TitleMatch) -> MatchCandidate:
        return MatchCandidate(
            item_id=item.item_id,
            variant_id=m.variant.variant_id,
            match_type=MatchType.TITLE,
            confidence=m.similarity,
            status=review_status(m.similarity, self.policy),
            match_data=match_data(item, m.variant.title, m.variant.sku),
        )

    def _none_candidate(self, item: RawImportItem, explanation: Optional[str] = None) -> MatchCandidate:
        return MatchCandidate(
            item_id=item.item_id,
            variant_id=None,
            match_type=MatchType.NONE,
            confidence=0.0,
            status=ReviewStatus.NO_MATCH,
            match_data=match_data(item),
            explanation=explanation,
        )

    async def match_row(self, item: RawImportItem) -> RowResult:
        ident = await self.exact.match(item.scope, sku=item.sku, barcode=item.barcode)
        hit = ident.hit
        if hit is not None:
            state = RowState.SKU_HIT if hit.match_type == MatchType.SKU else RowState.BARCODE_HIT
            return RowResult(item.item_id, state, [self._identifier_candidate(item, hit)])

        if item.title:
            lookup = await self.fuzzy.find(item.scope, item.title)
            decision = decide(lookup.matches, self.policy)
            if decision.state != RowState.NO_MATCH:
                return RowResult(
                    item.item_id,
                    decision.state,
                    [self._title_candidate(item, m) for m in decision.matches],
                )
            if not lookup.outcome.is_ok:
                explanation = f"Title lookup unavailable: {lookup.outcome.error}"
                return RowResult(item.item_id, RowState.NO_MATCH, [self._none_candidate(item, explanation)])

        if not ident.outcome.is_ok:
            explanation = f"Identifier lookup unavailable: {ident.outcome.error}"
            return RowResult(item.item_id, RowState.NO_MATCH, [self._none_candidate(item, explanation)])

        return RowResult(item.item_id, RowState.NO_MATCH, [self._none_candidate(item)])

    async def _safe_match_row(self, item: RawImportItem, tag: str) -> RowResult:
        try:
            return await self.match_row(item)
        except Exception as e:
            logger.warning("{} row {} failed: {}", tag, item.item_id, e)
            return RowResult(
                item.item_id,
                RowState.NO_MATCH,
                [self._none_candidate(item, f"Matching failed: {e}")],
                error=str(e),
            )

    # ---------------------------
    # Progress / activity
    # ---------------------------

    async def _report(self, percent: int, message: str) -> None:
        percent = max(self._last_percent, min(PROGRESS_DONE, int(percent)))
        self._last_percent = percent
        if self.progress is None:
            return
        try:
            await self.progress.report(percent, message)
        except Exception as e:
            logger.warning("Progress reporter failed at {}%: {}", percent, e)

    async def _record_summary(self, scope: str, result: BatchResult) -> None:
        if self.activity is None:
            return
        details = {"jobId": result.job_id, **result.summary()}
        try:
            await self.activity.record(scope, ACTIVITY_ENTITY, ACTIVITY_EVENT, details)
        except Exception as e:
            logger.warning("Failed to record batch summary for {}: {}", result.job_id, e)

    # ---------------------------
    # Batch driver
    # ---------------------------

    async def run(
        self,
        items: Sequence[RawImportItem],
        scope: str,
        job_id: Optional[str] = None,
        cancel: Optional[CancelToken] = None,
    ) -> BatchResult:
        job_id = job_id or f"match_{uuid.uuid4().hex[:12]}"
        tag = f"[batch:{job_id}]"
        self._last_percent = 0

        await self._report(PROGRESS_START, "Starting product matching")

        seen: Set[str] = set()
        queue: List[RawImportItem] = []
        for item in items:
            if item.item_id in seen:
                logger.warning("{} duplicate row id {} skipped", tag, item.item_id)
                continue
            seen.add(item.item_id)
            queue.append(item)

        result = BatchResult(job_id=job_id, total=len(queue))
        await self._report(PROGRESS_LOADED, f"Found {len(queue)} items to match")
        logger.info("{} matching {} rows for scope {}", tag, len(queue), scope)

        size = self.config.batch.sub_batch_size
        for start in range(0, len(queue), size):
            for item in queue[start:start + size]:
                if cancel is not None and cancel.cancelled:
                    result.cancelled = True
                    break
                row = await self._safe_match_row(item, tag)
                result.add(row)
                pct = PROGRESS_LOADED + (result.processed / max(result.total, 1)) * PROGRESS_ROWS_SPAN
                await self._report(
                    min(PROGRESS_ROWS_MAX, int(pct)),
                    f"Processed {result.processed}/{result.total} items. "
                    f"Matched: {result.matched}, Ambiguous: {result.ambiguous}",
                )
            if result.cancelled:
                logger.warning(
                    "{} cancelled after {}/{} rows ({})",
                    tag,
                    result.processed,
                    result.total,
                    cancel.reason if cancel is not None else "",
                )
                break

        await self._report(PROGRESS_SUMMARY, "Recording matching summary")
        await self._record_summary(scope, result)
        await self._report(PROGRESS_DONE, "Completed" if not result.cancelled else "Cancelled")

        logger.info(
            "{} done: processed={} matched={} ambiguous={} no_match={} errored={}",
            tag,
            result.processed,
            result.matched,
            result.ambiguous,
            result.no_match,
            result.errored,
        )
        return result


async def match_items(
    items: Sequence[RawImportItem],
    catalog: CatalogLookup,
    scope: str,
    config: Optional[MatchingConfig] = None,
    activity: Optional[ActivitySink] = None,
    progress: Optional[ProgressReporter] = None,
    cancel: Optional[CancelToken] = None,
) -> BatchResult:
    matcher = BatchMatcher(catalog, config=config, activity=activity, progress=progress)
    return await matcher.run(items, scope, cancel=cancel)
