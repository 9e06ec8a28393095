from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, TypeVar

from loguru import logger

from .config import MatchingConfig
from .embed_fusion import fuse
from .feedback import InteractionLog
from .payloads import candidates_from_search
from .pipeline_types import (
    Candidate,
    CollaboratorError,
    ConfidenceTier,
    InputError,
    MatchingError,
    Outcome,
    RankedCandidate,
    SourceKind,
    Stage,
    StageOrderError,
    StageStatus,
    SystemAction,
)
from .ports import ContentGenerator, EmbeddingProvider, ExternalSearch, ImageInput, PageFetcher
from .rerank import ScoreFusionReranker, order_and_rank
from .resilience import CancelToken, guarded_call
from .retrieval import SearchResult, SimilaritySearch, build_filter
from .routing import explain_score, system_action
from .session_store import (
    InMemorySessionStore,
    OrchestratorSession,
    SessionStore,
    SourceMatch,
    SourceRecognition,
)

T = TypeVar("T")

NEXT_GENERATE = "generate"
NEXT_MATCH = "match"
NEXT_MANUAL = "manual"

ACTION_PROCEED = "proceed_to_generate"
ACTION_REVIEW = "manual_review"
ACTION_EXTERNAL = "external_search"

USER_SELECTED_EXPLANATION = "Selected by user"
USER_REJECTED_REASONING = "All candidates rejected by user"


@dataclass(frozen=True)
class SourceSelection:
    """A user's explicit decision for one source; bypasses scoring."""

    selected_index: Optional[int] = None
    rejected: bool = False


@dataclass(frozen=True)
class SourceSpec:
    index: int
    kind: SourceKind
    value: Any

    @property
    def reference(self) -> str:
        if isinstance(self.value, (bytes, bytearray)):
            return f"image[{self.index}]"
        return str(self.value)


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def plan_sources(
    images: Sequence[ImageInput] = (),
    links: Sequence[str] = (),
    text_query: Optional[str] = None,
) -> List[SourceSpec]:
    """Images first, then links; the text query is a source of its own only when there is nothing else."""
    specs: List[SourceSpec] = []
    for image in images:
        specs.append(SourceSpec(len(specs), SourceKind.IMAGE, image))
    for link in links:
        specs.append(SourceSpec(len(specs), SourceKind.LINK, link))
    if not specs and text_query and text_query.strip():
        specs.append(SourceSpec(0, SourceKind.TEXT, text_query.strip()))
    if not specs:
        raise InputError("At least one image, link or text query is required")
    return specs


def build_search_query(text: Optional[str], target_sites: Sequence[str] = ()) -> str:
    query = (text or "").strip() or "product"
    if target_sites:
        query += " (" + " OR ".join(f"site:{s}" for s in target_sites) + ")"
    return query


def build_query_from_source(recognition: SourceRecognition, target_sites: Sequence[str] = ()) -> str:
    candidates = recognition.all_candidates
    base = candidates[0].title if candidates and candidates[0].title else "product search"
    if target_sites:
        return f"{base} from {', '.join(target_sites)}"
    return base


def source_confidence(
    candidates: Sequence[Candidate],
    external: Sequence[Candidate],
    high: float,
    medium: float,
) -> ConfidenceTier:
    top = candidates[0].score if candidates else 0.0
    if top >= high:
        return ConfidenceTier.HIGH
    if top >= medium:
        return ConfidenceTier.MEDIUM
    if external:
        return ConfidenceTier.MEDIUM
    return ConfidenceTier.LOW


def recommend_next_stage(tiers: Sequence[ConfidenceTier], share: float = 0.7) -> str:
    if not tiers:
        return NEXT_MANUAL
    if all(t == ConfidenceTier.HIGH for t in tiers):
        return NEXT_GENERATE
    strong = sum(1 for t in tiers if t in (ConfidenceTier.HIGH, ConfidenceTier.MEDIUM))
    if strong / len(tiers) >= share:
        return NEXT_MATCH
    return NEXT_MANUAL


def overall_match_confidence(tiers: Sequence[ConfidenceTier], share: float = 0.7) -> Tuple[ConfidenceTier, str]:
    if tiers and all(t == ConfidenceTier.HIGH for t in tiers):
        return ConfidenceTier.HIGH, ACTION_PROCEED
    high = sum(1 for t in tiers if t == ConfidenceTier.HIGH)
    if tiers and high / len(tiers) >= share:
        return ConfidenceTier.MEDIUM, ACTION_REVIEW
    return ConfidenceTier.LOW, ACTION_EXTERNAL


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class RecognitionOrchestrator:
    """
    recognize -> match -> generate -> completed, one session per request.

    Sources are processed concurrently (bounded) and always reported in
    source order. A failing source is reported at low confidence with its
    error; it never fails the session. Stage calls out of order raise
    StageOrderError.
    """

    def __init__(
        self,
        embedder: EmbeddingProvider,
        search: SimilaritySearch,
        reranker: Optional[ScoreFusionReranker] = None,
        external: Optional[ExternalSearch] = None,
        fetcher: Optional[PageFetcher] = None,
        generator: Optional[ContentGenerator] = None,
        store: Optional[SessionStore] = None,
        config: Optional[MatchingConfig] = None,
        interactions: Optional[InteractionLog] = None,
    ):
        self.config = config or MatchingConfig()
        self.embedder = embedder
        self.search = search
        self.reranker = reranker or ScoreFusionReranker(None, self.config)
        self.external = external
        self.fetcher = fetcher
        self.generator = generator
        self.store = store or InMemorySessionStore(
            max_age=timedelta(hours=self.config.session.max_age_hours),
            checkpoint_path=self.config.session.checkpoint_path,
        )
        self.interactions = interactions

    # ---------------------------
    # Concurrency plumbing
    # ---------------------------

    async def _bounded(
        self,
        jobs: Sequence[Tuple[int, Callable[[], Awaitable[T]]]],
    ) -> List[T]:
        """Run jobs concurrently (bounded); results come back ordered by source index."""
        sem = asyncio.Semaphore(self.config.session.max_concurrency)

        async def _run(job: Callable[[], Awaitable[T]]) -> T:
            async with sem:
                return await job()

        results = await asyncio.gather(*[_run(job) for _, job in jobs])
        order = [idx for idx, _ in jobs]
        return [r for _, r in sorted(zip(order, results), key=lambda t: t[0])]

    async def _embed_text(self, text: str) -> Any:
        return await guarded_call("embedding", lambda: self.embedder.embed_text(text), self.config.calls)

    async def _embed_image(self, image: ImageInput) -> Any:
        return await guarded_call("embedding", lambda: self.embedder.embed_image(image), self.config.calls)

    async def _external_search(self, text: Optional[str], target_sites: Sequence[str]) -> List[Candidate]:
        if self.external is None:
            return []
        query = build_search_query(text, target_sites)
        limit = self.config.search.external_result_limit
        try:
            results = await guarded_call("external_search", lambda: self.external.search(query, limit), self.config.calls)
        except CollaboratorError as e:
            logger.warning("External search failed for '{}': {}", query, e)
            return []
        return candidates_from_search(results)[:limit]

    # ---------------------------
    # Recognize
    # ---------------------------

    async def _recognize_source(
        self,
        spec: SourceSpec,
        text_query: Optional[str],
        target_sites: Sequence[str],
        skip_external: bool,
        filter: Optional[Mapping[str, Any]],
        tag: str,
    ) -> SourceRecognition:
        started = time.perf_counter()
        settings = self.config.search

        if spec.kind == SourceKind.IMAGE:
            image_vec = await self._embed_image(spec.value)
            text_vec = await self._embed_text(text_query) if text_query else None
            fused = fuse(
                [image_vec],
                text_vec,
                image_weight=self.config.fusion.image_weight,
                text_weight=self.config.fusion.text_weight,
            )
            external_below = settings.image_external_below
        elif spec.kind == SourceKind.LINK:
            page_text = None
            if self.fetcher is not None:
                try:
                    page_text = await guarded_call("page_fetch", lambda: self.fetcher.fetch(spec.value), self.config.calls)
                except CollaboratorError as e:
                    logger.warning("{} page fetch failed: {}", tag, e)
            content = page_text or f"{text_query or 'Product'} from {spec.value}"
            fused = fuse(None, await self._embed_text(content))
            external_below = 0
        else:
            fused = fuse(None, await self._embed_text(spec.value))
            external_below = settings.text_external_below

        result: SearchResult = await self.search.search(
            fused,
            filter=filter,
            limit=settings.limit,
            threshold=settings.threshold,
        )

        external: List[Candidate] = []
        if not skip_external and len(result.candidates) < external_below:
            external = await self._external_search(text_query or "", target_sites)

        outcome = Outcome.ok()
        if not result.outcome.is_ok:
            if external:
                outcome = Outcome.degraded("external_only", result.outcome.error)
            else:
                outcome = result.outcome

        tier = source_confidence(
            result.candidates,
            external,
            self.config.source_confidence.high,
            self.config.source_confidence.medium,
        )
        if outcome.status == StageStatus.FAILED:
            tier = ConfidenceTier.LOW

        logger.info(
            "{} {} source: {} vector, {} external, confidence={}",
            tag,
            spec.kind.value,
            len(result.candidates),
            len(external),
            tier.value,
        )
        return SourceRecognition(
            index=spec.index,
            kind=spec.kind,
            reference=spec.reference,
            candidates=result.candidates,
            external=external,
            confidence=tier,
            outcome=outcome,
            processing_ms=(time.perf_counter() - started) * 1000.0,
        )

    async def _safe_recognize_source(
        self,
        spec: SourceSpec,
        session_id: str,
        cancel: Optional[CancelToken],
        **kwargs,
    ) -> SourceRecognition:
        tag = f"[session:{session_id} source:{spec.index}]"
        if cancel is not None and cancel.cancelled:
            return SourceRecognition(spec.index, spec.kind, spec.reference, outcome=Outcome.failed("cancelled"))
        try:
            return await self._recognize_source(spec, tag=tag, **kwargs)
        except MatchingError as e:
            logger.warning("{} failed: {}", tag, e)
            error = str(e)
        except Exception as e:
            logger.error("{} unexpected failure: {}", tag, e)
            error = f"unexpected error: {e}"
        return SourceRecognition(spec.index, spec.kind, spec.reference, outcome=Outcome.failed(error))

    async def recognize(
        self,
        scope: str,
        images: Sequence[ImageInput] = (),
        links: Sequence[str] = (),
        text_query: Optional[str] = None,
        target_sites: Sequence[str] = (),
        skip_external: bool = False,
        category: Optional[str] = None,
        template_id: Optional[str] = None,
        cancel: Optional[CancelToken] = None,
    ) -> OrchestratorSession:
        specs = plan_sources(images, links, text_query)
        request = {
            "images": [s.reference for s in specs if s.kind == SourceKind.IMAGE],
            "links": list(links),
            "text_query": text_query,
            "target_sites": list(target_sites),
        }
        session = self.store.create(scope, request)
        filter = build_filter(category, template_id)

        async with self.store.transition(session.session_id, scope) as s:
            jobs = [
                (
                    spec.index,
                    lambda spec=spec: self._safe_recognize_source(
                        spec,
                        session.session_id,
                        cancel,
                        text_query=text_query,
                        target_sites=target_sites,
                        skip_external=skip_external,
                        filter=filter,
                    ),
                )
                for spec in specs
            ]
            recognition = await self._bounded(jobs)
            s.recognition = recognition
            s.recommended_next = recommend_next_stage(
                [r.confidence for r in recognition],
                self.config.source_confidence.advance_share,
            )
            s.current_stage = Stage.RECOGNIZE

        logger.info(
            "[session:{}] recognized {} sources, next={}",
            session.session_id,
            len(recognition),
            s.recommended_next,
        )
        return s

    # ---------------------------
    # Match
    # ---------------------------

    def _user_choice(self, recog: SourceRecognition, choice: SourceSelection) -> SourceMatch:
        if choice.rejected:
            return SourceMatch(
                index=recog.index,
                confidence=ConfidenceTier.LOW,
                action=system_action(ConfidenceTier.LOW, 0),
                rejected=True,
                reasoning=USER_REJECTED_REASONING,
            )
        candidates = recog.all_candidates
        k = choice.selected_index
        if k is None or not (0 <= k < len(candidates)):
            raise InputError(f"source {recog.index}: selected candidate {k} out of range (0..{len(candidates) - 1})")
        picked = RankedCandidate(candidates[k], score=1.0, rank=1, explanation=USER_SELECTED_EXPLANATION)
        return SourceMatch(
            index=recog.index,
            ranked=[picked],
            confidence=ConfidenceTier.HIGH,
            action=SystemAction.SHOW_SINGLE_MATCH,
            selected_index=k,
            reasoning=USER_SELECTED_EXPLANATION,
        )

    async def _rank_source(
        self,
        session_id: str,
        scope: str,
        recog: SourceRecognition,
        use_reranker: bool,
        target_sites: Sequence[str],
    ) -> SourceMatch:
        candidates = recog.all_candidates
        if use_reranker and len(candidates) > 1:
            query = build_query_from_source(recog, target_sites)
            result = await self.reranker.rank(query, candidates, max_results=len(candidates))
            if self.interactions is not None:
                self.interactions.record_interaction(
                    match_id=f"{session_id}:{recog.index}",
                    scope=scope,
                    query=query,
                    result=result,
                )
            reasoning = result.candidates[0].explanation if result.candidates else "No candidates"
            return SourceMatch(
                index=recog.index,
                ranked=result.candidates,
                confidence=result.tier,
                action=result.action,
                reasoning=reasoning,
                outcome=result.outcome,
            )

        ranked = order_and_rank(
            [RankedCandidate(c, score=c.score, rank=0, explanation=explain_score(c.score)) for c in candidates]
        )
        return SourceMatch(
            index=recog.index,
            ranked=ranked,
            confidence=recog.confidence,
            action=system_action(recog.confidence, len(ranked)),
            reasoning=ranked[0].explanation if ranked else "No candidates",
            outcome=recog.outcome,
        )

    async def match(
        self,
        session_id: str,
        scope: str,
        source_indexes: Optional[Sequence[int]] = None,
        use_reranker: bool = True,
        selections: Optional[Mapping[int, SourceSelection]] = None,
        cancel: Optional[CancelToken] = None,
    ) -> OrchestratorSession:
        selections = dict(selections or {})

        async with self.store.transition(session_id, scope) as session:
            if session.recognition is None or session.current_stage not in (Stage.RECOGNIZE, Stage.MATCH):
                raise StageOrderError(
                    f"cannot match session {session_id} in stage '{session.current_stage.value}'"
                )

            by_index = {r.index: r for r in session.recognition}
            indexes = list(source_indexes) if source_indexes is not None else sorted(by_index)
            unknown = [i for i in indexes if i not in by_index]
            if unknown:
                raise InputError(f"unknown source index(es): {unknown}")

            target_sites = session.request.get("target_sites") or []
            overrides: Dict[int, SourceMatch] = {}
            for i in indexes:
                if i in selections:
                    overrides[i] = self._user_choice(by_index[i], selections[i])

            async def _one(i: int) -> SourceMatch:
                if i in overrides:
                    return overrides[i]
                if cancel is not None and cancel.cancelled:
                    return SourceMatch(index=i, outcome=Outcome.failed("cancelled"))
                try:
                    return await self._rank_source(session_id, scope, by_index[i], use_reranker, target_sites)
                except MatchingError as e:
                    logger.warning("[session:{} source:{}] match failed: {}", session_id, i, e)
                    return SourceMatch(index=i, outcome=Outcome.failed(str(e)))

            matches = await self._bounded([(i, lambda i=i: _one(i)) for i in indexes])
            tier, action = overall_match_confidence(
                [m.confidence for m in matches],
                self.config.source_confidence.advance_share,
            )
            session.matches = matches
            session.overall_confidence = tier
            session.next_action = action
            session.current_stage = Stage.MATCH

        # feedback only for choices that were actually applied
        for i in overrides:
            self._record_choice(session_id, by_index[i], selections[i])
        logger.info("[session:{}] matched {} sources: {} / {}", session_id, len(matches), tier.value, action)
        return session

    def _record_choice(self, session_id: str, recog: SourceRecognition, choice: SourceSelection) -> None:
        if self.interactions is None:
            return
        self.interactions.record_feedback(
            match_id=f"{session_id}:{recog.index}",
            selected_index=choice.selected_index,
            rejected=choice.rejected,
        )

    # ---------------------------
    # Generate
    # ---------------------------

    async def generate(
        self,
        session_id: str,
        scope: str,
        options: Optional[Mapping[str, Any]] = None,
    ) -> OrchestratorSession:
        if self.generator is None:
            raise MatchingError("no content generator configured")

        async with self.store.transition(session_id, scope) as session:
            if session.matches is None or session.current_stage != Stage.MATCH:
                raise StageOrderError(
                    f"cannot generate for session {session_id} in stage '{session.current_stage.value}'"
                )
            selections = [
                {"source_index": m.index, "candidate": m.selected.candidate.to_dict(), "score": m.selected.score}
                for m in session.matches
                if m.selected is not None
            ]
            if not selections:
                raise InputError("no selected candidate to generate from")

            generated = await guarded_call(
                "content_generator",
                lambda: self.generator.generate(selections, dict(options or {})),
                self.config.calls,
            )
            session.generated = generated
            session.current_stage = Stage.COMPLETED

        logger.info("[session:{}] generation completed from {} selections", session_id, len(selections))
        return session

    # ---------------------------
    # Housekeeping
    # ---------------------------

    def get_session(self, session_id: str, scope: str) -> OrchestratorSession:
        return self.store.get(session_id, scope)

    def cleanup_sessions(self, max_age_hours: Optional[float] = None) -> int:
        max_age = timedelta(hours=max_age_hours or self.config.session.max_age_hours)
        return self.store.sweep_expired(max_age)
