"""Orchestrator: wires dedup, intent, requery, relaxation, weights, and ranking.

Data flow:
  1. Dedup gate (reuse a fresh or running job for the same key)
  2. Intent classification → language context
  3. Requery decision → provider search or cached pool
  4. Soft filters + relaxation cascade
  5. Weights → invariant enforcement
  6. Rank, build signals, persist result
"""

import logging
from collections.abc import Callable

from pydantic import BaseModel, ConfigDict, Field

from dining_search.core.config import Settings
from dining_search.core.db import SQLiteJobStore
from dining_search.core.errors import DiningSearchError
from dining_search.core.schemas import (
    FinalFilters,
    IntentSignals,
    JobRecord,
    JobStatus,
    LatLng,
    PlaceCandidate,
    RankingWeights,
    SearchContext,
)
from dining_search.pipeline.dedup import DeduplicationService, decide_reuse, is_stale, summarize
from dining_search.pipeline.invariants import RankingContext, enforce_invariants
from dining_search.pipeline.language import (
    LangCtx,
    assert_provider_language,
    init_lang_ctx,
    normalize_facing_language,
    update_lang_ctx,
)
from dining_search.pipeline.ranker import rank_results
from dining_search.pipeline.relax import RelaxStep, apply_relaxation_cascade
from dining_search.pipeline.requery import should_requery
from dining_search.pipeline.signals import RankingSignals, build_ranking_signals, open_unknown_stats
from dining_search.pipeline.soft_filters import apply_soft_filters, pool_stats
from dining_search.pipeline.weights import WeightContext, resolve_weights
from dining_search.providers.base import IntentProvider, PlacesProvider

logger = logging.getLogger(__name__)


class SearchRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    request_id: str
    session_id: str
    query: str
    idempotency_key: str | None = None
    user_location: LatLng | None = None
    city_text: str | None = None
    region_code: str | None = None
    radius_meters: int | None = Field(default=None, gt=0)
    filters: FinalFilters = Field(default_factory=FinalFilters)
    limit: int = Field(default=20, ge=1)
    ui_language: str | None = None


class SearchResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    request_id: str
    status: JobStatus
    reused: bool = False
    dedup_reason: str
    results: list[PlaceCandidate] = Field(default_factory=list)
    requery_reason: str | None = None
    relax_steps: tuple[RelaxStep, ...] = ()
    final_filters: FinalFilters | None = None
    weights: RankingWeights | None = None
    weight_reasons: tuple[str, ...] = ()
    applied_rules: tuple[str, ...] = ()
    signals: RankingSignals | None = None
    lang_ctx: LangCtx | None = None


class SearchOrchestrator:
    """Runs one search request end to end against injected collaborators.

    ``clock`` returns epoch milliseconds for heartbeats and completion
    timestamps; without it every write uses the ``now`` passed to ``run``.
    """

    def __init__(
        self,
        settings: Settings,
        store: SQLiteJobStore,
        provider: PlacesProvider,
        intent_provider: IntentProvider,
        clock: Callable[[], int] | None = None,
    ) -> None:
        self._settings = settings
        self._store = store
        self._provider = provider
        self._intent_provider = intent_provider
        self._clock = clock
        self._dedup = DeduplicationService(store, settings.dedup)

    async def run(self, request: SearchRequest, now: int) -> SearchResponse:
        """Execute a search, or return the job that already serves this key.

        Invariant violations propagate after the job is marked failed.
        """
        dedup_reason = "NO_CANDIDATE"
        if request.idempotency_key:
            reused, dedup_reason = self._check_existing(request, now)
            if reused is not None:
                return reused

        if not self._store.create_job(request.request_id, request.session_id, now, request.idempotency_key):
            # Lost the create-if-absent race to a concurrent request.
            holder = None
            if request.idempotency_key:
                holder = self._dedup.find_candidate(request.idempotency_key, now)
            if holder is None:
                msg = f"could not create job {request.request_id}"
                raise DiningSearchError(msg)
            logger.info("Job for key '%s' created concurrently by %s", request.idempotency_key, holder.request_id)
            return _reused_response(holder, "CONCURRENT_JOB")

        self._store.set_status(request.request_id, JobStatus.RUNNING, now)
        try:
            response = await self._execute(request, now, dedup_reason)
        except Exception as e:
            logger.error("Search %s failed: %s", request.request_id, e)
            self._store.set_status(request.request_id, JobStatus.DONE_FAILED, self._time(now), error=type(e).__name__)
            raise

        self._store.set_result(request.request_id, response.model_dump(mode="json"), self._time(now))
        return response

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _time(self, now: int) -> int:
        return self._clock() if self._clock is not None else now

    def _heartbeat(self, request_id: str, now: int, stage: str) -> None:
        if not self._store.update_heartbeat(request_id, self._time(now)):
            logger.warning("Heartbeat after %s found job %s no longer running", stage, request_id)

    def _check_existing(self, request: SearchRequest, now: int) -> tuple[SearchResponse | None, str]:
        key = request.idempotency_key or ""
        candidate = self._dedup.find_candidate(key, now)
        decision = decide_reuse(candidate, now, self._settings.dedup)
        logger.info("Dedup for key '%s': %s", key, summarize(decision))

        if decision.should_reuse and decision.existing_job is not None:
            return _reused_response(decision.existing_job, decision.reason), decision.reason

        if candidate is not None and is_stale(candidate, now, self._settings.dedup):
            # Frees the active key for the new job.
            self._store.set_status(candidate.request_id, JobStatus.DONE_FAILED, now, error="stale_running_job")
            logger.info("Marked stale job %s as failed", candidate.request_id)
        return None, decision.reason

    async def _execute(self, request: SearchRequest, now: int, dedup_reason: str) -> SearchResponse:
        # Step 1: Intent + language context
        intent = await self._intent_provider.classify(request.query)
        self._heartbeat(request.request_id, now, "intent")
        lang_ctx = init_lang_ctx(
            intent.language, intent.language_confidence, intent.region, self._settings.language,
        )
        ui_language = request.ui_language or intent.ui_language
        if ui_language:
            lang_ctx = update_lang_ctx(
                lang_ctx,
                {"ui_language": normalize_facing_language(ui_language, self._settings.language)},
                stage="intent",
            )

        # Step 2: Requery decision
        filters = _merge_intent_filters(request.filters, intent)
        next_ctx = _build_context(request, intent, filters)
        cached = self._store.get_candidate_pool(request.session_id)
        prev_ctx, pool = cached if cached is not None else (None, [])
        stats = pool_stats(pool, filters, request.limit) if cached is not None else None
        decision = should_requery(prev_ctx, next_ctx, stats, self._settings.requery)
        logger.info("Requery: %s (%s)", decision.do_google, decision.reason)

        # Step 3: Provider search
        if decision.do_google:
            language = lang_ctx.provider_language
            assert_provider_language(lang_ctx, language, self._provider.provider_id, self._settings.language)
            pool = await self._provider.search(next_ctx, language)
            logger.info("Provider %s returned %d candidates", self._provider.provider_id, len(pool))
            self._heartbeat(request.request_id, now, "provider")
        self._store.save_candidate_pool(request.session_id, next_ctx, pool, now)

        # Step 4: Soft filters + relaxation
        cascade = apply_relaxation_cascade(pool, filters, apply_soft_filters, self._settings.relax)
        survivors: list[PlaceCandidate] = cascade.final_candidates
        logger.info("After filtering: %d of %d", len(survivors), len(pool))

        # Step 5: Weights + invariants
        has_location = request.user_location is not None
        resolution = resolve_weights(WeightContext.from_intent(intent, has_location), self._settings.ranking)
        enforcement = enforce_invariants(
            resolution.weights,
            RankingContext(
                has_user_location=has_location,
                cuisine_key=intent.cuisine_key,
                open_now_requested=intent.open_now_requested,
                has_cuisine_scores=any(c.cuisine_score is not None for c in survivors),
            ),
            renormalize=self._settings.ranking.renormalize_after_enforcement,
        )
        weights = enforcement.enforced_weights

        # Step 6: Rank + signals
        ranked = rank_results(survivors, weights, request.user_location)[: request.limit]
        signals = build_ranking_signals(
            profile=resolution.profile,
            weights=weights,
            has_user_location=has_location,
            results_before_filters=len(pool),
            results_after_filters=len(survivors),
            relax_used=bool(cascade.steps),
            open_stats=open_unknown_stats(survivors),
            config=self._settings.signals,
        )

        logger.info(
            "Search %s: %d pool, %d ranked, weights=%s",
            request.request_id, len(pool), len(ranked), weights.model_dump(),
        )
        return SearchResponse(
            request_id=request.request_id,
            status=JobStatus.DONE_SUCCESS,
            dedup_reason=dedup_reason,
            results=ranked,
            requery_reason=decision.reason,
            relax_steps=cascade.steps,
            final_filters=cascade.final_filters,
            weights=weights,
            weight_reasons=resolution.reason_codes,
            applied_rules=enforcement.applied_rules,
            signals=signals,
            lang_ctx=lang_ctx,
        )


def _reused_response(job: JobRecord, reason: str) -> SearchResponse:
    if job.result is not None:
        cached = SearchResponse.model_validate(job.result)
        return cached.model_copy(update={"reused": True, "dedup_reason": reason, "status": job.status})
    return SearchResponse(request_id=job.request_id, status=job.status, reused=True, dedup_reason=reason)


def _merge_intent_filters(filters: FinalFilters, intent: IntentSignals) -> FinalFilters:
    if intent.open_now_requested and filters.open_state is None:
        return filters.model_copy(update={"open_state": "OPEN_NOW"})
    return filters


def _build_context(request: SearchRequest, intent: IntentSignals, filters: FinalFilters) -> SearchContext:
    return SearchContext(
        query=request.query,
        route=intent.route,
        user_location=request.user_location,
        city_text=request.city_text,
        region_code=request.region_code,
        radius_meters=request.radius_meters,
        open_now=True if filters.open_state == "OPEN_NOW" else None,
        open_at=filters.open_at,
        open_between=filters.open_between,
        price_intent=intent.price_intent,
        min_rating_bucket=filters.min_rating_bucket,
        is_kosher=filters.is_kosher,
        is_gluten_free=filters.is_gluten_free,
    )
