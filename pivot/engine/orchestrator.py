"""
pivot/engine/orchestrator.py
Pivot Engine: the per-obstacle loop.

ObstacleEvent in, MutationResult out:

    route (matcher + router)
      -> deterministic lane: registry plans -> probe -> delta -> score
      -> freestyle lane: LLM suggestion -> probe -> delta -> score
      -> hybrid lane: deterministic first, freestyle on stall

Obstacles of one engagement are processed one at a time (per-engagement
asyncio.Lock); separate engagements run concurrently and share only the
routing state store.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set
from urllib.parse import urlparse

from ..ai.freestyle import FreestyleCollaborator, build_brief
from ..anomaly.buffer import AnomalyBuffer
from ..base.config import PivotConfig, get_config
from ..base.errors import BaselineCaptureFailedError, FreestyleCollaboratorError, ProbeExecutionError
from ..contracts.enums import Lane, MutationFamily, ObstacleClassification, ObstacleState
from ..contracts.models import (
    AttemptRecord,
    BaselineStatistics,
    FreestyleLogEntry,
    MutationResult,
    ObstacleEvent,
    ResponseDelta,
    ResponseFingerprint,
    ReviewReport,
    RoutingDecision,
    RoutingHistoryEntry,
    ScoreVector,
)
from ..diff.baseline import BaselineManager
from ..diff.delta import calculate_delta, has_any_change
from ..mutate.base import Mutation, MutationContext
from ..mutate.registry import FamilyRegistry
from ..net.executor import ProbeExecutor
from ..review.engine import ReviewEngine
from ..routing.router import Router
from ..routing.state import RoutingStateStore
from ..scoring.scorer import DeterministicScorer
from .state import check_transition

logger = logging.getLogger(__name__)

_LANGUAGE_BY_CLASS: Dict[ObstacleClassification, str] = {
    ObstacleClassification.XSS_SURFACE: "html",
    ObstacleClassification.XXE_SURFACE: "xml",
    ObstacleClassification.TEMPLATE_INJECTION_SURFACE: "html",
}


@dataclass
class EngagementContext:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    tasks: Set[asyncio.Task] = field(default_factory=set)
    states: Dict[str, ObstacleState] = field(default_factory=dict)
    history: List[RoutingHistoryEntry] = field(default_factory=list)
    freestyle_log: List[FreestyleLogEntry] = field(default_factory=list)
    review_pending: bool = False


@dataclass
class LaneOutcome:
    result: MutationResult
    outcome: str
    best_score: float = 0.0
    freestyle_used: bool = False
    freestyle_succeeded: bool = False


class PivotEngine:
    """
    Orchestrates routing, mutation, probing and scoring for blocked attempts.

    Every collaborator is injectable; anything not supplied is built from
    the config. The probe executor is mandatory because it is the only
    piece that talks to the target.
    """

    def __init__(
        self,
        executor: ProbeExecutor,
        collaborator: Optional[FreestyleCollaborator] = None,
        config: Optional[PivotConfig] = None,
        routing_store: Optional[RoutingStateStore] = None,
        registry: Optional[FamilyRegistry] = None,
        scorer: Optional[DeterministicScorer] = None,
        anomalies: Optional[AnomalyBuffer] = None,
        baselines: Optional[BaselineManager] = None,
    ):
        self.config = config or get_config()
        self.executor = executor
        self.collaborator = collaborator
        self.routing_store = routing_store or RoutingStateStore(config=self.config.routing)
        self.registry = registry or FamilyRegistry(seed=self.config.seed)
        self.scorer = scorer or DeterministicScorer(self.config.scoring)
        self.anomalies = anomalies or AnomalyBuffer(self.config)
        self.baselines = baselines or BaselineManager(executor, self.config)
        self.router = Router(self.routing_store, scorer=self.scorer, config=self.config.routing)
        self.review_engine = ReviewEngine(self.routing_store, self.config.routing, self.config.delta)
        self._engagements: Dict[str, EngagementContext] = {}

    # ------------------------------------------------------------------
    # Engagement bookkeeping
    # ------------------------------------------------------------------

    def _context(self, engagement_id: str) -> EngagementContext:
        ctx = self._engagements.get(engagement_id)
        if ctx is None:
            ctx = self._engagements[engagement_id] = EngagementContext()
        return ctx

    def obstacle_state(self, engagement_id: str, obstacle_id: str) -> Optional[ObstacleState]:
        ctx = self._engagements.get(engagement_id)
        return ctx.states.get(obstacle_id) if ctx else None

    def _transition(self, ctx: EngagementContext, obstacle_id: str, target: ObstacleState) -> None:
        ctx.states[obstacle_id] = check_transition(ctx.states.get(obstacle_id), target)

    def routing_history(self, engagement_id: str) -> List[RoutingHistoryEntry]:
        ctx = self._engagements.get(engagement_id)
        return list(ctx.history) if ctx else []

    def freestyle_log(self, engagement_id: str) -> List[FreestyleLogEntry]:
        ctx = self._engagements.get(engagement_id)
        return list(ctx.freestyle_log) if ctx else []

    def pending_reviews(self) -> List[str]:
        return [eid for eid, ctx in self._engagements.items() if ctx.review_pending]

    def abort_engagement(self, engagement_id: str) -> int:
        """Cancel every in-flight obstacle of an engagement. Returns how many were cancelled."""
        ctx = self._engagements.get(engagement_id)
        if ctx is None:
            return 0
        cancelled = 0
        for task in list(ctx.tasks):
            if not task.done():
                task.cancel()
                cancelled += 1
        if cancelled:
            logger.warning(f"[Engine] Aborted {cancelled} in-flight obstacle(s) for {engagement_id}")
        return cancelled

    def reset_engagement(self, engagement_id: str) -> None:
        """Tear down engagement-scoped state. Persisted files and staged review output are kept."""
        self.abort_engagement(engagement_id)
        self._engagements.pop(engagement_id, None)
        self.scorer.reset_engagement(engagement_id)
        self.baselines.release(engagement_id)
        self.anomalies.release(engagement_id)
        logger.info(f"[Engine] Engagement {engagement_id} reset")

    async def aclose(self) -> None:
        for component in (self.executor, self.collaborator):
            closer = getattr(component, "aclose", None)
            if closer is not None:
                await closer()

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def process_obstacle(self, event: ObstacleEvent) -> MutationResult:
        ctx = self._context(event.engagement_id)
        task = asyncio.ensure_future(self._run(event, ctx))
        ctx.tasks.add(task)
        try:
            return await task
        finally:
            ctx.tasks.discard(task)

    async def _run(self, event: ObstacleEvent, ctx: EngagementContext) -> MutationResult:
        async with ctx.lock:
            trace_id = f"{event.engagement_id}:{event.obstacle_id}:{uuid.uuid4().hex[:12]}"
            self._transition(ctx, event.obstacle_id, ObstacleState.ROUTED)

            decision = self.router.route(event)
            logger.info(f"[Engine] {trace_id} routed to {decision.lane.value}: {decision.reasoning}")

            if decision.lane == Lane.DETERMINISTIC:
                lane = await self._deterministic_lane(event, decision, ctx, trace_id, Lane.DETERMINISTIC)
            elif decision.lane == Lane.FREESTYLE:
                lane = await self._freestyle_lane(event, decision, ctx, trace_id, Lane.FREESTYLE)
            else:
                lane = await self._hybrid_lane(event, decision, ctx, trace_id)

            ctx.history.append(
                RoutingHistoryEntry(
                    engagement_id=event.engagement_id,
                    obstacle_id=event.obstacle_id,
                    decision=decision,
                    result_lane=lane.result.lane_routed,
                    outcome=lane.outcome,
                    best_score=min(max(lane.best_score, 0.0), 1.0),
                    abandoned=lane.result.abandon,
                    freestyle_used=lane.freestyle_used,
                    freestyle_succeeded=lane.freestyle_succeeded,
                )
            )
            if lane.result.abandon:
                ctx.review_pending = True
            return lane.result

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _mutation_context(self, event: ObstacleEvent, decision: RoutingDecision) -> MutationContext:
        options = event.request_options
        content_type = next((v for k, v in options.headers.items() if k.lower() == "content-type"), None)
        return MutationContext(
            language=_LANGUAGE_BY_CLASS.get(decision.classification, "sql"),
            param_name=options.param_name,
            method=options.method.upper(),
            content_type=content_type,
            host=urlparse(event.target_url).hostname,
        )

    async def _baseline(self, event: ObstacleEvent) -> Optional[BaselineStatistics]:
        if not event.target_url:
            return None
        try:
            return await self.baselines.get_or_capture(event.engagement_id, event.target_url, event.request_options)
        except BaselineCaptureFailedError as e:
            logger.warning(f"[Engine] {event.engagement_id}: baseline unavailable ({e})")
            return None

    def _buffer_anomaly(
        self,
        event: ObstacleEvent,
        decision: RoutingDecision,
        delta: ResponseDelta,
        vector: ScoreVector,
        strategy: str,
        trace_id: str,
    ) -> None:
        if not has_any_change(delta, self.config.delta):
            return
        self.anomalies.record(
            event.engagement_id,
            delta,
            vector.weighted_total,
            obstacle_id=event.obstacle_id,
            context={
                "mutation_strategy": strategy,
                "classification": decision.classification.value,
                "lane": decision.lane.value,
                "trace_id": trace_id,
                "terminal_excerpt": event.terminal_output[:200],
            },
        )

    def _score_probe(
        self,
        event: ObstacleEvent,
        decision: RoutingDecision,
        reference: ResponseFingerprint,
        stats: Optional[BaselineStatistics],
        fingerprint: ResponseFingerprint,
        strategy: str,
        payload: str,
        trace_id: str,
    ) -> ScoreVector:
        delta = calculate_delta(reference, fingerprint, stats, payload)
        vector = self.scorer.evaluate_delta(
            delta,
            event.obstacle_id,
            event.engagement_id,
            strategy,
            decision.classification,
            payload,
        )
        self._buffer_anomaly(event, decision, delta, vector, strategy, trace_id)
        return vector

    # ------------------------------------------------------------------
    # Deterministic lane
    # ------------------------------------------------------------------

    async def _deterministic_lane(
        self,
        event: ObstacleEvent,
        decision: RoutingDecision,
        ctx: EngagementContext,
        trace_id: str,
        lane: Lane,
    ) -> LaneOutcome:
        eid, oid = event.engagement_id, event.obstacle_id
        self._transition(ctx, oid, ObstacleState.ATTEMPTING)

        base_payload = event.base_payload(self.config.probe.default_payload)
        stats = await self._baseline(event)
        reference = stats.sample_fingerprint if stats else None

        tried = {record.strategy for record in self.scorer.history(oid, eid)}
        plans = self.registry.build_plans(
            base_payload,
            decision.classification,
            self._mutation_context(event, decision),
            exclude=tried,
        )

        best: Optional[Mutation] = None
        best_vector: Optional[ScoreVector] = None
        made_progress = False

        for plan in plans:
            if self.scorer.should_abandon(oid, eid):
                logger.info(f"[Engine] {trace_id}: attempt budget spent without progress, stopping")
                break
            if not event.target_url:
                break

            try:
                fingerprint = await self.executor.execute(
                    event.target_url, event.request_options, plan.payload, plan.directives
                )
            except ProbeExecutionError as e:
                logger.warning(f"[Engine] {trace_id}: {plan.strategy} skipped ({e})")
                continue

            if reference is None:
                # No baseline: the first successful probe becomes the reference
                reference = fingerprint
                logger.info(f"[Engine] {trace_id}: using {plan.strategy} response as reference")
                continue

            vector = self._score_probe(
                event, decision, reference, stats, fingerprint, plan.strategy, plan.payload, trace_id
            )
            made_progress = made_progress or self.scorer.last_made_progress(oid, eid)

            if best_vector is None or vector.weighted_total > best_vector.weighted_total:
                best, best_vector = plan, vector

            if self.scorer.is_exploit_confirmed(vector.weighted_total):
                self._transition(ctx, oid, ObstacleState.EXPLOITED)
                logger.info(f"[Engine] {trace_id}: exploit confirmed via {plan.strategy}")
                return LaneOutcome(
                    MutationResult(
                        strategy_used=plan.strategy,
                        lane_routed=lane,
                        payload=plan.payload,
                        confidence=vector.weighted_total,
                        score_vector=vector,
                        next_steps=["document_exploit", "generate_poc"],
                        trace_id=trace_id,
                    ),
                    outcome="exploited",
                    best_score=vector.weighted_total,
                )

        best_score = best_vector.weighted_total if best_vector else 0.0
        if best is not None and made_progress:
            self._transition(ctx, oid, ObstacleState.STALLED)
            return LaneOutcome(
                MutationResult(
                    strategy_used=best.strategy,
                    lane_routed=lane,
                    payload=best.payload,
                    confidence=best_score,
                    score_vector=best_vector,
                    next_steps=["escalate_to_hybrid"],
                    trace_id=trace_id,
                ),
                outcome="stalled",
                best_score=best_score,
            )

        # Hybrid escalates from here, so the obstacle is only stalled for now
        final_state = ObstacleState.STALLED if lane == Lane.HYBRID else ObstacleState.ABANDONED
        self._transition(ctx, oid, final_state)
        logger.info(f"[Engine] {trace_id}: deterministic lane exhausted without progress")
        return LaneOutcome(
            MutationResult(
                strategy_used=best.strategy if best else "deterministic_exhausted",
                lane_routed=lane,
                payload=best.payload if best else base_payload,
                confidence=best_score,
                score_vector=best_vector,
                next_steps=["engagement_review"],
                abandon=True,
                human_review_flag=True,
                trace_id=trace_id,
            ),
            outcome="abandoned",
            best_score=best_score,
        )

    # ------------------------------------------------------------------
    # Freestyle lane
    # ------------------------------------------------------------------

    def _freestyle_failure(
        self,
        event: ObstacleEvent,
        ctx: EngagementContext,
        trace_id: str,
        lane: Lane,
        error: str,
    ) -> LaneOutcome:
        self._transition(ctx, event.obstacle_id, ObstacleState.ABANDONED)
        ctx.freestyle_log.append(
            FreestyleLogEntry(engagement_id=event.engagement_id, obstacle_id=event.obstacle_id, error=error)
        )
        logger.warning(f"[Engine] {trace_id}: freestyle collaborator failed: {error}")
        return LaneOutcome(
            MutationResult(
                strategy_used="freestyle_llm_failure",
                lane_routed=lane,
                payload=event.base_payload(self.config.probe.default_payload),
                confidence=0.0,
                next_steps=["human_review_required"],
                abandon=True,
                human_review_flag=True,
                trace_id=trace_id,
            ),
            outcome="abandoned",
            freestyle_used=True,
        )

    async def _freestyle_lane(
        self,
        event: ObstacleEvent,
        decision: RoutingDecision,
        ctx: EngagementContext,
        trace_id: str,
        lane: Lane,
    ) -> LaneOutcome:
        eid, oid = event.engagement_id, event.obstacle_id
        self._transition(ctx, oid, ObstacleState.ATTEMPTING)

        if self.collaborator is None or not self.config.freestyle.enabled:
            return self._freestyle_failure(event, ctx, trace_id, lane, "freestyle collaborator unavailable")

        families = self.registry.families_for(decision.classification) or list(MutationFamily)
        history: List[AttemptRecord] = list(event.attempt_history) + self.scorer.history(oid, eid)
        brief = build_brief(event, decision.classification, history, families, self.config.freestyle)

        try:
            suggestion = await self.collaborator.suggest(brief)
        except FreestyleCollaboratorError as e:
            return self._freestyle_failure(event, ctx, trace_id, lane, str(e))

        strategy = f"freestyle:{suggestion.strategy}"
        payload = suggestion.render(event.base_payload(self.config.probe.default_payload))
        log_entry = FreestyleLogEntry(engagement_id=eid, obstacle_id=oid, suggestion=suggestion)

        # The suggestion is only trusted once a real probe scores it
        vector: Optional[ScoreVector] = None
        stats = await self._baseline(event)
        if stats is not None:
            try:
                fingerprint = await self.executor.execute(event.target_url, event.request_options, payload)
            except ProbeExecutionError as e:
                logger.warning(f"[Engine] {trace_id}: freestyle probe failed ({e})")
            else:
                vector = self._score_probe(
                    event, decision, stats.sample_fingerprint, stats, fingerprint, strategy, payload, trace_id
                )

        if vector is None:
            ctx.freestyle_log.append(log_entry)
            self._transition(ctx, oid, ObstacleState.STALLED)
            return LaneOutcome(
                MutationResult(
                    strategy_used=strategy,
                    lane_routed=lane,
                    payload=payload,
                    confidence=round(decision.confidence * self.config.freestyle.confidence_discount, 6),
                    next_steps=["verify_freestyle_suggestion"],
                    human_review_flag=True,
                    trace_id=trace_id,
                ),
                outcome="unverified",
                freestyle_used=True,
            )

        score = vector.weighted_total
        confirmed = self.scorer.is_exploit_confirmed(score)
        progressed = self.scorer.last_made_progress(oid, eid)
        log_entry = log_entry.model_copy(update={"score": score, "succeeded": confirmed or progressed})
        ctx.freestyle_log.append(log_entry)

        if confirmed:
            self._transition(ctx, oid, ObstacleState.EXPLOITED)
            next_steps, outcome, abandon = ["document_exploit", "generate_poc"], "exploited", False
        elif progressed:
            self._transition(ctx, oid, ObstacleState.STALLED)
            next_steps, outcome, abandon = ["apply_freestyle_suggestion"], "progressing", False
        else:
            self._transition(ctx, oid, ObstacleState.ABANDONED)
            next_steps, outcome, abandon = ["human_review_required"], "abandoned", True

        return LaneOutcome(
            MutationResult(
                strategy_used=strategy,
                lane_routed=lane,
                payload=payload,
                confidence=score,
                score_vector=vector,
                next_steps=next_steps,
                abandon=abandon,
                human_review_flag=abandon,
                trace_id=trace_id,
            ),
            outcome=outcome,
            best_score=score,
            freestyle_used=True,
            freestyle_succeeded=confirmed or progressed,
        )

    # ------------------------------------------------------------------
    # Hybrid lane
    # ------------------------------------------------------------------

    async def _hybrid_lane(
        self,
        event: ObstacleEvent,
        decision: RoutingDecision,
        ctx: EngagementContext,
        trace_id: str,
    ) -> LaneOutcome:
        first = await self._deterministic_lane(event, decision, ctx, trace_id, Lane.HYBRID)
        if not first.result.abandon and not first.result.human_review_flag:
            return first

        stalled = AttemptRecord(
            strategy=first.result.strategy_used,
            payload=first.result.payload,
            score=first.result.confidence,
            outcome="stalled",
        )
        self.scorer.ledger.append_record(event.engagement_id, event.obstacle_id, stalled)
        logger.info(f"[Engine] {trace_id}: deterministic stage stalled, escalating to freestyle")

        second = await self._freestyle_lane(event, decision, ctx, trace_id, Lane.HYBRID)
        second.best_score = max(second.best_score, first.best_score)
        return second

    # ------------------------------------------------------------------
    # Review
    # ------------------------------------------------------------------

    def review_engagement(self, engagement_id: str, stage: bool = True) -> ReviewReport:
        ctx = self._context(engagement_id)
        report = self.review_engine.review(
            engagement_id,
            ctx.history,
            ctx.freestyle_log,
            self.anomalies.get_anomalies(engagement_id),
        )
        if stage:
            self.review_engine.stage(report)
        ctx.review_pending = False
        return report

    def promote_review(self, engagement_id: str) -> int:
        return self.review_engine.promote(engagement_id)


__all__ = ["EngagementContext", "LaneOutcome", "PivotEngine"]
