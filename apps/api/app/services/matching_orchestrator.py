from __future__ import annotations

import asyncio
import datetime as dt
import json
import logging
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Sequence

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from app.services.ctgov_client import CTGovClient
from app.services.database import ensure_tables, get_engine, utcnow
from app.services.errors import (
    MatchingError,
    MatchingInProgress,
    NoCandidates,
    PatientNotFound,
    ReasoningServiceUnavailable,
    RunCancelled,
    RunTimedOut,
)
from app.services.match_store import SqlMatchStore
from app.services.models import (
    Failed,
    MatchingComplete,
    MatchResult,
    PatientSummary,
    ProgressEvent,
    RankedMatches,
    RetrievalCandidateFound,
    RetrievalComplete,
    RetrievalStarted,
    ScoringCandidate,
    ScoringComplete,
    ScoringStarted,
    TrialCandidate,
)
from app.services.notifier import LoggingNotifier, MatchNotifier, results_url
from app.services.observability import record_match_run
from app.services.patient_store import SqlPatientStore
from app.services.query_planner import build_condition_set, retrieve_candidates
from app.services.run_lock import RunLock, get_match_run_lock, run_lock_key
from app.services.scoring_engine import BackoffPolicy, ReasoningClient, TrialScorer
from app.services.settings import MatchingConfig, load_matching_config
from app.services.trial_store import SqlTrialStore

LOGGER = logging.getLogger(__name__)

MODES = ("batch", "incremental")
FAILED_EVALUATION_EXPLANATION = "Evaluation failed due to processing error."

IDLE = "idle"
RETRIEVING = "retrieving"
SCORING = "scoring"
PERSISTING = "persisting"
DONE = "done"
ERRORED = "errored"

_TRANSITIONS = {
    IDLE: {RETRIEVING, ERRORED},
    RETRIEVING: {SCORING, PERSISTING, ERRORED},
    SCORING: {PERSISTING, ERRORED},
    PERSISTING: {DONE, ERRORED},
}

_RECENT_RUN_LIMIT = 256

# Streaming producers outlive the request handler that started them.
_BACKGROUND_TASKS: set[asyncio.Task] = set()

SleepFn = Callable[[float], Awaitable[None]]


@dataclass
class MatchRun:
    run_id: str
    patient_id: str
    mode: str
    state: str = IDLE
    history: List[str] = field(default_factory=lambda: [IDLE])
    candidate_count: int = 0
    match_count: int = 0

    def transition(self, new_state: str) -> None:
        allowed = _TRANSITIONS.get(self.state, set())
        if new_state not in allowed:
            raise RuntimeError(f"invalid run transition {self.state} -> {new_state}")
        LOGGER.info(
            "match run %s patient=%s %s -> %s",
            self.run_id,
            self.patient_id,
            self.state,
            new_state,
        )
        self.state = new_state
        self.history.append(new_state)


def rank_matches(results: Sequence[MatchResult], min_score: int) -> List[MatchResult]:
    """Drop results under `min_score`, highest first; ties keep retrieval order."""
    accepted = [result for result in results if result.confidence_score >= min_score]
    return sorted(accepted, key=lambda result: result.confidence_score, reverse=True)


def _emit(events: Optional[asyncio.Queue], event: ProgressEvent) -> None:
    if events is not None:
        events.put_nowait(event)


def _check_cancelled(cancel_event: Optional[asyncio.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise RunCancelled("matching run cancelled")


class MatchOrchestrator:
    def __init__(
        self,
        profile_store: SqlPatientStore,
        trial_store: SqlTrialStore,
        match_store: SqlMatchStore,
        registry: CTGovClient,
        scorer: TrialScorer,
        run_lock: RunLock,
        config: Optional[MatchingConfig] = None,
        notifier: Optional[MatchNotifier] = None,
        sleep: Optional[SleepFn] = None,
    ) -> None:
        self._profile_store = profile_store
        self._trial_store = trial_store
        self._match_store = match_store
        self._registry = registry
        self._scorer = scorer
        self._run_lock = run_lock
        self.config = config or MatchingConfig()
        self._notifier = notifier or LoggingNotifier()
        self._sleep = sleep or asyncio.sleep
        self._recent_runs: "OrderedDict[str, MatchRun]" = OrderedDict()

    def last_run(self, patient_id: str) -> Optional[MatchRun]:
        return self._recent_runs.get(patient_id)

    def _remember(self, run: MatchRun) -> None:
        self._recent_runs[run.patient_id] = run
        self._recent_runs.move_to_end(run.patient_id)
        while len(self._recent_runs) > _RECENT_RUN_LIMIT:
            self._recent_runs.popitem(last=False)

    async def run_matching(
        self,
        patient_id: str,
        mode: str = "batch",
        cancel_event: Optional[asyncio.Event] = None,
        events: Optional[asyncio.Queue] = None,
    ) -> RankedMatches:
        """Run one matching pass for a patient and persist the ranked result.

        Progress events are written to `events` when a queue is given. Only
        one run per patient may be in flight; a second caller gets
        MatchingInProgress.
        """
        if mode not in MODES:
            raise ValueError(f"mode must be one of {', '.join(MODES)}")

        start = time.perf_counter()
        run = MatchRun(run_id=uuid.uuid4().hex, patient_id=patient_id, mode=mode)
        outcome = "MATCHED"
        success = False
        try:
            # Store and lock calls are blocking; keep them off the event loop.
            patient = await asyncio.to_thread(self._profile_store.get_patient, patient_id)
            if patient is None:
                raise PatientNotFound(
                    "patient profile not found", {"patient_id": patient_id}
                )

            lease = await asyncio.to_thread(
                self._run_lock.try_acquire,
                key=run_lock_key(patient_id),
                ttl_seconds=self.config.effective_lock_ttl(),
            )
            if lease is None:
                raise MatchingInProgress(
                    "a matching run is already in progress for this patient",
                    {"patient_id": patient_id},
                )

            self._remember(run)
            try:
                result = await self._run_locked(run, patient, cancel_event, events)
            finally:
                self._run_lock.release(lease)

            if result.no_candidates:
                outcome = NoCandidates.code
            success = True
            return result
        except MatchingError as exc:
            outcome = exc.code
            if run.state not in (DONE, ERRORED):
                run.transition(ERRORED)
            raise
        except Exception:
            outcome = "INTERNAL_ERROR"
            if run.state not in (DONE, ERRORED):
                run.transition(ERRORED)
            raise
        finally:
            duration_ms = (time.perf_counter() - start) * 1000.0
            record_match_run(
                mode=mode,
                outcome=outcome,
                success=success,
                duration_ms=duration_ms,
                candidates_scored=run.candidate_count,
            )
            LOGGER.info(
                json.dumps(
                    {
                        "event": "match_run",
                        "run_id": run.run_id,
                        "patient_id": patient_id,
                        "mode": mode,
                        "outcome": outcome,
                        "states": run.history,
                        "candidate_count": run.candidate_count,
                        "match_count": run.match_count,
                        "duration_ms": round(duration_ms, 2),
                    }
                )
            )

    async def _run_locked(
        self,
        run: MatchRun,
        patient: PatientSummary,
        cancel_event: Optional[asyncio.Event],
        events: Optional[asyncio.Queue],
    ) -> RankedMatches:
        try:
            ranked, candidate_count = await asyncio.wait_for(
                self._retrieve_and_score(run, patient, cancel_event, events),
                timeout=self.config.run_deadline_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise RunTimedOut(
                f"matching run exceeded {self.config.run_deadline_seconds}s deadline",
                {"patient_id": patient.id},
            ) from exc

        # Last chance to abandon the run before anything is written.
        _check_cancelled(cancel_event)

        run.transition(PERSISTING)
        await asyncio.to_thread(self._match_store.replace_matches, patient.id, ranked)
        run.match_count = len(ranked)
        run.transition(DONE)

        self._notifier.notify(
            patient_id=patient.id,
            match_count=len(ranked),
            url=results_url(self.config.results_base_url, patient.id),
        )
        return RankedMatches(
            patient_id=patient.id,
            matches=ranked,
            candidate_count=candidate_count,
            no_candidates=candidate_count == 0,
        )

    async def _retrieve_and_score(
        self,
        run: MatchRun,
        patient: PatientSummary,
        cancel_event: Optional[asyncio.Event],
        events: Optional[asyncio.Queue],
    ) -> tuple[List[MatchResult], int]:
        run.transition(RETRIEVING)
        conditions = build_condition_set(patient)
        _emit(events, RetrievalStarted(conditions=list(conditions)))

        candidates = await retrieve_candidates(
            self._registry,
            conditions,
            page_size=self.config.candidate_limit,
            expansion_threshold=self.config.expansion_threshold,
        )
        total = len(candidates)
        run.candidate_count = total
        for index, candidate in enumerate(candidates, start=1):
            _emit(
                events,
                RetrievalCandidateFound(
                    registry_id=candidate.registry_id,
                    title=candidate.title,
                    status=candidate.status,
                    index=index,
                    total=total,
                ),
            )
        _emit(events, RetrievalComplete(count=total))
        await asyncio.to_thread(self._cache_candidates, candidates)

        if not candidates:
            LOGGER.info("no candidate trials for patient %s", patient.id)
            return [], 0

        run.transition(SCORING)
        _emit(events, ScoringStarted(total_candidates=total))
        created_at = utcnow()
        if run.mode == "incremental":
            results = await self._score_incremental(
                patient, candidates, created_at, cancel_event, events
            )
        else:
            results = await self._score_batch(patient, candidates, created_at, cancel_event)

        ranked = rank_matches(results, self.config.min_score)
        _emit(events, ScoringComplete(accepted_count=len(ranked)))
        return ranked, total

    def _cache_candidates(self, candidates: Sequence[TrialCandidate]) -> None:
        for candidate in candidates:
            try:
                self._trial_store.upsert_trial(candidate)
            except SQLAlchemyError as exc:
                LOGGER.warning("failed to cache trial %s: %s", candidate.registry_id, exc)

    async def _score_batch(
        self,
        patient: PatientSummary,
        candidates: Sequence[TrialCandidate],
        created_at: dt.datetime,
        cancel_event: Optional[asyncio.Event],
    ) -> List[MatchResult]:
        group_size = max(1, self.config.batch_concurrency)
        results: List[MatchResult] = []
        for offset in range(0, len(candidates), group_size):
            _check_cancelled(cancel_event)
            group = candidates[offset : offset + group_size]
            # gather keeps input order, so results stay in retrieval order.
            results.extend(
                await asyncio.gather(
                    *(self._score_one(patient, trial, created_at) for trial in group)
                )
            )
            if offset + group_size < len(candidates):
                await self._sleep(self.config.batch_pause_seconds)
        return results

    async def _score_incremental(
        self,
        patient: PatientSummary,
        candidates: Sequence[TrialCandidate],
        created_at: dt.datetime,
        cancel_event: Optional[asyncio.Event],
        events: Optional[asyncio.Queue],
    ) -> List[MatchResult]:
        total = len(candidates)
        results: List[MatchResult] = []
        for index, trial in enumerate(candidates, start=1):
            _check_cancelled(cancel_event)
            result = await self._score_one(patient, trial, created_at)
            results.append(result)
            _emit(
                events,
                ScoringCandidate(
                    registry_id=trial.registry_id,
                    title=trial.title,
                    score=result.confidence_score,
                    explanation=result.explanation,
                    index=index,
                    total=total,
                ),
            )
            if index < total:
                await self._sleep(self.config.incremental_pause_seconds)
        return results

    async def _score_one(
        self, patient: PatientSummary, trial: TrialCandidate, created_at: dt.datetime
    ) -> MatchResult:
        try:
            scored = await self._scorer.score(patient, trial)
            score, explanation = scored.score, scored.explanation
        except ReasoningServiceUnavailable as exc:
            LOGGER.error("scoring failed for trial %s: %s", trial.registry_id, exc)
            score, explanation = 0, FAILED_EVALUATION_EXPLANATION
        except Exception:
            # Any single-candidate failure becomes a zero score; the run continues.
            LOGGER.exception("unexpected scoring error for trial %s", trial.registry_id)
            score, explanation = 0, FAILED_EVALUATION_EXPLANATION
        return MatchResult.create(
            patient_id=patient.id,
            registry_id=trial.registry_id,
            score=score,
            explanation=explanation,
            created_at=created_at,
        )

    async def stream_matching(
        self, patient_id: str, cancel_event: Optional[asyncio.Event] = None
    ) -> AsyncIterator[ProgressEvent]:
        """Incremental run delivered as progress events.

        Ends with exactly one MatchingComplete or Failed event. Closing the
        iterator early cancels the run before its next dispatch.
        """
        cancel = cancel_event or asyncio.Event()
        queue: asyncio.Queue = asyncio.Queue()
        task = asyncio.create_task(self._produce(patient_id, cancel, queue))
        _BACKGROUND_TASKS.add(task)
        task.add_done_callback(_BACKGROUND_TASKS.discard)

        try:
            while True:
                event = await queue.get()
                yield event
                if event.terminal:
                    break
        finally:
            if not task.done():
                cancel.set()

    async def _produce(
        self, patient_id: str, cancel_event: asyncio.Event, queue: asyncio.Queue
    ) -> None:
        try:
            result = await self.run_matching(
                patient_id,
                mode="incremental",
                cancel_event=cancel_event,
                events=queue,
            )
        except MatchingError as exc:
            queue.put_nowait(Failed(code=exc.code, message=exc.message))
        except Exception as exc:
            LOGGER.exception("streaming match run failed for patient %s", patient_id)
            queue.put_nowait(Failed(message=f"{exc.__class__.__name__}: {exc}"))
        else:
            queue.put_nowait(MatchingComplete(result=result))


def build_orchestrator(
    engine: Optional[Engine] = None, config: Optional[MatchingConfig] = None
) -> MatchOrchestrator:
    config = config or load_matching_config()
    engine = engine or get_engine()
    ensure_tables(engine)
    scorer = TrialScorer(
        ReasoningClient(timeout_seconds=config.reasoning_timeout_seconds),
        policy=BackoffPolicy(
            max_retries=config.scoring_max_retries,
            base_delay_seconds=config.scoring_base_delay_seconds,
        ),
    )
    return MatchOrchestrator(
        profile_store=SqlPatientStore(engine),
        trial_store=SqlTrialStore(engine),
        match_store=SqlMatchStore(engine),
        registry=CTGovClient(timeout_seconds=config.registry_timeout_seconds),
        scorer=scorer,
        run_lock=get_match_run_lock(),
        config=config,
        notifier=LoggingNotifier(),
    )
