import asyncio
import datetime as dt
import json
import re
import threading
from typing import Dict, Iterable, List, Optional

import httpx
import pytest

from app.services import run_lock as run_lock_module
from app.services.ctgov_client import CTGovClient
from app.services.errors import (
    MatchingInProgress,
    PatientNotFound,
    ReasoningServiceUnavailable,
    RegistryUnavailable,
    RunCancelled,
    RunTimedOut,
)
from app.services.match_store import SqlMatchStore
from app.services.matching_orchestrator import (
    FAILED_EVALUATION_EXPLANATION,
    MatchOrchestrator,
    rank_matches,
)
from app.services.models import (
    Failed,
    MatchingComplete,
    MatchResult,
    RetrievalComplete,
    RetrievalStarted,
    ScoringCandidate,
    ScoringComplete,
    ScoringStarted,
)
from app.services.notifier import LoggingNotifier
from app.services.observability import get_ops_metrics
from app.services.patient_store import SqlPatientStore
from app.services.run_lock import InMemoryRunLock
from app.services.scoring_engine import ReasoningClient, ScoreResult, TrialScorer
from app.services.settings import MatchingConfig
from app.services.trial_store import SqlTrialStore

PATIENT_ID = "patient-1"

SCORES = {
    "NCT00000001": 80,
    "NCT00000002": 30,
    "NCT00000003": 95,
    "NCT00000004": 80,
    "NCT00000005": 40,
    "NCT00000006": 39,
}
FAILING = {"NCT00000007"}


class _FakeScorer:
    def __init__(
        self,
        scores: Dict[str, int],
        failing: Iterable[str] = (),
        gate: Optional[asyncio.Event] = None,
        delay: float = 0.0,
    ) -> None:
        self.scores = scores
        self.failing = set(failing)
        self.gate = gate
        self.delay = delay
        self.calls: List[str] = []
        self.started = asyncio.Event()
        self.active = 0
        self.max_active = 0

    async def score(self, patient, trial) -> ScoreResult:
        self.calls.append(trial.registry_id)
        self.started.set()
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
            if self.gate is not None:
                await self.gate.wait()
            if trial.registry_id in self.failing:
                raise ReasoningServiceUnavailable("reasoning service down")
            score = self.scores.get(trial.registry_id, 0)
            return ScoreResult(score=score, explanation=f"reason {trial.registry_id}")
        finally:
            self.active -= 1


class _RecordingSleep:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def seeded(engine, registry_transport, make_study, thyroid_profile):
    SqlPatientStore(engine).upsert_patient(thyroid_profile, patient_id=PATIENT_ID)
    transport, state = registry_transport
    state["studies"] = [
        make_study(f"NCT0000000{index}", title=f"Trial {index}") for index in range(1, 8)
    ]
    return engine, transport, state


def _orchestrator(
    engine,
    transport,
    scorer,
    sleep=None,
    config: Optional[MatchingConfig] = None,
    notifier: Optional[LoggingNotifier] = None,
) -> MatchOrchestrator:
    return MatchOrchestrator(
        profile_store=SqlPatientStore(engine),
        trial_store=SqlTrialStore(engine),
        match_store=SqlMatchStore(engine),
        registry=CTGovClient(base_url="https://ctgov.test/api/v2", transport=transport),
        scorer=scorer,
        run_lock=InMemoryRunLock(),
        config=config or MatchingConfig(results_base_url="https://app.test"),
        notifier=notifier or LoggingNotifier(),
        sleep=sleep or _RecordingSleep(),
    )


def _drain(queue: asyncio.Queue) -> list:
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


def test_rank_filters_threshold_and_keeps_tie_order() -> None:
    created_at = dt.datetime(2026, 1, 1)
    results = [
        MatchResult.create(
            patient_id="p", registry_id=nct_id, score=score, explanation="", created_at=created_at
        )
        for nct_id, score in [("A", 60), ("B", 39), ("C", 90), ("D", 60), ("E", 40)]
    ]

    ranked = rank_matches(results, min_score=40)

    assert [result.registry_id for result in ranked] == ["C", "A", "D", "E"]


@pytest.mark.asyncio
async def test_batch_run_ranks_persists_and_notifies(seeded) -> None:
    engine, transport, _ = seeded
    scorer = _FakeScorer(SCORES, FAILING)
    sleep = _RecordingSleep()
    notifier = LoggingNotifier()
    orchestrator = _orchestrator(engine, transport, scorer, sleep=sleep, notifier=notifier)

    result = await orchestrator.run_matching(PATIENT_ID)

    ranked = [(match.registry_id, match.confidence_score) for match in result.matches]
    assert ranked == [
        ("NCT00000003", 95),
        ("NCT00000001", 80),
        ("NCT00000004", 80),
        ("NCT00000005", 40),
    ]
    assert result.candidate_count == 7
    assert result.no_candidates is False

    stored = SqlMatchStore(engine).list_matches(PATIENT_ID)
    assert [(match.registry_id, match.confidence_score) for match in stored] == ranked
    assert len(SqlTrialStore(engine).list_all_trials()) == 7

    assert scorer.max_active == 5
    assert sorted(scorer.calls) == sorted(f"NCT0000000{index}" for index in range(1, 8))
    assert sleep.delays == [0.5]
    assert list(notifier.sent) == [
        {
            "event": "match_notification",
            "patient_id": PATIENT_ID,
            "match_count": 4,
            "results_url": "https://app.test/patients/patient-1/matches",
        }
    ]
    assert orchestrator.last_run(PATIENT_ID).history == [
        "idle",
        "retrieving",
        "scoring",
        "persisting",
        "done",
    ]
    metrics = get_ops_metrics()["match_runs"]
    assert metrics["by_mode"] == {"batch": 1}
    assert metrics["success_total"] == 1


@pytest.mark.asyncio
async def test_incremental_run_reports_each_candidate_in_order(seeded) -> None:
    engine, transport, _ = seeded
    scorer = _FakeScorer(SCORES, FAILING)
    sleep = _RecordingSleep()
    orchestrator = _orchestrator(engine, transport, scorer, sleep=sleep)
    queue: asyncio.Queue = asyncio.Queue()

    result = await orchestrator.run_matching(PATIENT_ID, mode="incremental", events=queue)

    events = _drain(queue)
    assert isinstance(events[0], RetrievalStarted)
    assert events[0].conditions[0] == "Papillary Thyroid Carcinoma"
    scored = [event for event in events if isinstance(event, ScoringCandidate)]
    assert [event.registry_id for event in scored] == [
        f"NCT0000000{index}" for index in range(1, 8)
    ]
    assert [event.index for event in scored] == list(range(1, 8))
    assert all(event.total == 7 for event in scored)
    assert scored[-1].score == 0
    assert scored[-1].explanation == FAILED_EVALUATION_EXPLANATION
    assert [type(event) for event in events if not isinstance(event, ScoringCandidate)][-3:] == [
        RetrievalComplete,
        ScoringStarted,
        ScoringComplete,
    ]
    assert events[-1].accepted_count == len(result.matches) == 4

    assert scorer.calls == [f"NCT0000000{index}" for index in range(1, 8)]
    assert scorer.max_active == 1
    assert sleep.delays == [0.3] * 6


@pytest.mark.asyncio
async def test_both_modes_and_repeat_runs_agree(seeded) -> None:
    engine, transport, _ = seeded
    orchestrator = _orchestrator(engine, transport, _FakeScorer(SCORES, FAILING))

    first = await orchestrator.run_matching(PATIENT_ID)
    second = await orchestrator.run_matching(PATIENT_ID)
    incremental = await orchestrator.run_matching(PATIENT_ID, mode="incremental")

    def _key(result):
        return [(match.registry_id, match.confidence_score) for match in result.matches]

    assert _key(first) == _key(second) == _key(incremental)


@pytest.mark.asyncio
async def test_cancelled_run_writes_nothing(seeded) -> None:
    engine, transport, _ = seeded
    previous = MatchResult.create(
        patient_id=PATIENT_ID,
        registry_id="NCT09999999",
        score=77,
        explanation="earlier run",
        created_at=dt.datetime(2026, 1, 1),
    )
    SqlMatchStore(engine).replace_matches(PATIENT_ID, [previous])
    cancel = asyncio.Event()

    class _CancellingScorer(_FakeScorer):
        async def score(self, patient, trial):
            outcome = await super().score(patient, trial)
            cancel.set()
            return outcome

    scorer = _CancellingScorer(SCORES)
    orchestrator = _orchestrator(
        engine, transport, scorer, config=MatchingConfig(batch_concurrency=2)
    )

    with pytest.raises(RunCancelled):
        await orchestrator.run_matching(PATIENT_ID, cancel_event=cancel)

    # The first group was already in flight; nothing after it was dispatched.
    assert len(scorer.calls) == 2
    stored = SqlMatchStore(engine).list_matches(PATIENT_ID)
    assert [match.registry_id for match in stored] == ["NCT09999999"]
    assert orchestrator.last_run(PATIENT_ID).state == "errored"


@pytest.mark.asyncio
async def test_concurrent_run_for_same_patient_is_rejected(seeded) -> None:
    engine, transport, _ = seeded
    gate = asyncio.Event()
    scorer = _FakeScorer(SCORES, gate=gate)
    orchestrator = _orchestrator(engine, transport, scorer)

    first = asyncio.create_task(orchestrator.run_matching(PATIENT_ID))
    await asyncio.wait_for(scorer.started.wait(), timeout=5)

    with pytest.raises(MatchingInProgress):
        await orchestrator.run_matching(PATIENT_ID)

    gate.set()
    result = await first
    assert len(result.matches) == 4

    # Lock is released once the first run finishes.
    again = await orchestrator.run_matching(PATIENT_ID)
    assert len(again.matches) == 4


@pytest.mark.asyncio
async def test_lock_outlives_a_run_even_with_a_short_configured_ttl(
    seeded, monkeypatch
) -> None:
    engine, transport, _ = seeded
    now = {"value": 1000.0}
    monkeypatch.setattr(run_lock_module.time, "time", lambda: now["value"])
    gate = asyncio.Event()
    scorer = _FakeScorer(SCORES, gate=gate)
    orchestrator = _orchestrator(
        engine,
        transport,
        scorer,
        config=MatchingConfig(lock_ttl_seconds=1, run_deadline_seconds=30),
    )

    first = asyncio.create_task(orchestrator.run_matching(PATIENT_ID))
    await asyncio.wait_for(scorer.started.wait(), timeout=5)
    # Well past the configured TTL, still inside the deadline.
    now["value"] += 20

    with pytest.raises(MatchingInProgress):
        await orchestrator.run_matching(PATIENT_ID)

    gate.set()
    result = await first
    assert len(result.matches) == 4


@pytest.mark.asyncio
async def test_store_and_lock_calls_run_off_the_event_loop(seeded) -> None:
    engine, transport, _ = seeded
    loop_thread = threading.get_ident()
    threads: Dict[str, int] = {}

    class _PatientStore(SqlPatientStore):
        def get_patient(self, patient_id):
            threads["get_patient"] = threading.get_ident()
            return super().get_patient(patient_id)

    class _MatchStore(SqlMatchStore):
        def replace_matches(self, patient_id, results):
            threads["replace_matches"] = threading.get_ident()
            return super().replace_matches(patient_id, results)

    class _Lock(InMemoryRunLock):
        def try_acquire(self, *, key, ttl_seconds):
            threads["try_acquire"] = threading.get_ident()
            return super().try_acquire(key=key, ttl_seconds=ttl_seconds)

    orchestrator = MatchOrchestrator(
        profile_store=_PatientStore(engine),
        trial_store=SqlTrialStore(engine),
        match_store=_MatchStore(engine),
        registry=CTGovClient(base_url="https://ctgov.test/api/v2", transport=transport),
        scorer=_FakeScorer(SCORES),
        run_lock=_Lock(),
        config=MatchingConfig(),
        sleep=_RecordingSleep(),
    )

    await orchestrator.run_matching(PATIENT_ID)

    assert set(threads) == {"get_patient", "replace_matches", "try_acquire"}
    assert loop_thread not in threads.values()


@pytest.mark.asyncio
async def test_zero_candidates_clears_previous_matches(seeded) -> None:
    engine, transport, state = seeded
    state["studies"] = []
    SqlMatchStore(engine).replace_matches(
        PATIENT_ID,
        [
            MatchResult.create(
                patient_id=PATIENT_ID,
                registry_id="NCT09999999",
                score=77,
                explanation="stale",
                created_at=dt.datetime(2026, 1, 1),
            )
        ],
    )
    notifier = LoggingNotifier()
    orchestrator = _orchestrator(engine, transport, _FakeScorer(SCORES), notifier=notifier)

    result = await orchestrator.run_matching(PATIENT_ID)

    assert result.no_candidates is True
    assert result.matches == []
    assert SqlMatchStore(engine).list_matches(PATIENT_ID) == []
    assert notifier.sent[-1]["match_count"] == 0
    assert orchestrator.last_run(PATIENT_ID).history == [
        "idle",
        "retrieving",
        "persisting",
        "done",
    ]
    assert get_ops_metrics()["match_runs"]["by_outcome"] == {"NO_CANDIDATES": 1}


@pytest.mark.asyncio
async def test_registry_failure_aborts_without_write(seeded) -> None:
    engine, transport, state = seeded
    state["status"] = 503
    scorer = _FakeScorer(SCORES)
    orchestrator = _orchestrator(engine, transport, scorer)

    with pytest.raises(RegistryUnavailable):
        await orchestrator.run_matching(PATIENT_ID)

    assert scorer.calls == []
    assert orchestrator.last_run(PATIENT_ID).history[-1] == "errored"
    assert get_ops_metrics()["match_runs"]["failure_total"] == 1


@pytest.mark.asyncio
async def test_unknown_patient(seeded) -> None:
    engine, transport, _ = seeded
    orchestrator = _orchestrator(engine, transport, _FakeScorer(SCORES))

    with pytest.raises(PatientNotFound):
        await orchestrator.run_matching("nobody")


@pytest.mark.asyncio
async def test_invalid_mode_is_rejected(seeded) -> None:
    engine, transport, _ = seeded
    orchestrator = _orchestrator(engine, transport, _FakeScorer(SCORES))

    with pytest.raises(ValueError):
        await orchestrator.run_matching(PATIENT_ID, mode="parallel")


@pytest.mark.asyncio
async def test_run_deadline_times_out_without_write(seeded) -> None:
    engine, transport, _ = seeded
    scorer = _FakeScorer(SCORES, delay=5.0)
    orchestrator = _orchestrator(
        engine, transport, scorer, config=MatchingConfig(run_deadline_seconds=0.05)
    )

    with pytest.raises(RunTimedOut):
        await orchestrator.run_matching(PATIENT_ID)

    assert SqlMatchStore(engine).list_matches(PATIENT_ID) == []


@pytest.mark.asyncio
async def test_stream_ends_with_single_terminal_event(seeded) -> None:
    engine, transport, _ = seeded
    orchestrator = _orchestrator(engine, transport, _FakeScorer(SCORES, FAILING))

    events = [event async for event in orchestrator.stream_matching(PATIENT_ID)]

    assert isinstance(events[0], RetrievalStarted)
    assert isinstance(events[-1], MatchingComplete)
    assert sum(1 for event in events if event.terminal) == 1
    payload = events[-1].to_payload()
    assert payload["match_count"] == 4
    assert payload["matches"][0]["registry_id"] == "NCT00000003"
    assert payload["matches"][0]["score_color"] == "BLUE"


@pytest.mark.asyncio
async def test_stream_reports_failure_as_terminal_event(seeded) -> None:
    engine, transport, _ = seeded
    orchestrator = _orchestrator(engine, transport, _FakeScorer(SCORES))

    events = [event async for event in orchestrator.stream_matching("nobody")]

    assert len(events) == 1
    assert isinstance(events[0], Failed)
    assert events[0].code == "PATIENT_NOT_FOUND"


@pytest.mark.asyncio
async def test_closing_stream_cancels_run(seeded) -> None:
    engine, transport, _ = seeded
    scorer = _FakeScorer(SCORES)
    orchestrator = _orchestrator(engine, transport, scorer)

    stream = orchestrator.stream_matching(PATIENT_ID)
    async for event in stream:
        if isinstance(event, ScoringCandidate):
            break
    await stream.aclose()

    for _ in range(100):
        run = orchestrator.last_run(PATIENT_ID)
        if run is not None and run.state == "errored":
            break
        await asyncio.sleep(0)

    assert orchestrator.last_run(PATIENT_ID).state == "errored"
    assert len(scorer.calls) < 7
    assert SqlMatchStore(engine).list_matches(PATIENT_ID) == []


@pytest.mark.asyncio
async def test_real_scorer_end_to_end(seeded, make_study) -> None:
    engine, transport, state = seeded
    state["studies"] = [
        make_study("NCT00000001", title="Adult thyroid study"),
        make_study("NCT00000002", title="Young adult study", maximum_age="40 Years"),
        make_study("NCT00000003", title="Another thyroid study"),
    ]
    llm_scores = {"NCT00000001": 88, "NCT00000003": 137}
    prompted: List[str] = []

    def _llm(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        nct_id = re.search(r"Trial ID: (NCT\d{8})", body["messages"][1]["content"]).group(1)
        prompted.append(nct_id)
        content = json.dumps({"score": llm_scores[nct_id], "reasoning": f"fit {nct_id}"})
        return httpx.Response(200, json={"choices": [{"message": {"content": content}}]})

    scorer = TrialScorer(
        ReasoningClient(
            api_key="test-key",
            base_url="https://llm.test/v1",
            transport=httpx.MockTransport(_llm),
        )
    )
    orchestrator = _orchestrator(engine, transport, scorer)

    result = await orchestrator.run_matching(PATIENT_ID)

    assert [(m.registry_id, m.confidence_score) for m in result.matches] == [
        ("NCT00000003", 100),
        ("NCT00000001", 88),
    ]
    assert sorted(prompted) == ["NCT00000001", "NCT00000003"]
