"""
RecallEngine – Stress-test harness
===================================
Drives synthetic load against the scheduler, memory model, card store and
session coordinator and reports timings, memory footprint and a stability
score.  Diagnostic only; nothing in the review path depends on it.

Each simulated session belongs to its own learner and runs on a worker
thread.  A worker repeatedly picks an operation:

* review (50 %) – start a session if none is open, grade the next card,
  complete the session when its queue is exhausted;
* stats (30 %)  – load the learner's cards and aggregate them;
* due   (20 %)  – take a fresh due-queue snapshot.

While a session is open the worker also checks that a second ``start``
for the same learner is rejected.
"""

from __future__ import annotations

import logging
import random
import statistics
import threading
import time
import tracemalloc
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, List, NamedTuple, Optional

from core.card_store import CardStore, InMemoryCardStore
from core.config import Settings, get_settings
from core.errors import SessionAlreadyActive, SessionNotActive, SRSError
from core.models import Card, ReviewOutcome
from core.scheduler import Scheduler
from core.session import QUEUE_EXHAUSTED, SessionCoordinator
from core.srs_engine import review_card
from core.stats import learner_stats

log = logging.getLogger(__name__)

NEW_CARD_BATCH = 10
_MB = 1024 * 1024
LEAK_THRESHOLD_BYTES = 10 * _MB


class StressPreset(NamedTuple):
    card_count: int
    session_count: int
    duration_ms: int


PRESETS: Dict[str, StressPreset] = {
    "light": StressPreset(100, 2, 10_000),
    "medium": StressPreset(500, 3, 20_000),
    "heavy": StressPreset(1000, 5, 30_000),
    "extreme": StressPreset(2000, 8, 60_000),
}


@dataclass
class StressMetrics:
    # algorithm
    sm2_calculation_ms: float = 0.0
    sm2_calculation_max_ms: float = 0.0
    snapshot_ms: float = 0.0
    snapshot_max_ms: float = 0.0
    session_management_ms: float = 0.0
    # card store
    save_ms: float = 0.0
    load_ms: float = 0.0
    # volume
    operations: int = 0
    reviews: int = 0
    sessions_completed: int = 0
    rejected_duplicate_starts: int = 0
    # memory
    cards_in_memory: int = 0
    sessions_in_memory: int = 0
    peak_memory_bytes: int = 0
    memory_growth_bytes: int = 0
    memory_leak_detected: bool = False
    # scalability
    stability_score: int = 100


@dataclass
class StressTestResult:
    test_name: str
    card_count: int
    session_count: int
    duration_ms: float
    success: bool
    metrics: StressMetrics
    errors: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)


# ── Instrumentation ──────────────────────────────────────────────────

class _Recorder:
    """Thread-safe timing samples, counters and error messages."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.samples: Dict[str, List[float]] = defaultdict(list)
        self.counters: Dict[str, int] = defaultdict(int)
        self.errors: List[str] = []

    def time(self, name: str, seconds: float) -> None:
        with self._lock:
            self.samples[name].append(seconds * 1000.0)

    def count(self, name: str, n: int = 1) -> None:
        with self._lock:
            self.counters[name] += n

    def error(self, message: str) -> None:
        log.warning("Stress test error: %s", message)
        with self._lock:
            self.errors.append(message)

    def mean(self, name: str) -> float:
        values = self.samples.get(name)
        return statistics.fmean(values) if values else 0.0

    def max(self, name: str) -> float:
        return max(self.samples.get(name) or [0.0])


class _TimedStore(CardStore):
    """Delegating card store that times loads and saves."""

    def __init__(self, inner: CardStore, recorder: _Recorder) -> None:
        super().__init__(inner.now)
        self._inner = inner
        self._rec = recorder

    def load_cards(self, learner_id):
        t0 = time.perf_counter()
        try:
            return self._inner.load_cards(learner_id)
        finally:
            self._rec.time("load", time.perf_counter() - t0)

    def get_card(self, learner_id, card_id):
        return self._inner.get_card(learner_id, card_id)

    def save_card(self, card, review=None):
        t0 = time.perf_counter()
        try:
            self._inner.save_card(card, review)
        finally:
            self._rec.time("save", time.perf_counter() - t0)

    def add_cards(self, cards):
        return self._inner.add_cards(cards)

    def record_session(self, summary):
        self._inner.record_session(summary)

    def session_history(self, learner_id=None):
        return self._inner.session_history(learner_id)

    def review_history(self, learner_id, card_id=None):
        return self._inner.review_history(learner_id, card_id)

    def reset_progress(self, learner_id):
        return self._inner.reset_progress(learner_id)


class _TimedScheduler(Scheduler):
    def __init__(self, store: CardStore, recorder: _Recorder) -> None:
        super().__init__(store)
        self._rec = recorder

    def snapshot(self, learner_id, now=None, *, limit=None):
        t0 = time.perf_counter()
        try:
            return super().snapshot(learner_id, now, limit=limit)
        finally:
            self._rec.time("snapshot", time.perf_counter() - t0)


# ── Load generation ──────────────────────────────────────────────────

def _seed_cards(store: CardStore, learner_id: str, start: int, count: int, rng: random.Random) -> None:
    now = store.now()
    cards = []
    for j in range(start, start + count):
        # spread due times and lapses so ordering has ties to break
        due = now - timedelta(minutes=rng.randint(0, 24 * 60))
        cards.append(
            Card(
                id=f"card-{j:05d}",
                learner_id=learner_id,
                due_at=due,
                lapse_count=rng.randint(0, 3),
                word=f"word_{j}",
                translation=f"translation_{j}",
                created_at=now,
            )
        )
    store.add_cards(cards)


class _Worker:
    def __init__(self, index, coordinator, store, scheduler, recorder, rng, card_budget):
        self.learner_id = f"stress-learner-{index}"
        self.device_id = f"stress-device-{index}"
        self.coordinator = coordinator
        self.store = store
        self.scheduler = scheduler
        self.rec = recorder
        self.rng = rng
        self.next_card_no = card_budget
        self.card_limit = card_budget * 2
        self.session_id: Optional[str] = None
        self.drained = False

    def run(self, deadline: float) -> None:
        while time.perf_counter() < deadline:
            roll = self.rng.random()
            try:
                if roll < 0.5 and not self.drained:
                    self._review_step()
                elif roll < 0.8 or self.drained:
                    learner_stats(self.store.load_cards(self.learner_id), self.store.now())
                else:
                    self.scheduler.snapshot(self.learner_id)
            except SRSError as exc:
                self.rec.error(f"{self.learner_id}: {type(exc).__name__}: {exc}")
            self.rec.count("operations")
        if self.session_id is not None:
            self._complete()

    def _start(self) -> None:
        t0 = time.perf_counter()
        started = self.coordinator.start(self.learner_id, self.device_id)
        self.rec.time("session", time.perf_counter() - t0)
        self.session_id = started.session.session_id
        try:
            self.coordinator.start(self.learner_id, f"{self.device_id}-dup")
        except SessionAlreadyActive:
            self.rec.count("rejected_duplicate_starts")
        else:
            self.rec.error(f"{self.learner_id}: duplicate start was accepted")

    def _complete(self) -> None:
        t0 = time.perf_counter()
        try:
            self.coordinator.complete(self.session_id)
        except SessionNotActive:
            self.session_id = None
            raise
        self.session_id = None
        self.rec.time("session", time.perf_counter() - t0)
        self.rec.count("sessions_completed")

    def _review_step(self) -> None:
        if self.session_id is None:
            self._start()
        card = self.coordinator.next_card(self.session_id)
        if card is QUEUE_EXHAUSTED:
            exhausted_empty = self.coordinator.progress(self.session_id).total == 0
            self._complete()
            if exhausted_empty:
                self._add_new_cards()
            return

        grade = self.rng.randint(0, 5)
        t0 = time.perf_counter()
        review_card(card, ReviewOutcome(grade=grade, recorded_at=self.store.now()))
        self.rec.time("sm2", time.perf_counter() - t0)

        self.coordinator.submit_outcome(
            self.session_id, card.id, grade, response_ms=self.rng.randint(1000, 4000)
        )
        self.rec.count("reviews")

    def _add_new_cards(self) -> None:
        if self.next_card_no >= self.card_limit:
            self.drained = True
            return
        count = min(NEW_CARD_BATCH, self.card_limit - self.next_card_no)
        _seed_cards(self.store, self.learner_id, self.next_card_no, count, self.rng)
        self.next_card_no += count


# ── Scoring ──────────────────────────────────────────────────────────

def _stability_score(rec: _Recorder, leak: bool) -> int:
    score = 100
    if leak:
        score -= 20
    sm2 = rec.samples.get("sm2") or []
    if len(sm2) > 1:
        mean = statistics.fmean(sm2)
        if statistics.pvariance(sm2, mean) > mean * 0.5:
            score -= 15
    score -= min(50, len(rec.errors))
    return max(0, score)


def _recommend(metrics: StressMetrics, error_rate: float, settings: Settings) -> List[str]:
    recs = []
    if metrics.sm2_calculation_ms > settings.sm2_target_ms:
        recs.append("SM-2 calculation is slow; profile the memory model.")
    if metrics.snapshot_max_ms > settings.snapshot_target_ms:
        recs.append("Due-queue snapshots exceed the target; cap the queue or index cards by due date.")
    if metrics.peak_memory_bytes > settings.memory_target_mb * _MB:
        recs.append("Memory footprint is high; load cards lazily instead of whole learner sets.")
    if metrics.memory_leak_detected:
        recs.append("Memory kept growing during the run; check for retained sessions or cards.")
    if error_rate > 0.01:
        recs.append("Error rate is high; review card store stability and error handling.")
    return recs


def run_stress_test(
    card_count: int,
    session_count: int,
    duration_ms: int,
    *,
    store: Optional[CardStore] = None,
    seed: Optional[int] = None,
    settings: Optional[Settings] = None,
    trace_memory: bool = True,
) -> StressTestResult:
    """Run *session_count* concurrent learners with *card_count* cards each
    for *duration_ms* milliseconds and report on it."""
    if card_count < 0 or session_count < 1 or duration_ms < 0:
        raise ValueError("card_count >= 0, session_count >= 1 and duration_ms >= 0 required")

    settings = settings or get_settings()
    test_name = f"SRS stress test - {card_count} cards, {session_count} sessions"
    rec = _Recorder()
    base_store = store or InMemoryCardStore()
    timed_store = _TimedStore(base_store, rec)
    scheduler = _TimedScheduler(timed_store, rec)
    coordinator = SessionCoordinator(timed_store, scheduler=scheduler, settings=settings)
    master_rng = random.Random(seed)

    started_tracing = False
    if trace_memory and not tracemalloc.is_tracing():
        tracemalloc.start()
        started_tracing = True

    t_start = time.perf_counter()
    try:
        workers = []
        for i in range(session_count):
            rng = random.Random(master_rng.random())
            worker = _Worker(i, coordinator, timed_store, scheduler, rec, rng, card_count)
            _seed_cards(base_store, worker.learner_id, 0, card_count, rng)
            workers.append(worker)

        baseline = tracemalloc.get_traced_memory()[0] if tracemalloc.is_tracing() else 0
        if tracemalloc.is_tracing():
            tracemalloc.reset_peak()
        log.info("Starting %s for %d ms", test_name, duration_ms)

        deadline = time.perf_counter() + duration_ms / 1000.0
        with ThreadPoolExecutor(max_workers=session_count, thread_name_prefix="srs-stress") as pool:
            futures = [pool.submit(w.run, deadline) for w in workers]
            for w, fut in zip(workers, futures):
                try:
                    fut.result()
                except Exception as exc:
                    log.exception("Stress worker for %s crashed", w.learner_id)
                    rec.error(f"{w.learner_id}: worker crashed: {exc!r}")

        coordinator.expire_idle()
        if tracemalloc.is_tracing():
            current, peak = tracemalloc.get_traced_memory()
        else:
            current, peak = baseline, baseline
    finally:
        if started_tracing:
            tracemalloc.stop()
    elapsed_ms = (time.perf_counter() - t_start) * 1000.0

    growth = max(0, current - baseline)
    leak = growth > LEAK_THRESHOLD_BYTES
    operations = rec.counters["operations"]
    metrics = StressMetrics(
        sm2_calculation_ms=rec.mean("sm2"),
        sm2_calculation_max_ms=rec.max("sm2"),
        snapshot_ms=rec.mean("snapshot"),
        snapshot_max_ms=rec.max("snapshot"),
        session_management_ms=rec.mean("session"),
        save_ms=rec.mean("save"),
        load_ms=rec.mean("load"),
        operations=operations,
        reviews=rec.counters["reviews"],
        sessions_completed=rec.counters["sessions_completed"],
        rejected_duplicate_starts=rec.counters["rejected_duplicate_starts"],
        cards_in_memory=sum(len(base_store.load_cards(w.learner_id)) for w in workers),
        sessions_in_memory=coordinator.active_count,
        peak_memory_bytes=peak,
        memory_growth_bytes=growth,
        memory_leak_detected=leak,
        stability_score=_stability_score(rec, leak),
    )

    error_rate = len(rec.errors) / operations if operations else 1.0
    success = (
        operations > 0
        and error_rate < 0.05
        and metrics.snapshot_max_ms <= settings.snapshot_target_ms
    )
    result = StressTestResult(
        test_name=test_name,
        card_count=card_count,
        session_count=session_count,
        duration_ms=elapsed_ms,
        success=success,
        metrics=metrics,
        errors=list(rec.errors),
        recommendations=_recommend(metrics, error_rate, settings),
    )
    log.info(
        "%s finished: success=%s ops=%d reviews=%d errors=%d stability=%d",
        test_name, success, operations, metrics.reviews, len(rec.errors), metrics.stability_score,
    )
    return result


def run_preset(name: str, **kwargs) -> StressTestResult:
    preset = PRESETS[name]
    return run_stress_test(preset.card_count, preset.session_count, preset.duration_ms, **kwargs)
