"""
BatchTemplateGenerator with a stub generation service.

Coroutines are driven with asyncio.run(); the injected sleep is a no-op so
the suite does not wait on real delays.
"""
import sys
import os
import asyncio
import threading
import time

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest

from app.models.curriculum import CurriculumItem, TemplateGap
from app.models.generation import BatchGenerationRequest, ContentValidation
from app.services.batch_generator import BatchTemplateGenerator, chunked, curriculum_validator
from app.services.curriculum import CurriculumManager
from app.services.errors import BatchAlreadyRunningError, GenerationError
from app.services.template_store import InMemoryTemplateStore
from factories import make_template

ZO = "Zahlen & Operationen"


def _run(coro):
    return asyncio.run(coro)


class SleepRecorder:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


class StubGenerator:
    """Counts concurrent calls; fails for question types listed in `fail_types`."""

    def __init__(self, fail_types=(), prompt="Wie viel ist 2 + 2?", hold=0.02):
        self.fail_types = set(fail_types)
        self.prompt = prompt
        self.hold = hold
        self.active = 0
        self.peak = 0
        self.calls = 0
        self._lock = threading.Lock()

    def generate_template(self, request):
        with self._lock:
            self.active += 1
            self.calls += 1
            self.peak = max(self.peak, self.active)
        try:
            time.sleep(self.hold)
            if request.question_type in self.fail_types:
                raise GenerationError("LLM returned invalid JSON")
            return make_template(
                grade=request.grade, quarter_app=request.quarter, domain=request.domain,
                subcategory=request.subcategory, difficulty=request.difficulty,
                student_prompt=self.prompt, quality_score=0.5,
            )
        finally:
            with self._lock:
                self.active -= 1


def _manager():
    return CurriculumManager([
        CurriculumItem(grade=1, quarter="Q1", domain=ZO, subcategory="Zählen bis 10", skill="Zählen", tags=("ZR_10",)),
    ])


def _gap(question_type="text-input", priority="HIGH"):
    return TemplateGap(
        grade=1, quarter="Q1", domain=ZO, subcategory="Zählen bis 10", difficulty="AFB I",
        question_type=question_type, current_count=0, target_count=8, priority=priority,
    )


def _batch(generator=None, store=None, **kw):
    kw.setdefault("sleep", SleepRecorder())
    return BatchTemplateGenerator(
        generator or StubGenerator(), store if store is not None else InMemoryTemplateStore(), _manager(), **kw,
    )


def test_chunked():
    assert chunked([1, 2, 3, 4, 5], 2) == [[1, 2], [3, 4], [5]]
    assert chunked([], 3) == []


class TestGenerateBatch:
    def test_generates_validates_and_saves(self):
        store = InMemoryTemplateStore()
        result = _run(_batch(store=store).generate_batch(BatchGenerationRequest(gaps=[_gap(), _gap()])))

        assert result.success is True
        assert result.total_generated == 2
        assert result.total_saved == 2
        assert result.total_rejected == 0
        assert len(store.fetch_active_templates()) == 2
        # validator score replaces the generator's placeholder quality
        assert all(t.quality_score == 1.0 for t in result.generated_templates)

    def test_concurrency_never_exceeds_limit(self):
        gen = StubGenerator(hold=0.05)
        batch = _batch(gen, max_concurrent_requests=2, batch_size=10)
        result = _run(batch.generate_batch(BatchGenerationRequest(gaps=[_gap() for _ in range(7)])))
        assert gen.calls == 7
        assert gen.peak <= 2
        assert result.total_generated == 7

    def test_request_overrides_concurrency(self):
        gen = StubGenerator(hold=0.05)
        _run(_batch(gen, max_concurrent_requests=5).generate_batch(
            BatchGenerationRequest(gaps=[_gap() for _ in range(4)], max_concurrent_requests=1)
        ))
        assert gen.peak == 1

    def test_failures_are_reported_not_fatal(self):
        gen = StubGenerator(fail_types={"sort"})
        gaps = [_gap(), _gap("sort"), _gap("match")]
        result = _run(_batch(gen).generate_batch(BatchGenerationRequest(gaps=gaps)))

        assert result.total_generated == 2
        assert len(result.errors) == 1
        assert "1-Q1-Zahlen & Operationen-AFB I-sort" in result.errors[0]
        assert result.success is True

    def test_rejected_templates_are_not_saved(self):
        store = InMemoryTemplateStore()
        gen = StubGenerator(prompt="Zeichne 3 Kreise")
        result = _run(_batch(gen, store=store).generate_batch(BatchGenerationRequest(gaps=[_gap()])))

        assert result.total_generated == 1
        assert result.total_rejected == 1
        assert result.total_saved == 0
        assert result.success is False
        assert store.fetch_active_templates() == []
        assert any("visual" in e for e in result.errors)

    def test_custom_validators(self):
        def lenient(template):
            return ContentValidation(is_valid=True, quality_score=0.9)
        result = _run(_batch(StubGenerator(prompt="Zeichne 3 Kreise"), validators=[lenient]).generate_batch(
            BatchGenerationRequest(gaps=[_gap()])
        ))
        assert result.total_saved == 1
        assert result.generated_templates[0].quality_score == 0.9

    def test_save_failure_is_logged(self):
        store = InMemoryTemplateStore()

        def broken(templates):
            raise RuntimeError("insert failed")
        store.insert_templates = broken
        result = _run(_batch(store=store).generate_batch(BatchGenerationRequest(gaps=[_gap()])))
        assert result.total_saved == 0
        assert result.total_generated == 1

    def test_target_count_uses_priority_queue(self):
        gaps = [_gap(priority="LOW"), _gap(priority="MEDIUM"), _gap(priority="HIGH"), _gap(priority="HIGH")]
        gen = StubGenerator()
        result = _run(_batch(gen).generate_batch(BatchGenerationRequest(gaps=gaps, target_count=3)))
        assert gen.calls == 3
        assert result.progress.total_requested == 3

    def test_delay_between_batches(self):
        sleep = SleepRecorder()
        batch = _batch(sleep=sleep, batch_size=2, delay_seconds=1.0, max_concurrent_requests=1)
        _run(batch.generate_batch(BatchGenerationRequest(gaps=[_gap() for _ in range(5)])))
        assert sleep.calls.count(1.0) == 2

    def test_empty_request(self):
        result = _run(_batch().generate_batch(BatchGenerationRequest(gaps=[])))
        assert result.success is False
        assert result.total_generated == 0


class TestProgress:
    def test_callback_sees_every_batch(self):
        batch = _batch(batch_size=2)
        seen = []
        batch.on_progress(seen.append)
        _run(batch.generate_batch(BatchGenerationRequest(gaps=[_gap() for _ in range(5)])))

        # one notification when a batch starts, one when it ends
        assert len(seen) == 6
        assert seen[0].total_batches == 3
        assert seen[-1].completed == 5
        assert seen[-1].percent_complete == pytest.approx(100.0)
        assert seen[-1].successful == 5

    def test_unsubscribe(self):
        batch = _batch()
        seen = []
        unsubscribe = batch.on_progress(seen.append)
        unsubscribe()
        _run(batch.generate_batch(BatchGenerationRequest(gaps=[_gap()])))
        assert seen == []

    def test_broken_callback_does_not_stop_run(self):
        batch = _batch()

        def broken(progress):
            raise ValueError("ui gone")
        batch.on_progress(broken)
        result = _run(batch.generate_batch(BatchGenerationRequest(gaps=[_gap()])))
        assert result.total_saved == 1

    def test_progress_resets_after_run(self):
        batch = _batch()
        _run(batch.generate_batch(BatchGenerationRequest(gaps=[_gap()])))
        assert batch.is_generating is False
        assert batch.get_current_progress().total_requested == 0


class TestSingleRun:
    def test_second_run_is_refused(self):
        batch = _batch(StubGenerator(hold=0.1))

        async def scenario():
            first = asyncio.create_task(batch.generate_batch(BatchGenerationRequest(gaps=[_gap()])))
            await asyncio.sleep(0)
            assert batch.is_generating
            with pytest.raises(BatchAlreadyRunningError):
                await batch.generate_batch(BatchGenerationRequest(gaps=[_gap()]))
            return await first

        result = _run(scenario())
        assert result.total_saved == 1
        assert batch.is_generating is False


class TestShortcuts:
    def test_fill_high_priority_gaps(self):
        gen = StubGenerator()
        result = _run(_batch(gen).fill_high_priority_gaps(count=3))
        assert gen.calls == 3
        assert result.total_saved == 3

    def test_generate_for_grade_without_curriculum_cells(self):
        gen = StubGenerator()
        result = _run(_batch(gen).generate_for_grade(7, count=5))
        assert gen.calls == 0
        assert result.total_generated == 0


def test_curriculum_validator_scores_issues():
    validate = curriculum_validator(_manager())
    ok = validate(make_template(grade=1, student_prompt="Zähle bis 5"))
    assert ok.is_valid and ok.quality_score == 1.0
    bad = validate(make_template(grade=1, quarter_app="Q4", student_prompt="Zeichne ein Bild"))
    assert not bad.is_valid
    assert bad.should_exclude
    assert bad.quality_score < 1.0
