"""
Batch template generation.

Fills curriculum gaps by asking the generation service for one template per
gap. Gaps are processed in batches of `batch_size`; inside a batch, at most
`max_concurrent_requests` calls run at once and calls within a chunk are
staggered by delay/max_concurrent. Batches are separated by `delay_seconds`.

Generated templates pass through the validators before they are saved. A gap
that fails (LLM error, rejected content) is reported in `errors` and does not
stop the run. Only one run per generator instance may be active at a time.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Iterable, Optional

from app.models.generation import (
    BatchGenerationProgress,
    BatchGenerationRequest,
    BatchGenerationResult,
    ContentValidation,
    TemplateGenerationRequest,
)
from app.models.curriculum import TemplateGap
from app.services.curriculum import CurriculumManager
from app.services.errors import BatchAlreadyRunningError
from app.services.telemetry import emit_event
from app.services.template_store import TemplateStore, is_blacklisted

logger = logging.getLogger(__name__)

Validator = Callable[[object], ContentValidation]
ProgressCallback = Callable[[BatchGenerationProgress], None]


def curriculum_validator(manager: CurriculumManager) -> Validator:
    """Validator backed by CurriculumManager.validate_curriculum_compliance."""
    def validate(template) -> ContentValidation:
        report = manager.validate_curriculum_compliance(template)
        issues = list(report.issues)
        if is_blacklisted(template.student_prompt):
            issues.append("Prompt contains blacklisted phrase")
        return ContentValidation(
            is_valid=not issues,
            issues=issues,
            quality_score=max(0.0, 1.0 - 0.25 * len(issues)),
            should_exclude=bool(issues),
        )
    return validate


def chunked(items: list, size: int) -> list[list]:
    return [items[i:i + size] for i in range(0, len(items), size)]


class BatchTemplateGenerator:
    def __init__(
        self,
        generator,
        template_store: TemplateStore,
        curriculum_manager: CurriculumManager,
        validators: Optional[Iterable[Validator]] = None,
        batch_size: int = 10,
        delay_seconds: float = 1.0,
        max_concurrent_requests: int = 3,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.generator = generator
        self.template_store = template_store
        self.curriculum = curriculum_manager
        self.validators = list(validators) if validators is not None else [curriculum_validator(curriculum_manager)]
        self.batch_size = batch_size
        self.delay_seconds = delay_seconds
        self.max_concurrent_requests = max_concurrent_requests
        self._sleep = sleep
        self._running = False
        self._progress = BatchGenerationProgress()
        self._callbacks: list[ProgressCallback] = []

    # -----------------------------------------------------------------------
    # Progress
    # -----------------------------------------------------------------------

    @property
    def is_generating(self) -> bool:
        return self._running

    def get_current_progress(self) -> BatchGenerationProgress:
        return self._progress.model_copy(deep=True)

    def on_progress(self, callback: ProgressCallback) -> Callable[[], None]:
        """Register a progress callback; returns a function that unregisters it."""
        self._callbacks.append(callback)

        def unsubscribe():
            if callback in self._callbacks:
                self._callbacks.remove(callback)
        return unsubscribe

    def _notify(self) -> None:
        snapshot = self.get_current_progress()
        for cb in list(self._callbacks):
            try:
                cb(snapshot)
            except Exception as exc:
                logger.error("[batch_generator] Progress callback failed: %s", exc)

    # -----------------------------------------------------------------------
    # Run
    # -----------------------------------------------------------------------

    async def generate_batch(self, request: BatchGenerationRequest) -> BatchGenerationResult:
        if self._running:
            raise BatchAlreadyRunningError("batch generation already in progress")
        self._running = True
        t0 = time.monotonic()
        try:
            return await self._execute(request, t0)
        finally:
            self._running = False
            self._progress = BatchGenerationProgress()

    async def _execute(self, request: BatchGenerationRequest, t0: float) -> BatchGenerationResult:
        batch_size = request.batch_size or self.batch_size
        delay = self.delay_seconds if request.delay_seconds is None else request.delay_seconds
        max_concurrent = request.max_concurrent_requests or self.max_concurrent_requests

        gaps = request.gaps
        if request.target_count:
            gaps = self.curriculum.get_priority_generation_queue(gaps, request.target_count)

        batches = chunked(gaps, batch_size)
        self._progress = BatchGenerationProgress(total_requested=len(gaps), total_batches=len(batches))
        logger.info("[batch_generator] Generating %d templates in %d batches", len(gaps), len(batches))

        generated: list = []
        errors: list[str] = []

        for index, batch in enumerate(batches):
            self._progress.current_batch = index + 1
            self._notify()

            templates, batch_errors = await self._process_batch(batch, max_concurrent, delay)
            generated.extend(templates)
            errors.extend(batch_errors)

            p = self._progress
            p.successful += len(templates)
            p.failed += len(batch_errors)
            p.completed += len(batch)
            p.percent_complete = p.completed / p.total_requested * 100 if p.total_requested else 100.0
            p.errors = list(errors)
            elapsed = time.monotonic() - t0
            p.estimated_time_remaining = elapsed / (index + 1) * (len(batches) - index - 1)
            self._notify()

            if index < len(batches) - 1:
                await self._sleep(delay)

        kept, rejected = self._validate(generated)
        errors.extend(rejected)
        saved = await self._save(kept)

        result = BatchGenerationResult(
            success=bool(kept),
            total_generated=len(generated),
            total_rejected=len(rejected),
            total_saved=saved,
            progress=self.get_current_progress(),
            generated_templates=kept,
            errors=errors,
            duration=time.monotonic() - t0,
        )
        logger.info(
            "[batch_generator] Done: generated=%d rejected=%d saved=%d errors=%d",
            result.total_generated, result.total_rejected, saved, len(errors),
        )
        emit_event(
            "batch_generation",
            route="batch_generator.generate_batch",
            count=saved,
            ok=result.success,
            latency_ms=int(result.duration * 1000),
            extra={"generated": result.total_generated, "rejected": result.total_rejected, "errors": len(errors)},
        )
        return result

    async def _process_batch(self, gaps: list[TemplateGap], max_concurrent: int, delay: float):
        templates: list = []
        errors: list[str] = []
        stagger = delay / max_concurrent
        for chunk in chunked(gaps, max_concurrent):
            outcomes = await asyncio.gather(*(
                self._generate_one(gap, i * stagger) for i, gap in enumerate(chunk)
            ))
            for template, error in outcomes:
                if template is not None:
                    templates.append(template)
                else:
                    errors.append(error)
        return templates, errors

    async def _generate_one(self, gap: TemplateGap, wait: float):
        if wait > 0:
            await self._sleep(wait)
        tags = []
        for item in self.curriculum.items:
            if (item.grade, item.quarter, item.domain, item.subcategory) == (gap.grade, gap.quarter, gap.domain, gap.subcategory):
                tags = list(item.tags)
                break
        request = TemplateGenerationRequest.from_gap(gap, tags)
        try:
            template = await asyncio.to_thread(self.generator.generate_template, request)
        except Exception as exc:
            logger.warning("[batch_generator] Generation failed for %s: %s", _gap_label(gap), exc)
            return None, f"Error generating {_gap_label(gap)}: {exc}"
        if template is None:
            return None, f"Failed to generate template for {_gap_label(gap)}"
        return template, None

    def _validate(self, templates: list) -> tuple[list, list[str]]:
        kept: list = []
        rejected: list[str] = []
        for t in templates:
            outcomes = [v(t) for v in self.validators]
            bad = [o for o in outcomes if o.should_exclude or not o.is_valid]
            if bad:
                issues = "; ".join(i for o in bad for i in o.issues) or "rejected by validator"
                rejected.append(f"Rejected {t.id}: {issues}")
                continue
            quality = min((o.quality_score for o in outcomes), default=t.quality_score)
            kept.append(t.model_copy(update={"quality_score": quality}))
        return kept, rejected

    async def _save(self, templates: list) -> int:
        if not templates:
            return 0
        try:
            return await asyncio.to_thread(self.template_store.insert_templates, templates)
        except Exception as exc:
            logger.error("[batch_generator] Saving %d templates failed: %s", len(templates), exc)
            return 0

    # -----------------------------------------------------------------------
    # Shortcuts
    # -----------------------------------------------------------------------

    async def _gaps(self, predicate) -> list[TemplateGap]:
        coverage = await asyncio.to_thread(self.curriculum.analyze_coverage)
        return [g for g in coverage.gaps if predicate(g)]

    async def generate_for_grade(self, grade: int, count: int = 100) -> BatchGenerationResult:
        gaps = await self._gaps(lambda g: g.grade == grade)
        return await self.generate_batch(BatchGenerationRequest(
            gaps=gaps, target_count=count, batch_size=20, delay_seconds=0.8,
        ))

    async def generate_for_domain(self, domain: str, count: int = 100) -> BatchGenerationResult:
        gaps = await self._gaps(lambda g: g.domain == domain)
        return await self.generate_batch(BatchGenerationRequest(
            gaps=gaps, target_count=count, batch_size=15, delay_seconds=1.0,
        ))

    async def fill_high_priority_gaps(self, count: int = 200) -> BatchGenerationResult:
        gaps = await self._gaps(lambda g: g.priority == "HIGH")
        return await self.generate_batch(BatchGenerationRequest(
            gaps=gaps, target_count=count, batch_size=25, delay_seconds=0.6, max_concurrent_requests=5,
        ))


def _gap_label(gap: TemplateGap) -> str:
    return f"{gap.grade}-{gap.quarter}-{gap.domain}-{gap.difficulty}-{gap.question_type}"
