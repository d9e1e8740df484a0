"""
Multi-viewpoint scenario generation.

A run generates one anchor image first, then every other requested viewpoint
in provider-sized chunks using the anchor as a visual reference. Progress is
recorded in a ProgressStore so callers can poll while the run executes as a
detached asyncio task.
"""
import asyncio
import json
import logging
import random
import uuid
from datetime import timedelta
from typing import Callable, Coroutine, List, Optional, Sequence, Set, Tuple

from .batching import GenerationTask, run_batch
from .config import ACCESS_URL_TTL_HOURS, IMAGE_PROVIDER, MAX_SEED_VALUE, MAX_VIEWPOINTS, REFERENCE_STRENGTH
from .consistency import ConsistencyValidator, generate_report
from .costs import CostEstimator, UsageTracker, format_cost_breakdown
from .generation_log import render_generation_log
from .image_generator import ImageGeneratorService
from .prompts import PromptSet, build_prompts
from .providers import GenOptions, GenResult
from .schemas import (
    GeneratedImage,
    GenerationRequest,
    GenerationResult,
    ImageMetadata,
    RunProgress,
    RunStatus,
)
from .state import ProgressStore
from .storage import ArtifactStore, generation_log_key, image_key, metadata_key
from .tracing import tracer
from .vegetation import VegetationContext, VegetationService, format_vegetation_context_for_prompt

logger = logging.getLogger(__name__)


def select_anchor_index(views: Sequence[str]) -> int:
    """
    Pick the view generated first: the first ground view, else
    helicopter_above, else aerial, else whatever was requested first.
    """
    for i, viewpoint in enumerate(views):
        if viewpoint.startswith("ground_"):
            return i
    for preferred in ("helicopter_above", "aerial"):
        if preferred in views:
            return list(views).index(preferred)
    return 0


class GenerationOrchestrator:
    def __init__(
        self,
        generator: ImageGeneratorService,
        storage: ArtifactStore,
        progress_store: ProgressStore,
        prompt_builder: Callable[[GenerationRequest], PromptSet] = build_prompts,
        vegetation_service: Optional[VegetationService] = None,
        validator: Optional[ConsistencyValidator] = None,
        cost_estimator: Optional[CostEstimator] = None,
        usage_tracker: Optional[UsageTracker] = None,
        access_url_ttl: timedelta = timedelta(hours=ACCESS_URL_TTL_HOURS),
        provider_name: str = IMAGE_PROVIDER,
        rng: Optional[random.Random] = None,
    ):
        self.generator = generator
        self.storage = storage
        self.progress_store = progress_store
        self.prompt_builder = prompt_builder
        self.vegetation_service = vegetation_service
        self.validator = validator
        self.cost_estimator = cost_estimator
        self.usage_tracker = usage_tracker
        self.access_url_ttl = access_url_ttl
        self.provider_name = provider_name
        self.rng = rng or random.Random()
        self._tasks: Set[asyncio.Task] = set()

    # Public API

    async def start(self, request: GenerationRequest) -> str:
        """
        Register a run and begin executing it in the background.

        Returns the run id as soon as the pending record is persisted.
        """
        run_id = str(uuid.uuid4())
        seed = request.seed if request.seed is not None else self.rng.randrange(MAX_SEED_VALUE)
        request = request.model_copy(update={"seed": seed})
        total = len(request.requested_views[:MAX_VIEWPOINTS])

        self.progress_store.create(run_id, RunProgress(run_id=run_id, total_images=total, seed=seed))
        await self.progress_store.persist(run_id, immediate=True)
        logger.info(f"[orchestrator] Run {run_id} accepted: {total} views, seed {seed}")

        self._spawn(self._run(run_id, request), name=f"generation-{run_id}")
        return run_id

    async def get_status(self, run_id: str) -> Optional[RunProgress]:
        return await self.progress_store.get(run_id)

    async def get_results(self, run_id: str) -> Optional[GenerationResult]:
        progress = await self.progress_store.get(run_id)
        if progress is None:
            return None
        return GenerationResult.from_progress(progress)

    async def drain(self) -> None:
        """Wait for every detached run and post-processing task to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.progress_store.drain()

    # Execution

    def _spawn(self, coro: Coroutine, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, run_id: str, request: GenerationRequest) -> None:
        try:
            await self._execute(run_id, request)
        except Exception as e:
            logger.exception(f"[orchestrator] Run {run_id} escaped its pipeline error handling")
            await self._mark_failed(run_id, str(e) or e.__class__.__name__)

    async def _mark_failed(self, run_id: str, message: str) -> None:
        store = self.progress_store
        try:
            progress = await store.get(run_id)
            if progress is None or progress.status.is_terminal:
                return
            if progress.status is RunStatus.PENDING:
                store.mutate(run_id, _set_status(RunStatus.IN_PROGRESS))

            def fail(p: RunProgress) -> None:
                p.status = RunStatus.FAILED
                p.error = message

            store.mutate(run_id, fail)
            await store.persist(run_id, immediate=True)
        except Exception:
            logger.exception(f"[orchestrator] Could not record failure for run {run_id}")

    async def _execute(self, run_id: str, request: GenerationRequest) -> None:
        store = self.progress_store
        store.mutate(run_id, _set_status(RunStatus.IN_PROGRESS))
        views = list(request.requested_views[:MAX_VIEWPOINTS])

        try:
            with tracer.start_as_current_span("generation.prompts"):
                prompt_set = self.prompt_builder(request)
            prompts = prompt_set.by_viewpoint()

            vegetation_context, vegetation_text = await self._vegetation_context(run_id, request)

            anchor_index = select_anchor_index(views)
            anchor_bytes, anchor_response = await self._generate_anchor(
                run_id, request, anchor_index, views[anchor_index], prompts, vegetation_text
            )
            model_responses = [(views[anchor_index], anchor_response)]

            remaining = [(i, vp) for i, vp in enumerate(views) if i != anchor_index]
            model_responses += await self._generate_derived(
                run_id, request, remaining, prompts, anchor_bytes, vegetation_text
            )

            final = await self._finalize(run_id, request)
        except Exception as e:
            logger.exception(f"[orchestrator] Run {run_id} failed")
            await self._mark_failed(run_id, str(e) or e.__class__.__name__)
            return

        logger.info(
            f"[orchestrator] Run {run_id} {final.status.value}: "
            f"{final.completed_images}/{final.total_images} images"
        )
        self._spawn(
            self._post_process(run_id, request, prompt_set, model_responses, vegetation_context),
            name=f"post-process-{run_id}",
        )

    async def _vegetation_context(
        self, run_id: str, request: GenerationRequest
    ) -> Tuple[Optional[VegetationContext], Optional[str]]:
        if self.vegetation_service is None:
            return None, None
        try:
            ctx = await self.vegetation_service.describe_perimeter(request.perimeter)
        except Exception as e:
            logger.warning(f"[orchestrator] Vegetation lookup failed for run {run_id}: {e}")
            return None, None
        if ctx is None:
            return None, None
        return ctx, format_vegetation_context_for_prompt(ctx)

    async def _generate_anchor(
        self,
        run_id: str,
        request: GenerationRequest,
        index: int,
        viewpoint: str,
        prompts: dict,
        vegetation_text: Optional[str],
    ) -> Tuple[Optional[bytes], Optional[str]]:
        store = self.progress_store
        prompt = prompts.get(viewpoint)
        if prompt is None:
            self._record_failure(run_id, viewpoint, f"Anchor image generation failed: no prompt for {viewpoint}")
            return None, None

        def on_thinking(text: str) -> None:
            store.mutate(run_id, lambda p: setattr(p, "thinking_text", text))

        screenshot = request.map_screenshots.get(viewpoint)
        options = GenOptions(
            seed=request.seed,
            map_screenshot=screenshot,
            vegetation_map_screenshot=request.vegetation_map_screenshot,
            vegetation_prompt_text=vegetation_text,
            on_thinking_update=on_thinking,
        )

        logger.info(f"[orchestrator] Run {run_id}: generating anchor image ({viewpoint})")
        with tracer.start_as_current_span("generation.anchor") as span:
            span.set_attribute("firesim.viewpoint", viewpoint)
            try:
                result = await self.generator.generate_image(prompt, options)
            except Exception as e:
                logger.error(f"[orchestrator] Run {run_id}: anchor image failed: {e}")
                self._record_failure(
                    run_id, viewpoint, f"Anchor image generation failed: {e}", getattr(e, "thinking_text", None)
                )
                return None, None

        try:
            image = await self._store_image(
                run_id, index, viewpoint, prompt, result, request.seed,
                is_anchor=True, used_reference=bool(screenshot),
            )
        except Exception as e:
            logger.error(f"[orchestrator] Run {run_id}: anchor upload failed: {e}")
            self._record_failure(run_id, viewpoint, f"Anchor image upload failed: {e}", result.thinking_text)
            return None, result.model_text_response

        def succeed(p: RunProgress) -> None:
            p.completed_images += 1
            p.anchor_image = image
            p.images.append(image)
            if result.thinking_text:
                p.thinking_text = result.thinking_text

        progress = store.mutate(run_id, succeed)
        await store.persist(run_id, immediate=True)
        logger.info(
            f"[orchestrator] Run {run_id}: anchor image ready ({viewpoint}), "
            f"progress {progress.completed_images + progress.failed_images}/{progress.total_images}"
        )
        return result.image_data, result.model_text_response

    async def _generate_derived(
        self,
        run_id: str,
        request: GenerationRequest,
        remaining: List[Tuple[int, str]],
        prompts: dict,
        anchor_bytes: Optional[bytes],
        vegetation_text: Optional[str],
    ) -> List[Tuple[str, Optional[str]]]:
        tasks: List[GenerationTask] = []
        for index, viewpoint in remaining:
            prompt = prompts.get(viewpoint)
            if prompt is None:
                self._record_failure(run_id, viewpoint)
                continue
            screenshot = request.map_screenshots.get(viewpoint)
            tasks.append(GenerationTask(
                index=index,
                viewpoint=viewpoint,
                prompt_text=prompt,
                options=GenOptions(
                    seed=request.seed,
                    reference_image=None if screenshot else anchor_bytes,
                    reference_strength=REFERENCE_STRENGTH,
                    map_screenshot=screenshot,
                    vegetation_map_screenshot=request.vegetation_map_screenshot,
                    vegetation_prompt_text=vegetation_text,
                ),
            ))
        if not tasks:
            return []

        async def run(task: GenerationTask) -> GenResult:
            return await self.generator.generate_image(task.prompt_text, task.options)

        logger.info(
            f"[orchestrator] Run {run_id}: generating {len(tasks)} derived views "
            f"{'with' if anchor_bytes else 'without'} anchor reference"
        )
        with tracer.start_as_current_span("generation.derived") as span:
            span.set_attribute("firesim.task_count", len(tasks))
            outcomes = await run_batch(tasks, run, self.generator.max_concurrent)

        responses: List[Tuple[str, Optional[str]]] = []
        for outcome in outcomes:
            task = outcome.task
            if not outcome.ok:
                logger.warning(f"[orchestrator] Run {run_id}: {task.viewpoint} failed: {outcome.error}")
                self._record_failure(run_id, task.viewpoint)
                continue

            result: GenResult = outcome.value
            try:
                image = await self._store_image(
                    run_id, task.index, task.viewpoint, task.prompt_text, result, request.seed,
                    is_anchor=False,
                    used_reference=bool(task.options.reference_image or task.options.map_screenshot),
                )
            except Exception as e:
                logger.warning(f"[orchestrator] Run {run_id}: upload of {task.viewpoint} failed: {e}")
                self._record_failure(run_id, task.viewpoint)
                continue

            def succeed(p: RunProgress, image: GeneratedImage = image) -> None:
                p.completed_images += 1
                p.images.append(image)

            progress = self.progress_store.mutate(run_id, succeed)
            logger.info(
                f"[orchestrator] Run {run_id}: {task.viewpoint} ready, "
                f"progress {progress.completed_images + progress.failed_images}/{progress.total_images}"
            )
            responses.append((task.viewpoint, result.model_text_response))

        return responses

    def _record_failure(
        self,
        run_id: str,
        viewpoint: str,
        error: Optional[str] = None,
        thinking_text: Optional[str] = None,
    ) -> None:
        def fail(p: RunProgress) -> None:
            p.failed_images += 1
            if error:
                p.error = error
            if thinking_text:
                p.thinking_text = thinking_text

        progress = self.progress_store.mutate(run_id, fail)
        logger.info(
            f"[orchestrator] Run {run_id}: {viewpoint} counted as failed, "
            f"progress {progress.completed_images + progress.failed_images}/{progress.total_images}"
        )

    async def _store_image(
        self,
        run_id: str,
        index: int,
        viewpoint: str,
        prompt: str,
        result: GenResult,
        seed: Optional[int],
        is_anchor: bool,
        used_reference: bool,
    ) -> GeneratedImage:
        with tracer.start_as_current_span("generation.upload") as span:
            span.set_attribute("firesim.viewpoint", viewpoint)
            locator = await asyncio.to_thread(
                self.storage.upload,
                image_key(run_id, index, viewpoint),
                result.image_data,
                "image/png",
                {"run-id": run_id, "viewpoint": viewpoint},
            )
            url = await asyncio.to_thread(self.storage.mint_access_url, locator, self.access_url_ttl)

        return GeneratedImage(
            view_point=viewpoint,
            url=url,
            metadata=ImageMetadata(
                width=result.metadata.width,
                height=result.metadata.height,
                prompt=prompt,
                model=result.metadata.model,
                seed=seed,
                is_anchor=is_anchor,
                used_reference_image=used_reference,
            ),
        )

    async def _finalize(self, run_id: str, request: GenerationRequest) -> RunProgress:
        store = self.progress_store
        progress = await store.get(run_id)

        consistency_note = None
        if self.validator is not None and len(progress.images) > 1:
            report = self.validator.validate_image_set(progress.images, request.inputs, progress.anchor_image)
            logger.info(f"[orchestrator] Run {run_id} consistency:\n{generate_report(report)}")
            if not report.passed and report.warnings:
                consistency_note = f"Consistency warnings: {'; '.join(report.warnings)}"

        def finish(p: RunProgress) -> None:
            notes = [n for n in (p.error, consistency_note) if n]
            if p.failed_images == p.total_images:
                p.status = RunStatus.FAILED
                p.error = ". ".join(notes) or f"All {p.total_images} images failed to generate"
                return
            p.status = RunStatus.COMPLETED
            if p.failed_images:
                notes.insert(0, f"Partial success: {p.completed_images} succeeded, {p.failed_images} failed")
            p.error = ". ".join(notes) or None

        final = store.mutate(run_id, finish)
        await store.persist(run_id, immediate=True)
        return final

    # Post-processing runs after the terminal state is durable; nothing here touches progress

    async def _post_process(
        self,
        run_id: str,
        request: GenerationRequest,
        prompt_set: PromptSet,
        model_responses: List[Tuple[str, Optional[str]]],
        vegetation_context: Optional[VegetationContext],
    ) -> None:
        progress = await self.progress_store.get(run_id)
        if progress is None:
            return
        result = GenerationResult.from_progress(progress)

        try:
            metadata = {
                "id": run_id,
                "perimeter": request.perimeter.model_dump(mode="json"),
                "inputs": request.inputs.model_dump(mode="json"),
                "geo_context": request.geo_context.model_dump(mode="json"),
                "requested_views": list(request.requested_views),
                "result": result.model_dump(mode="json"),
                "prompt_version": prompt_set.template_version,
            }
            await asyncio.to_thread(
                self.storage.upload,
                metadata_key(run_id),
                json.dumps(metadata, indent=2).encode("utf-8"),
                "application/json",
            )
            logger.info(f"[orchestrator] Run {run_id}: scenario metadata saved")
        except Exception as e:
            logger.warning(f"[orchestrator] Run {run_id}: failed to save scenario metadata: {e}")

        try:
            elapsed = progress.updated_at - progress.created_at
            log = render_generation_log(
                run_id,
                prompts=[(p.viewpoint, p.prompt_text) for p in prompt_set.prompts],
                thinking_text=progress.thinking_text,
                model_responses=model_responses,
                seed=progress.seed,
                model=progress.images[0].metadata.model if progress.images else self.generator.model_id,
                generation_time_ms=int(elapsed.total_seconds() * 1000),
                vegetation_context=vegetation_context,
            )
            await asyncio.to_thread(
                self.storage.upload, generation_log_key(run_id), log.encode("utf-8"), "text/markdown"
            )
            logger.info(f"[orchestrator] Run {run_id}: generation log saved")
        except Exception as e:
            logger.warning(f"[orchestrator] Run {run_id}: failed to save generation log: {e}")

        if self.cost_estimator is not None and self.usage_tracker is not None:
            try:
                breakdown = self.cost_estimator.estimate_scenario_cost(
                    image_count=len(progress.images), image_provider=self.provider_name
                )
                self.usage_tracker.record_scenario(run_id, breakdown)
                logger.info(f"[orchestrator] Run {run_id} estimated cost:\n{format_cost_breakdown(breakdown)}")
            except Exception as e:
                logger.warning(f"[orchestrator] Run {run_id}: cost tracking failed: {e}")


def _set_status(status: RunStatus) -> Callable[[RunProgress], None]:
    def apply(p: RunProgress) -> None:
        p.status = status
    return apply
