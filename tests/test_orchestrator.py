"""
Tests for the multi-viewpoint generation orchestrator.
"""
import json

from conftest import PNG_BYTES, InMemoryStorage, ScriptedProvider, prompt_is_for
from firesim.schemas import RunStatus
from firesim.storage import generation_log_key, metadata_key, progress_key


async def run_to_completion(orchestrator, request):
    run_id = await orchestrator.start(request)
    await orchestrator.drain()
    return run_id, await orchestrator.get_status(run_id)


def calls_for(provider, viewpoint):
    return [options for prompt, options in provider.calls if prompt_is_for(prompt, viewpoint)]


class TestSelectAnchor:
    """Tests for anchor viewpoint selection."""

    def test_first_ground_view_wins(self):
        """The first ground view is preferred over every other category."""
        from firesim.orchestrator import select_anchor_index

        assert select_anchor_index(["aerial", "ridge", "ground_east", "ground_north"]) == 2

    def test_helicopter_above_before_aerial(self):
        """Without ground views, helicopter_above beats aerial."""
        from firesim.orchestrator import select_anchor_index

        assert select_anchor_index(["ridge", "aerial", "helicopter_above"]) == 2

    def test_aerial_then_first(self):
        """aerial is next, otherwise the first requested view."""
        from firesim.orchestrator import select_anchor_index

        assert select_anchor_index(["ridge", "aerial"]) == 1
        assert select_anchor_index(["ridge", "helicopter_east"]) == 0


class TestHappyPath:
    """Tests for a run where every image succeeds."""

    async def test_all_views_generated_with_anchor_reference(self, make_orchestrator, make_request):
        """Three views should complete with the ground view as anchor and the others referencing it."""
        provider = ScriptedProvider()
        orchestrator = make_orchestrator(provider)

        run_id, progress = await run_to_completion(orchestrator, make_request(seed=1234))

        assert progress.status is RunStatus.COMPLETED
        assert progress.completed_images == 3
        assert progress.failed_images == 0
        assert progress.error is None
        assert progress.anchor_image.view_point == "ground_north"
        assert progress.anchor_image.metadata.is_anchor

        anchor_call = calls_for(provider, "ground_north")[0]
        assert anchor_call.reference_image is None
        for viewpoint in ("aerial", "ridge"):
            derived = calls_for(provider, viewpoint)[0]
            assert derived.reference_image == PNG_BYTES
            assert derived.reference_strength == 0.5

        assert {img.view_point for img in progress.images} == {"aerial", "ground_north", "ridge"}
        assert all(img.metadata.seed == 1234 for img in progress.images)
        assert all(options.seed == 1234 for _, options in provider.calls)
        derived_images = [img for img in progress.images if not img.metadata.is_anchor]
        assert all(img.metadata.used_reference_image for img in derived_images)

    async def test_ground_and_helicopter_views(self, make_orchestrator, make_request):
        """One ground and two helicopter views complete with the ground view anchored exactly once."""
        from firesim.consistency import ConsistencyValidator

        request = make_request(requested_views=["helicopter_north", "ground_south", "helicopter_east"])
        orchestrator = make_orchestrator()

        _, progress = await run_to_completion(orchestrator, request)

        assert progress.status is RunStatus.COMPLETED
        assert len(progress.images) == 3
        assert progress.anchor_image.view_point == "ground_south"
        assert progress.images.count(progress.anchor_image) == 1
        report = ConsistencyValidator().validate_image_set(progress.images, request.inputs, progress.anchor_image)
        assert report.overall_score > 0

    async def test_anchor_generated_before_derived_views(self, make_orchestrator, make_request):
        """The anchor call must be the first provider call."""
        provider = ScriptedProvider()
        orchestrator = make_orchestrator(provider)

        await run_to_completion(orchestrator, make_request())

        assert prompt_is_for(provider.calls[0][0], "ground_north")

    async def test_images_uploaded_and_urls_minted(self, make_orchestrator, make_request, storage):
        """Every image should be uploaded under the run and carry a time-limited URL."""
        orchestrator = make_orchestrator()

        run_id, progress = await run_to_completion(orchestrator, make_request())

        assert f"{run_id}/01-ground_north.png" in storage.objects
        assert storage.content_types[f"{run_id}/01-ground_north.png"] == "image/png"
        for image in progress.images:
            assert image.url.startswith(f"https://artifacts.test/{run_id}/")
            assert image.url.endswith("?expires=86400")

    async def test_seed_chosen_when_absent(self, make_orchestrator, make_request):
        """A run without a seed should get one and use it for every image."""
        provider = ScriptedProvider()
        orchestrator = make_orchestrator(provider)

        _, progress = await run_to_completion(orchestrator, make_request())

        assert progress.seed is not None
        assert {options.seed for _, options in provider.calls} == {progress.seed}

    async def test_start_returns_before_generation(self, make_orchestrator, make_request, storage):
        """start() should return a pending, durably written run."""
        orchestrator = make_orchestrator(ScriptedProvider(delay=0.01))

        run_id = await orchestrator.start(make_request())

        assert progress_key(run_id) in storage.objects
        written = json.loads(storage.objects[progress_key(run_id)])
        assert written["status"] == "pending"
        assert written["total_images"] == 3
        await orchestrator.drain()

    async def test_terminal_state_is_durable(self, make_orchestrator, make_request, storage):
        """The completed record should be persisted without waiting for a debounce timer."""
        orchestrator = make_orchestrator()

        run_id, _ = await run_to_completion(orchestrator, make_request())

        written = json.loads(storage.objects[progress_key(run_id)])
        assert written["status"] == "completed"
        assert written["completed_images"] == 3


class TestFailures:
    """Tests for partial and total failure accounting."""

    async def test_every_image_fails(self, make_orchestrator, make_request):
        """A run with no successes should be failed with an error."""
        orchestrator = make_orchestrator(ScriptedProvider(fail_when=lambda prompt, options: True))

        _, progress = await run_to_completion(orchestrator, make_request())

        assert progress.status is RunStatus.FAILED
        assert progress.failed_images == 3
        assert progress.completed_images == 0
        assert progress.error
        assert progress.images == []

    async def test_two_views_both_fail(self, make_orchestrator, make_request):
        """A two-view run where the provider always fails has no images and a readable error."""
        orchestrator = make_orchestrator(ScriptedProvider(fail_when=lambda prompt, options: True))

        run_id, progress = await run_to_completion(
            orchestrator, make_request(requested_views=["aerial", "ridge"])
        )
        result = await orchestrator.get_results(run_id)

        assert result.status is RunStatus.FAILED
        assert result.images == []
        assert result.error
        assert progress.failed_images == progress.total_images == 2

    async def test_anchor_failure_degrades_to_unreferenced(self, make_orchestrator, make_request):
        """If the anchor fails the remaining views still run, without a reference image."""
        provider = ScriptedProvider(fail_when=lambda prompt, options: prompt_is_for(prompt, "ground_north"))
        orchestrator = make_orchestrator(provider)

        _, progress = await run_to_completion(orchestrator, make_request())

        assert progress.status is RunStatus.COMPLETED
        assert progress.completed_images == 2
        assert progress.failed_images == 1
        assert progress.anchor_image is None
        assert progress.error.startswith("Partial success: 2 succeeded, 1 failed")
        assert "Anchor image generation failed" in progress.error
        assert len(calls_for(provider, "ground_north")) == 3
        for viewpoint in ("aerial", "ridge"):
            assert calls_for(provider, viewpoint)[0].reference_image is None

    async def test_derived_failure_is_partial_success(self, make_orchestrator, make_request):
        """One failed derived view should still complete the run."""
        provider = ScriptedProvider(fail_when=lambda prompt, options: prompt_is_for(prompt, "ridge"))
        orchestrator = make_orchestrator(provider)

        _, progress = await run_to_completion(orchestrator, make_request())

        assert progress.status is RunStatus.COMPLETED
        assert progress.completed_images == 2
        assert progress.failed_images == 1
        assert progress.anchor_image is not None
        assert "Partial success" in progress.error

    async def test_upload_failure_counts_as_failed_image(self, make_orchestrator, make_request):
        """A generated image that cannot be stored is a failed image."""
        storage = InMemoryStorage(fail_when=lambda key: key.endswith("-ridge.png"))
        orchestrator = make_orchestrator(storage=storage)

        _, progress = await run_to_completion(orchestrator, make_request())

        assert progress.status is RunStatus.COMPLETED
        assert progress.failed_images == 1
        assert "ridge" not in {img.view_point for img in progress.images}

    async def test_prompt_builder_error_fails_run(self, make_orchestrator, make_request):
        """An error before any image is attempted should fail the run with its message."""
        def broken_builder(request):
            raise RuntimeError("template exploded")

        provider = ScriptedProvider()
        orchestrator = make_orchestrator(provider, prompt_builder=broken_builder)

        _, progress = await run_to_completion(orchestrator, make_request())

        assert progress.status is RunStatus.FAILED
        assert progress.error == "template exploded"
        assert provider.calls == []

    async def test_blocked_term_fails_run(self, make_orchestrator, make_request, request_geo_with):
        """Scenario text that trips the content filter should fail the run."""
        orchestrator = make_orchestrator()

        _, progress = await run_to_completion(
            orchestrator, make_request(geo_context=request_geo_with(vegetation_type="Wildlife reserve"))
        )

        assert progress.status is RunStatus.FAILED
        assert "blocked terms" in progress.error


class TestViewHandling:
    """Tests for duplicates, caps and concurrency."""

    async def test_duplicate_views_are_each_generated(self, make_orchestrator, make_request, storage):
        """Repeated viewpoints should each produce an image under distinct keys."""
        provider = ScriptedProvider()
        orchestrator = make_orchestrator(provider)

        run_id, progress = await run_to_completion(
            orchestrator, make_request(requested_views=["ground_north", "ground_north", "aerial"])
        )

        assert progress.completed_images == 3
        assert [img.view_point for img in progress.images].count("ground_north") == 2
        assert f"{run_id}/00-ground_north.png" in storage.objects
        assert f"{run_id}/01-ground_north.png" in storage.objects

    async def test_views_capped_at_ten(self, make_orchestrator, make_request):
        """Only the first ten requested views are generated."""
        views = [
            "aerial", "helicopter_north", "helicopter_south", "helicopter_east", "helicopter_west",
            "helicopter_above", "ground_north", "ground_south", "ground_east", "ground_west",
            "ground_above", "ridge",
        ]
        provider = ScriptedProvider(max_concurrent=3)
        orchestrator = make_orchestrator(provider)

        _, progress = await run_to_completion(orchestrator, make_request(requested_views=views))

        assert progress.total_images == 10
        assert progress.completed_images == 10
        assert "ridge" not in {img.view_point for img in progress.images}

    async def test_concurrency_respects_provider_limit(self, make_orchestrator, make_request):
        """No more than max_concurrent derived calls should be in flight."""
        provider = ScriptedProvider(max_concurrent=2, delay=0.01)
        orchestrator = make_orchestrator(provider)

        await run_to_completion(
            orchestrator,
            make_request(requested_views=["ground_north", "aerial", "ridge", "ground_south", "helicopter_above"]),
        )

        assert len(provider.calls) == 5
        assert provider.max_in_flight <= 2

    async def test_map_screenshot_replaces_anchor_reference(self, make_orchestrator, make_request):
        """A view with its own map screenshot is guided by that screenshot rather than the anchor."""
        provider = ScriptedProvider()
        orchestrator = make_orchestrator(provider)

        _, progress = await run_to_completion(
            orchestrator, make_request(map_screenshots={"aerial": "data:image/png;base64,AAAA"})
        )

        aerial_call = calls_for(provider, "aerial")[0]
        assert aerial_call.map_screenshot == "data:image/png;base64,AAAA"
        assert aerial_call.reference_image is None
        aerial = next(img for img in progress.images if img.view_point == "aerial")
        assert aerial.metadata.used_reference_image


class TestThinkingAndResults:
    """Tests for reasoning capture and result assembly."""

    async def test_thinking_text_recorded(self, make_orchestrator, make_request):
        """Reasoning streamed during the anchor generation should land on the record."""
        orchestrator = make_orchestrator(ScriptedProvider(thinking="Placing the smoke plume downwind."))

        _, progress = await run_to_completion(orchestrator, make_request())

        assert progress.thinking_text == "Placing the smoke plume downwind."

    async def test_results_are_stable(self, make_orchestrator, make_request):
        """Fetching results twice should return the same completed result."""
        orchestrator = make_orchestrator()

        run_id, _ = await run_to_completion(orchestrator, make_request())
        first = await orchestrator.get_results(run_id)
        second = await orchestrator.get_results(run_id)

        assert first == second
        assert first.id == run_id
        assert first.status is RunStatus.COMPLETED
        assert first.completed_at is not None
        assert len(first.images) == 3

    async def test_unknown_run(self, make_orchestrator):
        """An unknown id has neither status nor results."""
        orchestrator = make_orchestrator()

        assert await orchestrator.get_status("no-such-run") is None
        assert await orchestrator.get_results("no-such-run") is None


class TestPostProcessing:
    """Tests for artifacts written after the run finishes."""

    async def test_metadata_and_generation_log_saved(self, make_orchestrator, make_request, storage):
        """Scenario metadata and the markdown log should be stored once the run is done."""
        orchestrator = make_orchestrator()

        run_id, _ = await run_to_completion(orchestrator, make_request(seed=99))

        metadata = json.loads(storage.objects[metadata_key(run_id)])
        assert metadata["id"] == run_id
        assert metadata["result"]["status"] == "completed"
        assert metadata["requested_views"] == ["aerial", "ground_north", "ridge"]

        log = storage.objects[generation_log_key(run_id)].decode("utf-8")
        assert log.startswith("# Generation Log")
        assert f"**Scenario ID:** {run_id}" in log
        assert "**Seed:** 99" in log
        assert "Rendered the requested scene." in log

    async def test_cost_recorded(self, make_orchestrator, make_request):
        """The usage tracker should see one scenario with three images."""
        from firesim.costs import UsageTracker

        tracker = UsageTracker()
        orchestrator = make_orchestrator(usage_tracker=tracker)

        await run_to_completion(orchestrator, make_request())

        summary = tracker.get_daily_summary()
        assert summary.total_scenarios == 1
        assert summary.total_images == 3

    async def test_post_processing_failure_does_not_change_result(self, make_orchestrator, make_request):
        """A failed metadata upload must leave the completed run untouched."""
        storage = InMemoryStorage(fail_when=lambda key: key.endswith("metadata.json"))
        orchestrator = make_orchestrator(storage=storage)

        _, progress = await run_to_completion(orchestrator, make_request())

        assert progress.status is RunStatus.COMPLETED
        assert progress.error is None
