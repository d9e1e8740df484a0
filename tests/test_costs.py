"""
Tests for cost estimation and usage tracking.
"""
from datetime import date, datetime

import pytest


class TestCostEstimator:
    """Tests for CostEstimator."""

    def test_image_cost_by_provider_and_quality(self):
        """Image line items should use the provider's price for the quality."""
        from firesim.costs import CostEstimator

        breakdown = CostEstimator().estimate_scenario_cost(image_count=5, image_quality="hd", image_provider="flux")

        assert breakdown.images.unit_cost == pytest.approx(0.08)
        assert breakdown.images.total_cost == pytest.approx(0.40)
        assert breakdown.videos.total_cost == 0

    def test_total_includes_videos_and_storage(self):
        """The total is the sum of images, videos and storage."""
        from firesim.costs import CostEstimator

        breakdown = CostEstimator().estimate_scenario_cost(
            image_count=2, video_count=1, image_provider="gemini", estimated_storage_mb=1024
        )

        assert breakdown.storage_cost == pytest.approx(0.02)
        assert breakdown.total_cost == pytest.approx(2 * 0.039 + 0.50 + 0.02)

    def test_unknown_provider_uses_default_price(self):
        """Unpriced providers fall back to the default per-image price."""
        from firesim.costs import DEFAULT_IMAGE_PRICE, CostEstimator

        assert CostEstimator().image_price("somebody-else") == DEFAULT_IMAGE_PRICE

    def test_mock_is_free(self):
        """Placeholder images cost nothing."""
        from firesim.costs import CostEstimator

        assert CostEstimator().estimate_scenario_cost(image_count=10, image_provider="mock").images.total_cost == 0

    def test_formatted_breakdown(self):
        """The text breakdown lists each line and the total."""
        from firesim.costs import CostEstimator, format_cost_breakdown

        text = format_cost_breakdown(CostEstimator().estimate_scenario_cost(image_count=3))

        assert text.splitlines()[0].startswith("Images: 3 x $0.0390")
        assert text.splitlines()[-1].startswith("Total: $")


class TestUsageTracker:
    """Tests for per-day usage summaries."""

    def test_daily_summary_counts_only_that_day(self):
        """Scenarios recorded on other days are excluded."""
        from firesim.costs import CostEstimator, UsageTracker

        estimator = CostEstimator()
        tracker = UsageTracker()
        tracker.record_scenario("a", estimator.estimate_scenario_cost(image_count=3), datetime(2024, 1, 10, 9))
        tracker.record_scenario("b", estimator.estimate_scenario_cost(image_count=2), datetime(2024, 1, 10, 17))
        tracker.record_scenario("c", estimator.estimate_scenario_cost(image_count=4), datetime(2024, 1, 11, 9))

        summary = tracker.get_daily_summary(date(2024, 1, 10))

        assert summary.date == "2024-01-10"
        assert summary.total_scenarios == 2
        assert summary.total_images == 5

    def test_re_recording_replaces(self):
        """Recording the same scenario twice keeps only the latest estimate."""
        from firesim.costs import CostEstimator, UsageTracker

        estimator = CostEstimator()
        tracker = UsageTracker()
        when = datetime(2024, 1, 10)
        tracker.record_scenario("a", estimator.estimate_scenario_cost(image_count=3), when)
        tracker.record_scenario("a", estimator.estimate_scenario_cost(image_count=1), when)

        assert tracker.get_daily_summary(when.date()).total_images == 1

    def test_clear(self):
        """clear() empties the tracker."""
        from firesim.costs import CostEstimator, UsageTracker

        tracker = UsageTracker()
        tracker.record_scenario("a", CostEstimator().estimate_scenario_cost(image_count=3))
        tracker.clear()

        assert tracker.get_daily_summary().total_scenarios == 0
