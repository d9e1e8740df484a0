"""
Heuristic visual consistency checks for a set of generated images.

The checks work from the stored prompts and metadata only; no pixels are
inspected.
"""
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from .config import CONSISTENCY_PASS_THRESHOLD
from .schemas import GeneratedImage, ScenarioInputs

WIND_DIRECTION_WORDS: Dict[str, Tuple[str, ...]] = {
    "N": ("n", "north", "northerly"),
    "NE": ("ne", "northeast", "north-east", "north east", "north-easterly"),
    "E": ("e", "east", "easterly"),
    "SE": ("se", "southeast", "south-east", "south east", "south-easterly"),
    "S": ("s", "south", "southerly"),
    "SW": ("sw", "southwest", "south-west", "south west", "south-westerly"),
    "W": ("w", "west", "westerly"),
    "NW": ("nw", "northwest", "north-west", "north west", "north-westerly"),
}

LIGHTING_KEYWORDS: Dict[str, Tuple[str, ...]] = {
    "dawn": ("dawn", "sunrise", "first light", "soft golden light"),
    "morning": ("morning",),
    "midday": ("midday", "noon", "overhead sun"),
    "afternoon": ("afternoon", "golden-orange"),
    "dusk": ("dusk", "sunset", "twilight"),
    "night": ("night", "dark scene", "moonlight"),
}

CHECK_WEIGHTS = {
    "Smoke Direction Consistency": 0.30,
    "Fire Size Proportionality": 0.20,
    "Lighting Consistency": 0.25,
    "Color Palette Similarity": 0.25,
}


@dataclass
class ConsistencyCheck:
    name: str
    passed: bool
    score: int
    message: str


@dataclass
class ConsistencyReport:
    passed: bool
    overall_score: int
    checks: List[ConsistencyCheck] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)


def _mentions(text: str, words: Sequence[str]) -> bool:
    pattern = r"\b(" + "|".join(re.escape(w) for w in words) + r")\b"
    return re.search(pattern, text, flags=re.IGNORECASE) is not None


def names_wind_direction(text: str, direction: str) -> bool:
    """
    True when text names the wind as coming from direction.

    Direction words only count inside a wind phrase ("NW wind", "strong
    north-west winds") or in their -erly form, so place names such as
    "New South Wales" and possessives such as "fire's" never match.
    """
    words = WIND_DIRECTION_WORDS.get(direction, (direction.lower(),))
    names = [w for w in words if not w.endswith("erly")]
    adjectives = [w for w in words if w.endswith("erly")]

    # "west wind" inside "north west wind" belongs to NW, not W
    phrase = (
        r"(?<![\w'’-])(?<!north )(?<!south )("
        + "|".join(re.escape(w) for w in names)
        + r")\s+winds?\b"
    )
    if re.search(phrase, text, flags=re.IGNORECASE):
        return True
    if not adjectives:
        return False
    adjective = r"(?<![\w'’-])(" + "|".join(re.escape(w) for w in adjectives) + r")(?![\w-])"
    return re.search(adjective, text, flags=re.IGNORECASE) is not None


def viewpoint_category(viewpoint: str) -> str:
    return viewpoint.split("_")[0]


class ConsistencyValidator:
    def __init__(self, pass_threshold: int = CONSISTENCY_PASS_THRESHOLD):
        self.pass_threshold = pass_threshold

    def check_smoke_direction(self, images: Sequence[GeneratedImage], inputs: ScenarioInputs) -> ConsistencyCheck:
        name = "Smoke Direction Consistency"
        if any(names_wind_direction(img.metadata.prompt, inputs.wind_direction) for img in images):
            return ConsistencyCheck(
                name, True, 100, f"Wind direction {inputs.wind_direction} is specified in the prompts"
            )
        return ConsistencyCheck(
            name, False, 0,
            f"Wind direction {inputs.wind_direction} is missing from every prompt; smoke may drift inconsistently",
        )

    def check_fire_size(
        self, images: Sequence[GeneratedImage], anchor_image: Optional[GeneratedImage]
    ) -> ConsistencyCheck:
        name = "Fire Size Proportionality"
        categories = {viewpoint_category(img.view_point) for img in images}
        if len(categories) > 1 and anchor_image is not None:
            return ConsistencyCheck(
                name, True, 100,
                f"{len(categories)} viewpoint types share the anchor image as scale reference",
            )
        if len(categories) > 1:
            return ConsistencyCheck(
                name, True, 70, f"{len(categories)} viewpoint types without an anchor image for scale"
            )
        return ConsistencyCheck(
            name, False, 50, "Only one viewpoint type; fire size cannot be compared across perspectives"
        )

    def check_lighting(self, images: Sequence[GeneratedImage], inputs: ScenarioInputs) -> ConsistencyCheck:
        name = "Lighting Consistency"
        keywords = (inputs.time_of_day,) + LIGHTING_KEYWORDS.get(inputs.time_of_day, ())
        matched = sum(1 for img in images if _mentions(img.metadata.prompt, keywords))
        total = len(images)
        score = round(matched / total * 100) if total else 0
        if total and matched == total:
            return ConsistencyCheck(name, True, score, f"All prompts describe {inputs.time_of_day} lighting")
        return ConsistencyCheck(
            name, False, score,
            f"{total - matched} of {total} prompts do not describe {inputs.time_of_day} lighting",
        )

    def check_color_palette(self, images: Sequence[GeneratedImage]) -> ConsistencyCheck:
        name = "Color Palette Similarity"
        models = {img.metadata.model for img in images}
        seeds = {img.metadata.seed for img in images}

        score = 100
        problems = []
        if len(seeds) > 1:
            score -= 20
            problems.append(f"{len(seeds)} different seeds")
        if len(models) > 1:
            score -= 40
            problems.append(f"{len(models)} different models")

        if not problems:
            return ConsistencyCheck(name, True, score, "All images share the same model and seed")
        return ConsistencyCheck(
            name, False, score, f"Images were generated with {' and '.join(problems)}; color palettes may differ"
        )

    def _recommendations(self, checks: Sequence[ConsistencyCheck]) -> List[str]:
        failed = {c.name for c in checks if not c.passed}
        recommendations = []
        if "Smoke Direction Consistency" in failed:
            recommendations.append("Include the wind direction in all prompts so smoke drifts the same way")
        if "Fire Size Proportionality" in failed:
            recommendations.append("Request viewpoints from more than one category (aerial, helicopter, ground, ridge)")
        if "Lighting Consistency" in failed:
            recommendations.append("Describe the same time-of-day lighting in every prompt")
        if "Color Palette Similarity" in failed:
            recommendations.append("Generate every image with the same model and seed")
        recommendations.append("Consider regenerating the set with a different seed")
        return recommendations

    def validate_image_set(
        self,
        images: Sequence[GeneratedImage],
        inputs: ScenarioInputs,
        anchor_image: Optional[GeneratedImage] = None,
    ) -> ConsistencyReport:
        checks = [
            self.check_smoke_direction(images, inputs),
            self.check_fire_size(images, anchor_image),
            self.check_lighting(images, inputs),
            self.check_color_palette(images),
        ]
        overall = round(sum(c.score * CHECK_WEIGHTS[c.name] for c in checks))
        passed = overall >= self.pass_threshold

        return ConsistencyReport(
            passed=passed,
            overall_score=overall,
            checks=checks,
            warnings=[c.message for c in checks if not c.passed],
            recommendations=[] if passed else self._recommendations(checks),
        )


def generate_report(report: ConsistencyReport) -> str:
    """Render a report as plain text for logs."""
    lines = [
        "=== Visual Consistency Validation Report ===",
        "",
        f"Overall Score: {report.overall_score}/100 {'PASSED' if report.passed else 'FAILED'}",
        "",
        "Individual Checks:",
    ]
    for check in report.checks:
        status = "PASS" if check.passed else "FAIL"
        lines.append(f"  [{status}] {check.name}: {check.score}/100 - {check.message}")

    if report.warnings:
        lines += ["", "Warnings:"] + [f"  - {w}" for w in report.warnings]
    if report.recommendations:
        lines += ["", "Recommendations:"] + [f"  - {r}" for r in report.recommendations]

    lines += ["", "=== End of Report ==="]
    return "\n".join(lines)
