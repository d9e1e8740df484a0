from datetime import datetime
from typing import Iterable, Optional, Tuple

from .vegetation import VegetationContext, format_vegetation_context_for_prompt


def render_generation_log(
    run_id: str,
    prompts: Iterable[Tuple[str, str]],
    thinking_text: Optional[str] = None,
    model_responses: Iterable[Tuple[str, Optional[str]]] = (),
    seed: Optional[int] = None,
    model: Optional[str] = None,
    generation_time_ms: Optional[int] = None,
    timestamp: Optional[datetime] = None,
    vegetation_context: Optional[VegetationContext] = None,
) -> str:
    """
    Render the human-readable markdown log stored next to a run's images.

    Args:
        run_id: Run identifier
        prompts: (viewpoint, prompt text) pairs in request order
        thinking_text: Model reasoning captured during the anchor generation
        model_responses: (viewpoint, text) pairs of non-image model output
        seed: Seed shared by the run
        model: Model id that produced the images
        generation_time_ms: Wall time from run creation to completion
        timestamp: When the log was written
        vegetation_context: Spatial vegetation sample used in the prompts
    """
    duration = f"{generation_time_ms / 1000:.1f}s" if generation_time_ms else "unknown"
    lines = [
        "# Generation Log",
        "",
        f"**Scenario ID:** {run_id}",
        f"**Model:** {model or 'unknown'}",
        f"**Seed:** {seed if seed is not None else 'none'}",
        f"**Generated:** {(timestamp or datetime.now()).isoformat()}",
        f"**Duration:** {duration}",
        "",
        "---",
        "",
        "## Prompts",
        "",
    ]

    for viewpoint, prompt_text in prompts:
        lines += [f"### {viewpoint}", "", "```", prompt_text, "```", ""]

    if vegetation_context is not None:
        lines += ["## Vegetation Context", "", format_vegetation_context_for_prompt(vegetation_context), ""]

    if thinking_text:
        lines += ["## Model Thinking", "", thinking_text, ""]

    responses = [(vp, text) for vp, text in model_responses if text]
    if responses:
        lines += ["## Model Responses", ""]
        for viewpoint, text in responses:
            lines += [f"### {viewpoint}", "", text, ""]

    return "\n".join(lines)
