import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Sequence

from .providers import GenOptions

logger = logging.getLogger(__name__)


@dataclass
class GenerationTask:
    index: int  # position in the requested view list
    viewpoint: str
    prompt_text: str
    options: GenOptions


@dataclass
class TaskOutcome:
    task: GenerationTask
    value: Any = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def viewpoint(self) -> str:
        return self.task.viewpoint


async def run_batch(
    tasks: Sequence[GenerationTask],
    run: Callable[[GenerationTask], Awaitable[Any]],
    concurrency_limit: int,
) -> List[TaskOutcome]:
    """
    Run tasks in consecutive chunks of at most concurrency_limit.

    Every task in a chunk settles before the next chunk starts, and a failed
    task never cancels its siblings. Outcomes come back in task order.

    Args:
        tasks: Tasks to run
        run: Coroutine function executing one task
        concurrency_limit: Maximum number of tasks in flight

    Returns:
        One TaskOutcome per task, holding either the value or the error
    """
    if concurrency_limit < 1:
        raise ValueError("concurrency_limit must be at least 1")

    outcomes: List[TaskOutcome] = []
    total_chunks = (len(tasks) + concurrency_limit - 1) // concurrency_limit

    for start in range(0, len(tasks), concurrency_limit):
        chunk = tasks[start:start + concurrency_limit]
        results = await asyncio.gather(*(run(task) for task in chunk), return_exceptions=True)

        for task, result in zip(chunk, results):
            if isinstance(result, BaseException):
                outcomes.append(TaskOutcome(task=task, error=result))
            else:
                outcomes.append(TaskOutcome(task=task, value=result))

        failed = sum(1 for r in results if isinstance(r, BaseException))
        logger.info(
            f"[batch] Chunk {start // concurrency_limit + 1}/{total_chunks} settled: "
            f"{len(chunk) - failed} succeeded, {failed} failed"
        )

    return outcomes
