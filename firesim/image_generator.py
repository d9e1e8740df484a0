import asyncio
import dataclasses
import logging
from typing import Awaitable, Callable, Optional

from .config import (
    DEFAULT_IMAGE_QUALITY,
    DEFAULT_IMAGE_SIZE,
    DEFAULT_IMAGE_STYLE,
    GENERATION_TIMEOUT_MS,
    MAX_RETRIES,
)
from .providers import GenOptions, GenResult, ImageGenBackend

logger = logging.getLogger(__name__)


class GenerationTimeoutError(Exception):
    """Raised when a single generation attempt exceeds its time budget."""


class ImageGeneratorService:
    """
    Wraps a provider with default options, a per-attempt timeout and
    exponential backoff between attempts.

    Backoff after attempt N is 4 ** (N - 1) seconds, so 1s then 4s with the
    default three attempts.
    """

    def __init__(
        self,
        provider: ImageGenBackend,
        default_size: str = DEFAULT_IMAGE_SIZE,
        default_quality: str = DEFAULT_IMAGE_QUALITY,
        default_style: str = DEFAULT_IMAGE_STYLE,
        max_retries: int = MAX_RETRIES,
        timeout_ms: int = GENERATION_TIMEOUT_MS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.provider = provider
        self.default_size = default_size
        self.default_quality = default_quality
        self.default_style = default_style
        self.max_retries = max_retries
        self.timeout_ms = timeout_ms
        self._sleep = sleep

    @property
    def model_id(self) -> str:
        return self.provider.model_id

    @property
    def max_concurrent(self) -> int:
        return max(1, self.provider.max_concurrent)

    async def is_available(self) -> bool:
        return await self.provider.is_available()

    def merge_options(self, options: Optional[GenOptions]) -> GenOptions:
        """Apply defaults under caller options; explicit caller values always win."""
        options = options or GenOptions()
        return dataclasses.replace(
            options,
            size=options.size or self.default_size,
            quality=options.quality or self.default_quality,
            style=options.style or self.default_style,
        )

    async def _attempt(self, prompt: str, options: GenOptions) -> GenResult:
        try:
            return await asyncio.wait_for(
                self.provider.generate(prompt, options),
                timeout=self.timeout_ms / 1000,
            )
        except asyncio.TimeoutError as e:
            raise GenerationTimeoutError(f"Operation timed out after {self.timeout_ms}ms") from e

    async def generate_image(self, prompt: str, options: Optional[GenOptions] = None) -> GenResult:
        merged = self.merge_options(options)
        last_error: Optional[Exception] = None

        for attempt in range(1, self.max_retries + 1):
            try:
                result = await self._attempt(prompt, merged)
                if attempt > 1:
                    logger.info(f"[generator] Succeeded on attempt {attempt}/{self.max_retries}")
                return result
            except Exception as e:
                last_error = e
                logger.warning(f"[generator] Attempt {attempt}/{self.max_retries} failed: {e}")
                if attempt < self.max_retries:
                    delay = 4 ** (attempt - 1)
                    logger.info(f"[generator] Retrying in {delay}s")
                    await self._sleep(delay)

        raise last_error
