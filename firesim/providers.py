"""
Image generation providers.

Each provider wraps one external image model behind the ImageGenBackend
protocol. Providers make a single attempt per call; retries and timeouts are
applied by ImageGeneratorService.
"""
import base64
import hashlib
import io
import json
import logging
import re
import textwrap
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple, Union

import httpx
from PIL import Image, ImageDraw, ImageFont

from .config import (
    FLUX_API_VERSION,
    FLUX_BASE_URL,
    FLUX_DEPLOYMENT,
    FLUX_ENDPOINT,
    FLUX_REQUEST_TIMEOUT,
    IMAGE_MODEL,
    IMAGE_MODEL_INACTIVITY_TIMEOUT,
    IMAGE_MODEL_URL,
    IMAGE_PROVIDER,
    get_secret,
)

logger = logging.getLogger(__name__)

# Anything smaller is an error page or placeholder, not an image
MIN_IMAGE_BYTES = 100
ERROR_EXCERPT_CHARS = 500

ImageInput = Union[bytes, str]
_DATA_URL_PREFIX = re.compile(r"^data:image/\w+;base64,")


class ProviderError(Exception):
    """Raised when an image model call fails or returns unusable data."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_excerpt: Optional[str] = None,
        thinking_text: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.response_excerpt = response_excerpt
        self.thinking_text = thinking_text


@dataclass
class GenOptions:
    size: Optional[str] = None
    quality: Optional[str] = None
    style: Optional[str] = None
    seed: Optional[int] = None
    reference_image: Optional[bytes] = None
    reference_strength: Optional[float] = None
    map_screenshot: Optional[ImageInput] = None
    vegetation_map_screenshot: Optional[ImageInput] = None
    vegetation_prompt_text: Optional[str] = None
    on_thinking_update: Optional[Callable[[str], None]] = None


@dataclass
class GenMetadata:
    model: str
    prompt_hash: str
    generation_time_ms: int
    width: int
    height: int
    seed: Optional[int] = None


@dataclass
class GenResult:
    image_data: bytes
    format: str
    metadata: GenMetadata
    thinking_text: Optional[str] = None
    model_text_response: Optional[str] = None


class ImageGenBackend(Protocol):
    model_id: str
    max_concurrent: int

    async def generate(self, prompt: str, options: GenOptions) -> GenResult:
        ...

    async def is_available(self) -> bool:
        ...


def prompt_hash(prompt: str) -> str:
    return hashlib.sha256(prompt.encode("utf-8")).hexdigest()[:16]


def parse_size(size: Optional[str]) -> Tuple[int, int]:
    width, _, height = (size or "1024x1024").partition("x")
    return int(width), int(height)


def to_base64(image: Optional[ImageInput]) -> str:
    """Return the raw base64 payload of bytes or a (data URL) string."""
    if image is None:
        return ""
    if isinstance(image, bytes):
        return base64.b64encode(image).decode("ascii")
    return _DATA_URL_PREFIX.sub("", image)


def check_image_size(image_data: bytes) -> bytes:
    if len(image_data) < MIN_IMAGE_BYTES:
        raise ProviderError(
            f"Generated image is suspiciously small ({len(image_data)} bytes). "
            "This may indicate an API error or placeholder response."
        )
    return image_data


def api_error(response: httpx.Response, text: str) -> ProviderError:
    excerpt = text[:ERROR_EXCERPT_CHARS]
    return ProviderError(
        f"Image model API error {response.status_code}: {excerpt}",
        status_code=response.status_code,
        response_excerpt=excerpt,
    )


def size_to_aspect_ratio(size: str) -> str:
    return {"1792x1024": "16:9", "1024x1792": "9:16"}.get(size, "1:1")


class GeminiImageProvider:
    """
    Gemini image model over the streaming generateContent endpoint.

    The response arrives as server-sent events. Thought parts are forwarded to
    the caller's on_thinking_update callback as they stream in; the last
    non-thought inline image is returned.
    """

    max_concurrent = 2

    def __init__(
        self,
        api_key: Optional[str],
        model: str = IMAGE_MODEL,
        base_url: str = IMAGE_MODEL_URL,
        inactivity_timeout: float = IMAGE_MODEL_INACTIVITY_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.model_id = model
        self.base_url = base_url.rstrip("/")
        self.inactivity_timeout = inactivity_timeout
        self._client = client

    @property
    def _is_pro_model(self) -> bool:
        return "gemini-3" in self.model_id.lower()

    async def is_available(self) -> bool:
        return bool(self.api_key and self.model_id)

    def _build_prompt(self, prompt: str, options: GenOptions) -> Tuple[str, List[Dict[str, Any]]]:
        parts: List[Dict[str, Any]] = []
        effective = prompt

        perspective = to_base64(options.map_screenshot or options.reference_image)
        if perspective:
            parts.append({"inline_data": {"mime_type": "image/png", "data": perspective}})
            effective = (
                "You have been provided a reference image of a real Australian landscape. "
                "It defines the exact perspective for your output: keep the same viewing angle, "
                "camera position, distance and field of view, and keep every hill, ridge, road, "
                "clearing and tree canopy outline where it appears. Render it as a photorealistic "
                "photograph, then overlay the following fire scenario:\n\n"
                f"{prompt}\n\n"
                "Do not show any map UI, labels or overlay markers."
            )

        vegetation_map = to_base64(options.vegetation_map_screenshot)
        if vegetation_map:
            parts.append({"inline_data": {"mime_type": "image/png", "data": vegetation_map}})
            effective += (
                "\n\nThe final reference image is a vegetation classification map. Each colour is a "
                "different vegetation group; place matching vegetation in the corresponding part "
                "of the scene."
            )

        if options.vegetation_prompt_text:
            effective += f"\n\nSPATIAL VEGETATION DATA: {options.vegetation_prompt_text}"

        parts.append({"text": effective})
        return effective, parts

    def _build_body(self, parts: List[Dict[str, Any]], size: str) -> Dict[str, Any]:
        image_config: Dict[str, str] = {"aspectRatio": size_to_aspect_ratio(size)}
        generation_config: Dict[str, Any] = {
            "responseModalities": ["TEXT", "IMAGE"],
            "imageConfig": image_config,
        }
        body: Dict[str, Any] = {"contents": [{"parts": parts}], "generationConfig": generation_config}

        if self._is_pro_model:
            image_config["imageSize"] = "2K"
            generation_config["thinkingConfig"] = {"includeThoughts": True}
            body["systemInstruction"] = {
                "parts": [{
                    "text": (
                        "You are a photorealistic bushfire scenario renderer for fire service training. "
                        "Each image is one perspective of the same fire at the same moment: keep smoke, "
                        "flame intensity, weather and lighting identical across perspectives. "
                        "Never include people, animals, vehicles or text overlays."
                    )
                }]
            }
        return body

    async def _read_stream(
        self,
        response: httpx.Response,
        on_thinking_update: Optional[Callable[[str], None]],
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        all_parts: List[Dict[str, Any]] = []
        thinking: List[str] = []

        try:
            async for line in response.aiter_lines():
                if not line.startswith("data: "):
                    continue
                payload = line[6:].strip()
                if not payload or payload == "[DONE]":
                    continue
                try:
                    chunk = json.loads(payload)
                except json.JSONDecodeError:
                    logger.debug("[gemini] Skipping malformed SSE chunk")
                    continue

                candidates = chunk.get("candidates") or []
                parts = ((candidates[0] if candidates else {}).get("content") or {}).get("parts") or []
                for part in parts:
                    all_parts.append(part)
                    if part.get("thought") and part.get("text"):
                        thinking.append(part["text"])
                        if on_thinking_update:
                            on_thinking_update("\n".join(thinking))
        except httpx.ReadTimeout:
            logger.warning(
                f"[gemini] Stream inactive for {self.inactivity_timeout}s, "
                f"continuing with {len(all_parts)} parts"
            )

        return all_parts, ("\n".join(thinking) if thinking else None)

    @staticmethod
    def _extract(parts: List[Dict[str, Any]]) -> Tuple[Optional[str], Optional[str]]:
        texts = [p["text"] for p in parts if p.get("text") and not p.get("thought")]
        text = "\n".join(texts) if texts else None

        def inline(part: Dict[str, Any]) -> Optional[str]:
            data = part.get("inlineData") or part.get("inline_data") or {}
            return data.get("data")

        for part in reversed(parts):
            if inline(part) and not part.get("thought"):
                return inline(part), text
        for part in parts:
            if inline(part):
                return inline(part), text
        return None, text

    async def generate(self, prompt: str, options: GenOptions) -> GenResult:
        start = time.time()
        size = options.size or "1024x1024"
        width, height = parse_size(size)
        _, parts = self._build_prompt(prompt, options)
        body = self._build_body(parts, size)

        url = f"{self.base_url}/{self.model_id}:streamGenerateContent"
        timeout = httpx.Timeout(30.0, read=self.inactivity_timeout)
        client = self._client or httpx.AsyncClient(timeout=timeout)
        try:
            async with client.stream(
                "POST",
                url,
                params={"alt": "sse", "key": self.api_key or ""},
                json=body,
                timeout=timeout,
            ) as response:
                if response.status_code >= 400:
                    raw = await response.aread()
                    raise api_error(response, raw.decode("utf-8", errors="replace"))
                all_parts, thinking_text = await self._read_stream(response, options.on_thinking_update)
        except httpx.RequestError as e:
            raise ProviderError(f"Image model request failed: {e}") from e
        finally:
            if self._client is None:
                await client.aclose()

        logger.info(
            f"[gemini] Stream complete. Parts: {len(all_parts)}, "
            f"thinking: {len(thinking_text) if thinking_text else 0} chars"
        )

        image_b64, text = self._extract(all_parts)
        if not image_b64:
            preview = f"\n\nModel thinking:\n{thinking_text}" if thinking_text else ""
            raise ProviderError(
                f"Image model API returned no image data.{preview}",
                thinking_text=thinking_text or text,
            )

        image_data = check_image_size(base64.b64decode(image_b64))
        return GenResult(
            image_data=image_data,
            format="png",
            metadata=GenMetadata(
                model=self.model_id,
                prompt_hash=prompt_hash(prompt),
                generation_time_ms=int((time.time() - start) * 1000),
                width=width,
                height=height,
                seed=options.seed,
            ),
            thinking_text=thinking_text or text,
            model_text_response=text,
        )


class FluxImageProvider:
    """
    Flux image model hosted on Azure, either as a serverless Black Forest Labs
    endpoint (FLUX_BASE_URL) or an OpenAI-compatible images deployment.
    """

    max_concurrent = 2

    def __init__(
        self,
        api_key: Optional[str],
        endpoint: str = FLUX_ENDPOINT,
        base_url: str = FLUX_BASE_URL,
        deployment: str = FLUX_DEPLOYMENT,
        api_version: str = FLUX_API_VERSION,
        timeout: float = FLUX_REQUEST_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.endpoint = endpoint.rstrip("/")
        self.base_url = base_url
        self.deployment = deployment
        self.api_version = api_version
        self.timeout = timeout
        self.model_id = deployment
        self._client = client

    @property
    def serverless(self) -> bool:
        return bool(self.base_url)

    async def is_available(self) -> bool:
        return bool(self.api_key and (self.base_url or self.endpoint))

    def _url(self) -> str:
        if self.base_url:
            return self.base_url
        return (
            f"{self.endpoint}/openai/deployments/{self.deployment}"
            f"/images/generations?api-version={self.api_version}"
        )

    def _build_request(self, prompt: str, options: GenOptions) -> Tuple[Dict[str, Any], Dict[str, str]]:
        size = options.size or "1024x1024"
        width, height = parse_size(size)

        reference = to_base64(options.map_screenshot or options.reference_image)
        effective = prompt
        if reference:
            effective = (
                "Using the provided terrain map as a strict spatial reference, generate a photorealistic "
                "photograph of this exact location. Preserve every hill, ridge, valley, road, clearing "
                "and tree canopy outline, and match the same camera angle and composition. "
                f"Then overlay the following fire scenario: {prompt}"
            )

        if self.serverless:
            body: Dict[str, Any] = {
                "prompt": effective,
                "width": width,
                "height": height,
                "steps": 25,
                "guidance": 3.5,
                "safety_tolerance": 5,
                "seed": options.seed,
            }
            headers = {"Authorization": f"Bearer {self.api_key}"}
        else:
            body = {"prompt": effective, "size": size, "n": 1, "response_format": "b64_json"}
            headers = {"api-key": self.api_key or ""}

        if reference:
            body["image"] = reference
        return body, headers

    @staticmethod
    def extract_base64(payload: Dict[str, Any]) -> Optional[str]:
        """Pull the image out of any of the response shapes Flux hosts return."""
        data = payload.get("data")
        if isinstance(data, list) and data and data[0].get("b64_json"):
            return data[0]["b64_json"]

        image = payload.get("image")
        if isinstance(image, dict) and image.get("url"):
            return _DATA_URL_PREFIX.sub("", image["url"])

        images = payload.get("images")
        if isinstance(images, list) and images and images[0].get("bytes"):
            return images[0]["bytes"]

        sample = payload.get("sample")
        if isinstance(sample, str):
            return _DATA_URL_PREFIX.sub("", sample)
        return None

    async def generate(self, prompt: str, options: GenOptions) -> GenResult:
        start = time.time()
        width, height = parse_size(options.size)
        body, headers = self._build_request(prompt, options)

        client = self._client or httpx.AsyncClient(timeout=self.timeout)
        try:
            response = await client.post(self._url(), json=body, headers=headers)
        except httpx.RequestError as e:
            raise ProviderError(f"Image model request failed: {e}") from e
        finally:
            if self._client is None:
                await client.aclose()

        if response.status_code >= 400:
            raise api_error(response, response.text)

        b64 = self.extract_base64(response.json())
        if not b64:
            raise ProviderError("Image model API returned no image data")

        image_data = check_image_size(base64.b64decode(b64))
        return GenResult(
            image_data=image_data,
            format="png",
            metadata=GenMetadata(
                model=self.model_id,
                prompt_hash=prompt_hash(prompt),
                generation_time_ms=int((time.time() - start) * 1000),
                width=width,
                height=height,
                seed=options.seed,
            ),
        )


class MockImageProvider:
    """
    Lightweight fallback that renders a placeholder image when no real model is configured.
    """

    max_concurrent = 3

    def __init__(self):
        self.model_id = "mock-placeholder"

    async def is_available(self) -> bool:
        return True

    async def generate(self, prompt: str, options: GenOptions) -> GenResult:
        start = time.time()
        width, height = parse_size(options.size)

        image = Image.new("RGB", (width, height), color=(32, 32, 32))
        draw = ImageDraw.Draw(image)
        label = "reference" if (options.reference_image or options.map_screenshot) else "anchor"
        text = f"Fire scenario (Mock, {label}, seed {options.seed})\n\nPrompt:\n{textwrap.fill(prompt, width=60)}"
        draw.multiline_text((20, 20), text, fill=(255, 255, 255), font=ImageFont.load_default(), spacing=4)

        buffer = io.BytesIO()
        image.save(buffer, format="PNG")

        return GenResult(
            image_data=check_image_size(buffer.getvalue()),
            format="png",
            metadata=GenMetadata(
                model=self.model_id,
                prompt_hash=prompt_hash(prompt),
                generation_time_ms=int((time.time() - start) * 1000),
                width=width,
                height=height,
                seed=options.seed,
            ),
        )


PROVIDERS: Dict[str, Callable[[], ImageGenBackend]] = {
    "gemini": lambda: GeminiImageProvider(api_key=get_secret("IMAGE_MODEL_KEY")),
    "flux": lambda: FluxImageProvider(api_key=get_secret("FLUX_API_KEY")),
    "mock": MockImageProvider,
}


def create_provider(name: Optional[str] = None) -> ImageGenBackend:
    """Build the provider named by IMAGE_PROVIDER (or an explicit name)."""
    name = (name or IMAGE_PROVIDER).lower()
    if name not in PROVIDERS:
        raise ValueError(f"Unknown image provider '{name}'. Expected one of: {', '.join(PROVIDERS)}")
    provider = PROVIDERS[name]()
    logger.info(f"[providers] Using {name} provider (model {provider.model_id})")
    return provider
