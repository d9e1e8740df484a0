"""
Configuration constants for the scenario image generation service.
"""
import os
from typing import Optional


def get_secret(name: str, default: Optional[str] = None) -> Optional[str]:
    """Resolve a named secret or config value from the environment."""
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value


# Provider selection
IMAGE_PROVIDER = os.getenv("IMAGE_PROVIDER", "mock").lower()  # "gemini", "flux" or "mock"
IMAGE_MODEL = os.getenv("IMAGE_MODEL", "gemini-2.5-flash-image")
IMAGE_MODEL_URL = os.getenv(
    "IMAGE_MODEL_URL", "https://generativelanguage.googleapis.com/v1beta/models"
)
IMAGE_MODEL_INACTIVITY_TIMEOUT = float(os.getenv("IMAGE_MODEL_INACTIVITY_TIMEOUT", "60"))

# Flux (Azure AI Foundry / Black Forest Labs)
FLUX_ENDPOINT = os.getenv("FLUX_ENDPOINT", "")
FLUX_BASE_URL = os.getenv("FLUX_BASE_URL", "")
FLUX_DEPLOYMENT = os.getenv("FLUX_DEPLOYMENT", "flux-kontext-pro")
FLUX_API_VERSION = os.getenv("FLUX_API_VERSION", "2025-04-01-preview")
FLUX_REQUEST_TIMEOUT = float(os.getenv("FLUX_REQUEST_TIMEOUT", "120"))

# Retrying generator defaults
DEFAULT_IMAGE_SIZE = os.getenv("DEFAULT_IMAGE_SIZE", "1024x1024")
DEFAULT_IMAGE_QUALITY = os.getenv("DEFAULT_IMAGE_QUALITY", "high")
DEFAULT_IMAGE_STYLE = os.getenv("DEFAULT_IMAGE_STYLE", "natural")
MAX_RETRIES = int(os.getenv("MAX_RETRIES", "3"))
GENERATION_TIMEOUT_MS = int(os.getenv("GENERATION_TIMEOUT_MS", "60000"))

# Pipeline
MAX_VIEWPOINTS = 10
MAX_SEED_VALUE = 1_000_000
REFERENCE_STRENGTH = float(os.getenv("REFERENCE_STRENGTH", "0.5"))
PERSIST_DEBOUNCE_SECONDS = float(os.getenv("PERSIST_DEBOUNCE_SECONDS", "1.0"))
ACCESS_URL_TTL_HOURS = int(os.getenv("ACCESS_URL_TTL_HOURS", "24"))
CONSISTENCY_PASS_THRESHOLD = 70

# Storage
MINIO_ENDPOINT = os.getenv("MINIO_ENDPOINT", "minio:9000")
MINIO_ACCESS_KEY = os.getenv("MINIO_ACCESS_KEY", "minioadmin")
MINIO_SECRET_KEY = os.getenv("MINIO_SECRET_KEY", "minioadmin")
MINIO_BUCKET = os.getenv("MINIO_BUCKET", "fire-scenarios")
MINIO_SECURE = os.getenv("MINIO_SECURE", "false").lower() == "true"

# Vegetation enrichment (empty URL disables it)
VEGETATION_SERVICE_URL = os.getenv("VEGETATION_SERVICE_URL", "")
VEGETATION_TIMEOUT_SECONDS = float(os.getenv("VEGETATION_TIMEOUT_SECONDS", "8"))

# Tracing
OTEL_TRACING_ENABLED = os.getenv("OTEL_TRACING_ENABLED", "false").lower() == "true"
OTEL_SERVICE_NAME = os.getenv("OTEL_SERVICE_NAME", "firesim-image-gen")
