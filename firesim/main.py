"""
FastAPI application for scenario image generation.

Endpoints:
- POST /generate: Start a generation run
- GET /generate/{run_id}/status: Poll run progress
- GET /generate/{run_id}/results: Fetch the caller-facing result
- GET /healthz: Provider availability
"""
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import IMAGE_PROVIDER, VEGETATION_SERVICE_URL
from .consistency import ConsistencyValidator
from .costs import CostEstimator, UsageTracker
from .image_generator import ImageGeneratorService
from .orchestrator import GenerationOrchestrator
from .providers import create_provider
from .schemas import GenerateResponse, GenerationRequest, GenerationResult, HealthResponse, RunProgress, RunStatus
from .state import ProgressStore
from .storage import MinioStorage
from .tracing import init_tracing
from .vegetation import VegetationService

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def build_orchestrator() -> GenerationOrchestrator:
    """Wire the orchestrator and its collaborators from configuration."""
    storage = MinioStorage()
    return GenerationOrchestrator(
        generator=ImageGeneratorService(create_provider()),
        storage=storage,
        progress_store=ProgressStore(storage),
        vegetation_service=VegetationService(VEGETATION_SERVICE_URL) if VEGETATION_SERVICE_URL else None,
        validator=ConsistencyValidator(),
        cost_estimator=CostEstimator(),
        usage_tracker=UsageTracker(),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting up scenario generation service...")
    init_tracing(app)
    app.state.orchestrator = build_orchestrator()
    yield
    logger.info("Shutting down scenario generation service...")
    orchestrator: GenerationOrchestrator = app.state.orchestrator
    await orchestrator.drain()
    await orchestrator.progress_store.flush_all()


app = FastAPI(
    title="Fire Scenario Image Generation Service",
    description="Generates consistent multi-viewpoint bushfire scenario images",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_orchestrator(request: Request) -> GenerationOrchestrator:
    return request.app.state.orchestrator


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Internal server error", "detail": str(exc)},
    )


@app.get("/healthz", response_model=HealthResponse)
async def health_check(orchestrator: GenerationOrchestrator = Depends(get_orchestrator)):
    available = await orchestrator.generator.is_available()
    return HealthResponse(
        status="healthy" if available else "degraded",
        provider=IMAGE_PROVIDER,
        model=orchestrator.generator.model_id,
        available=available,
    )


@app.post("/generate", response_model=GenerateResponse, status_code=status.HTTP_202_ACCEPTED)
async def start_generation(
    request: GenerationRequest,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    """Start a run; poll the status endpoint until it is completed or failed."""
    run_id = await orchestrator.start(request)
    return GenerateResponse(run_id=run_id, status=RunStatus.PENDING)


@app.get("/generate/{run_id}/status", response_model=RunProgress)
async def get_status(run_id: str, orchestrator: GenerationOrchestrator = Depends(get_orchestrator)):
    progress = await orchestrator.get_status(run_id)
    if progress is None:
        raise HTTPException(status_code=404, detail=f"Run {run_id} not found")
    return progress


@app.get("/generate/{run_id}/results", response_model=GenerationResult)
async def get_results(run_id: str, orchestrator: GenerationOrchestrator = Depends(get_orchestrator)):
    result = await orchestrator.get_results(run_id)
    if result is None:
        raise HTTPException(status_code=404, detail=f"Run {run_id} not found")
    return result
