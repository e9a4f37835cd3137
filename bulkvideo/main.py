import os
import time
import logging
import uvicorn
from contextlib import asynccontextmanager
from fastapi import FastAPI
from dotenv import load_dotenv

load_dotenv()

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

from . import metrics
from .auth_middleware import WorkerAuthMiddleware
from .pipeline import router as bulk_video_router
from .pipeline.orchestrator import DEFAULT_CONCURRENCY
from .pipeline.animate import ANIMATION_FALLBACK_ENABLED

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        f"Bulk video worker starting up (concurrency={DEFAULT_CONCURRENCY}, "
        f"fallback_clips={'on' if ANIMATION_FALLBACK_ENABLED else 'off'})"
    )
    metrics.set_gauge("start_time", time.time())
    yield
    logger.info("Bulk video worker shutting down...")


app = FastAPI(title="Bulk Video Worker", lifespan=lifespan)
app.add_middleware(WorkerAuthMiddleware)
app.include_router(bulk_video_router)


@app.get("/health")
def health_check():
    """Verify worker is running and env vars are configured."""
    return {
        "status": "ok",
        "supabase_url_set": bool(os.environ.get("SUPABASE_URL")),
        "s3_credentials_set": bool(os.environ.get("S3_ACCESS_KEY_ID")),
        "fal_key_set": bool(os.environ.get("FAL_KEY")),
        "runway_key_set": bool(os.environ.get("RUNWAY_API_KEY")),
        "google_api_key_set": bool(os.environ.get("GOOGLE_API_KEY")),
    }


@app.get("/metrics")
def metrics_endpoint():
    """Return a snapshot of all worker metrics."""
    return metrics.get_snapshot()


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    uvicorn.run("bulkvideo.main:app", host="0.0.0.0", port=port)
