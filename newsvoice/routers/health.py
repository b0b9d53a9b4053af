from fastapi import APIRouter, Depends
from ..engine import NewsVoiceEngine
from ..logging_setup import get_logger
from .deps import get_engine

logger = get_logger("newsvoice.routes.health")

router = APIRouter()

@router.get("/health")
def health():
    logger.debug("Health check invoked")
    return {"status": "ok"}

@router.get("/health/engine")
def engine_health(engine: NewsVoiceEngine = Depends(get_engine)):
    # Gate queue depth, job outcomes, cache hit rate, index size
    return {"status": "ok", **engine.stats()}
