from typing import Optional
from fastapi import APIRouter, Depends

from ..engine import NewsVoiceEngine
from ..logging_setup import get_logger
from .deps import get_engine

logger = get_logger("newsvoice.routes.personas")

router = APIRouter(prefix="/personas", tags=["Personas"])

@router.get("")
def list_personas(engine: NewsVoiceEngine = Depends(get_engine)):
    return [engine.registry.get(n).model_dump(mode="json") for n in engine.registry.names()]

@router.get("/{name}")
def get_persona(name: str, version: Optional[int] = None, engine: NewsVoiceEngine = Depends(get_engine)):
    # PersonaNotFound is mapped to 404 by the exception handlers
    return engine.registry.get(name, version).model_dump(mode="json")
