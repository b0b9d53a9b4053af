from fastapi import APIRouter, Depends

from ..engine import NewsVoiceEngine
from ..logging_setup import get_logger
from ..schema import ChatIn
from .deps import get_engine

logger = get_logger("newsvoice.routes.chat")

router = APIRouter(prefix="/chat", tags=["Chat"])

@router.post("/{session_id}")
async def chat(session_id: str, body: ChatIn, engine: NewsVoiceEngine = Depends(get_engine)):
    if body.persona_name:
        # Only takes effect for a new session
        engine.chat_adjuster.open_session(session_id, body.persona_name)
    adjustment, segment = await engine.chat(session_id, body.message)
    return {
        "adjustment": adjustment.model_dump(mode="json"),
        "segment": segment.model_dump(mode="json") if segment else None,
    }

@router.get("/{session_id}/history")
def history(session_id: str, engine: NewsVoiceEngine = Depends(get_engine)):
    return [a.model_dump(mode="json") for a in engine.chat_adjuster.history(session_id)]

@router.get("/{session_id}/persona")
def persona(session_id: str, engine: NewsVoiceEngine = Depends(get_engine)):
    snap = engine.chat_adjuster.snapshot(session_id)
    return {**snap.model_dump(mode="json"), "identity": snap.identity, "version_tag": snap.version_tag}

@router.post("/{session_id}/promote")
def promote(session_id: str, engine: NewsVoiceEngine = Depends(get_engine)):
    logger.info(f"Promoting session persona: session={session_id}")
    return engine.promote(session_id).model_dump(mode="json")
