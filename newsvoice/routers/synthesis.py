from fastapi import APIRouter, Depends, HTTPException

from ..engine import NewsVoiceEngine
from ..logging_setup import get_logger
from ..schema import ComposeIn, SynthesizeIn
from .deps import get_engine

logger = get_logger("newsvoice.routes.synthesis")

router = APIRouter(tags=["Synthesis"])

@router.post("/synthesize")
async def synthesize(body: SynthesizeIn, engine: NewsVoiceEngine = Depends(get_engine)):
    logger.info(f"Synthesize: query={body.query[:60]!r} pool={len(body.article_ids)}")
    result = await engine.synthesize(body.query, body.article_ids, session_id=body.session_id)
    return result.model_dump(mode="json")

@router.get("/synthesize/{synthesis_id}")
def get_synthesis(synthesis_id: str, engine: NewsVoiceEngine = Depends(get_engine)):
    result = engine.get_result(synthesis_id)
    if result is None:
        raise HTTPException(status_code=404, detail="Unknown synthesis result")
    return result.model_dump(mode="json")

@router.post("/compose")
async def compose(body: ComposeIn, engine: NewsVoiceEngine = Depends(get_engine)):
    result = engine.get_result(body.synthesis_result_id)
    if result is None:
        raise HTTPException(status_code=404, detail="Unknown synthesis result")
    segment = await engine.compose(result, body.persona_name, body.overrides, session_id=body.session_id)
    return segment.model_dump(mode="json")
