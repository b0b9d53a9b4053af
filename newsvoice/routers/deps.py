from fastapi import HTTPException, Request

from ..engine import NewsVoiceEngine


def get_engine(request: Request) -> NewsVoiceEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Engine not started")
    return engine
