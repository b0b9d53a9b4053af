import os
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status

from ..engine import NewsVoiceEngine
from ..workflow import run_ingest
from .deps import get_engine

router = APIRouter(prefix="/admin/ingest", tags=["Admin Ingest"])

# --- Simple API key gate ---
def require_admin(x_api_key: Optional[str] = Header(default=None)) -> None:
    expected = os.getenv("ADMIN_API_KEY", "")
    if not expected:
        # Fail closed if the key was never configured
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Server misconfigured: ADMIN_API_KEY not set."
        )
    if x_api_key != expected:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")

@router.post("/run", summary="Fetch feeds and extract metadata now")
async def run_now(engine: NewsVoiceEngine = Depends(get_engine), _: None = Depends(require_admin)):
    """
    Runs one ingest pass inline and returns its counters. Extraction jobs go
    through the gate at batch priority, so chat traffic still goes first.
    """
    return await run_ingest(engine)
