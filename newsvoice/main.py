# newsvoice/main.py
from fastapi import FastAPI

from .logging_setup import setup_logging, get_logger
from .middleware import RequestContextMiddleware
from .exception_handling import register_exception_handlers
from .lifespan import lifespan

from .routers import health, synthesis, chat, personas, ingest


setup_logging()  # <-- set up logging ASAP
logger = get_logger("newsvoice.main")

app = FastAPI(title="NewsVoice", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestContextMiddleware)

register_exception_handlers(app)

# Include routers
app.include_router(health.router)
app.include_router(synthesis.router)
app.include_router(chat.router)
app.include_router(personas.router)
app.include_router(ingest.router)
