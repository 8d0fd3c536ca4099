import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api import contexts, curriculum, generation, selection
from app.core.config import get_settings
from app.services.curriculum import load_curriculum
from app.services.errors import SelectionEngineError

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger("quizengine")

app = FastAPI(
    title=settings.app_name,
    description="Template selection, curriculum coverage and context rotation for the quiz app",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url, "http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

for module in (selection, curriculum, contexts, generation):
    app.include_router(module.router)


@app.exception_handler(SelectionEngineError)
async def engine_error_handler(request: Request, exc: SelectionEngineError):
    # errors a router did not map itself
    logger.error("[main] %s on %s: %s", exc.__class__.__name__, request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": exc.__class__.__name__})


@app.get("/")
async def root():
    return {"name": settings.app_name, "docs": "/docs", "health": "/health"}


@app.get("/health")
async def health():
    return {"status": "ok", "curriculum_items": len(load_curriculum())}
