"""FastAPI application entrypoint. No business logic; only wiring, middleware and error mapping."""

import logging

from dotenv import load_dotenv

load_dotenv()

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from app.api.v1 import router as v1_router
from app.core.config import settings

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Vulnerability Catalog API",
    description="Deduplicates scanner findings into unified vulnerabilities and auto-resolves vanished ones.",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.APP_ENV == "dev" else [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Catalog database failures that reach the API surface as 503, not a bare 500."""
    logger.error(
        "Catalog database error",
        extra={"path": request.url.path, "error": str(exc)},
    )
    return JSONResponse(status_code=503, content={"detail": "Catalog database unavailable."})


app.include_router(v1_router, prefix=settings.API_V1_PREFIX)


@app.get("/")
def root() -> dict[str, str]:
    """Root route; minimal payload for discovery."""
    return {"message": "Vulnerability Catalog API", "docs": "/docs"}
