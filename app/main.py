import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from . import models  # noqa: F401  registers the tables on Base.metadata
from .config import get_settings
from .database import Base, engine
from .exceptions import SigningError
from .routers import documents, signing, users

settings = get_settings()

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create database tables on startup"""
    logger.info("Creating database tables...")
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables ready")
    yield


app = FastAPI(title="Docsign", lifespan=lifespan)


@app.exception_handler(SigningError)
async def signing_error_handler(request: Request, exc: SigningError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


app.include_router(users.router, tags=["users"])
app.include_router(documents.router, prefix="/documents", tags=["documents"])
app.include_router(signing.router, prefix="/sign", tags=["signing"])


@app.get("/health")
def health_check():
    return {
        "status": "ok",
        "database": "postgres" if settings.database_url else "sqlite",
        "storage": "vercel_blob" if settings.blob_token else "local",
        "pdf_embed_mode": settings.pdf_embed_mode,
    }
