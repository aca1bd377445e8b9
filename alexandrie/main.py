import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from alexandrie.api import crates, index
from alexandrie.core.dependencies import initialize_registry, shutdown_registry
from alexandrie.domain.errors import Inconsistent, RegistryError, StorageFailure

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


app = FastAPI(
    title="Alexandrie",
    version="0.1.0",
    description="Alternative crate registry compatible with Cargo.",
)


@app.on_event("startup")
async def startup_event() -> None:
    """
    Apply database migrations, open the git index and rebuild the search
    index from the database.
    """
    await initialize_registry()


@app.on_event("shutdown")
async def shutdown_event() -> None:
    await shutdown_registry()


@app.exception_handler(RegistryError)
async def registry_error_handler(request: Request, exc: RegistryError) -> JSONResponse:
    """
    Render errors the way Cargo displays them: `{"errors": [{"detail": ...}]}`.
    """
    if isinstance(exc, Inconsistent):
        logger.critical(f"{request.method} {request.url.path}: {exc.repair}")
    elif isinstance(exc, StorageFailure):
        logger.error(f"{request.method} {request.url.path}: {exc.cause!r}")
    return JSONResponse(status_code=exc.status_code, content={"errors": [{"detail": exc.detail}]})


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}


app.include_router(crates.router, prefix="/api/v1", tags=["crates"])
app.include_router(index.router, prefix="/index", tags=["index"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("alexandrie.main:app", host="0.0.0.0", port=3000)
