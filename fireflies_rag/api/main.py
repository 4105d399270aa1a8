from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from fireflies_rag.api.routes.meetings import router as meetings_router
from fireflies_rag.api.routes.search import router as search_router
from fireflies_rag.api.routes.sync import router as sync_router
from fireflies_rag.config import configure_logging, get_settings
from fireflies_rag.errors import PipelineError, StorageError, UpstreamRejected, UpstreamUnavailable

configure_logging(get_settings().log_level)

app = FastAPI(
    title="Fireflies RAG API",
    description="Sync, chunk, embed and search Fireflies meeting transcripts",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
    ],
    allow_origin_regex=r"https://.*\.vercel\.app|http://localhost:\d+",
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error_response(status_code: int, exc: PipelineError) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": type(exc).__name__, "message": exc.message, "item_id": exc.item_id},
    )


@app.exception_handler(UpstreamRejected)
async def upstream_rejected_handler(request: Request, exc: UpstreamRejected) -> JSONResponse:
    return _error_response(502, exc)


@app.exception_handler(UpstreamUnavailable)
async def upstream_unavailable_handler(request: Request, exc: UpstreamUnavailable) -> JSONResponse:
    return _error_response(503, exc)


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
    return _error_response(503, exc)


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    return _error_response(500, exc)


app.include_router(sync_router)
app.include_router(search_router)
app.include_router(meetings_router)


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "healthy"}
