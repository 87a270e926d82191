"""
HTTP front door for errand.

The API only unwraps requests and wraps responses; all behaviour lives in the agent loop.
It exposes the following endpoints:
- **GET /health**  - liveness probe for health checks.
- **GET /specializations** - list the personas a request may start with.
- **POST /agent**   - single request: {"query": "...", "specialization": "..."}
"""

import logging
from functools import lru_cache
from typing import List

from fastapi import (
    Depends,
    FastAPI,
    HTTPException,
)

from errand.agent.agent_loop import run_agent
from errand.agent.completion import CompletionClient
from errand.agent.function_dispatch import ExecutionMode
from errand.api.models import (
    AgentRequest,
    AgentResponse,
    SpecializationInfo,
)
from errand.common import (
    AnsiColors,
    colored_print,
)
from errand.config import settings
from errand.core.errors import ValidationError
from errand.store.query_compiler import run_query
from errand.tools import FunctionContext
from errand.tools.functions import set_specialization

logger = logging.getLogger(__name__)

app = FastAPI(title="errand API", version="0.1.0", description="errand agent API")


# ---------------------------------------------------------------------------
# Dependencies (overridable in tests through ``app.dependency_overrides``)
# ---------------------------------------------------------------------------
@lru_cache
def get_context() -> FunctionContext:
    """Table store and knowledge store shared by all requests."""
    return FunctionContext.open(settings.DB_PATH)


@lru_cache
def get_completion() -> CompletionClient:
    """Completion client built from settings."""
    return CompletionClient.from_settings()


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------
@app.get("/health", summary="Health check")
async def health() -> dict[str, str]:
    """Return a simple liveness payload."""
    return {"status": "ok"}


@app.get(
    "/specializations",
    response_model=List[SpecializationInfo],
    summary="List specializations",
)
def list_specializations(
    context: FunctionContext = Depends(get_context),
) -> List[SpecializationInfo]:
    """List every stored specialization."""
    rows = run_query(
        {"table": "specializations", "order": [{"column": "name"}]}, context.store
    )
    return [SpecializationInfo.model_validate(row) for row in rows]


@app.post("/agent", response_model=AgentResponse, summary="Answer a request")
def agent_endpoint(
    req: AgentRequest,
    context: FunctionContext = Depends(get_context),
    completion: CompletionClient = Depends(get_completion),
) -> AgentResponse:
    """Run the agent loop for one request."""
    specialization = None
    if req.specialization:
        try:
            specialization = set_specialization(context, req.specialization).specialization
        except ValidationError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    logger.debug("Agent request: %s", req.model_dump())
    result = run_agent(
        req.query,
        completion=completion,
        context=context,
        specialization=specialization,
        max_iterations=settings.MAX_ITERATIONS,
        mode=ExecutionMode(settings.EXECUTION_MODE),
    )
    return AgentResponse(
        answer=result.answer,
        transcript=result.transcript,
        specialization=result.specialization.name if result.specialization else None,
        iterations=result.iterations,
    )


# ---------------------------------------------------------------------------
# Public helper to launch the API (imported by main.py)
# ---------------------------------------------------------------------------
def run_api(
    host: str = "0.0.0.0", port: int = 8000, reload: bool = False, log_level: str | None = None
) -> None:
    """Start a uvicorn server hosting *app*.

    Parameters
    ----------
    host, port:
        Bind address for the HTTP server.
    reload:
        If *True*, enable auto-reload.
    log_level:
        Logging level to use (default from settings if not provided).
    """

    # Lazy import - keeps uvicorn an optional dependency at pkg-import time
    import uvicorn  # pylint: disable=import-outside-toplevel

    if log_level is None:  # Use the default from settings if not provided
        log_level = settings.LOG_LEVEL

    logger.info(
        "Starting errand API at %s:%d (reload=%s, log_level=%s)", host, port, reload, log_level
    )
    get_context()  # create the schema before the first request
    colored_print(f"errand API is running at http://localhost:{port}.", AnsiColors.GREEN)
    uvicorn.run(
        "errand.api.app:app",
        host=host,
        port=port,
        reload=reload,
        log_level=log_level,
    )
