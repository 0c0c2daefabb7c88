"""FastAPI entrypoint for the OpenAI-compatible LLM gateway"""

from contextlib import asynccontextmanager
import logging
import secrets
import sys
import time
from typing import Optional

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from .backends.base import Backend
from .backends.factory import build_backend
from .config import Settings, get_settings
from .routes_openai import router as openai_router

logger = logging.getLogger(__name__)

CORS_ALLOW_METHODS = ["POST", "GET", "OPTIONS"]
CORS_ALLOW_HEADERS = ["Origin", "Content-Type", "Accept", "Authorization"]


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )


def _redacted_headers(request: Request) -> dict:
    headers = {k.lower(): v for k, v in request.headers.items()}
    if "authorization" in headers:
        token = headers["authorization"] or ""
        parts = token.split()
        headers["authorization"] = (parts[0] + " ****") if len(parts) > 1 else "****"
    if "cookie" in headers:
        headers["cookie"] = "<redacted>"
    return headers


@asynccontextmanager
async def lifespan(app: FastAPI):
    # on startup
    logger.info("Starting LLM gateway")
    if getattr(app.state, "backend", None) is None:
        # Misconfiguration fails the startup rather than the first request
        app.state.backend = build_backend(app.state.settings)
    yield
    # on shutdown
    logger.info("Shutting down gateway")
    backend = getattr(app.state, "backend", None)
    if backend:
        try:
            await backend.close()
            logger.info("Upstream HTTP client closed successfully")
        except Exception as e:
            logger.error(f"Error closing upstream HTTP client: {e}")


def create_app(backend: Optional[Backend] = None, settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the gateway application.

    A ready ``backend`` may be passed in (tests do this); otherwise one is built
    from ``settings`` at startup.
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="LLM Gateway",
        version="0.1.0",
        description="OpenAI-compatible chat completions backed by DeepSeek, OpenRouter or Ollama",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.backend = backend

    # Preflights are answered by CORSMiddleware; any other OPTIONS ends here
    @app.middleware("http")
    async def options_middleware(request: Request, call_next):
        if request.method == "OPTIONS":
            return Response(status_code=200)
        return await call_next(request)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=CORS_ALLOW_METHODS,
        allow_headers=CORS_ALLOW_HEADERS,
        expose_headers=["Content-Length"],
    )

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or secrets.token_hex(8)
        request.state.request_id = request_id

        if request.method == "POST" and logger.isEnabledFor(logging.DEBUG):
            # Detailed logging: headers + body
            body = await request.body()
            preview = body.decode("utf-8", errors="replace")
            max_len = settings.LOG_REQUEST_BODY_MAX_LENGTH
            if len(preview) > max_len:
                preview = preview[:max_len] + "...(truncated)"
            logger.debug(
                "[%s] Incoming POST %s - headers=%s body=%s",
                request_id,
                request.url.path,
                _redacted_headers(request),
                preview,
            )
        else:
            logger.info("[%s] Incoming %s %s", request_id, request.method, request.url.path)

        started = time.perf_counter()
        # The response body is never buffered here; streams pass straight through
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        logger.info(
            "[%s] Response for %s %s - status=%s in %.1fms",
            request_id,
            request.method,
            request.url.path,
            response.status_code,
            (time.perf_counter() - started) * 1000,
        )
        return response

    app.include_router(openai_router)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


configure_logging(get_settings().LOG_LEVEL)

app = create_app()


def main():
    """Entry point for the application"""
    import uvicorn
    settings = get_settings()
    uvicorn.run(app, host=settings.HOST, port=settings.PORT)


if __name__ == "__main__":
    main()
