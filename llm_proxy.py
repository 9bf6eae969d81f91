#!/usr/bin/env python3
"""
LLM Proxy

Exposes an Ollama-style API (/api/generate, /api/chat, /api/tags, /api/show)
and forwards each request to a configured backend:

    ollama  - pass-through to another Ollama server
    openai  - translated to /v1/completions or /v1/chat/completions

Replies are relayed to the client increment by increment as they arrive, and
every exchange is written to a local exchange log for later inspection.
"""

import argparse
import asyncio
import logging
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any

import uvicorn
from fastapi import FastAPI, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from backend import Backend, create_backend
from config import ProxyConfig, load_config
from exchange_log import ExchangeLog
from handlers import ExchangeHandler

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log method, path, status and latency of every request."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        start = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - start) * 1000
        logger.info(
            f"{request.method} {request.url.path} -> {response.status_code} ({elapsed_ms:.1f}ms)"
        )
        return response


async def prune_periodically(exchange_log: ExchangeLog, interval_minutes: int) -> None:
    """Apply exchange log retention every ``interval_minutes`` until cancelled."""
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            removed = await exchange_log.cleanup()
        except Exception as e:
            logger.error(f"Exchange log cleanup failed: {e}")
            continue
        if removed:
            logger.info(f"Exchange log cleanup removed {removed} record(s)")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """FastAPI lifespan context manager for startup/shutdown tasks."""
    config: ProxyConfig = app.state.config
    handler: ExchangeHandler = app.state.handler
    exchange_log: ExchangeLog | None = app.state.exchange_log

    cleanup_task: asyncio.Task[None] | None = None
    if exchange_log is not None:
        logger.info("Validating exchange log on startup...")
        result = await exchange_log.validate_on_startup()
        logger.info(f"  Exchange log: {result['record_count']} records in {exchange_log.log_dir}")
        if config.cleanup_interval > 0:
            cleanup_task = asyncio.create_task(
                prune_periodically(exchange_log, config.cleanup_interval)
            )

    yield  # App runs here

    if cleanup_task is not None:
        cleanup_task.cancel()
        try:
            await cleanup_task
        except asyncio.CancelledError:
            pass

    await handler.drain()
    await handler.backend.aclose()


def create_app(
    config: ProxyConfig | None = None,
    backend: Backend | None = None,
    exchange_log: ExchangeLog | None = None,
) -> FastAPI:
    """
    Build the proxy application.

    ``backend`` and ``exchange_log`` default to the ones described by
    ``config``; tests pass their own.
    """
    config = config or load_config()
    if backend is None:
        backend = create_backend(config)
    if exchange_log is None:
        exchange_log = ExchangeLog(
            log_dir=config.log_dir,
            ttl_hours=config.log_ttl_hours,
            max_records=config.max_records,
        )

    handler = ExchangeHandler(config, backend, exchange_log)

    app = FastAPI(title="LLM Proxy", lifespan=lifespan)
    app.state.config = config
    app.state.handler = handler
    app.state.exchange_log = exchange_log

    if config.cors_enabled:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["*"],
        )
    if config.verbose:
        app.add_middleware(RequestLoggingMiddleware)

    @app.post("/api/generate")
    async def generate(request: Request) -> Response:
        return await handler.generate(await request.body())

    @app.post("/api/chat")
    async def chat(request: Request) -> Response:
        return await handler.chat(await request.body())

    @app.get("/api/tags")
    async def list_models() -> Response:
        return await handler.list_models()

    @app.post("/api/show")
    async def show(request: Request) -> Response:
        return await handler.show(await request.body())

    @app.get("/health")
    async def health_check() -> Response:
        """Liveness probe."""
        return PlainTextResponse("OK")

    @app.get("/logs")
    async def list_logs(
        limit: int = Query(default=25, ge=1, le=500),
        offset: int = Query(default=0, ge=0),
    ) -> dict[str, Any]:
        """List logged exchanges, most recent first."""
        summaries = await exchange_log.list_recent(limit=limit, offset=offset)
        return {
            "total": await exchange_log.count(),
            "limit": limit,
            "offset": offset,
            "records": [asdict(summary) for summary in summaries],
        }

    @app.get("/logs/{record_id}", response_model=None)
    async def get_log(record_id: int) -> dict[str, Any] | JSONResponse:
        """Get one full exchange record."""
        record = await exchange_log.get(record_id)
        if record is None:
            return JSONResponse(
                status_code=404,
                content={"error": "Record not found", "id": record_id},
            )
        return record

    @app.get("/config")
    async def get_config() -> dict[str, Any]:
        """Get current proxy configuration."""
        return {
            "backend_type": config.backend_type,
            "backend_url": config.backend_url,
            "backend_timeout": config.backend_timeout,
            "request_timeout": config.request_timeout,
            "force_prompt_cache": config.force_prompt_cache,
            "tool_blacklist": config.tool_blacklist,
            "injection": {
                "enabled": config.injection_enabled,
                "text": config.injection_text,
                "mode": config.injection_mode,
            },
            "logging": {
                "messages": config.log_messages,
                "raw_requests": config.log_raw_requests,
                "raw_responses": config.log_raw_responses,
                "verbose": config.verbose,
            },
            "exchange_log": {
                "directory": str(exchange_log.log_dir),
                "ttl_hours": config.log_ttl_hours,
                "max_records": config.max_records,
                "cleanup_interval_minutes": config.cleanup_interval,
            },
        }

    return app


# =============================================================================
# Main
# =============================================================================


def _env_help(env_var: str, description: str, default: str | None = None) -> str:
    """Format help text with environment variable name."""
    if default is not None:
        return f"{description} [env: {env_var}, default: {default}]"
    return f"{description} [env: {env_var}]"


def _flag(value: bool) -> bool | None:
    """Map an unset store_true flag to None so the environment wins."""
    return True if value else None


def main() -> None:
    parser = argparse.ArgumentParser(
        description="LLM Proxy",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Configuration Priority (highest to lowest):
  1. CLI arguments
  2. Environment variables (LLM_PROXY_*)
  3. .env file in working directory
  4. Default values

Examples:
  # Translate to a llama.cpp / OpenAI-compatible server
  python llm_proxy.py --backend-type openai --backend http://localhost:8080

  # Pass through to another Ollama server
  python llm_proxy.py --backend-type ollama --backend http://gpu-box:11434

  # Using environment variables
  LLM_PROXY_BACKEND_URL=http://localhost:8080 python llm_proxy.py
""",
    )

    # Connection settings - use None as default to detect if CLI was used
    parser.add_argument(
        "--port",
        "-p",
        type=int,
        default=None,
        help=_env_help("LLM_PROXY_PORT", "Port to listen on", "11434"),
    )
    parser.add_argument(
        "--host",
        default=None,
        help=_env_help("LLM_PROXY_HOST", "Host to bind to", "0.0.0.0"),
    )

    backend_group = parser.add_argument_group("backend settings")
    backend_group.add_argument(
        "--backend-type",
        "-t",
        choices=["openai", "ollama"],
        default=None,
        help=_env_help("LLM_PROXY_BACKEND_TYPE", "Backend dialect", "openai"),
    )
    backend_group.add_argument(
        "--backend",
        "-b",
        default=None,
        help=_env_help("LLM_PROXY_BACKEND_URL", "Backend server URL", "http://localhost:8080"),
    )
    backend_group.add_argument(
        "--backend-timeout",
        type=float,
        default=None,
        help=_env_help("LLM_PROXY_BACKEND_TIMEOUT", "Backend read timeout in seconds", "300"),
    )
    backend_group.add_argument(
        "--request-timeout",
        type=float,
        default=None,
        help=_env_help(
            "LLM_PROXY_REQUEST_TIMEOUT", "Overall relay deadline in seconds (0 = none)", "0"
        ),
    )
    backend_group.add_argument(
        "--force-prompt-cache",
        action="store_true",
        help="Always ask OpenAI backends to cache the prompt "
        "[env: LLM_PROXY_FORCE_PROMPT_CACHE=true]",
    )
    backend_group.add_argument(
        "--tool-blacklist",
        type=str,
        default=None,
        help="Comma-separated tool names to strip from chat requests "
        "[env: LLM_PROXY_TOOL_BLACKLIST as JSON array]",
    )

    injection_group = parser.add_argument_group("chat text injection")
    injection_group.add_argument(
        "--inject",
        type=str,
        default=None,
        help="Append this text to a user message (enables injection) "
        "[env: LLM_PROXY_INJECTION_TEXT, LLM_PROXY_INJECTION_ENABLED=true]",
    )
    injection_group.add_argument(
        "--inject-mode",
        choices=["first", "last"],
        default=None,
        help=_env_help(
            "LLM_PROXY_INJECTION_MODE", "Which user message receives the text", "last"
        ),
    )

    # Diagnostics
    diag_group = parser.add_argument_group("diagnostics")
    diag_group.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging [env: LLM_PROXY_DEBUG=true]",
    )
    diag_group.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Log every request with status and latency [env: LLM_PROXY_VERBOSE=true]",
    )
    diag_group.add_argument(
        "--log-messages",
        action="store_true",
        help="Log message content [env: LLM_PROXY_LOG_MESSAGES=true]",
    )
    diag_group.add_argument(
        "--log-raw-requests",
        action="store_true",
        help="Log decoded client requests [env: LLM_PROXY_LOG_RAW_REQUESTS=true]",
    )
    diag_group.add_argument(
        "--log-raw-responses",
        action="store_true",
        help="Log relayed increments [env: LLM_PROXY_LOG_RAW_RESPONSES=true]",
    )
    diag_group.add_argument(
        "--cors",
        action="store_true",
        help="Enable CORS on all routes [env: LLM_PROXY_CORS_ENABLED=true]",
    )

    log_group = parser.add_argument_group("exchange log settings")
    log_group.add_argument(
        "--log-dir",
        type=str,
        default=None,
        help=_env_help(
            "LLM_PROXY_LOG_DIR",
            "Directory for exchange records",
            "${XDG_STATE_HOME:-~/.local/state}/llm_proxy/exchanges",
        ),
    )
    log_group.add_argument(
        "--log-ttl",
        type=int,
        default=None,
        help=_env_help("LLM_PROXY_LOG_TTL_HOURS", "Hours to retain records (0 = forever)", "168"),
    )
    log_group.add_argument(
        "--max-records",
        type=int,
        default=None,
        help=_env_help("LLM_PROXY_MAX_RECORDS", "Records to keep (0 = unlimited)", "100"),
    )
    log_group.add_argument(
        "--cleanup-interval",
        type=int,
        default=None,
        help=_env_help(
            "LLM_PROXY_CLEANUP_INTERVAL", "Minutes between pruning passes (0 = off)", "5"
        ),
    )

    args = parser.parse_args()

    tool_blacklist = None
    if args.tool_blacklist is not None:
        tool_blacklist = [t.strip() for t in args.tool_blacklist.split(",") if t.strip()]

    # CLI takes precedence over environment variables
    config = load_config(
        host=args.host,
        port=args.port,
        backend_type=args.backend_type,
        backend_url=args.backend,
        backend_timeout=args.backend_timeout,
        request_timeout=args.request_timeout,
        force_prompt_cache=_flag(args.force_prompt_cache),
        tool_blacklist=tool_blacklist,
        injection_enabled=True if args.inject else None,
        injection_text=args.inject,
        injection_mode=args.inject_mode,
        debug=_flag(args.debug),
        verbose=_flag(args.verbose),
        log_messages=_flag(args.log_messages),
        log_raw_requests=_flag(args.log_raw_requests),
        log_raw_responses=_flag(args.log_raw_responses),
        cors_enabled=_flag(args.cors),
        log_dir=args.log_dir,
        log_ttl_hours=args.log_ttl,
        max_records=args.max_records,
        cleanup_interval=args.cleanup_interval,
    )

    # Apply debug logging level
    if config.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    app = create_app(config)

    # Log startup configuration
    logger.info("Starting LLM Proxy")
    logger.info(f"  Backend: {config.backend_type} at {config.backend_url}")
    logger.info(f"  Listening: {config.host}:{config.port}")
    if config.tool_blacklist:
        logger.info(f"  Tool blacklist: {', '.join(config.tool_blacklist)}")
    if config.injection_enabled and config.injection_text:
        logger.info(f"  Injection: {config.injection_mode} user message")
    logger.info(
        f"  Exchange log: {app.state.exchange_log.log_dir} "
        f"(ttl {config.log_ttl_hours}h, max {config.max_records} records)"
    )

    uvicorn.run(app, host=config.host, port=config.port)


if __name__ == "__main__":
    main()
