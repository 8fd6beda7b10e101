"""
FastAPI server for the voice ordering agent.

Endpoints:
- GET /health: Health check
- GET /metrics: JSON metrics
- POST /voice, /twiml: TwiML that opens the media stream
- WS {STREAM_PATH}: Twilio Media Streams WebSocket
"""

import asyncio
import sys

# Use uvloop for faster asyncio (Linux only)
try:
    import uvloop
    asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
except ImportError:
    pass  # uvloop not available on Windows

import logging
import os
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from xml.sax.saxutils import escape, quoteattr

import structlog
import uvicorn
from fastapi import FastAPI, Request, Response, WebSocket
from fastapi.responses import JSONResponse

from src.voiceorder.config import ConfigError, get_config, init_config
from src.voiceorder.media_stream import serve_media_stream
from src.voiceorder.session import CallRegistry
from src.voiceorder.turn import TurnController


def configure_logging(log_level: str = "INFO") -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if log_level != "DEBUG" else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper(), logging.INFO),
    )


logger = structlog.get_logger(__name__)


@dataclass
class ServerMetrics:
    """Server-wide metrics."""
    start_time: float = field(default_factory=time.time)
    total_connections: int = 0
    active_connections: int = 0
    total_calls: int = 0
    errors: int = 0
    utterances: int = 0
    replies: int = 0
    barge_ins: int = 0
    registry: Optional[CallRegistry] = None

    @property
    def active_calls(self) -> int:
        return len(self.registry) if self.registry is not None else 0

    def record(self, event: str) -> None:
        if event == "barge_in":
            self.barge_ins += 1
        elif event == "utterance":
            self.utterances += 1
        elif event == "reply":
            self.replies += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_connections": self.total_connections,
            "active_connections": self.active_connections,
            "total_calls": self.total_calls,
            "active_calls": self.active_calls,
            "errors": self.errors,
            "utterances": self.utterances,
            "replies": self.replies,
            "barge_ins": self.barge_ins,
        }


# Global metrics
metrics = ServerMetrics()


def build_call_handling(config: Optional[Any] = None) -> tuple[CallRegistry, TurnController]:
    """Shared registry and controller used by every media socket."""
    config = config or get_config()
    registry = CallRegistry()
    controller = TurnController(registry, config=config, on_event=metrics.record)
    metrics.registry = registry
    return registry, controller


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting voice ordering server...")

    try:
        config = init_config()
        configure_logging(config.log_level)
        app.state.registry, app.state.controller = build_call_handling(config)

        logger.info(
            "Server ready",
            port=config.port,
            public_host=config.public_host,
            ws_url=config.ws_url,
        )

    except ConfigError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)
    except SystemExit:
        raise
    except Exception as e:
        logger.error("Startup failed", error=str(e))
        sys.exit(1)

    yield

    logger.info("Shutting down server...")
    for session in app.state.registry:
        app.state.registry.remove(session.stream_sid)
    await app.state.controller.transcriber.close()
    await app.state.controller.synthesizer.close()


app = FastAPI(
    title="Voice Ordering Agent",
    description="Phone ordering agent over Twilio Media Streams",
    version="1.0.0",
    lifespan=lifespan,
)


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
            "active_calls": metrics.active_calls,
        }
    )


@app.get("/metrics")
async def get_metrics() -> JSONResponse:
    """Metrics endpoint."""
    return JSONResponse(content=metrics.to_dict())


def render_twiml(config: Any) -> str:
    """TwiML that optionally greets the caller and connects the media stream."""
    say = ""
    if config.greeting_enabled and config.greeting:
        say = f"\n    <Say>{escape(config.greeting)}</Say>"
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<Response>{say}
    <Connect>
        <Stream url={quoteattr(config.ws_url)} />
    </Connect>
</Response>"""


@app.post("/voice")
@app.get("/voice")
@app.post("/twiml")
@app.get("/twiml")
async def generate_twiml(request: Request) -> Response:
    """
    Call setup webhook.

    Returns TwiML that connects the call to our WebSocket endpoint.
    """
    config = get_config()
    logger.info("Generated TwiML", ws_url=config.ws_url, path=request.url.path)
    return Response(content=render_twiml(config), media_type="application/xml")


# The route is registered at import time, before the lifespan validates config.
STREAM_PATH = "/" + (os.getenv("STREAM_PATH", "/ws").strip().lstrip("/") or "ws")


@app.websocket(STREAM_PATH)
async def websocket_endpoint(websocket: WebSocket) -> None:
    """
    Twilio Media Streams WebSocket endpoint.

    Every socket shares the process-wide call registry.
    """
    metrics.total_connections += 1
    metrics.active_connections += 1
    logger.info("WebSocket connected", active_connections=metrics.active_connections)

    try:
        await serve_media_stream(
            websocket,
            websocket.app.state.registry,
            websocket.app.state.controller,
            metrics=metrics,
        )
    except Exception as e:
        logger.error("WebSocket handler error", error=str(e))
        metrics.errors += 1
    finally:
        metrics.active_connections -= 1
        logger.info(
            "WebSocket closed",
            active_connections=metrics.active_connections,
            active_calls=metrics.active_calls,
        )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler."""
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        error=str(exc),
    )
    metrics.errors += 1

    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"},
    )


def main() -> None:
    """Run the server."""
    config = get_config()
    configure_logging(config.log_level)

    logger.info("Starting server", port=config.port)

    uvicorn.run(
        "server.app:app",
        host="0.0.0.0",
        port=config.port,
        log_level=config.log_level.lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()
