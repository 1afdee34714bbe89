"""
FastAPI host for the call bridge.

Endpoints:
- GET /health: Health check
- GET /metrics: JSON metrics
- GET|POST /answer: TwiML that connects the call to the media stream
- GET /audio/{file}: Hosted TTS audio for the redirect playback fallback
- WS /media: Twilio Media Streams WebSocket, one CallPipeline per connection
"""

import asyncio
import sys

# Use uvloop for faster asyncio (not available on Windows)
try:
    import uvloop
    asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
except ImportError:
    pass

import logging
import os
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict

from fastapi import FastAPI, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from starlette.websockets import WebSocketState
import structlog
import uvicorn

from src.callbridge.config import ConfigError, get_config, init_config
from src.callbridge.telephony import build_stream_twiml, prune_audio_dir


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
    active_calls: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_connections": self.total_connections,
            "active_connections": self.active_connections,
            "total_calls": self.total_calls,
            "active_calls": self.active_calls,
            "errors": self.errors,
        }


metrics = ServerMetrics()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting call bridge server...")

    try:
        config = init_config()
        configure_logging(config.log_level)
        os.makedirs(config.audio_dir, exist_ok=True)
        prune_audio_dir(config.audio_dir, config.audio_max_age_seconds)
        logger.info(
            "Server ready",
            port=config.port,
            answer_url=config.answer_url,
            stream_url=config.stream_url,
        )
    except ConfigError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)

    yield

    logger.info("Shutting down server...")


app = FastAPI(
    title="Call Bridge",
    description="Twilio Media Streams bridge to Sarvam STT/TTS and DeepSeek replies",
    version="1.0.0",
    lifespan=lifespan,
)

# Hosted TTS files for the redirect fallback. The directory is created at startup.
app.mount("/audio", StaticFiles(directory=get_config().audio_dir, check_dir=False), name="audio")


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


@app.post("/answer")
@app.get("/answer")
async def answer_call(request: Request) -> Response:
    """
    Twilio voice webhook.

    Returns TwiML that connects the call's inbound audio to our media WebSocket.
    """
    config = get_config()
    twiml = build_stream_twiml(config.stream_url)
    logger.info("Generated TwiML", stream_url=config.stream_url)
    return Response(content=twiml, media_type="application/xml")


@app.websocket("/media")
async def media_stream(websocket: WebSocket) -> None:
    """
    Twilio Media Streams WebSocket endpoint.

    Each connection is one call and gets its own pipeline.
    """
    await websocket.accept()

    metrics.total_connections += 1
    metrics.active_connections += 1
    metrics.total_calls += 1
    metrics.active_calls += 1

    connection_id = f"conn_{int(time.time() * 1000)}"
    logger.info("WebSocket connected", connection_id=connection_id, active_calls=metrics.active_calls)

    # Import here to keep app import light
    from src.callbridge.pipeline import create_pipeline

    pipeline = None
    closed = False

    def is_open() -> bool:
        return (
            not closed
            and websocket.client_state == WebSocketState.CONNECTED
            and websocket.application_state == WebSocketState.CONNECTED
        )

    async def send_message(message: str) -> None:
        """Send a message to the WebSocket; errors propagate so playback can fall back."""
        try:
            await websocket.send_text(message)
        except Exception as e:
            logger.error("Failed to send WebSocket message", connection_id=connection_id, error=str(e))
            raise

    try:
        pipeline = await create_pipeline(send_message, get_config(), is_open=is_open)

        while True:
            try:
                message = await websocket.receive_text()
            except WebSocketDisconnect:
                logger.info("WebSocket disconnected", connection_id=connection_id)
                break
            await pipeline.handle_message(message)
            if not pipeline.is_running:
                break

    except Exception as e:
        logger.error("WebSocket handler error", connection_id=connection_id, error=str(e))
        metrics.errors += 1

    finally:
        closed = True
        if pipeline:
            await pipeline.stop(reason="transport_closed")

        metrics.active_connections -= 1
        metrics.active_calls -= 1
        logger.info("Call ended", connection_id=connection_id, active_calls=metrics.active_calls)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler."""
    logger.error("Unhandled exception", path=request.url.path, error=str(exc))
    metrics.errors += 1
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


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
