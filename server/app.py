"""
FastAPI server for the call bridge.

Endpoints:
- GET /health: Health check
- GET /metrics: JSON metrics
- GET|POST /twiml, /incoming: TwiML connecting the call to the media stream
- WS /ws: Twilio Media Streams WebSocket
- POST /api/dial: Place an outbound call (HTTP basic auth)
- GET|POST /api/prompt: Read or replace the agent prompt (HTTP basic auth)
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
import secrets
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict

from fastapi import Depends, FastAPI, HTTPException, Request, Response, WebSocket, WebSocketDisconnect, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from pydantic import BaseModel, Field
import structlog
import uvicorn

from src.callbridge.config import ConfigError, get_config, init_config
from src.callbridge.prompts import PromptConfig, ensure_prompt_file, load_prompt_config, save_prompt_config


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

security = HTTPBasic()


@dataclass
class ServerMetrics:
    """Server-wide metrics."""
    start_time: float = field(default_factory=time.time)
    total_connections: int = 0
    active_connections: int = 0
    total_calls: int = 0
    active_calls: int = 0
    outbound_calls: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_connections": self.total_connections,
            "active_connections": self.active_connections,
            "total_calls": self.total_calls,
            "active_calls": self.active_calls,
            "outbound_calls": self.outbound_calls,
            "errors": self.errors,
        }


# Global metrics
metrics = ServerMetrics()


class DialRequest(BaseModel):
    number: str = Field(min_length=1, description="E.164 number to call")


class PromptUpdate(BaseModel):
    system_prompt: str = Field(min_length=1)
    assistant_prompt: str = Field(min_length=1)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting call bridge server...")

    try:
        config = init_config()
        configure_logging(config.log_level)
        ensure_prompt_file(config.prompt_file)

        logger.info(
            "Server ready",
            port=config.port,
            public_host=config.public_host,
            ws_url=config.ws_url,
        )

    except ConfigError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)

    yield

    logger.info("Shutting down server...")


app = FastAPI(
    title="Call Bridge",
    description="Real-time voice agent for Twilio phone calls",
    version="1.0.0",
    lifespan=lifespan,
)


def require_dashboard_user(credentials: HTTPBasicCredentials = Depends(security)) -> str:
    config = get_config()
    user_ok = secrets.compare_digest(credentials.username.encode("utf-8"), config.dashboard_username.encode("utf-8"))
    password_ok = secrets.compare_digest(credentials.password.encode("utf-8"), config.dashboard_password.encode("utf-8"))
    if not (user_ok and password_ok):
        logger.warning("Dashboard credentials rejected", username=credentials.username)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Credentials for {credentials.username} rejected",
            headers={"WWW-Authenticate": "Basic"},
        )
    return credentials.username


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


@app.post("/twiml")
@app.get("/twiml")
@app.post("/incoming")
@app.get("/incoming")
async def generate_twiml(request: Request) -> Response:
    """
    Generate TwiML for the Twilio voice webhook (inbound calls and answered outbound calls).

    Returns TwiML that connects the call to our WebSocket endpoint.
    """
    config = get_config()

    twiml = f"""<?xml version="1.0" encoding="UTF-8"?>
<Response>
    <Connect>
        <Stream url="{config.ws_url}" />
    </Connect>
</Response>"""

    logger.info("Generated TwiML", ws_url=config.ws_url)

    return Response(
        content=twiml,
        media_type="application/xml",
    )


@app.post("/api/dial")
async def dial(body: DialRequest, username: str = Depends(require_dashboard_user)) -> JSONResponse:
    """Place an outbound call that will be bridged to the agent when answered."""
    from src.callbridge.dialer import make_outbound_call

    try:
        call_sid = await make_outbound_call(body.number)
    except ConfigError as e:
        logger.error("Outbound call not configured", error=str(e))
        return JSONResponse(
            status_code=500,
            content={"message": "Server configuration error. Check Twilio environment variables."},
        )
    except Exception as e:
        logger.error("Outbound call failed", to=body.number, error=str(e))
        metrics.errors += 1
        return JSONResponse(
            status_code=500,
            content={"message": "Failed to initiate call.", "error": str(e)},
        )

    metrics.outbound_calls += 1
    return JSONResponse(content={"message": "Call initiated successfully", "callSid": call_sid})


@app.get("/api/prompt")
async def read_prompt(username: str = Depends(require_dashboard_user)) -> JSONResponse:
    prompt = load_prompt_config(get_config().prompt_file)
    return JSONResponse(content=prompt.model_dump())


@app.post("/api/prompt")
async def update_prompt(body: PromptUpdate, username: str = Depends(require_dashboard_user)) -> JSONResponse:
    """Replace the prompt; it takes effect on the next call."""
    prompt = PromptConfig(system_prompt=body.system_prompt, assistant_prompt=body.assistant_prompt)
    try:
        save_prompt_config(get_config().prompt_file, prompt)
    except OSError as e:
        logger.error("Failed to write prompt file", error=str(e))
        return JSONResponse(status_code=500, content={"message": "Failed to update prompt."})
    return JSONResponse(content={"message": "Prompt updated successfully."})


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """
    Twilio Media Streams WebSocket endpoint.

    Handles incoming audio and sends outgoing audio for a call.
    """
    await websocket.accept()

    metrics.total_connections += 1
    metrics.active_connections += 1
    metrics.total_calls += 1
    metrics.active_calls += 1

    call_id = f"call_{int(time.time() * 1000)}"

    logger.info(
        "WebSocket connected",
        call_id=call_id,
        active_calls=metrics.active_calls,
    )

    # Import here to avoid circular imports and speed up startup
    from src.callbridge.pipeline import create_pipeline

    pipeline = None

    async def send_message(message: str) -> None:
        """Send a message to the WebSocket; failures surface to the pipeline."""
        await websocket.send_text(message)

    try:
        pipeline = await create_pipeline(send_message)

        while pipeline.is_running:
            try:
                message = await websocket.receive_text()
                await pipeline.handle_message(message)

            except WebSocketDisconnect:
                logger.info("WebSocket disconnected", call_id=call_id)
                break
            except Exception as e:
                logger.error(
                    "Error handling WebSocket message",
                    call_id=call_id,
                    error=str(e),
                )
                metrics.errors += 1
                # Continue processing - don't crash on single message error
                continue

    except Exception as e:
        logger.error(
            "WebSocket handler error",
            call_id=call_id,
            error=str(e),
        )
        metrics.errors += 1

    finally:
        if pipeline:
            try:
                await pipeline.stop()
            except Exception as e:
                logger.error("Error stopping pipeline", error=str(e))

        metrics.active_connections -= 1
        metrics.active_calls -= 1

        logger.info(
            "Call ended",
            call_id=call_id,
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
