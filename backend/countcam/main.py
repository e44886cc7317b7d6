"""Main FastAPI application."""
import logging
import signal
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# Load environment variables from .env file
load_dotenv()

from countcam.config import settings
from countcam.database import HistoryStore
from countcam.visitors.counter import VisitorCounter
from countcam.visitors.exceptions import ErrorCode, VisitorLogError
from countcam.visitors.router import router as visitors_router

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    # Startup
    logger.info("Starting application...")
    store = HistoryStore(settings.DATABASE_URL)
    try:
        store.init()
    except Exception as e:
        logger.error(f"Failed to connect to database: {e}")
    app.state.history_store = store

    if settings.GOOGLE_API_KEY:
        app.state.visitor_counter = VisitorCounter(
            model=settings.GEMINI_MODEL,
            api_key=settings.GOOGLE_API_KEY,
            timeout_seconds=settings.REQUEST_TIMEOUT_SECONDS,
        )
        logger.info(f"Visitor counter ready (model: {settings.GEMINI_MODEL})")
    else:
        logger.error("GOOGLE_API_KEY environment variable not set.")
        app.state.visitor_counter = None
    yield
    # Shutdown
    logger.info("Shutting down application...")
    store.shutdown()


app = FastAPI(
    title=settings.API_TITLE,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(VisitorLogError)
async def visitor_log_error_handler(request: Request, exc: VisitorLogError) -> JSONResponse:
    body = {"error": exc.detail, "errorCode": exc.error_code.value}
    if exc.details is not None:
        body["details"] = exc.details
    return JSONResponse(status_code=exc.status_code, content=body)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={
            "error": "Invalid request parameters.",
            "errorCode": ErrorCode.INVALID_REQUEST.value,
            "details": details,
        },
    )


app.include_router(visitors_router, tags=["visitors"])


def _signal_handler(signum, frame):
    """Handle shutdown signals."""
    logger.warning(f"Received signal {signum}. Initiating graceful shutdown...")


def run() -> None:
    import uvicorn

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)
    uvicorn.run(
        app,
        host=settings.API_HOST,
        port=settings.API_PORT,
        timeout_keep_alive=settings.REQUEST_TIMEOUT_SECONDS,
    )


if __name__ == "__main__":
    run()
