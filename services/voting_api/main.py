"""
FastAPI application for the voting service.

Endpoints are plain ``def`` handlers, so each request runs on a worker
thread while the reminder loop and the notification pool run alongside.
"""
import argparse
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, Histogram, generate_latest

from .config import Settings, parse_addr, settings as default_settings
from .database import PostgresBallotStore, StorageError
from .memory_store import MemoryBallotStore
from .models import (
    CastVoteRequest,
    CreateVoteRequest,
    HealthResponse,
    MessageResponse,
    ResultsResponse
)
from .notifier import MailTransport, NotificationDispatcher, Notifier, SMTPTransport
from .registry import SessionRegistry
from .reminder import ReminderLoop
from .sessions import (
    BallotStore,
    CastResult,
    InvalidInput,
    VoteSessionManager,
    VotingError
)

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if default_settings.DEBUG else getattr(logging, default_settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

request_duration = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint", "status"]
)

RECORDED_MESSAGE = "Your vote is recorded"
ALREADY_RECORDED_MESSAGE = "Your vote is already recorded, you can't vote again"


@dataclass
class Services:
    """Long-lived collaborators shared by every request."""
    settings: Settings
    store: BallotStore
    registry: SessionRegistry
    dispatcher: NotificationDispatcher
    manager: VoteSessionManager
    reminder: ReminderLoop


def build_services(
    settings: Settings,
    store=None,
    transport: Optional[MailTransport] = None
) -> Services:
    if store is None:
        if settings.STORAGE_BACKEND == "memory":
            store = MemoryBallotStore()
        else:
            store = PostgresBallotStore(settings)
    if transport is None:
        transport = SMTPTransport.from_settings(settings)

    registry = SessionRegistry()
    notifier = Notifier(transport, sender=settings.EMAIL_SENDER, base_url=settings.PUBLIC_BASE_URL)
    dispatcher = NotificationDispatcher(
        notifier,
        max_workers=settings.NOTIFIER_MAX_WORKERS,
        max_retries=settings.NOTIFIER_MAX_RETRIES,
        retry_delay=settings.NOTIFIER_RETRY_DELAY
    )
    manager = VoteSessionManager(
        store, registry, dispatcher,
        delete_max_workers=settings.DELETE_MAX_WORKERS
    )
    reminder = ReminderLoop(
        store, registry, dispatcher,
        interval=settings.REMINDER_INTERVAL_SECONDS,
        staleness=settings.REMINDER_STALENESS_SECONDS
    )
    return Services(settings, store, registry, dispatcher, manager, reminder)


def get_services(request: Request) -> Services:
    return request.app.state.services


def create_app(
    settings: Optional[Settings] = None,
    store=None,
    transport: Optional[MailTransport] = None,
    start_reminders: bool = True
) -> FastAPI:
    """Build the application; tests pass their own store and mail transport."""
    settings = settings or default_settings
    services = build_services(settings, store=store, transport=transport)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifespan context manager for startup and shutdown events."""
        logger.info(f"Starting {settings.SERVICE_NAME} service...")
        try:
            services.dispatcher.start()
            services.store.initialize()
            services.manager.load_active_sessions()
            if start_reminders:
                services.reminder.start()
            logger.info(f"{settings.SERVICE_NAME} started successfully")
        except Exception as e:
            logger.error(f"Failed to start {settings.SERVICE_NAME}: {e}")
            raise

        yield

        logger.info(f"Shutting down {settings.SERVICE_NAME} service...")
        try:
            services.reminder.stop(timeout=settings.REMINDER_INTERVAL_SECONDS)
            services.dispatcher.shutdown(wait=True)
            services.store.close()
            logger.info(f"{settings.SERVICE_NAME} shut down successfully")
        except Exception as e:
            logger.error(f"Error during shutdown: {e}")

    app = FastAPI(
        title="Voting API",
        description="Create votes, collect ballots and remind voters by email",
        lifespan=lifespan
    )
    app.state.services = services

    @app.middleware("http")
    async def prometheus_middleware(request: Request, call_next):
        """Middleware to track request duration."""
        start = time.perf_counter()
        response = await call_next(request)
        request_duration.labels(
            method=request.method,
            endpoint=request.url.path,
            status=response.status_code
        ).observe(time.perf_counter() - start)
        return response

    @app.exception_handler(VotingError)
    async def voting_error_handler(request: Request, exc: VotingError):
        logger.info(f"{request.method} {request.url.path} rejected: {exc}")
        return JSONResponse(status_code=exc.status_code, content={"message": str(exc)})

    @app.exception_handler(StorageError)
    async def storage_error_handler(request: Request, exc: StorageError):
        logger.error(f"Storage failure on {request.method} {request.url.path}: {exc}", exc_info=exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"message": "Database error"}
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        details = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in exc.errors()
        )
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"message": f"Invalid request body: {details}"}
        )

    _register_routes(app)
    return app


def _register_routes(app: FastAPI):

    @app.post(
        "/create_vote",
        response_model=MessageResponse,
        status_code=status.HTTP_201_CREATED,
        responses={
            400: {"model": MessageResponse, "description": "Invalid vote definition"},
            409: {"model": MessageResponse, "description": "Vote id already in use"},
            500: {"model": MessageResponse, "description": "Database error"}
        }
    )
    def create_vote(body: CreateVoteRequest, services: Services = Depends(get_services)):
        """
        Create a vote and email every eligible user.

        - **voter_id**: vote identifier
        - **options**: options to choose from (duplicates removed)
        - **user_list**: eligible users (duplicates removed)
        """
        services.manager.create_session(body.voter_id, body.options, body.user_list)
        return MessageResponse(message="Vote created and emails sent")

    @app.post(
        "/vote",
        response_model=MessageResponse,
        responses={
            400: {"model": MessageResponse, "description": "Invalid ballot"},
            404: {"model": MessageResponse, "description": "Unknown vote or user"},
            409: {"model": MessageResponse, "description": "Vote closed"},
            500: {"model": MessageResponse, "description": "Database error"}
        }
    )
    def cast_vote(body: CastVoteRequest, services: Services = Depends(get_services)):
        """Record a ballot. A second ballot from the same user is ignored."""
        result = services.manager.cast_vote(body.vote_id, body.email, body.option)
        if result is CastResult.RECORDED:
            return MessageResponse(message=RECORDED_MESSAGE)
        return MessageResponse(message=ALREADY_RECORDED_MESSAGE)

    @app.get(
        "/vote_result",
        response_model=ResultsResponse,
        responses={
            400: {"model": MessageResponse, "description": "Missing vote_id parameter"},
            404: {"model": MessageResponse, "description": "Unknown vote"},
            500: {"model": MessageResponse, "description": "Database error"}
        }
    )
    def vote_result(vote_id: Optional[str] = None, services: Services = Depends(get_services)):
        """Ballot counts per option; options nobody chose are omitted."""
        if not vote_id:
            raise InvalidInput("Missing vote_id parameter")
        return ResultsResponse(results=services.manager.tally(vote_id))

    @app.post(
        "/close_vote",
        response_model=MessageResponse,
        responses={
            400: {"model": MessageResponse, "description": "Missing vote_id parameter"},
            404: {"model": MessageResponse, "description": "Unknown vote"}
        }
    )
    def close_vote(vote_id: Optional[str] = None, services: Services = Depends(get_services)):
        """Stop accepting ballots and sending reminders for a vote."""
        if not vote_id:
            raise InvalidInput("Missing vote_id parameter")
        services.manager.close_session(vote_id)
        return MessageResponse(message=f"Vote {vote_id} closed")

    @app.delete("/delete_all_voters", response_class=PlainTextResponse)
    def delete_all_voters(services: Services = Depends(get_services)):
        """Delete every vote and its ballots."""
        deleted = services.manager.delete_all_sessions()
        return PlainTextResponse(f"Deleted {deleted} rows from voters table")

    @app.get("/health", response_model=HealthResponse)
    def health_check(services: Services = Depends(get_services)):
        """
        Check health of the service and its dependencies.

        Verifies the datastore connection and that the reminder loop is alive.
        """
        checks = {
            "database": "connected" if services.store.check_health() else "disconnected",
            "reminder_loop": "running" if services.reminder.running else "stopped",
            "active_votes": len(services.registry)
        }
        healthy = checks["database"] == "connected"
        response = HealthResponse(
            status="healthy" if healthy else "unhealthy",
            services=checks,
            timestamp=datetime.utcnow()
        )
        return JSONResponse(
            status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
            content=response.model_dump(mode="json")
        )

    @app.get("/metrics")
    def metrics():
        """Prometheus metrics endpoint."""
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


app = create_app()


def main(argv=None):
    """Run the API under uvicorn."""
    import uvicorn

    parser = argparse.ArgumentParser(description="Voting API server")
    parser.add_argument(
        "--addr",
        default=default_settings.ADDR,
        help="network address to listen on, e.g. :4000 or 127.0.0.1:8080"
    )
    args = parser.parse_args(argv)
    host, port = parse_addr(args.addr)

    logger.info(f"Starting server on {host}:{port}")
    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level=default_settings.LOG_LEVEL.lower()
    )


if __name__ == "__main__":
    main()
