"""
FastAPI REST API Module

HTTP surface of the field lending core: loan schedules, collection
recording, queue statistics, sync and connectivity control. Runs on port
8095 by default.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional
from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
import uvicorn

from .config import get_config
from .exceptions import (
    FieldLendingError, InvalidScheduleError, LoanNotFoundError,
    LocalStoreError, RemoteStoreError, ValidationError
)
from .logging_config import get_logger, setup_logging
from .schemas import ConnectivityRequest, RecordCollectionRequest, RetryRequest, SyncRequest
from .system import LendingSystem

logger = get_logger("field_lending.api")


def _to_http_error(error: FieldLendingError) -> HTTPException:
    """Map core errors onto HTTP status codes"""
    if isinstance(error, ValidationError):
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": str(error), "errors": error.errors}
        )
    if isinstance(error, InvalidScheduleError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))
    if isinstance(error, LoanNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))
    if isinstance(error, RemoteStoreError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(error))
    if isinstance(error, LocalStoreError):
        logger.error(f"Local store failure: {error}")
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(error))


# Dependency to get the lending system
def get_lending_system(request: Request) -> LendingSystem:
    system = getattr(request.app.state, "lending_system", None)
    if system is None:
        raise HTTPException(status_code=503, detail="Lending system not initialized")
    return system


def create_app(system: Optional[LendingSystem] = None) -> FastAPI:
    """Build the API around a LendingSystem (a configured one when not given)"""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await app.state.lending_system.close()
        logger.info("Lending system closed")

    app = FastAPI(
        title="Field Lending API",
        description="Repayment schedules and offline-first collection recording for field agents",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )
    app.state.lending_system = system or LendingSystem()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health_check(system: LendingSystem = Depends(get_lending_system)):
        """Health check endpoint"""
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "online": system.connectivity.is_online,
            "syncing": system.coordinator.is_syncing,
        }

    @app.get("/loans/{loan_id}/schedule")
    async def get_schedule(
        loan_id: str,
        now: Optional[datetime] = Query(None, description="Reference time, defaults to the clock"),
        system: LendingSystem = Depends(get_lending_system)
    ):
        """Repayment schedule of a loan with per-term status"""
        try:
            schedule = await system.compute_schedule(loan_id, now)
        except FieldLendingError as e:
            raise _to_http_error(e)

        loan = schedule["loan"]
        return {
            "loan_id": loan.id,
            "total_amount": str(loan.total_amount),
            "paid_amount": str(loan.paid_amount),
            "remaining_amount": str(loan.remaining_amount),
            "status": loan.status.value,
            "terms": [term.to_dict() for term in schedule["terms"]],
            "summary": schedule["summary"].to_dict(),
        }

    @app.post("/loans/{loan_id}/collections", status_code=status.HTTP_201_CREATED)
    async def record_collection(
        loan_id: str,
        request: RecordCollectionRequest,
        system: LendingSystem = Depends(get_lending_system)
    ):
        """Record a paid or missed collection; queued when offline"""
        system.active_user = request.actor
        try:
            result = await system.recorder.record_collection(
                request.kind, loan_id, request.payload, request.actor
            )
        except FieldLendingError as e:
            raise _to_http_error(e)
        return result.to_dict()

    @app.get("/queue/stats")
    async def queue_stats(system: LendingSystem = Depends(get_lending_system)):
        """Counts of queued mutations on this device"""
        try:
            stats = await system.queue.get_queue_stats()
        except FieldLendingError as e:
            raise _to_http_error(e)
        return stats.to_dict()

    @app.post("/queue/sync")
    async def sync_queue(
        request: SyncRequest,
        system: LendingSystem = Depends(get_lending_system)
    ):
        """Drain the user's pending mutations into the remote store"""
        try:
            result = await system.sync(request.user_id)
        except FieldLendingError as e:
            raise _to_http_error(e)
        return result.to_dict()

    @app.post("/queue/retry")
    async def retry_failed(
        request: RetryRequest,
        system: LendingSystem = Depends(get_lending_system)
    ):
        """Put the user's failed mutations back to pending"""
        try:
            count = await system.coordinator.resubmit_failed(request.user_id, request.item_ids)
        except FieldLendingError as e:
            raise _to_http_error(e)
        return {"resubmitted": count}

    @app.post("/connectivity")
    async def set_connectivity(
        request: ConnectivityRequest,
        system: LendingSystem = Depends(get_lending_system)
    ):
        """Flip the online flag; going online drains the active agent's queue"""
        try:
            await system.connectivity.set_online(request.online)
        except FieldLendingError as e:
            raise _to_http_error(e)
        return {"online": system.connectivity.is_online, "active_user": system.active_user}

    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    setup_logging(config.log_level, config.log_format, config.log_file)
    uvicorn.run(
        create_app(),
        host=host or config.api_host,
        port=port or config.api_port,
        log_level="debug" if debug else "info"
    )
