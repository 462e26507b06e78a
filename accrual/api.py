from contextlib import asynccontextmanager
from typing import Optional
from uuid import UUID

from fastapi import FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware

from .errors import (
    AccrualError,
    CooldownActive,
    NoActiveSession,
    NothingToClaim,
    SettlementUnavailable,
    UserNotFound,
)
from .log import get_logger
from .models import (
    ClaimableUnit,
    ClaimResponse,
    NetworkStats,
    RedeemResponse,
    SessionResponse,
    SettlementHistoryResponse,
    StatusResponse,
    Wallet,
)
from .service import AccrualEngine, build_engine

logger = get_logger(__name__)


def _raise_http(e: AccrualError):
    if isinstance(e, UserNotFound):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, CooldownActive):
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=str(e),
            headers={"Retry-After": str(e.remaining_seconds)},
        )
    if isinstance(e, SettlementUnavailable):
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


def create_app(engine: Optional[AccrualEngine] = None, run_background: bool = True,
               root_path: str = "") -> FastAPI:
    engine = engine or build_engine()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if run_background:
            engine.start_background()
        logger.info("accrual_api_started", background=run_background)
        try:
            yield
        finally:
            if run_background:
                engine.stop_background()
            logger.info("accrual_api_stopped")

    app = FastAPI(
        title="Accrual Session API",
        description="Time-based reward accrual with checkpoint claims and ledger settlement",
        version="1.0.0",
        lifespan=lifespan,
        root_path=root_path,
    )
    app.state.engine = engine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def require_user(user_id: UUID):
        if not engine.storage.get_user(user_id):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"User {user_id} not found")

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "accrual"}

    @app.post("/users/{user_id}/session/start", response_model=SessionResponse, tags=["Sessions"])
    def start_session(user_id: UUID) -> SessionResponse:
        try:
            return engine.sessions.start(user_id)
        except AccrualError as e:
            _raise_http(e)

    @app.post("/users/{user_id}/session/stop", response_model=SessionResponse, tags=["Sessions"])
    def stop_session(user_id: UUID) -> SessionResponse:
        try:
            return engine.sessions.stop(user_id)
        except NoActiveSession as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    @app.get("/users/{user_id}/session/status", response_model=StatusResponse, tags=["Sessions"])
    def session_status(user_id: UUID) -> StatusResponse:
        require_user(user_id)
        return engine.sessions.status(user_id)

    @app.post("/users/{user_id}/session/claim", response_model=ClaimResponse, tags=["Sessions"])
    def claim_reward(user_id: UUID) -> ClaimResponse:
        try:
            return engine.claims.claim(user_id)
        except (NoActiveSession, NothingToClaim) as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    @app.get("/users/{user_id}/settlements", response_model=SettlementHistoryResponse, tags=["Settlements"])
    def settlement_history(user_id: UUID, limit: int = 50, offset: int = 0) -> SettlementHistoryResponse:
        require_user(user_id)
        return SettlementHistoryResponse(
            user_id=user_id,
            records=engine.storage.list_settlements(user_id, limit, offset),
            total_count=engine.storage.count_settlements(user_id),
        )

    @app.get("/users/{user_id}/claimable", response_model=list[ClaimableUnit], tags=["Settlements"])
    def list_claimable(user_id: UUID) -> list[ClaimableUnit]:
        try:
            return engine.settlement.list_claimable(user_id)
        except AccrualError as e:
            _raise_http(e)

    @app.post("/users/{user_id}/claimable/redeem", response_model=RedeemResponse, tags=["Settlements"])
    def redeem_claimable(user_id: UUID) -> RedeemResponse:
        try:
            return engine.settlement.redeem_claimable(user_id)
        except AccrualError as e:
            _raise_http(e)

    @app.get("/users/{user_id}/wallet", response_model=Wallet, tags=["Users"])
    def get_wallet(user_id: UUID) -> Wallet:
        try:
            return engine.settlement.refresh_wallet(user_id)
        except AccrualError as e:
            _raise_http(e)

    @app.get("/network/stats", response_model=NetworkStats, tags=["Network"])
    def network_stats() -> NetworkStats:
        stats = engine.storage.get_network_stats()
        if stats is None:
            stats = engine.stats_refresher.run_once()
        return stats

    return app


if __name__ == "__main__":
    import os

    import uvicorn

    uvicorn.run(create_app(), host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", "8000")))
