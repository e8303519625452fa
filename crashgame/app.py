# app.py
"""
Crash Round Server – HTTP / WebSocket entry point

Responsibilities:
- FastAPI HTTP server
- Request Validation (Pydantic)
- Forwarding player actions to the round orchestrator
- Streaming round records to observers over a WebSocket

Integration:
- Uses orchestrator.py (single authoritative round loop)
- Uses wallet.py / db.py (atomic, idempotent balance updates)
- Uses store.py (keyed records + subscriptions)
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import (
    FastAPI,
    Query,
    Request,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from crashgame.db import DATABASE_URL, init_db, make_engine, make_sessionmaker
from crashgame.engine import GameConfig
from crashgame.errors import (
    AlreadyCashedOut,
    DuplicateBet,
    InsufficientFunds,
    InvalidState,
    NoSuchBet,
    RoundNotFound,
    StoreUnavailable,
)
from crashgame.ledger import Bet
from crashgame.orchestrator import RoundOrchestrator
from crashgame.store import SqlStateStore
from crashgame.wallet import Wallet

# =====================================================
# LOGGING & CONFIG
# =====================================================

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("crashgame.app")

# =====================================================
# DATA MODELS (Pydantic)
# =====================================================

class UserInitRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)
    username: Optional[str] = Field(None, min_length=1, max_length=64)

class BetRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)
    amount: float = Field(..., gt=0)  # Input is float, converted to Decimal internally
    auto_cashout: Optional[float] = Field(None, gt=1.0)
    username: Optional[str] = Field(None, min_length=1, max_length=64)
    round_id: Optional[str] = None
    # Queue for the next round when the current one is already running
    next_round: bool = False

class CashoutRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)
    multiplier: Optional[float] = Field(None, ge=1.0)
    round_id: Optional[str] = None

# =====================================================
# APP FACTORY
# =====================================================

def bet_response(bet: Bet) -> Dict[str, Any]:
    return bet.to_dict()


def create_app(
    database_url: str = DATABASE_URL,
    config: Optional[GameConfig] = None,
    autostart: bool = True,
) -> FastAPI:
    """
    Builds the app. All round state hangs off `app.state.orchestrator`;
    `autostart=False` leaves the round loop to the caller (tests).
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Startup: Initializing Database...")
        engine = make_engine(database_url)
        await init_db(engine)

        sessionmaker = make_sessionmaker(engine)
        store = SqlStateStore(sessionmaker)
        wallet = Wallet(sessionmaker, store=store)
        orchestrator = RoundOrchestrator(store, wallet, config=config)

        app.state.store = store
        app.state.wallet = wallet
        app.state.orchestrator = orchestrator

        if autostart:
            logger.info("Startup: Launching round loop...")
            await orchestrator.start()

        yield

        logger.info("Shutdown: Cleaning up...")
        await orchestrator.stop()
        await engine.dispose()

    app = FastAPI(
        title="Crash Round API",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # =====================================================
    # ERROR HANDLERS
    # =====================================================

    def error_handler(code: int, title: str):
        async def handler(_, exc: Exception):
            return JSONResponse(
                status_code=code,
                content={"error": title, "detail": str(exc)},
            )
        return handler

    app.add_exception_handler(InvalidState, error_handler(status.HTTP_409_CONFLICT, "Game State Conflict"))
    app.add_exception_handler(DuplicateBet, error_handler(status.HTTP_409_CONFLICT, "Duplicate Bet"))
    app.add_exception_handler(AlreadyCashedOut, error_handler(status.HTTP_409_CONFLICT, "Already Cashed Out"))
    app.add_exception_handler(NoSuchBet, error_handler(status.HTTP_404_NOT_FOUND, "Bet Not Found"))
    app.add_exception_handler(RoundNotFound, error_handler(status.HTTP_404_NOT_FOUND, "Round Not Found"))
    app.add_exception_handler(InsufficientFunds, error_handler(status.HTTP_402_PAYMENT_REQUIRED, "Insufficient Funds"))
    app.add_exception_handler(StoreUnavailable, error_handler(status.HTTP_503_SERVICE_UNAVAILABLE, "Store Unavailable"))
    app.add_exception_handler(ValueError, error_handler(status.HTTP_422_UNPROCESSABLE_ENTITY, "Value Error"))

    # =====================================================
    # API – USER
    # =====================================================

    @app.post("/api/init")
    async def api_init(payload: UserInitRequest, request: Request):
        """
        Fetch (or create) the player and their balance.
        """
        player = await request.app.state.wallet.get_or_create_player(
            payload.user_id, payload.username
        )
        return {
            "user_id": player["id"],
            "username": player["username"],
            "balance": player["balance"],
        }

    # =====================================================
    # API – GAME STATE
    # =====================================================

    @app.get("/api/state")
    async def api_state(request: Request):
        """
        Current round as seen by the authority.
        """
        return request.app.state.orchestrator.public_state()

    @app.get("/api/history")
    async def api_history(request: Request, limit: int = Query(5, ge=1, le=100)):
        results = await request.app.state.orchestrator.recent_results(limit)
        return {
            "crash_points": [r["crash_point"] for r in results],
            "results": results,
        }

    @app.get("/api/rounds/{round_id}")
    async def api_round(round_id: str, request: Request):
        return await request.app.state.orchestrator.get_round(round_id)

    @app.get("/api/rounds/{round_id}/verify")
    async def api_verify(round_id: str, request: Request):
        return await request.app.state.orchestrator.verify(round_id)

    # =====================================================
    # API – BETTING & CASHOUT
    # =====================================================

    @app.post("/api/place-bet")
    async def api_place_bet(payload: BetRequest, request: Request):
        """
        Debit and registration happen together under the round lock; a
        rejected bet never touches the balance.
        """
        orchestrator: RoundOrchestrator = request.app.state.orchestrator

        if payload.next_round:
            bet = await orchestrator.queue_bet(
                payload.user_id, payload.amount, payload.auto_cashout, payload.username
            )
            if bet is None:
                return {"status": "queued"}
        else:
            bet = await orchestrator.place_bet(
                payload.round_id,
                payload.user_id,
                payload.amount,
                payload.auto_cashout,
                payload.username,
            )

        balance = await request.app.state.wallet.balance(payload.user_id)
        return {
            "status": "accepted",
            "round_id": orchestrator.current_round.round_id,
            "bet": bet_response(bet),
            "new_balance": float(balance),
        }

    @app.post("/api/cashout")
    async def api_cashout(payload: CashoutRequest, request: Request):
        """
        Locks in the multiplier. The server multiplier is the authority; the
        payout is credited when the round settles.
        """
        bet = await request.app.state.orchestrator.cash_out(
            payload.round_id,
            payload.user_id,
            payload.multiplier,
        )
        return {
            "status": "cashed_out",
            "bet": bet_response(bet),
            "payout": float(bet.payout),
            "profit": float(bet.profit),
        }

    # =====================================================
    # OBSERVERS
    # =====================================================

    @app.websocket("/ws/rounds")
    async def ws_rounds(websocket: WebSocket):
        """
        Pushes every games/* record change. Read-only: actions go through
        the HTTP endpoints.
        """
        await websocket.accept()
        queue: asyncio.Queue = asyncio.Queue(maxsize=256)

        def on_change(key: str, value: Optional[Dict[str, Any]]) -> None:
            if queue.full():
                # Slow observer: drop the oldest update, later records supersede it
                queue.get_nowait()
            queue.put_nowait({"key": key, "value": value})

        async def pump() -> None:
            while True:
                await websocket.send_json(await queue.get())

        subscription = await websocket.app.state.store.subscribe("games", on_change)
        sender = asyncio.create_task(pump())
        try:
            # Client messages are ignored; receiving is how a disconnect shows up
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            logger.info("Observer disconnected")
        finally:
            sender.cancel()
            subscription.unsubscribe()

    return app


app = create_app()
