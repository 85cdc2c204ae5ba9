"""FastAPI application exposing the matchmaking command surface.

HTTP endpoints carry the commands; notifications are pushed to players
connected on ``/ws/{player_id}``.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import AsyncIterator, Dict, Iterable, List, Optional

from fastapi import FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from . import __version__
from .entities import DisbandReason, QueuePosition
from .errors import CommandResult, UnknownPlayer
from .gateway import NotificationGateway
from .service import MatchmakingService, PlayerStatus
from .settings import Settings
from .store import DurableStore, create_store

logger = logging.getLogger(__name__)

_STATUS_CODES = {
    CommandResult.ALREADY_QUEUED: 409,
    CommandResult.NOT_QUEUED: 409,
    CommandResult.STATE_CONFLICT: 409,
    CommandResult.SESSION_NOT_FOUND: 404,
    CommandResult.UNKNOWN_PLAYER: 404,
    CommandResult.SESSION_ALREADY_RESOLVED: 410,
    CommandResult.STORE_UNAVAILABLE: 503,
}


class RegisterRequest(BaseModel):
    player_id: str = Field(min_length=1, max_length=64)
    skill: float


class SkillUpdate(BaseModel):
    skill: float


class ReadyCheckAnswer(BaseModel):
    player_id: str = Field(min_length=1, max_length=64)
    accept: bool


class WebSocketGateway(NotificationGateway):
    """Pushes notifications to players holding an open websocket."""

    def __init__(self) -> None:
        self.connections: Dict[str, WebSocket] = {}
        self.lock = asyncio.Lock()

    async def connect(self, player_id: str, websocket: WebSocket) -> None:
        async with self.lock:
            self.connections[player_id] = websocket
        logger.info("Player %s connected for notifications", player_id)

    async def disconnect(self, player_id: str, websocket: WebSocket) -> None:
        async with self.lock:
            if self.connections.get(player_id) is websocket:
                del self.connections[player_id]
        logger.info("Player %s disconnected", player_id)

    async def send(self, player_ids: Iterable[str], message: Dict) -> None:
        stale: List[str] = []
        for player_id in player_ids:
            websocket = self.connections.get(player_id)
            if websocket is None:
                continue
            try:
                await websocket.send_json(message)
            except Exception:
                logger.warning("Dropping stale websocket of %s", player_id, exc_info=True)
                stale.append(player_id)
        for player_id in stale:
            self.connections.pop(player_id, None)

    async def prompt_ready_check(self, session_id, member_ids, deadline) -> None:
        await self.send(
            member_ids,
            {"type": "ready_check", "session_id": session_id, "members": list(member_ids), "deadline": deadline},
        )

    async def notify_group_confirmed(self, group_id, member_ids) -> None:
        await self.send(member_ids, {"type": "group_confirmed", "group_id": group_id, "members": list(member_ids)})

    async def notify_group_disbanded(self, group_id, reason: DisbandReason, affected_member_ids) -> None:
        await self.send(
            affected_member_ids,
            {
                "type": "group_disbanded",
                "group_id": group_id,
                "reason": reason.value,
                "members": list(affected_member_ids),
            },
        )

    async def notify_queue_status(self, player_id, position: QueuePosition) -> None:
        await self.send([player_id], {"type": "queue_status", **asdict(position)})


def _status_payload(status: PlayerStatus) -> Dict:
    return {
        "player_id": status.player_id,
        "skill": status.skill,
        "state": status.state.value,
        "position": asdict(status.position) if status.position else None,
        "session_id": status.session_id,
        "deadline": status.deadline,
    }


def _check(result: CommandResult) -> None:
    if result is not CommandResult.OK:
        raise HTTPException(status_code=_STATUS_CODES[result], detail=result.value)


def create_app(settings: Optional[Settings] = None, store: Optional[DurableStore] = None) -> FastAPI:
    """Create and configure the FastAPI application."""

    if settings is None:
        settings = Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logging.basicConfig(
            level=settings.LOG_LEVEL,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        )
        backend = store
        if backend is None:
            backend = create_store(
                settings.STORE_URL, timeout=settings.STORE_TIMEOUT_SECONDS, namespace=settings.KEY_PREFIX
            )
        app.state.service = MatchmakingService(settings.queue_config(), backend, app.state.gateway)
        await app.state.service.start()
        logger.info("Matchmaking started (%s, store %s)", settings.ENVIRONMENT, type(backend).__name__)
        try:
            yield
        finally:
            await app.state.service.stop()
            logger.info("Matchmaking stopped")

    app = FastAPI(
        title="soloq",
        description="Solo queue matchmaking coordinator",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.gateway = WebSocketGateway()

    def get_service(request: Request) -> MatchmakingService:
        return request.app.state.service

    @app.get("/health")
    async def healthcheck(request: Request) -> Dict:
        """Readiness probe for container orchestration."""
        service = get_service(request)
        return {
            "status": "ok",
            "waiting": len(service.pool),
            "ready_checks": len(service.ready_checks),
            "ticks": service.grouping.ticks_completed,
        }

    @app.post("/players")
    async def register_player(body: RegisterRequest, request: Request) -> Dict:
        service = get_service(request)
        _check(await service.register(body.player_id, body.skill))
        return _status_payload(await service.status(body.player_id))

    @app.put("/players/{player_id}/skill")
    async def update_skill(player_id: str, body: SkillUpdate, request: Request) -> Dict:
        service = get_service(request)
        _check(await service.update_skill(player_id, body.skill))
        return _status_payload(await service.status(player_id))

    @app.get("/players/{player_id}")
    async def player_status(player_id: str, request: Request) -> Dict:
        try:
            status = await get_service(request).status(player_id)
        except UnknownPlayer:
            raise HTTPException(status_code=404, detail=CommandResult.UNKNOWN_PLAYER.value)
        return _status_payload(status)

    @app.post("/queue/{player_id}")
    async def join_queue(player_id: str, request: Request) -> Dict:
        service = get_service(request)
        _check(await service.join(player_id))
        return _status_payload(await service.status(player_id))

    @app.delete("/queue/{player_id}")
    async def leave_queue(player_id: str, request: Request) -> Dict:
        _check(await get_service(request).leave(player_id))
        return {"result": CommandResult.OK.value}

    @app.post("/sessions/{session_id}/responses")
    async def answer_ready_check(session_id: str, body: ReadyCheckAnswer, request: Request) -> Dict:
        _check(await get_service(request).respond(session_id, body.player_id, body.accept))
        return {"result": CommandResult.OK.value}

    @app.get("/leaderboard")
    async def leaderboard(request: Request, limit: Optional[int] = Query(default=None, ge=1)) -> Dict:
        players = await get_service(request).leaderboard(limit)
        return {
            "players": [
                {"rank": rank, "player_id": player.player_id, "skill": player.skill}
                for rank, player in enumerate(players, start=1)
            ]
        }

    @app.websocket("/ws/{player_id}")
    async def notifications(websocket: WebSocket, player_id: str) -> None:
        await websocket.accept()
        gateway: WebSocketGateway = websocket.app.state.gateway
        service: MatchmakingService = websocket.app.state.service
        await gateway.connect(player_id, websocket)
        try:
            while True:
                message = await websocket.receive_json()
                msg_type = message.get("type")
                if msg_type == "ready":
                    result = await service.respond(message.get("session_id", ""), player_id, bool(message.get("accept")))
                    await websocket.send_json({"type": "result", "result": result.value})
                elif msg_type == "ping":
                    await websocket.send_json({"type": "pong"})
        except WebSocketDisconnect:
            pass
        finally:
            await gateway.disconnect(player_id, websocket)

    return app


app = create_app()

__all__ = ["app", "create_app", "WebSocketGateway"]
