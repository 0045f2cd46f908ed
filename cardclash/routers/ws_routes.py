from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError
from typing import Any, Awaitable, Callable, Dict, Optional, Set
import asyncio
import json
import logging
import time
from cardclash.schemas.game import (
    AnswerEvent, ChatEvent, CreateLobbyEvent, DeckMetadata, GameStatus, GetLobbyEvent,
    JoinLobbyEvent, UpdateFlashcardEvent, UpdateLeaderEvent, WSEvent, WSEventType
)
from cardclash.schemas.lobby import Lobby, UpdateSettingsEvent
from cardclash.routers.distractor_logic import DistractorCoordinator
from cardclash.routers.game_logic import GameEngine, votes_needed
from cardclash.routers.game_loop import RoundScheduler
from cardclash.routers.lobby_logic import PlayerRoster, lobby_snapshot
from cardclash.utils.errors import ws_error_event
from cardclash.utils.ids import generate_connection_id, validate_name
from cardclash.utils.storage import get_directory

logger = logging.getLogger(__name__)

router = APIRouter()

MAX_CHAT_LENGTH = 300

# Connection management
class ConnectionManager:
    def __init__(self, on_disconnect: Optional[Callable[[str], Awaitable[None]]] = None):
        # connection id -> websocket
        self.connections: Dict[str, WebSocket] = {}
        # room code -> set of connection ids
        self.rooms: Dict[str, Set[str]] = {}
        self.on_disconnect = on_disconnect

    async def connect(self, websocket: WebSocket) -> str:
        await websocket.accept()
        conn_id = generate_connection_id()
        self.connections[conn_id] = websocket
        await self.send_to(conn_id, WSEvent(
            type=WSEventType.CONNECTED,
            payload={"id": conn_id},
            timestamp=time.time()
        ))
        return conn_id

    def remove(self, conn_id: str) -> None:
        self.connections.pop(conn_id, None)
        self.leave_room(conn_id)

    def join_room(self, conn_id: str, code: str) -> None:
        self.leave_room(conn_id)
        self.rooms.setdefault(code, set()).add(conn_id)

    def leave_room(self, conn_id: str) -> None:
        for code in [c for c, members in self.rooms.items() if conn_id in members]:
            self.rooms[code].discard(conn_id)
            if not self.rooms[code]:
                del self.rooms[code]

    def drop_room(self, code: str) -> None:
        self.rooms.pop(code, None)

    def room_size(self, code: str) -> int:
        return len(self.rooms.get(code, ()))

    async def close_room(self, code: str, reason: str) -> None:
        for conn_id in list(self.rooms.get(code, ())):
            websocket = self.connections.get(conn_id)
            if websocket is None:
                continue
            try:
                await websocket.close(code=4001, reason=reason)
            except Exception:
                logger.debug("Close failed for %s", conn_id, exc_info=True)
        self.drop_room(code)

    async def send_to(self, conn_id: str, event: WSEvent) -> None:
        websocket = self.connections.get(conn_id)
        if websocket is None:
            return
        try:
            await websocket.send_text(event.model_dump_json())
        except Exception:
            logger.info("Send to %s failed, dropping connection", conn_id)
            await self._drop(conn_id)

    async def broadcast_to_lobby(self, code: str, event: WSEvent, exclude: Optional[str] = None):
        if code not in self.rooms:
            return

        message = event.model_dump_json()
        connections_to_remove = []

        for conn_id in list(self.rooms.get(code, ())):
            if exclude and conn_id == exclude:
                continue
            websocket = self.connections.get(conn_id)
            if websocket is None:
                continue
            try:
                await websocket.send_text(message)
            except Exception:
                connections_to_remove.append(conn_id)

        # Remove dead connections
        for conn_id in connections_to_remove:
            await self._drop(conn_id)

    async def broadcast_lobby(self, lobby: Lobby) -> None:
        await self.broadcast_to_lobby(lobby.code, WSEvent(
            type=WSEventType.LOBBY_UPDATED,
            payload={"lobby": lobby_snapshot(lobby)},
            timestamp=time.time()
        ))

    async def _drop(self, conn_id: str) -> None:
        self.remove(conn_id)
        if self.on_disconnect is not None:
            await self.on_disconnect(conn_id)


# Global connection manager and game services
manager = ConnectionManager()
directory = get_directory()
roster = PlayerRoster(directory)


async def broadcast_distractor_status(lobby: Lobby) -> None:
    await manager.broadcast_to_lobby(lobby.code, WSEvent(
        type=WSEventType.DISTRACTOR_STATUS_UPDATED,
        payload={"status": lobby.distractor_status, "progress": lobby.generation_progress},
        timestamp=time.time()
    ))


coordinator = DistractorCoordinator(directory, on_status=broadcast_distractor_status)
engine = GameEngine(directory, coordinator)
scheduler = RoundScheduler(directory, engine, manager)

# Strong references to fire-and-forget generation tasks
_background_tasks: Set[asyncio.Task] = set()


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    conn_id = await manager.connect(websocket)
    logger.info("Connected: %s", conn_id)

    try:
        while True:
            data = await websocket.receive_text()
            await handle_websocket_message(conn_id, data)
    except WebSocketDisconnect:
        pass
    except Exception:
        logger.exception("WebSocket error on %s", conn_id)
    finally:
        await handle_disconnect(conn_id)


async def handle_websocket_message(conn_id: str, data: str):
    """Handle incoming WebSocket messages."""
    try:
        message = json.loads(data)
        event_type = message.get("type")
        payload = message.get("payload") or {}

        handler = EVENT_HANDLERS.get(event_type)
        if handler is None:
            await manager.send_to(conn_id, ws_error_event(f"Unknown event type: {event_type}"))
            return
        await handler(conn_id, payload)

    except json.JSONDecodeError:
        await manager.send_to(conn_id, ws_error_event("Invalid JSON"))
    except ValidationError as e:
        await manager.send_to(conn_id, ws_error_event(f"Invalid payload: {e.errors()[0]['msg']}"))
    except Exception as e:
        logger.exception("Error handling message from %s", conn_id)
        await manager.send_to(conn_id, ws_error_event(str(e)))


async def handle_disconnect(conn_id: str):
    """Remove a closed connection from its lobby."""
    manager.remove(conn_id)
    await leave_current_lobby(conn_id)


async def leave_current_lobby(conn_id: str):
    removal = roster.remove_player(conn_id)
    manager.leave_room(conn_id)
    if removal is None:
        return

    lobby = removal.lobby
    if removal.lobby_empty:
        directory.destroy_lobby(lobby.code)
        manager.drop_room(lobby.code)
        return

    if lobby.status == GameStatus.ONGOING and lobby.end_game_votes and engine.vote_quorum_reached(lobby):
        await scheduler.end_early(lobby.code)
        return

    await manager.broadcast_lobby(lobby)
    scheduler.notify_submission(lobby.code)


# Event handlers

async def handle_create_lobby(conn_id: str, payload: Dict[str, Any]):
    data = CreateLobbyEvent(**payload)
    if not validate_name(data.nickname):
        await manager.send_to(conn_id, ws_error_event(f"Invalid name: '{data.nickname}'"))
        return

    await leave_current_lobby(conn_id)
    lobby = directory.create_lobby(conn_id, data.nickname.strip())
    manager.join_room(conn_id, lobby.code)
    await manager.send_to(conn_id, WSEvent(
        type=WSEventType.LOBBY_UPDATED,
        payload={"lobby": lobby_snapshot(lobby)},
        timestamp=time.time()
    ))


async def handle_join_lobby(conn_id: str, payload: Dict[str, Any]):
    data = JoinLobbyEvent(**payload)
    if not validate_name(data.nickname):
        await manager.send_to(conn_id, ws_error_event(f"Invalid name: '{data.nickname}'"))
        return

    target = directory.get_lobby(data.code)
    if not target:
        logger.info("Failed to join lobby %s: lobby not found", data.code)
        return

    current = directory.get_lobby_by_connection(conn_id)
    if current is not None and current is not target:
        await leave_current_lobby(conn_id)

    lobby = roster.add_player(target.code, conn_id, data.nickname.strip())
    if not lobby:
        return
    manager.join_room(conn_id, lobby.code)
    await manager.broadcast_lobby(lobby)


async def handle_update_flashcard(conn_id: str, payload: Dict[str, Any]):
    data = UpdateFlashcardEvent(**payload)
    metadata = DeckMetadata(**data.model_dump(exclude={"flashcards"}))
    lobby = engine.update_flashcards(conn_id, data.flashcards, metadata)
    if not lobby:
        logger.info("Failed to update flashcards for %s", conn_id)
        return
    await manager.broadcast_lobby(lobby)
    start_distractor_generation(lobby)


async def handle_update_settings(conn_id: str, payload: Dict[str, Any]):
    data = UpdateSettingsEvent(**payload)
    lobby = engine.update_settings(conn_id, data.settings)
    if not lobby:
        logger.info("Failed to update settings for %s", conn_id)
        return
    await manager.broadcast_lobby(lobby)
    start_distractor_generation(lobby)


async def handle_update_leader(conn_id: str, payload: Dict[str, Any]):
    data = UpdateLeaderEvent(**payload)
    lobby = directory.get_lobby_by_connection(conn_id)
    if not lobby or lobby.leader != conn_id:
        return
    lobby = roster.promote_leader(lobby.code, data.next_leader_id)
    if lobby:
        await manager.broadcast_lobby(lobby)


async def handle_get_lobby(conn_id: str, payload: Dict[str, Any]):
    data = GetLobbyEvent(**payload)
    await manager.send_to(conn_id, WSEvent(
        type=WSEventType.LOBBY_DATA,
        payload={"lobby": lobby_snapshot(directory.get_lobby(data.code))},
        timestamp=time.time()
    ))


async def handle_start_game(conn_id: str, payload: Dict[str, Any]):
    lobby = engine.start_game(conn_id)
    if not lobby:
        logger.info("Start refused for %s", conn_id)
        return
    scheduler.start(lobby.code)


async def handle_request_current_question(conn_id: str, payload: Dict[str, Any]):
    lobby = directory.get_lobby_by_connection(conn_id)
    if not lobby or lobby.status != GameStatus.ONGOING:
        return
    question = engine.get_current_question(lobby.code)
    if question:
        await manager.send_to(conn_id, WSEvent(
            type=WSEventType.NEW_FLASHCARD,
            payload=question.model_dump(),
            timestamp=time.time()
        ))


async def handle_answer(conn_id: str, payload: Dict[str, Any]):
    data = AnswerEvent(**payload)
    result = engine.submit_answer(conn_id, data.text)
    if result is None:
        return

    if result.is_correct:
        await manager.send_to(conn_id, WSEvent(
            type=WSEventType.CORRECT_GUESS,
            payload={"elapsed_ms": result.elapsed_ms},
            timestamp=time.time()
        ))
    await manager.broadcast_lobby(result.lobby)
    scheduler.notify_submission(result.lobby.code)


async def handle_vote_end_game(conn_id: str, payload: Dict[str, Any]):
    lobby = engine.vote_end_game(conn_id)
    if not lobby:
        return

    await manager.broadcast_to_lobby(lobby.code, WSEvent(
        type=WSEventType.END_GAME_VOTES_UPDATED,
        payload={
            "votes": list(lobby.end_game_votes),
            "needed": votes_needed(len(lobby.players))
        },
        timestamp=time.time()
    ))
    if engine.vote_quorum_reached(lobby):
        logger.info("End-game vote passed in %s", lobby.code)
        await scheduler.end_early(lobby.code)


async def handle_send_chat(conn_id: str, payload: Dict[str, Any]):
    data = ChatEvent(**payload)
    lobby = directory.get_lobby_by_connection(conn_id)
    if not lobby:
        return
    player = lobby.get_player(conn_id)
    text = data.text.strip()[:MAX_CHAT_LENGTH]
    if not player or not text:
        return

    await manager.broadcast_to_lobby(lobby.code, WSEvent(
        type=WSEventType.CHAT_MESSAGE,
        payload={"player": player.name, "id": conn_id, "text": text},
        timestamp=time.time()
    ))


async def handle_generate_distractors(conn_id: str, payload: Dict[str, Any]):
    lobby = directory.get_lobby_by_connection(conn_id)
    if not lobby or lobby.leader != conn_id:
        return
    if lobby.status in (GameStatus.STARTING, GameStatus.ONGOING):
        return
    start_distractor_generation(lobby)


async def handle_ping(conn_id: str, payload: Dict[str, Any]):
    await manager.send_to(conn_id, WSEvent(
        type=WSEventType.PONG,
        payload={"timestamp": time.time()},
        timestamp=time.time()
    ))


EVENT_HANDLERS: Dict[str, Callable[[str, Dict[str, Any]], Awaitable[None]]] = {
    WSEventType.CREATE_LOBBY.value: handle_create_lobby,
    WSEventType.JOIN_LOBBY.value: handle_join_lobby,
    WSEventType.UPDATE_FLASHCARD.value: handle_update_flashcard,
    WSEventType.UPDATE_SETTINGS.value: handle_update_settings,
    WSEventType.UPDATE_LEADER.value: handle_update_leader,
    WSEventType.GET_LOBBY.value: handle_get_lobby,
    WSEventType.START_GAME.value: handle_start_game,
    WSEventType.REQUEST_CURRENT_QUESTION.value: handle_request_current_question,
    WSEventType.ANSWER.value: handle_answer,
    WSEventType.VOTE_END_GAME.value: handle_vote_end_game,
    WSEventType.SEND_CHAT.value: handle_send_chat,
    WSEventType.GENERATE_DISTRACTORS.value: handle_generate_distractors,
    WSEventType.PING.value: handle_ping,
}


# Distractor generation runs beside the event loop's message handling

def start_distractor_generation(lobby: Lobby) -> None:
    if not coordinator.needs_generation(lobby):
        return
    task = asyncio.create_task(_run_distractor_generation(lobby.code))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)


async def _run_distractor_generation(code: str):
    try:
        await coordinator.begin_generation(code)
    except Exception:
        logger.warning("Distractor generation failed for %s", code, exc_info=True)


manager.on_disconnect = handle_disconnect

__all__ = ["router", "manager", "directory", "engine", "scheduler", "coordinator"]
