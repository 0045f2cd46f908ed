import asyncio
import logging
from typing import Dict, List, Optional

from cardclash.config import settings
from cardclash.schemas.game import DistractorTrack, GameState
from cardclash.schemas.lobby import Lobby, Player
from cardclash.utils.ids import CodeAllocator, normalize_code

logger = logging.getLogger(__name__)


class SessionDirectory:
    """Owns every lobby and the maps hanging off it.

    All methods are synchronous. A lobby, its game state, its distractor
    tracking entry and its round task share one lifecycle: they are created
    while the lobby exists and are all released by ``destroy_lobby``.
    """

    def __init__(self, allocator: Optional[CodeAllocator] = None):
        self.allocator = allocator or CodeAllocator(length=settings.room_code_length)
        self._lobbies: Dict[str, Lobby] = {}
        self._connections: Dict[str, str] = {}  # connection id -> room code
        self._game_states: Dict[str, GameState] = {}
        self._distractor_tracks: Dict[str, DistractorTrack] = {}
        self._round_tasks: Dict[str, asyncio.Task] = {}

    # Lobbies

    def create_lobby(self, leader_conn_id: str, leader_name: str) -> Lobby:
        """Create a lobby whose only player is its leader."""
        code = self.allocator.allocate()
        lobby = Lobby(
            code=code,
            leader=leader_conn_id,
            players=[Player(id=leader_conn_id, name=leader_name)],
        )
        self._lobbies[code] = lobby
        self.track(leader_conn_id, code)
        logger.info("Created lobby %s for %s", code, leader_name)
        return lobby

    def get_lobby(self, code: str) -> Optional[Lobby]:
        return self._lobbies.get(normalize_code(code))

    def get_lobby_by_connection(self, conn_id: str) -> Optional[Lobby]:
        code = self._connections.get(conn_id)
        if code is None:
            return None
        return self._lobbies.get(code)

    def list_lobbies(self) -> List[Lobby]:
        return list(self._lobbies.values())

    def destroy_lobby(self, code: str) -> None:
        """Tear down a lobby and everything keyed by its code."""
        code = normalize_code(code)
        if self._lobbies.pop(code, None) is None:
            return
        self.allocator.release(code)
        self._game_states.pop(code, None)
        self._distractor_tracks.pop(code, None)

        task = self._round_tasks.pop(code, None)
        if task is not None and not task.done():
            task.cancel()

        stale = [conn_id for conn_id, room in self._connections.items() if room == code]
        for conn_id in stale:
            del self._connections[conn_id]

        logger.info("Destroyed lobby %s", code)

    # Connection index

    def track(self, conn_id: str, code: str) -> None:
        """Record that a connection belongs to a lobby."""
        self._connections[conn_id] = normalize_code(code)

    def untrack(self, conn_id: str) -> None:
        self._connections.pop(conn_id, None)

    def connection_code(self, conn_id: str) -> Optional[str]:
        return self._connections.get(conn_id)

    # Game state

    def get_game_state(self, code: str) -> Optional[GameState]:
        return self._game_states.get(normalize_code(code))

    def set_game_state(self, code: str, game_state: GameState) -> None:
        self._game_states[normalize_code(code)] = game_state

    def drop_game_state(self, code: str) -> None:
        self._game_states.pop(normalize_code(code), None)

    # Distractor generation tracking

    def get_distractor_track(self, code: str, create: bool = False) -> Optional[DistractorTrack]:
        code = normalize_code(code)
        track = self._distractor_tracks.get(code)
        if track is None and create and code in self._lobbies:
            track = DistractorTrack()
            self._distractor_tracks[code] = track
        return track

    def drop_distractor_track(self, code: str) -> None:
        self._distractor_tracks.pop(normalize_code(code), None)

    # Round driver tasks

    def set_round_task(self, code: str, task: asyncio.Task) -> None:
        self._round_tasks[normalize_code(code)] = task

    def get_round_task(self, code: str) -> Optional[asyncio.Task]:
        return self._round_tasks.get(normalize_code(code))

    def clear_round_task(self, code: str, task: Optional[asyncio.Task] = None) -> None:
        """Forget the round task, only if it is still ``task`` when one is given."""
        code = normalize_code(code)
        current = self._round_tasks.get(code)
        if current is None:
            return
        if task is None or current is task:
            del self._round_tasks[code]

    @property
    def lobby_count(self) -> int:
        return len(self._lobbies)

    @property
    def connection_count(self) -> int:
        return len(self._connections)


# Global directory instance
directory = SessionDirectory()


def get_directory() -> SessionDirectory:
    """Get the process-wide session directory."""
    return directory
