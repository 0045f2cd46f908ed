import logging
from typing import Any, Dict, List, NamedTuple, Optional

from cardclash.schemas.game import GameStatus
from cardclash.schemas.lobby import Lobby, Player
from cardclash.utils.storage import SessionDirectory

logger = logging.getLogger(__name__)


class PlayerRemoval(NamedTuple):
    lobby: Lobby
    player: Optional[Player]
    lobby_empty: bool


class PlayerRoster:
    """Adds and removes players and keeps the leader pointing at a member."""

    def __init__(self, directory: SessionDirectory):
        self.directory = directory

    def add_player(self, code: str, conn_id: str, name: str) -> Optional[Lobby]:
        """Add a player to a lobby. Returns None when the lobby doesn't exist."""
        lobby = self.directory.get_lobby(code)
        if not lobby:
            return None

        if lobby.get_player(conn_id):
            return lobby

        lobby.players.append(Player(id=conn_id, name=name))
        self.directory.track(conn_id, lobby.code)
        logger.info("%s joined lobby %s", name, lobby.code)
        return lobby

    def remove_player(self, conn_id: str) -> Optional[PlayerRemoval]:
        """Remove a connection's player from whatever lobby it is in.

        The caller destroys the lobby when ``lobby_empty`` is set.
        """
        lobby = self.directory.get_lobby_by_connection(conn_id)
        self.directory.untrack(conn_id)
        if not lobby:
            return None

        player = lobby.get_player(conn_id)
        lobby.players = [p for p in lobby.players if p.id != conn_id]
        if conn_id in lobby.end_game_votes:
            lobby.end_game_votes = [v for v in lobby.end_game_votes if v != conn_id]

        if lobby.leader == conn_id and lobby.players:
            lobby.leader = lobby.players[0].id
            logger.info("Leader of %s changed to %s", lobby.code, lobby.players[0].name)

        return PlayerRemoval(lobby=lobby, player=player, lobby_empty=not lobby.players)

    def promote_leader(self, code: str, next_leader_id: str) -> Optional[Lobby]:
        """Hand leadership to another member. No-op for non-members."""
        lobby = self.directory.get_lobby(code)
        if not lobby:
            return None

        if not lobby.get_player(next_leader_id):
            logger.debug("Ignoring leader change in %s to non-member %s", code, next_leader_id)
            return None

        lobby.leader = next_leader_id
        return lobby

    @staticmethod
    def sort_for_display(lobby: Lobby) -> List[Player]:
        if lobby.status in (GameStatus.STARTING, GameStatus.ONGOING):
            return sorted(lobby.players, key=lambda p: p.score, reverse=True)
        return sorted(lobby.players, key=lambda p: p.wins, reverse=True)


def lobby_snapshot(lobby: Optional[Lobby]) -> Optional[Dict[str, Any]]:
    """Serialize a lobby for clients, players in display order."""
    if lobby is None:
        return None
    data = lobby.model_dump(mode="json")
    data["players"] = [p.model_dump(mode="json") for p in PlayerRoster.sort_for_display(lobby)]
    return data
