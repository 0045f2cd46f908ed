from fastapi import APIRouter, Depends
from typing import List
import logging
from cardclash.schemas.lobby import LobbyInfo
from cardclash.routers.lobby_logic import lobby_snapshot
from cardclash.utils.errors import lobby_not_found_error
from cardclash.utils.storage import SessionDirectory, get_directory

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/lobby", tags=["lobby"])

@router.get("/", response_model=List[LobbyInfo])
async def list_lobbies(directory: SessionDirectory = Depends(get_directory)) -> List[LobbyInfo]:
    """List all active lobbies."""
    return [
        LobbyInfo(
            code=lobby.code,
            player_count=len(lobby.players),
            status=lobby.status,
            flashcard_name=lobby.flashcard_name,
            flashcard_count=len(lobby.flashcards)
        )
        for lobby in directory.list_lobbies()
    ]

@router.get("/admin/list")
async def list_all_lobbies_admin(directory: SessionDirectory = Depends(get_directory)) -> dict:
    """Admin endpoint to list all lobbies with connection info."""
    from cardclash.routers.ws_routes import manager, scheduler

    lobby_info = []
    for lobby in directory.list_lobbies():
        connected_count = manager.room_size(lobby.code)
        lobby_info.append({
            "code": lobby.code,
            "players": [p.name for p in lobby.players],
            "player_count": len(lobby.players),
            "connected_count": connected_count,
            "status": lobby.status,
            "leader": lobby.leader,
            "distractor_status": lobby.distractor_status,
            "round_running": scheduler.is_running(lobby.code),
            "needs_cleanup": connected_count == 0
        })

    return {
        "lobbies": lobby_info,
        "total_count": len(lobby_info),
        "connection_count": directory.connection_count
    }

@router.get("/{code}")
async def get_lobby(code: str, directory: SessionDirectory = Depends(get_directory)) -> dict:
    """Get the same lobby snapshot clients receive."""
    lobby = directory.get_lobby(code)
    if not lobby:
        raise lobby_not_found_error(code)
    return lobby_snapshot(lobby)

@router.delete("/{code}")
async def force_delete_lobby(code: str, directory: SessionDirectory = Depends(get_directory)) -> dict:
    """Destroy a lobby and close every socket still in it."""
    from cardclash.routers.ws_routes import manager

    lobby = directory.get_lobby(code)
    if not lobby:
        raise lobby_not_found_error(code)

    directory.destroy_lobby(lobby.code)
    await manager.close_room(lobby.code, "Lobby deleted")
    logger.info("Force deleted lobby %s", lobby.code)

    return {"ok": True, "deleted": lobby.code}
