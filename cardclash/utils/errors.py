from fastapi import HTTPException
import time
from cardclash.schemas.game import WSEvent, WSEventType

def lobby_not_found_error(code: str) -> HTTPException:
    """404 error for missing lobby."""
    return HTTPException(
        status_code=404,
        detail=f"Lobby '{code}' not found"
    )

def ws_error_event(message: str) -> WSEvent:
    """Error event sent back to the socket that caused it."""
    return WSEvent(
        type=WSEventType.ERROR,
        payload={"error": message},
        timestamp=time.time()
    )
