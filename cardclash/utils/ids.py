import random
import string
import uuid
from typing import Optional, Set

ROOM_CODE_ALPHABET = string.ascii_uppercase


class CodeAllocator:
    """Hands out short room codes that are unique among active lobbies."""

    def __init__(self, length: int = 4, rng: Optional[random.Random] = None):
        self.length = length
        self._rng = rng or random.Random()
        self._active_codes: Set[str] = set()

    def allocate(self) -> str:
        """Generate a code that is not currently in use and reserve it."""
        while True:
            code = ''.join(self._rng.choices(ROOM_CODE_ALPHABET, k=self.length))
            if code not in self._active_codes:
                break
        self._active_codes.add(code)
        return code

    def release(self, code: str) -> None:
        """Release a code so it can be issued again."""
        self._active_codes.discard(code)

    def is_active(self, code: str) -> bool:
        return code in self._active_codes

    @property
    def active_count(self) -> int:
        return len(self._active_codes)


def generate_connection_id() -> str:
    """Generate a unique connection (and player) ID."""
    return uuid.uuid4().hex


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def validate_name(name: str) -> bool:
    """Validate a player nickname."""
    if not name or len(name.strip()) == 0:
        return False
    return len(name.strip()) <= 20
