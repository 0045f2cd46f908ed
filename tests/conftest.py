import random
from typing import List, Tuple

import pytest

from cardclash.routers.game_logic import GameEngine
from cardclash.routers.lobby_logic import PlayerRoster, lobby_snapshot
from cardclash.schemas.game import Flashcard, WSEvent, WSEventType
from cardclash.utils.ids import CodeAllocator
from cardclash.utils.storage import SessionDirectory


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingManager:
    """Stands in for the connection manager and keeps every broadcast."""

    def __init__(self):
        self.events: List[Tuple[str, WSEvent]] = []

    async def broadcast_to_lobby(self, code, event, exclude=None):
        self.events.append((code, event))

    async def broadcast_lobby(self, lobby):
        self.events.append((lobby.code, WSEvent(
            type=WSEventType.LOBBY_UPDATED,
            payload={"lobby": lobby_snapshot(lobby)}
        )))

    def types(self) -> List[WSEventType]:
        return [event.type for _, event in self.events]

    def payloads(self, event_type: WSEventType) -> List[dict]:
        return [event.payload for _, event in self.events if event.type == event_type]


def make_deck(count: int) -> List[Flashcard]:
    return [Flashcard(question=f"q{i}", answer=f"a{i}") for i in range(count)]


@pytest.fixture
def directory():
    return SessionDirectory(CodeAllocator(length=4, rng=random.Random(7)))


@pytest.fixture
def roster(directory):
    return PlayerRoster(directory)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine(directory, clock):
    return GameEngine(directory, clock=clock, rng=random.Random(3))


@pytest.fixture
def manager():
    return RecordingManager()


@pytest.fixture
def two_player_lobby(directory, roster):
    """Lobby with leader 'p1' (Ana) and 'p2' (Ben)."""
    lobby = directory.create_lobby("p1", "Ana")
    roster.add_player(lobby.code, "p2", "Ben")
    return lobby
