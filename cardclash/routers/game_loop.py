import asyncio
import logging
import time
from typing import Any, Dict, Optional

from cardclash.config import settings
from cardclash.routers.game_logic import GameEngine
from cardclash.schemas.game import GameState, WSEvent, WSEventType
from cardclash.utils.storage import SessionDirectory

logger = logging.getLogger(__name__)


class RoundScheduler:
    """Drives countdown -> question -> results -> next question for a lobby.

    One asyncio task per lobby; its handle lives in the session directory so
    destroying the lobby cancels it. After every wait the task re-resolves
    the lobby and quietly stops if it is gone or has moved on to another
    game state than the one this task started with.
    ``time_scale`` multiplies every wait.
    """

    def __init__(
        self,
        directory: SessionDirectory,
        engine: GameEngine,
        manager,
        countdown_seconds: Optional[int] = None,
        results_seconds: Optional[int] = None,
        time_scale: float = 1.0,
    ):
        self.directory = directory
        self.engine = engine
        self.manager = manager
        self.countdown_seconds = countdown_seconds or settings.countdown_seconds
        self.results_seconds = results_seconds or settings.results_seconds
        self.time_scale = time_scale
        self._answer_events: Dict[str, asyncio.Event] = {}

    def is_running(self, code: str) -> bool:
        task = self.directory.get_round_task(code)
        return task is not None and not task.done()

    def start(self, code: str) -> Optional[asyncio.Task]:
        """Launch the round driver. Refuses if one is already running for the lobby."""
        if self.is_running(code):
            logger.warning("Round driver already running for %s", code)
            return None
        task = asyncio.create_task(self._run_game(code))
        self.directory.set_round_task(code, task)
        return task

    def stop(self, code: str) -> None:
        task = self.directory.get_round_task(code)
        self.directory.clear_round_task(code)
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def notify_submission(self, code: str) -> None:
        """Cut the answer window short once every player has submitted."""
        event = self._answer_events.get(code)
        if event is not None and self.engine.all_submitted(code):
            event.set()

    async def end_early(self, code: str) -> None:
        self.stop(code)
        await self.finish(code)

    async def finish(self, code: str) -> None:
        lobby = self.engine.finish_game(code)
        if lobby:
            await self.manager.broadcast_lobby(lobby)

    async def _run_game(self, code: str) -> None:
        try:
            await self._play(code)
        except asyncio.CancelledError:
            logger.info("Round driver for %s cancelled", code)
            raise
        except Exception:
            logger.exception("Round driver for %s failed", code)
            await self.finish(code)
        finally:
            self.directory.clear_round_task(code, asyncio.current_task())

    async def _play(self, code: str) -> None:
        lobby = self.directory.get_lobby(code)
        game_state = self.directory.get_game_state(code)
        if not lobby or not game_state:
            return
        await self.manager.broadcast_lobby(lobby)

        # Shuffle before the countdown so everyone waiting sees the same order.
        self.engine.shuffle_deck(code)
        for remaining in range(self.countdown_seconds, 0, -1):
            await self._emit(code, WSEventType.START_COUNTDOWN, {"seconds": remaining})
            await self._sleep(1)
            if not self._alive(code, game_state):
                return

        lobby = self.engine.begin_play(code)
        if not lobby:
            return
        await self.manager.broadcast_lobby(lobby)

        while True:
            if not self._alive(code, game_state):
                return
            question = self.engine.get_current_question(code)
            if question is None:
                break

            lobby = self.directory.get_lobby(code)
            event = asyncio.Event()
            self._answer_events[code] = event
            self.engine.set_round_start(code)
            await self._emit(code, WSEventType.NEW_FLASHCARD, question.model_dump())
            await self._wait_for_answers(code, event, lobby.settings.round_time)
            if not self._alive(code, game_state):
                return

            self.engine.close_round(code)
            results = self.engine.round_results(code)
            if results is None:
                return
            await self._emit(code, WSEventType.END_FLASHCARD, {"results": results.model_dump()})

            await self._sleep(self.results_seconds)
            if not self._alive(code, game_state):
                return

            if self.engine.points_reached(code):
                break
            if self.engine.advance_round(code) is None:
                break

            lobby = self.directory.get_lobby(code)
            if lobby:
                await self.manager.broadcast_lobby(lobby)

        await self.finish(code)

    async def _wait_for_answers(self, code: str, event: asyncio.Event, seconds: float) -> None:
        if self.engine.all_submitted(code):
            event.set()
        try:
            await asyncio.wait_for(event.wait(), timeout=seconds * self.time_scale)
        except asyncio.TimeoutError:
            pass
        finally:
            if self._answer_events.get(code) is event:
                del self._answer_events[code]

    async def _sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds * self.time_scale)

    def _alive(self, code: str, game_state: GameState) -> bool:
        """The lobby still exists and is still playing the game this task started."""
        return (
            self.directory.get_lobby(code) is not None
            and self.directory.get_game_state(code) is game_state
        )

    async def _emit(self, code: str, event_type: WSEventType, payload: Dict[str, Any]) -> None:
        await self.manager.broadcast_to_lobby(code, WSEvent(
            type=event_type,
            payload=payload,
            timestamp=time.time()
        ))
