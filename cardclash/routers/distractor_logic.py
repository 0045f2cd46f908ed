import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from cardclash.schemas.game import DistractorStatus, Flashcard
from cardclash.schemas.lobby import Lobby
from cardclash.utils.distractors import ProgressCallback, generate_distractors
from cardclash.utils.storage import SessionDirectory

logger = logging.getLogger(__name__)

Generator = Callable[..., Awaitable[Any]]
StatusListener = Callable[[Lobby], Awaitable[None]]

DISTRACTORS_PER_CARD = 3


def is_valid_distractor_set(entry: Any) -> bool:
    return (
        isinstance(entry, list)
        and len(entry) == DISTRACTORS_PER_CARD
        and all(isinstance(d, str) and d.strip() for d in entry)
    )


class DistractorCoordinator:
    """Tracks multiple-choice distractor generation for each lobby.

    At most one generation runs per lobby. The lobby's ``distractor_status``
    mirrors the tracking entry so clients can render it.
    """

    def __init__(
        self,
        directory: SessionDirectory,
        generator: Generator = generate_distractors,
        on_status: Optional[StatusListener] = None,
    ):
        self.directory = directory
        self.generator = generator
        self.on_status = on_status

    def status(self, code: str) -> DistractorStatus:
        track = self.directory.get_distractor_track(code)
        if track is None:
            return DistractorStatus.IDLE
        if track.generating:
            return DistractorStatus.GENERATING
        lobby = self.directory.get_lobby(code)
        return lobby.distractor_status if lobby else DistractorStatus.IDLE

    @staticmethod
    def pending_cards(lobby: Lobby) -> List[Flashcard]:
        by_term = lobby.settings.answer_by_term
        return [card for card in lobby.flashcards if not card.is_generated(by_term)]

    def needs_generation(self, lobby: Lobby) -> bool:
        if not lobby.settings.multiple_choice or not lobby.flashcards:
            return False
        if self.status(lobby.code) == DistractorStatus.GENERATING:
            return False
        return bool(self.pending_cards(lobby))

    def invalidate(self, code: str) -> None:
        """The deck or orientation changed; forget a previous ready/error result."""
        track = self.directory.get_distractor_track(code)
        if track is not None and track.generating:
            return
        self.directory.drop_distractor_track(code)
        lobby = self.directory.get_lobby(code)
        if lobby:
            lobby.distractor_status = DistractorStatus.IDLE
            lobby.generation_progress = None

    def cleanup(self, code: str) -> None:
        """Game over. A generation still in flight keeps its entry and status."""
        track = self.directory.get_distractor_track(code)
        if track is not None and track.generating:
            return
        self.directory.drop_distractor_track(code)
        lobby = self.directory.get_lobby(code)
        if lobby:
            lobby.distractor_status = DistractorStatus.IDLE
            lobby.generation_progress = None

    async def begin_generation(self, code: str) -> Optional[Lobby]:
        """Generate distractors for every card that lacks them.

        Raises whatever the generator raised, after recording the error status.
        """
        lobby = self.directory.get_lobby(code)
        if not lobby:
            return None

        track = self.directory.get_distractor_track(lobby.code, create=True)
        if track.generating:
            logger.info("Distractor generation already running for %s", lobby.code)
            return lobby

        by_term = lobby.settings.answer_by_term
        deck = lobby.flashcards
        pending = self.pending_cards(lobby)
        if not pending:
            await self._set_status(lobby, DistractorStatus.READY)
            return lobby

        track.generating = True
        await self._set_status(lobby, DistractorStatus.GENERATING)

        origin = lobby
        prompts = [self._prompt_for(card, by_term) for card in pending]
        try:
            raw = await self.generator(prompts, on_progress=self._progress_reporter(lobby.code))
        except Exception:
            track.generating = False
            if self.directory.get_lobby(code) is origin:
                await self._set_status(origin, DistractorStatus.ERROR)
            raise

        track.generating = False
        lobby = self.directory.get_lobby(code)
        if lobby is not origin:
            return None
        if lobby.flashcards is not deck or lobby.settings.answer_by_term != by_term:
            logger.info("Deck for %s changed during generation, starting over", lobby.code)
            return await self.begin_generation(lobby.code)

        ok = self._assign(pending, raw, by_term)
        await self._set_status(lobby, DistractorStatus.READY if ok else DistractorStatus.ERROR)
        return lobby

    @staticmethod
    def _prompt_for(card: Flashcard, by_term: bool) -> Dict[str, str]:
        if by_term:
            return {"question": card.answer, "answer": card.question}
        return {"question": card.question, "answer": card.answer}

    @staticmethod
    def _assign(cards: List[Flashcard], raw: Any, by_term: bool) -> bool:
        """Store valid sets per card. Returns False if anything was malformed."""
        if not isinstance(raw, list) or len(raw) != len(cards):
            logger.warning("Distractor response has the wrong shape for %d cards", len(cards))
            for card in cards:
                card.set_distractors(by_term, [], generated=False)
            return False

        ok = True
        for card, entry in zip(cards, raw):
            if is_valid_distractor_set(entry):
                card.set_distractors(by_term, [d.strip() for d in entry], generated=True)
            else:
                card.set_distractors(by_term, [], generated=False)
                ok = False
        return ok

    def _progress_reporter(self, code: str) -> ProgressCallback:
        async def report(batch: int, total: int) -> None:
            lobby = self.directory.get_lobby(code)
            if not lobby:
                return
            lobby.generation_progress = f"{batch}/{total}"
            if self.on_status is not None:
                await self.on_status(lobby)
        return report

    async def _set_status(self, lobby: Lobby, status: DistractorStatus) -> None:
        lobby.distractor_status = status
        if status != DistractorStatus.GENERATING:
            lobby.generation_progress = None
        if self.on_status is not None:
            await self.on_status(lobby)
