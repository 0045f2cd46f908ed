import logging
import random
import time
from typing import Callable, Iterable, NamedTuple, Optional

from cardclash.schemas.game import (
    CorrectAnswer, DeckMetadata, DistractorStatus, Flashcard, GameCard, GameState,
    GameStatus, Question, RoundResults, WrongAnswer
)
from cardclash.schemas.lobby import Lobby, LobbySettings
from cardclash.utils.storage import SessionDirectory

logger = logging.getLogger(__name__)

MULTIPLE_CHOICE_DISTRACTORS = 3


class AnswerResult(NamedTuple):
    is_correct: bool
    elapsed_ms: int
    lobby: Lobby


def normalize_answer(text: str) -> str:
    return (text or "").strip().lower()


def answers_match(submitted: str, expected: str) -> bool:
    """Exact match after trimming whitespace and ignoring case."""
    return normalize_answer(submitted) == normalize_answer(expected)


def orient_card(card: Flashcard, answer_by_term: bool) -> GameCard:
    """Build the playable copy of a card, swapping sides when answering by term."""
    if answer_by_term:
        return GameCard(
            question=card.answer,
            answer=card.question,
            distractors=list(card.term_distractors),
        )
    return GameCard(
        question=card.question,
        answer=card.answer,
        distractors=list(card.definition_distractors),
    )


def votes_needed(player_count: int) -> int:
    """Votes required to end a game early: more than 75% of the roster."""
    return (3 * player_count) // 4 + 1


class GameEngine:
    """Per-lobby game state machine.

    Every method runs to completion without awaiting, so two events for the
    same lobby can never interleave inside a mutation.
    """

    def __init__(
        self,
        directory: SessionDirectory,
        distractors=None,
        clock: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None,
    ):
        self.directory = directory
        self.distractors = distractors
        self.clock = clock
        self.rng = rng or random.Random()

    # Lobby configuration

    def update_flashcards(
        self, conn_id: str, flashcards: Iterable[Flashcard], metadata: Optional[DeckMetadata] = None
    ) -> Optional[Lobby]:
        """Replace the lobby deck. Refused while a game is running."""
        lobby = self.directory.get_lobby_by_connection(conn_id)
        if not lobby:
            return None
        if lobby.status in (GameStatus.STARTING, GameStatus.ONGOING):
            return None
        if lobby.status == GameStatus.FINISHED:
            self.reset_lobby(lobby.code)

        metadata = metadata or DeckMetadata()
        lobby.flashcards = list(flashcards)
        lobby.flashcard_name = metadata.set_name
        lobby.flashcard_id = metadata.set_id
        lobby.flashcard_description = metadata.description
        lobby.flashcard_author_id = metadata.author_id
        lobby.flashcard_author_name = metadata.author_name

        if self.distractors is not None:
            self.distractors.invalidate(lobby.code)
        return lobby

    def update_settings(self, conn_id: str, new_settings: LobbySettings) -> Optional[Lobby]:
        """Replace the lobby settings (leader only, outside of a game)."""
        lobby = self.directory.get_lobby_by_connection(conn_id)
        if not lobby or lobby.leader != conn_id:
            return None
        if lobby.status == GameStatus.FINISHED:
            self.reset_lobby(lobby.code)
        if lobby.status != GameStatus.WAITING:
            return None

        orientation_changed = (
            new_settings.answer_by_term != lobby.settings.answer_by_term
            or new_settings.multiple_choice != lobby.settings.multiple_choice
        )
        lobby.settings = new_settings
        if orientation_changed and self.distractors is not None:
            self.distractors.invalidate(lobby.code)
        return lobby

    def reset_lobby(self, code: str) -> Optional[Lobby]:
        """Move a finished lobby back to waiting with fresh per-game stats."""
        lobby = self.directory.get_lobby(code)
        if not lobby:
            return None
        if lobby.status != GameStatus.FINISHED:
            return lobby

        lobby.status = GameStatus.WAITING
        lobby.end_game_votes = []
        for player in lobby.players:
            player.reset_stats()
        return lobby

    # Game lifecycle

    def start_game(self, leader_conn_id: str) -> Optional[Lobby]:
        """Prepare a game for the caller's lobby. The deck is not shuffled yet."""
        lobby = self.directory.get_lobby_by_connection(leader_conn_id)
        if not lobby or lobby.leader != leader_conn_id:
            return None
        if lobby.status == GameStatus.FINISHED:
            self.reset_lobby(lobby.code)
        if lobby.status != GameStatus.WAITING:
            return None
        if not lobby.flashcards:
            return None
        if (
            lobby.settings.multiple_choice
            and self.distractors is not None
            and self.distractors.status(lobby.code) == DistractorStatus.GENERATING
        ):
            logger.info("Not starting %s: distractors are still generating", lobby.code)
            return None

        answer_by_term = lobby.settings.answer_by_term
        game_state = GameState(
            flashcards=[orient_card(card, answer_by_term) for card in lobby.flashcards]
        )
        self.directory.set_game_state(lobby.code, game_state)

        for player in lobby.players:
            player.reset_stats()
        lobby.end_game_votes = []
        lobby.status = GameStatus.STARTING
        logger.info("Starting game in %s with %d cards", lobby.code, len(game_state.flashcards))
        return lobby

    def shuffle_deck(self, code: str) -> None:
        lobby = self.directory.get_lobby(code)
        game_state = self.directory.get_game_state(code)
        if not lobby or not game_state:
            return
        if lobby.settings.shuffle:
            self.rng.shuffle(game_state.flashcards)
            game_state.choices = None

    def begin_play(self, code: str) -> Optional[Lobby]:
        """Countdown finished: starting -> ongoing."""
        lobby = self.directory.get_lobby(code)
        if not lobby or not self.directory.get_game_state(code):
            return None
        if lobby.status != GameStatus.STARTING:
            return None
        lobby.status = GameStatus.ONGOING
        return lobby

    def finish_game(self, code: str) -> Optional[Lobby]:
        """End the running game and hand out wins. Returns None if nothing was running."""
        lobby = self.directory.get_lobby(code)
        if not lobby or lobby.status not in (GameStatus.STARTING, GameStatus.ONGOING):
            self.end_game(code)
            return None

        lobby.status = GameStatus.FINISHED
        top_score = max((p.score for p in lobby.players), default=0)
        if top_score > 0:
            for player in lobby.players:
                if player.score == top_score:
                    player.wins += 1
        for player in lobby.players:
            player.mini_status = None
        lobby.end_game_votes = []

        self.end_game(code)
        logger.info("Game in %s finished", lobby.code)
        return lobby

    def end_game(self, code: str) -> None:
        """Drop the game state and distractor tracking. Safe to repeat."""
        self.directory.drop_game_state(code)
        if self.distractors is not None:
            self.distractors.cleanup(code)
        else:
            self.directory.drop_distractor_track(code)

    # Rounds

    def get_current_question(self, code: str) -> Optional[Question]:
        game_state = self.directory.get_game_state(code)
        if not game_state or not game_state.flashcards:
            return None

        card = game_state.flashcards[0]
        lobby = self.directory.get_lobby(code)
        if (
            game_state.choices is None
            and lobby
            and lobby.settings.multiple_choice
            and len(card.distractors) == MULTIPLE_CHOICE_DISTRACTORS
        ):
            # Shuffled once per card so late requests see the same order.
            correct = normalize_answer(card.answer)
            choices = [card.answer] + [
                d for d in card.distractors if normalize_answer(d) != correct
            ]
            self.rng.shuffle(choices)
            game_state.choices = choices
        return Question(question=card.question, choices=game_state.choices)

    def set_round_start(self, code: str) -> None:
        """Stamp the round start and open it for answers."""
        game_state = self.directory.get_game_state(code)
        if not game_state:
            return
        game_state.round_start = self.clock()
        game_state.accepting = True

    def close_round(self, code: str) -> None:
        game_state = self.directory.get_game_state(code)
        if game_state:
            game_state.accepting = False

    def submit_answer(self, conn_id: str, text: str) -> Optional[AnswerResult]:
        """Check and record an answer for the connection's current round.

        Multiple choice scores only a player's first pick per round; later wrong
        picks are logged. Free text lets a player keep guessing until correct or
        until the round closes.
        """
        lobby = self.directory.get_lobby_by_connection(conn_id)
        if not lobby:
            return None
        game_state = self.directory.get_game_state(lobby.code)
        if not game_state or not game_state.flashcards or not game_state.accepting:
            return None
        player = lobby.get_player(conn_id)
        if not player:
            return None

        for record in game_state.correct_answers:
            if record.player_id == conn_id:
                return AnswerResult(is_correct=True, elapsed_ms=record.time, lobby=lobby)

        card = game_state.flashcards[0]
        elapsed_ms = int((self.clock() - game_state.round_start) * 1000)
        text = (text or "").strip()
        is_correct = answers_match(text, card.answer)

        multiple_choice = lobby.settings.multiple_choice
        if multiple_choice and conn_id in game_state.submitted:
            # Only the first pick can score; later wrong picks are still logged.
            if is_correct:
                return None
            game_state.wrong_answers.append(
                WrongAnswer(player_id=conn_id, player=player.name, answers=[text])
            )
            player.mini_status = text
            return AnswerResult(is_correct=False, elapsed_ms=elapsed_ms, lobby=lobby)

        if conn_id not in game_state.attempted:
            game_state.attempted.add(conn_id)
            player.total_answers += 1

        if is_correct:
            game_state.correct_answers.append(
                CorrectAnswer(player_id=conn_id, player=player.name, time=elapsed_ms)
            )
            game_state.submitted.add(conn_id)
            player.score += 1
            player.correct_answers += 1
            player.answer_times.append(elapsed_ms)
            player.mini_status = elapsed_ms
        elif multiple_choice:
            game_state.wrong_answers.append(
                WrongAnswer(player_id=conn_id, player=player.name, answers=[text])
            )
            game_state.submitted.add(conn_id)
            player.mini_status = text
        else:
            existing = next(
                (w for w in game_state.wrong_answers if w.player_id == conn_id), None
            )
            if existing:
                existing.answers.append(text)
            else:
                game_state.wrong_answers.append(
                    WrongAnswer(player_id=conn_id, player=player.name, answers=[text])
                )
            player.mini_status = text

        return AnswerResult(is_correct=is_correct, elapsed_ms=elapsed_ms, lobby=lobby)

    def all_submitted(self, code: str) -> bool:
        lobby = self.directory.get_lobby(code)
        game_state = self.directory.get_game_state(code)
        if not lobby or not game_state:
            return False
        return all(p.id in game_state.submitted for p in lobby.players)

    def round_results(self, code: str) -> Optional[RoundResults]:
        game_state = self.directory.get_game_state(code)
        if not game_state or not game_state.flashcards:
            return None

        return RoundResults(
            answer=game_state.flashcards[0].answer,
            fastest_players=sorted(game_state.correct_answers, key=lambda a: a.time),
            wrong_answers=list(game_state.wrong_answers),
        )

    def advance_round(self, code: str) -> Optional[Question]:
        """Drop the current card. Returns the next question, or None when the deck is done."""
        game_state = self.directory.get_game_state(code)
        if not game_state or not game_state.flashcards:
            return None

        game_state.flashcards.pop(0)
        game_state.reset_round()
        game_state.accepting = False

        lobby = self.directory.get_lobby(code)
        if lobby:
            for player in lobby.players:
                player.mini_status = None

        return self.get_current_question(code)

    def points_reached(self, code: str) -> bool:
        lobby = self.directory.get_lobby(code)
        if not lobby or lobby.settings.plays_all_cards:
            return False
        return any(p.score >= lobby.settings.points_to_win for p in lobby.players)

    # End-game voting

    def vote_end_game(self, conn_id: str) -> Optional[Lobby]:
        lobby = self.directory.get_lobby_by_connection(conn_id)
        if not lobby or lobby.status != GameStatus.ONGOING:
            return None
        if conn_id not in lobby.end_game_votes:
            lobby.end_game_votes.append(conn_id)
        return lobby

    @staticmethod
    def vote_quorum_reached(lobby: Lobby) -> bool:
        if not lobby.players:
            return False
        return len(lobby.end_game_votes) >= votes_needed(len(lobby.players))
