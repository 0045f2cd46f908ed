from pydantic import BaseModel, Field
from typing import Dict, List, Optional, Any, Set
from enum import Enum
import uuid

# Game State Enums
class GameStatus(str, Enum):
    WAITING = "waiting"
    STARTING = "starting"
    ONGOING = "ongoing"
    FINISHED = "finished"

class DistractorStatus(str, Enum):
    IDLE = "idle"
    GENERATING = "generating"
    READY = "ready"
    ERROR = "error"

# Deck
class Flashcard(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    question: str
    answer: str
    term_distractors: List[str] = []  # wrong terms, used when answering by term
    definition_distractors: List[str] = []  # wrong definitions, the default orientation
    term_generated: bool = False
    definition_generated: bool = False

    def distractors_for(self, answer_by_term: bool) -> List[str]:
        return self.term_distractors if answer_by_term else self.definition_distractors

    def is_generated(self, answer_by_term: bool) -> bool:
        return self.term_generated if answer_by_term else self.definition_generated

    def set_distractors(self, answer_by_term: bool, distractors: List[str], generated: bool) -> None:
        if answer_by_term:
            self.term_distractors = distractors
            self.term_generated = generated
        else:
            self.definition_distractors = distractors
            self.definition_generated = generated

class DistractorTrack(BaseModel):
    generating: bool = False

class DeckMetadata(BaseModel):
    set_name: str = ""
    set_id: str = ""
    description: str = ""
    author_id: str = ""
    author_name: str = ""

# Per-game working data
class GameCard(BaseModel):
    """A flashcard as it is played, already oriented for the lobby settings."""
    question: str
    answer: str
    distractors: List[str] = []

class CorrectAnswer(BaseModel):
    player_id: str
    player: str
    time: int  # elapsed ms since the round started

class WrongAnswer(BaseModel):
    player_id: str
    player: str
    answers: List[str] = []

class GameState(BaseModel):
    flashcards: List[GameCard] = []  # remaining cards, current card first
    round_start: float = 0.0
    accepting: bool = False  # open between the question broadcast and the results
    choices: Optional[List[str]] = None  # multiple-choice order for the current card
    correct_answers: List[CorrectAnswer] = []
    wrong_answers: List[WrongAnswer] = []
    submitted: Set[str] = set()
    attempted: Set[str] = set()

    def reset_round(self) -> None:
        self.choices = None
        self.correct_answers = []
        self.wrong_answers = []
        self.submitted = set()
        self.attempted = set()

class Question(BaseModel):
    question: str
    choices: Optional[List[str]] = None

class RoundResults(BaseModel):
    answer: str
    fastest_players: List[CorrectAnswer]
    wrong_answers: List[WrongAnswer]

# WebSocket Event Models
class WSEventType(str, Enum):
    # Client -> Server
    CREATE_LOBBY = "createLobby"
    JOIN_LOBBY = "joinLobby"
    UPDATE_FLASHCARD = "updateFlashcard"
    UPDATE_SETTINGS = "updateSettings"
    UPDATE_LEADER = "updateLeader"
    GET_LOBBY = "getLobby"
    START_GAME = "startGame"
    REQUEST_CURRENT_QUESTION = "requestCurrentQuestion"
    ANSWER = "answer"
    VOTE_END_GAME = "voteEndGame"
    SEND_CHAT = "sendChat"
    GENERATE_DISTRACTORS = "generateDistractors"
    PING = "ping"

    # Server -> Client
    CONNECTED = "connected"
    LOBBY_UPDATED = "lobbyUpdated"
    LOBBY_DATA = "lobbyData"
    START_COUNTDOWN = "startCountdown"
    NEW_FLASHCARD = "newFlashcard"
    END_FLASHCARD = "endFlashcard"
    CORRECT_GUESS = "correctGuess"
    END_GAME_VOTES_UPDATED = "endGameVotesUpdated"
    DISTRACTOR_STATUS_UPDATED = "distractorStatusUpdated"
    CHAT_MESSAGE = "chatMessage"
    PONG = "pong"
    ERROR = "error"

class WSEvent(BaseModel):
    type: WSEventType
    payload: Dict[str, Any] = {}
    timestamp: Optional[float] = None

# Client Events
class CreateLobbyEvent(BaseModel):
    nickname: str

class JoinLobbyEvent(BaseModel):
    code: str
    nickname: str

class UpdateFlashcardEvent(DeckMetadata):
    flashcards: List[Flashcard]

class UpdateLeaderEvent(BaseModel):
    next_leader_id: str

class GetLobbyEvent(BaseModel):
    code: str

class AnswerEvent(BaseModel):
    text: str

class ChatEvent(BaseModel):
    text: str
