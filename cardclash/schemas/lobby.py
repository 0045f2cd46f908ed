from pydantic import BaseModel, Field, field_validator
from typing import List, Optional, Union
from cardclash.schemas.game import DistractorStatus, Flashcard, GameStatus

PLAY_ALL_CARDS = 500  # points_to_win at or above this disables the threshold

class Player(BaseModel):
    id: str
    name: str
    score: int = 0
    wins: int = 0
    mini_status: Optional[Union[int, str]] = None  # elapsed ms, or last wrong answer
    answer_times: List[int] = []
    correct_answers: int = 0
    total_answers: int = 0

    def reset_stats(self) -> None:
        self.score = 0
        self.mini_status = None
        self.answer_times = []
        self.correct_answers = 0
        self.total_answers = 0

class LobbySettings(BaseModel):
    shuffle: bool = False
    fuzzy_tolerance: bool = True
    answer_by_term: bool = False
    multiple_choice: bool = False
    round_time: int = 10
    points_to_win: int = 100

    @field_validator("round_time")
    @classmethod
    def clamp_round_time(cls, value: int) -> int:
        return min(20, max(3, value))

    @field_validator("points_to_win")
    @classmethod
    def clamp_points_to_win(cls, value: int) -> int:
        return min(PLAY_ALL_CARDS, max(10, value))

    @property
    def plays_all_cards(self) -> bool:
        return self.points_to_win >= PLAY_ALL_CARDS

class Lobby(BaseModel):
    code: str
    leader: str
    players: List[Player]
    flashcards: List[Flashcard] = []
    flashcard_name: str = ""
    flashcard_id: str = ""
    flashcard_description: str = ""
    flashcard_author_id: str = ""
    flashcard_author_name: str = ""
    settings: LobbySettings = Field(default_factory=LobbySettings)
    status: GameStatus = GameStatus.WAITING
    end_game_votes: List[str] = []
    distractor_status: DistractorStatus = DistractorStatus.IDLE
    generation_progress: Optional[str] = None

    def get_player(self, player_id: str) -> Optional[Player]:
        for player in self.players:
            if player.id == player_id:
                return player
        return None

class UpdateSettingsEvent(BaseModel):
    settings: LobbySettings

class LobbyInfo(BaseModel):
    """Public lobby information for discovery."""
    code: str
    player_count: int
    status: GameStatus
    flashcard_name: str = ""
    flashcard_count: int = 0
