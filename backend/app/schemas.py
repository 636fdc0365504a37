
from pydantic import BaseModel
from typing import List, Literal, Optional
from .models import AnswerOption, EventStatus


class CreateEventIn(BaseModel):
    organizer_id: str
    name: str
    status: EventStatus = "draft"


class JoinIn(BaseModel):
    name: str


class CreateActivityIn(BaseModel):
    name: str
    type: Literal["quiz", "poll", "raffle"]
    scoring_enabled: Optional[bool] = None
    speed_bonus_enabled: Optional[bool] = None
    streak_tracking_enabled: Optional[bool] = None
    question: Optional[str] = None
    options: Optional[List[str]] = None
    allow_multiple_votes: Optional[bool] = None
    show_results_live: Optional[bool] = None
    prize_description: Optional[str] = None
    entry_method: Optional[str] = None
    winner_count: Optional[int] = None


class ConfigurePollIn(BaseModel):
    question: str
    options: List[str]


class VoteIn(BaseModel):
    participant_id: str
    option_ids: List[str]


class ConfigureRaffleIn(BaseModel):
    prize_description: str
    entry_method: str = "automatic"
    winner_count: int = 1


class EnterRaffleIn(BaseModel):
    participant_id: str
    participant_name: str


class DrawWinnersIn(BaseModel):
    count: Optional[int] = None


class QuestionIn(BaseModel):
    text: str
    options: List[AnswerOption]
    correct_option_id: str
    image_url: Optional[str] = None
    timer_seconds: Optional[int] = None
    order: Optional[int] = None


class AnswerIn(BaseModel):
    participant_id: str
    question_id: str
    option_id: str
    response_time: int
