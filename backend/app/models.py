from typing import Annotated, Dict, List, Literal, Optional, Union
from pydantic import BaseModel, Field, TypeAdapter

from .utils import now_ts


EventStatus = Literal["draft", "setup", "live", "completed", "waiting", "active"]
ActivityType = Literal["quiz", "poll", "raffle"]

# States: draft -> ready -> active -> completed
ActivityStatus = Literal["draft", "ready", "active", "completed"]
EntryMethod = Literal["automatic", "manual"]


class Event(BaseModel):
    id: str
    organizer_id: str
    name: str
    status: EventStatus = "draft"
    active_activity_id: Optional[str] = None
    created_at: float = Field(default_factory=now_ts)
    last_modified: float = Field(default_factory=now_ts)


class AnswerOption(BaseModel):
    id: str
    text: str
    color: Optional[Literal["red", "blue", "yellow", "green", "purple"]] = None
    shape: Optional[Literal["triangle", "diamond", "circle", "square", "pentagon"]] = None


class Question(BaseModel):
    id: str
    activity_id: str
    text: str
    options: List[AnswerOption]
    correct_option_id: str
    image_url: Optional[str] = None
    timer_seconds: Optional[int] = None
    order: int = 0


class Participant(BaseModel):
    id: str
    event_id: str
    name: str
    score: int = 0
    total_answer_time: int = 0  # milliseconds
    current_streak: int = 0
    longest_streak: int = 0
    joined_at: float = Field(default_factory=now_ts)


class Answer(BaseModel):
    participant_id: str
    question_id: str
    activity_id: str
    selected_option_id: str
    response_time: int  # milliseconds
    is_correct: bool
    points_earned: int
    submitted_at: float = Field(default_factory=now_ts)


class BaseActivity(BaseModel):
    id: str
    event_id: str
    name: str
    status: ActivityStatus = "draft"
    order: int
    created_at: float = Field(default_factory=now_ts)
    last_modified: float = Field(default_factory=now_ts)


class QuizActivity(BaseActivity):
    type: Literal["quiz"] = "quiz"
    questions: List[Question] = Field(default_factory=list)
    current_question_index: int = 0
    scoring_enabled: bool = True
    speed_bonus_enabled: bool = True
    streak_tracking_enabled: bool = True


class PollOption(BaseModel):
    id: str
    text: str
    vote_count: int = 0


class PollActivity(BaseActivity):
    type: Literal["poll"] = "poll"
    question: str = ""
    options: List[PollOption] = Field(default_factory=list)
    allow_multiple_votes: bool = False
    show_results_live: bool = True


class RaffleActivity(BaseActivity):
    type: Literal["raffle"] = "raffle"
    prize_description: str = ""
    entry_method: EntryMethod = "automatic"
    winner_count: int = Field(default=1, ge=1)
    winners: List[str] = Field(default_factory=list)


Activity = Annotated[Union[QuizActivity, PollActivity, RaffleActivity], Field(discriminator="type")]

activity_adapter: TypeAdapter = TypeAdapter(Activity)


def parse_activity(doc: dict) -> Union[QuizActivity, PollActivity, RaffleActivity]:
    return activity_adapter.validate_python(doc)


class PollVote(BaseModel):
    id: str
    poll_id: str
    participant_id: str
    selected_option_ids: List[str] = Field(min_length=1)
    submitted_at: float = Field(default_factory=now_ts)


class RaffleEntry(BaseModel):
    id: str
    raffle_id: str
    participant_id: str
    participant_name: str
    entered_at: float = Field(default_factory=now_ts)


# Result shapes


class ParticipantScore(BaseModel):
    rank: int
    participant_id: str
    name: str
    score: int
    total_answer_time: int


class OptionCount(BaseModel):
    count: int = 0
    percentage: float = 0


class AnswerStatistics(BaseModel):
    question_id: str
    total_responses: int
    option_counts: Dict[str, OptionCount]
    correct_option_id: str


class PollResults(BaseModel):
    poll_id: str
    total_votes: int
    options: List[PollOption]


class RaffleWinner(BaseModel):
    participant_id: str
    participant_name: str


class RaffleResults(BaseModel):
    raffle_id: str
    prize_description: str
    total_entries: int
    winner_count: int
    winners: List[RaffleWinner]


class AnswerResult(BaseModel):
    is_correct: bool
    points_earned: int
    correct_option_id: str
    current_streak: int


class QuizResults(BaseModel):
    final_leaderboard: List[ParticipantScore]
    top_three: List[ParticipantScore]
    participant_count: int
