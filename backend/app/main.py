import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .activities import manager
from .db import db, settings
from .errors import ActivityError
from .feed import feed
from .models import Event, Participant
from .polls import poll_engine
from .quiz import quiz_engine
from .raffles import raffle_engine
from .schemas import (
    AnswerIn,
    ConfigurePollIn,
    ConfigureRaffleIn,
    CreateActivityIn,
    CreateEventIn,
    DrawWinnersIn,
    EnterRaffleIn,
    JoinIn,
    QuestionIn,
    VoteIn,
)
from .utils import is_blank, new_id

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    await db.ensure_indexes()
    yield


app = FastAPI(title="Live Event Activities API", lifespan=lifespan)

origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()]
origin_regex = settings.CORS_ORIGIN_REGEX or None

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins or ["*"],
    allow_origin_regex=origin_regex,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ActivityError)
async def activity_error_handler(request: Request, exc: ActivityError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail, "error": type(exc).__name__})


def require_admin(x_admin_key: Optional[str] = Header(default=None)):
    if x_admin_key != settings.ADMIN_KEY:
        raise HTTPException(status_code=401, detail="Invalid admin key")


# Events and participants


@app.post("/api/events")
async def create_event(payload: CreateEventIn, _: None = Depends(require_admin)):
    if is_blank(payload.name):
        raise HTTPException(status_code=400, detail="Event name is required")
    event = Event(id=new_id(), organizer_id=payload.organizer_id, name=payload.name.strip(), status=payload.status)
    await manager.repos.events.create(event)
    return {"event": event.model_dump()}


@app.get("/api/events/{event_id}")
async def get_event(event_id: str):
    event = await manager.repos.events.get(event_id)
    if not event:
        raise HTTPException(404, "Event not found")
    return {"event": event.model_dump()}


@app.delete("/api/events/{event_id}")
async def delete_event(event_id: str, _: None = Depends(require_admin)):
    await manager.delete_event(event_id)
    await feed.clear(event_id)
    return {"ok": True}


@app.post("/api/events/{event_id}/participants")
async def join(event_id: str, payload: JoinIn):
    if not await manager.repos.events.get(event_id):
        raise HTTPException(404, "Event not found")
    if is_blank(payload.name):
        raise HTTPException(status_code=400, detail="Participant name is required")
    participant = Participant(id=new_id(), event_id=event_id, name=payload.name.strip())
    await manager.repos.participants.create(participant)
    await feed.append(event_id, {"type": "participant_joined", "participant": participant.model_dump()})
    return {"participant": participant.model_dump()}


@app.get("/api/events/{event_id}/feed")
async def list_feed(event_id: str, after: int | None = None, limit: int | None = None):
    items = await feed.list(event_id, after=after, limit=limit)
    latest_seq = items[-1]["seq"] if items else after
    return {"items": items, "latest_seq": latest_seq}


# Activity lifecycle


@app.get("/api/events/{event_id}/activities")
async def list_activities(event_id: str):
    activities = await manager.list(event_id)
    return {"activities": [a.model_dump() for a in activities]}


@app.post("/api/events/{event_id}/activities")
async def create_activity(event_id: str, payload: CreateActivityIn, _: None = Depends(require_admin)):
    activity = await manager.create(event_id, payload.model_dump(exclude_none=True))
    await feed.append(event_id, {"type": "activity_created", "activity_id": activity.id})
    return {"activity": activity.model_dump()}


@app.get("/api/activities/{activity_id}")
async def get_activity(activity_id: str):
    activity = await manager.get(activity_id)
    return {"activity": activity.model_dump()}


@app.patch("/api/activities/{activity_id}")
async def update_activity(
    activity_id: str,
    payload: Dict[str, Any] = Body(...),
    _: None = Depends(require_admin),
):
    activity = await manager.update(activity_id, payload)
    await feed.append(activity.event_id, {"type": "activity_updated", "activity_id": activity.id})
    return {"activity": activity.model_dump()}


@app.delete("/api/activities/{activity_id}")
async def delete_activity(activity_id: str, _: None = Depends(require_admin)):
    activity = await manager.get(activity_id)
    await manager.delete(activity_id)
    await feed.append(activity.event_id, {"type": "activity_deleted", "activity_id": activity_id})
    return {"ok": True}


@app.post("/api/events/{event_id}/activities/{activity_id}/activate")
async def activate_activity(event_id: str, activity_id: str, _: None = Depends(require_admin)):
    event = await manager.activate(event_id, activity_id)
    await feed.append(event_id, {"type": "activity_activated", "activity_id": activity_id})
    return {"event": event.model_dump()}


@app.post("/api/events/{event_id}/activities/{activity_id}/deactivate")
async def deactivate_activity(event_id: str, activity_id: str, _: None = Depends(require_admin)):
    event = await manager.deactivate(event_id, activity_id)
    await feed.append(event_id, {"type": "activity_deactivated", "activity_id": activity_id})
    return {"event": event.model_dump()}


# Polls


@app.post("/api/polls/{activity_id}/configure")
async def configure_poll(activity_id: str, payload: ConfigurePollIn, _: None = Depends(require_admin)):
    poll = await poll_engine.configure(activity_id, payload.question, payload.options)
    return {"activity": poll.model_dump()}


@app.post("/api/polls/{activity_id}/start")
async def start_poll(activity_id: str, _: None = Depends(require_admin)):
    poll = await poll_engine.start(activity_id)
    await feed.append(poll.event_id, {"type": "activity_activated", "activity_id": activity_id})
    return {"activity": poll.model_dump()}


@app.post("/api/polls/{activity_id}/vote")
async def vote(activity_id: str, payload: VoteIn):
    await poll_engine.submit_vote(activity_id, payload.participant_id, payload.option_ids)
    poll = await manager.get_poll(activity_id)
    if poll.show_results_live:
        results = await poll_engine.get_results(activity_id)
        await feed.append(poll.event_id, {"type": "poll_results_updated", "results": results.model_dump()})
    return {"accepted": True}


@app.get("/api/polls/{activity_id}/results")
async def poll_results(activity_id: str):
    results = await poll_engine.get_results(activity_id)
    return {"results": results.model_dump()}


@app.post("/api/polls/{activity_id}/end")
async def end_poll(activity_id: str, _: None = Depends(require_admin)):
    results = await poll_engine.end_poll(activity_id)
    poll = await manager.get_poll(activity_id)
    await feed.append(poll.event_id, {"type": "poll_ended", "results": results.model_dump()})
    return {"results": results.model_dump()}


# Raffles


@app.post("/api/raffles/{activity_id}/configure")
async def configure_raffle(activity_id: str, payload: ConfigureRaffleIn, _: None = Depends(require_admin)):
    raffle = await raffle_engine.configure(
        activity_id, payload.prize_description, payload.entry_method, payload.winner_count
    )
    return {"activity": raffle.model_dump()}


@app.post("/api/raffles/{activity_id}/start")
async def start_raffle(activity_id: str, _: None = Depends(require_admin)):
    raffle = await raffle_engine.start(activity_id)
    await feed.append(raffle.event_id, {"type": "activity_activated", "activity_id": activity_id})
    return {"activity": raffle.model_dump()}


@app.post("/api/raffles/{activity_id}/enter")
async def enter_raffle(activity_id: str, payload: EnterRaffleIn):
    entry = await raffle_engine.enter_raffle(activity_id, payload.participant_id, payload.participant_name)
    return {"entry": entry.model_dump()}


@app.get("/api/raffles/{activity_id}/entries")
async def raffle_entries(activity_id: str, _: None = Depends(require_admin)):
    entries = await raffle_engine.get_entries(activity_id)
    return {"entries": [e.model_dump() for e in entries]}


@app.post("/api/raffles/{activity_id}/draw")
async def draw_winners(activity_id: str, payload: DrawWinnersIn, _: None = Depends(require_admin)):
    winner_ids = await raffle_engine.draw_winners(activity_id, payload.count)
    raffle = await manager.get_raffle(activity_id)
    await feed.append(raffle.event_id, {"type": "raffle_winners_drawn", "winner_ids": winner_ids})
    return {"winners": winner_ids}


@app.post("/api/raffles/{activity_id}/end")
async def end_raffle(activity_id: str, _: None = Depends(require_admin)):
    results = await raffle_engine.end_raffle(activity_id)
    raffle = await manager.get_raffle(activity_id)
    await feed.append(raffle.event_id, {"type": "raffle_ended", "results": results.model_dump()})
    return {"results": results.model_dump()}


# Quizzes


@app.get("/api/quizzes/{activity_id}/questions")
async def list_questions(activity_id: str):
    questions = await quiz_engine.get_questions(activity_id)
    return {"questions": [q.model_dump() for q in questions]}


@app.post("/api/quizzes/{activity_id}/questions")
async def add_question(activity_id: str, payload: QuestionIn, _: None = Depends(require_admin)):
    question = await quiz_engine.add_question(activity_id, payload.model_dump(exclude_none=True))
    return {"question": question.model_dump()}


@app.patch("/api/quizzes/{activity_id}/questions/{question_id}")
async def update_question(
    activity_id: str,
    question_id: str,
    payload: Dict[str, Any] = Body(...),
    _: None = Depends(require_admin),
):
    question = await quiz_engine.update_question(activity_id, question_id, payload)
    return {"question": question.model_dump()}


@app.delete("/api/quizzes/{activity_id}/questions/{question_id}")
async def delete_question(activity_id: str, question_id: str, _: None = Depends(require_admin)):
    await quiz_engine.delete_question(activity_id, question_id)
    return {"ok": True}


@app.post("/api/quizzes/{activity_id}/start")
async def start_quiz(activity_id: str, _: None = Depends(require_admin)):
    quiz = await quiz_engine.start_quiz(activity_id)
    await feed.append(quiz.event_id, {"type": "activity_activated", "activity_id": activity_id})
    return {"activity": quiz.model_dump()}


@app.post("/api/quizzes/{activity_id}/next")
async def next_question(activity_id: str, _: None = Depends(require_admin)):
    question = await quiz_engine.next_question(activity_id)
    quiz = await manager.get_quiz(activity_id)
    await feed.append(
        quiz.event_id,
        {"type": "question_started", "question": question.model_dump(exclude={"correct_option_id"})},
    )
    return {"question": question.model_dump()}


@app.post("/api/quizzes/{activity_id}/answer")
async def answer(activity_id: str, payload: AnswerIn):
    result = await quiz_engine.submit_answer(
        activity_id, payload.participant_id, payload.question_id, payload.option_id, payload.response_time
    )
    return {"result": result.model_dump()}


@app.get("/api/quizzes/{activity_id}/leaderboard")
async def leaderboard(activity_id: str):
    entries = await quiz_engine.get_leaderboard(activity_id)
    return {"leaderboard": [e.model_dump() for e in entries]}


@app.get("/api/quizzes/{activity_id}/questions/{question_id}/statistics")
async def answer_statistics(activity_id: str, question_id: str, _: None = Depends(require_admin)):
    stats = await quiz_engine.get_answer_statistics(activity_id, question_id)
    return {"statistics": stats.model_dump()}


@app.post("/api/quizzes/{activity_id}/end")
async def end_quiz(activity_id: str, _: None = Depends(require_admin)):
    results = await quiz_engine.end_quiz(activity_id)
    quiz = await manager.get_quiz(activity_id)
    await feed.append(quiz.event_id, {"type": "quiz_ended", "results": results.model_dump()})
    return {"results": results.model_dump()}
