"""Store-facing repositories for events, activities and their child records.

Every call into the store goes through :func:`with_retry`, which retries
transient failures with exponential backoff and lets everything else
propagate untouched.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, List, TypeVar

from pymongo.errors import AutoReconnect, DuplicateKeyError, ExecutionTimeout

from .db import ReturnDocument, db, settings
from .errors import DuplicateSubmission, TransientStoreError
from .models import (
    Answer,
    Event,
    Participant,
    PollOption,
    PollResults,
    PollVote,
    Question,
    RaffleEntry,
    parse_activity,
)
from .utils import now_ts

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS = (AutoReconnect, ExecutionTimeout)

_UNSET: Any = object()


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int | None = None,
    base_delay: float | None = None,
) -> T:
    """Run ``operation``, retrying transient store errors.

    ``attempts`` counts retries after the first try. Exhausted retries raise
    :class:`TransientStoreError` chained to the last failure.
    """

    retries = settings.STORE_RETRY_ATTEMPTS if attempts is None else attempts
    delay = settings.STORE_RETRY_BASE_DELAY if base_delay is None else base_delay

    for attempt in range(retries + 1):
        try:
            return await operation()
        except TRANSIENT_ERRORS as exc:
            if attempt >= retries:
                raise TransientStoreError(f"Store unavailable after {retries + 1} attempts") from exc
            backoff = delay * (2**attempt)
            logger.warning("Transient store error (%s); retrying in %.3fs (attempt %d/%d)", exc, backoff, attempt + 1, retries)
            await asyncio.sleep(backoff)

    raise TransientStoreError()  # pragma: no cover - loop always returns or raises


class _Repository:
    def __init__(self, database: Any = None):
        self.db = database if database is not None else db


class EventRepository(_Repository):
    async def create(self, event: Event) -> Event:
        await with_retry(lambda: self.db.events.insert_one(event.model_dump()))
        return event

    async def get(self, event_id: str) -> Event | None:
        doc = await with_retry(lambda: self.db.events.find_one({"id": event_id}))
        return Event(**doc) if doc else None

    async def set_active_activity(
        self,
        event_id: str,
        activity_id: str | None,
        *,
        expected: Any = _UNSET,
    ) -> Event | None:
        """Point the event at ``activity_id``.

        With ``expected`` the write only happens while the stored pointer still
        equals it; ``None`` is returned when the event is missing or the
        comparison fails.
        """

        query: dict[str, Any] = {"id": event_id}
        if expected is not _UNSET:
            query["active_activity_id"] = expected

        doc = await with_retry(
            lambda: self.db.events.find_one_and_update(
                query,
                {"$set": {"active_activity_id": activity_id, "last_modified": now_ts()}},
                return_document=ReturnDocument.AFTER,
            )
        )
        return Event(**doc) if doc else None

    async def delete(self, event_id: str) -> None:
        await with_retry(lambda: self.db.events.delete_one({"id": event_id}))


class ActivityRepository(_Repository):
    async def create(self, activity):
        doc = activity.model_dump(exclude={"questions"})
        await with_retry(lambda: self.db.activities.insert_one(doc))
        return activity

    async def find_by_id(self, activity_id: str):
        doc = await with_retry(lambda: self.db.activities.find_one({"id": activity_id}))
        return parse_activity(doc) if doc else None

    async def find_by_event(self, event_id: str) -> list:
        docs = await with_retry(lambda: self.db.activities.find({"event_id": event_id}).sort("order", 1).to_list())
        return [parse_activity(d) for d in docs]

    async def count_for_event(self, event_id: str) -> int:
        return await with_retry(lambda: self.db.activities.count_documents({"event_id": event_id}))

    async def update(self, activity_id: str, fields: dict[str, Any]):
        changes = {k: v for k, v in fields.items() if k not in ("id", "questions")}
        changes["last_modified"] = now_ts()
        doc = await with_retry(
            lambda: self.db.activities.find_one_and_update(
                {"id": activity_id},
                {"$set": changes},
                return_document=ReturnDocument.AFTER,
            )
        )
        return parse_activity(doc) if doc else None

    async def set_status(self, activity_id: str, status: str):
        return await self.update(activity_id, {"status": status})

    async def delete(self, activity_id: str) -> None:
        await with_retry(lambda: self.db.activities.delete_one({"id": activity_id}))


class PollRepository(_Repository):
    async def create_vote(self, vote: PollVote) -> PollVote:
        try:
            await with_retry(lambda: self.db.poll_votes.insert_one(vote.model_dump()))
        except DuplicateKeyError as exc:
            logger.warning("Duplicate vote prevented for participant %s in poll %s", vote.participant_id, vote.poll_id)
            raise DuplicateSubmission("Participant has already voted in this poll") from exc
        return vote

    async def get_votes(self, poll_id: str) -> List[PollVote]:
        docs = await with_retry(lambda: self.db.poll_votes.find({"poll_id": poll_id}).sort("submitted_at", 1).to_list())
        return [PollVote(**d) for d in docs]

    async def get_vote_by_participant(self, poll_id: str, participant_id: str) -> PollVote | None:
        doc = await with_retry(
            lambda: self.db.poll_votes.find_one({"poll_id": poll_id, "participant_id": participant_id})
        )
        return PollVote(**doc) if doc else None

    async def get_results(self, poll_id: str, poll_options: List[PollOption]) -> PollResults:
        votes = await self.get_votes(poll_id)

        counts = {option.id: 0 for option in poll_options}
        for vote in votes:
            for option_id in vote.selected_option_ids:
                counts[option_id] = counts.get(option_id, 0) + 1

        return PollResults(
            poll_id=poll_id,
            total_votes=len(votes),
            options=[option.model_copy(update={"vote_count": counts[option.id]}) for option in poll_options],
        )

    async def delete_for_poll(self, poll_id: str) -> None:
        await with_retry(lambda: self.db.poll_votes.delete_many({"poll_id": poll_id}))


class RaffleRepository(_Repository):
    async def create_entry(self, entry: RaffleEntry) -> RaffleEntry:
        try:
            await with_retry(lambda: self.db.raffle_entries.insert_one(entry.model_dump()))
        except DuplicateKeyError as exc:
            logger.warning("Duplicate raffle entry prevented for participant %s in raffle %s", entry.participant_id, entry.raffle_id)
            raise DuplicateSubmission("Participant has already entered this raffle") from exc
        return entry

    async def get_entries(self, raffle_id: str) -> List[RaffleEntry]:
        docs = await with_retry(
            lambda: self.db.raffle_entries.find({"raffle_id": raffle_id}).sort("entered_at", 1).to_list()
        )
        return [RaffleEntry(**d) for d in docs]

    async def get_entry_by_participant(self, raffle_id: str, participant_id: str) -> RaffleEntry | None:
        doc = await with_retry(
            lambda: self.db.raffle_entries.find_one({"raffle_id": raffle_id, "participant_id": participant_id})
        )
        return RaffleEntry(**doc) if doc else None

    async def set_winners(self, raffle_id: str, winner_ids: List[str]) -> None:
        await with_retry(
            lambda: self.db.activities.update_one(
                {"id": raffle_id},
                {"$set": {"winners": list(winner_ids), "last_modified": now_ts()}},
            )
        )

    async def delete_for_raffle(self, raffle_id: str) -> None:
        await with_retry(lambda: self.db.raffle_entries.delete_many({"raffle_id": raffle_id}))


class QuestionRepository(_Repository):
    async def add(self, question: Question) -> Question:
        await with_retry(lambda: self.db.questions.insert_one(question.model_dump()))
        return question

    async def get(self, activity_id: str, question_id: str) -> Question | None:
        doc = await with_retry(lambda: self.db.questions.find_one({"activity_id": activity_id, "id": question_id}))
        return Question(**doc) if doc else None

    async def list(self, activity_id: str) -> List[Question]:
        docs = await with_retry(lambda: self.db.questions.find({"activity_id": activity_id}).sort("order", 1).to_list())
        return [Question(**d) for d in docs]

    async def count(self, activity_id: str) -> int:
        return await with_retry(lambda: self.db.questions.count_documents({"activity_id": activity_id}))

    async def replace(self, question: Question) -> Question:
        await with_retry(
            lambda: self.db.questions.update_one(
                {"activity_id": question.activity_id, "id": question.id},
                {"$set": question.model_dump()},
            )
        )
        return question

    async def delete(self, activity_id: str, question_id: str) -> int:
        return await with_retry(lambda: self.db.questions.delete_one({"activity_id": activity_id, "id": question_id}))

    async def delete_for_activity(self, activity_id: str) -> None:
        await with_retry(lambda: self.db.questions.delete_many({"activity_id": activity_id}))


class ParticipantRepository(_Repository):
    async def create(self, participant: Participant) -> Participant:
        await with_retry(lambda: self.db.participants.insert_one(participant.model_dump()))
        return participant

    async def get(self, event_id: str, participant_id: str) -> Participant | None:
        doc = await with_retry(lambda: self.db.participants.find_one({"event_id": event_id, "id": participant_id}))
        return Participant(**doc) if doc else None

    async def list(self, event_id: str) -> List[Participant]:
        docs = await with_retry(lambda: self.db.participants.find({"event_id": event_id}).sort("joined_at", 1).to_list())
        return [Participant(**d) for d in docs]

    async def add_score(self, event_id: str, participant_id: str, points: int, response_time: int) -> None:
        """Add an answer's points and response time to the participant's totals."""

        await with_retry(
            lambda: self.db.participants.update_one(
                {"event_id": event_id, "id": participant_id},
                {"$inc": {"score": points, "total_answer_time": response_time}},
            )
        )

    async def update_streak(self, event_id: str, participant_id: str, current_streak: int, longest_streak: int) -> None:
        await with_retry(
            lambda: self.db.participants.update_one(
                {"event_id": event_id, "id": participant_id},
                {"$set": {"current_streak": current_streak, "longest_streak": longest_streak}},
            )
        )

    async def delete_for_event(self, event_id: str) -> None:
        await with_retry(lambda: self.db.participants.delete_many({"event_id": event_id}))


class AnswerRepository(_Repository):
    async def save(self, answer: Answer) -> Answer:
        try:
            await with_retry(lambda: self.db.answers.insert_one(answer.model_dump()))
        except DuplicateKeyError as exc:
            logger.warning(
                "Duplicate answer prevented for participant %s, question %s", answer.participant_id, answer.question_id
            )
            raise DuplicateSubmission("Answer already submitted for this question") from exc
        return answer

    async def get_by_participant(self, participant_id: str, question_id: str) -> Answer | None:
        doc = await with_retry(
            lambda: self.db.answers.find_one({"participant_id": participant_id, "question_id": question_id})
        )
        return Answer(**doc) if doc else None

    async def by_question(self, activity_id: str, question_id: str) -> List[Answer]:
        docs = await with_retry(
            lambda: self.db.answers.find({"activity_id": activity_id, "question_id": question_id}).to_list()
        )
        return [Answer(**d) for d in docs]

    async def delete_for_activity(self, activity_id: str) -> None:
        await with_retry(lambda: self.db.answers.delete_many({"activity_id": activity_id}))


class Repositories:
    """Bundle of repositories sharing one database handle."""

    def __init__(self, database: Any = None):
        self.events = EventRepository(database)
        self.activities = ActivityRepository(database)
        self.polls = PollRepository(database)
        self.raffles = RaffleRepository(database)
        self.questions = QuestionRepository(database)
        self.participants = ParticipantRepository(database)
        self.answers = AnswerRepository(database)
