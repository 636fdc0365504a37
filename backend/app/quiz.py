from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Mapping

from pydantic import ValidationError

from .activities import ActivityManager, manager
from .db import settings
from .errors import DuplicateSubmission, NotFound, StateConflict, ValidationFailed
from .models import (
    Answer,
    AnswerOption,
    AnswerResult,
    AnswerStatistics,
    ParticipantScore,
    Question,
    QuizActivity,
    QuizResults,
)
from .scoring import (
    MAX_POINTS,
    calculate_answer_statistics,
    calculate_leaderboard,
    calculate_points,
    calculate_top_three,
    is_answer_correct,
    update_streak,
)
from .utils import is_blank, new_id

logger = logging.getLogger(__name__)


def _check_question(text: str, options: List[AnswerOption], correct_option_id: str) -> None:
    if is_blank(text):
        raise ValidationFailed("Question text is required")
    if len(options) < 2:
        raise ValidationFailed("Question must have at least 2 options")
    option_ids = [opt.id for opt in options]
    if len(set(option_ids)) != len(option_ids):
        raise ValidationFailed("Question option IDs must be unique")
    if correct_option_id not in option_ids:
        raise ValidationFailed("Correct option must be one of the question options")


class QuizEngine:
    def __init__(self, activities: ActivityManager | None = None):
        self.activities = activities or manager
        self.repos = self.activities.repos
        self.locks: Dict[str, asyncio.Lock] = {}

    def _lock(self, participant_id: str) -> asyncio.Lock:
        self.locks.setdefault(participant_id, asyncio.Lock())
        return self.locks[participant_id]

    async def add_question(self, activity_id: str, data: Mapping[str, Any]) -> Question:
        await self.activities.get_quiz(activity_id)

        order = data.get("order")
        if order is None:
            order = await self.repos.questions.count(activity_id)
        try:
            question = Question(**{**data, "id": new_id("question"), "activity_id": activity_id, "order": order})
        except ValidationError as exc:
            raise ValidationFailed(f"Invalid question: {exc.errors()[0]['msg']}") from exc

        _check_question(question.text, question.options, question.correct_option_id)
        return await self.repos.questions.add(question)

    async def update_question(self, activity_id: str, question_id: str, updates: Mapping[str, Any]) -> Question:
        await self.activities.get_quiz(activity_id)
        existing = await self._require_question(activity_id, question_id)

        changes = {k: v for k, v in updates.items() if k not in ("id", "activity_id")}
        try:
            question = Question(**{**existing.model_dump(), **changes})
        except ValidationError as exc:
            raise ValidationFailed(f"Invalid question: {exc.errors()[0]['msg']}") from exc

        _check_question(question.text, question.options, question.correct_option_id)
        return await self.repos.questions.replace(question)

    async def delete_question(self, activity_id: str, question_id: str) -> None:
        await self.activities.get_quiz(activity_id)
        if not await self.repos.questions.delete(activity_id, question_id):
            raise NotFound(f"Question not found: {question_id}")

    async def get_questions(self, activity_id: str) -> List[Question]:
        await self.activities.get_quiz(activity_id)
        return await self.repos.questions.list(activity_id)

    async def _require_question(self, activity_id: str, question_id: str) -> Question:
        question = await self.repos.questions.get(activity_id, question_id)
        if not question:
            raise NotFound(f"Question not found: {question_id}")
        return question

    async def start_quiz(self, activity_id: str) -> QuizActivity:
        quiz = await self.activities.get_quiz(activity_id)
        if quiz.status == "completed":
            raise StateConflict("Cannot restart a completed quiz")

        await self.repos.activities.update(activity_id, {"current_question_index": 0})
        await self.activities.go_live(quiz)
        return await self.activities.get_quiz(activity_id)

    async def next_question(self, activity_id: str) -> Question:
        """Advance to the next question and return it."""

        quiz = await self.activities.get_quiz(activity_id)
        if quiz.status != "active":
            raise StateConflict("Quiz is not currently active")

        questions = await self.repos.questions.list(activity_id)
        next_index = quiz.current_question_index + 1
        if next_index >= len(questions):
            raise StateConflict("No more questions in this quiz")

        await self.repos.activities.update(activity_id, {"current_question_index": next_index})
        return questions[next_index]

    async def submit_answer(
        self,
        activity_id: str,
        participant_id: str,
        question_id: str,
        option_id: str,
        response_time: int,
    ) -> AnswerResult:
        if is_blank(participant_id) or is_blank(question_id) or is_blank(option_id) or response_time < 0:
            raise ValidationFailed("Invalid answer submission data")

        quiz = await self.activities.get_quiz(activity_id)
        if quiz.status != "active":
            raise StateConflict("Quiz is not currently active")

        question = await self._require_question(activity_id, question_id)
        if option_id not in {opt.id for opt in question.options}:
            raise ValidationFailed("Invalid answer option")

        if not await self.repos.participants.get(quiz.event_id, participant_id):
            raise NotFound(f"Participant not found: {participant_id}")

        correct = is_answer_correct(option_id, question)
        if not quiz.scoring_enabled:
            points = 0
        elif not quiz.speed_bonus_enabled:
            points = MAX_POINTS if correct else 0
        else:
            timer = question.timer_seconds or settings.DEFAULT_TIMER_SECONDS
            points = calculate_points(correct, response_time, timer)

        async with self._lock(participant_id):
            if await self.repos.answers.get_by_participant(participant_id, question_id):
                raise DuplicateSubmission("Answer already submitted for this question")

            # a racing second answer still trips the unique (participant_id, question_id) index
            await self.repos.answers.save(
                Answer(
                    participant_id=participant_id,
                    question_id=question_id,
                    activity_id=activity_id,
                    selected_option_id=option_id,
                    response_time=response_time,
                    is_correct=correct,
                    points_earned=points,
                )
            )
            await self.repos.participants.add_score(quiz.event_id, participant_id, points, response_time)

            participant = await self.repos.participants.get(quiz.event_id, participant_id)
            streak = participant.current_streak
            if quiz.streak_tracking_enabled:
                updated = update_streak(participant, correct)
                await self.repos.participants.update_streak(
                    quiz.event_id, participant_id, updated["current_streak"], updated["longest_streak"]
                )
                streak = updated["current_streak"]

        return AnswerResult(
            is_correct=correct,
            points_earned=points,
            correct_option_id=question.correct_option_id,
            current_streak=streak,
        )

    async def get_leaderboard(self, activity_id: str) -> List[ParticipantScore]:
        quiz = await self.activities.get_quiz(activity_id)
        participants = await self.repos.participants.list(quiz.event_id)
        return calculate_leaderboard(participants)

    async def get_answer_statistics(self, activity_id: str, question_id: str) -> AnswerStatistics:
        await self.activities.get_quiz(activity_id)
        question = await self._require_question(activity_id, question_id)
        answers = await self.repos.answers.by_question(activity_id, question_id)
        return calculate_answer_statistics(question_id, answers, question.correct_option_id)

    async def end_quiz(self, activity_id: str) -> QuizResults:
        quiz = await self.activities.get_quiz(activity_id)
        if quiz.status != "active":
            raise StateConflict("Quiz is not currently active")

        participants = await self.repos.participants.list(quiz.event_id)
        leaderboard = calculate_leaderboard(participants)

        await self.activities.finish(quiz)
        logger.info("Quiz %s ended with %d participants", activity_id, len(participants))

        return QuizResults(
            final_leaderboard=leaderboard,
            top_three=calculate_top_three(leaderboard),
            participant_count=len(participants),
        )


quiz_engine = QuizEngine()
