"""Speed-based scoring, streaks and leaderboards.

Everything here is pure: callers pass values in and persist what comes back.
"""

from __future__ import annotations

import math
from typing import Iterable, List, Sequence

from .models import Answer, AnswerStatistics, OptionCount, Participant, ParticipantScore, Question

MAX_POINTS = 1000
MIN_POINTS = 500
FAST_ANSWER_RATIO = 0.25
PODIUM_SIZE = 3


def calculate_points(is_correct: bool, response_time: float, timer_seconds: float) -> int:
    """Points for one answer.

    Correct answers inside the first quarter of the timer earn ``MAX_POINTS``;
    after that the award falls linearly to ``MIN_POINTS`` at the time limit and
    never drops below it.
    """

    if not is_correct:
        return 0

    max_time = timer_seconds * 1000
    fast_threshold = max_time * FAST_ANSWER_RATIO
    if response_time <= fast_threshold:
        return MAX_POINTS
    if max_time <= 0:
        return MIN_POINTS

    time_ratio = (response_time - fast_threshold) / (max_time - fast_threshold)
    points = MAX_POINTS - (MAX_POINTS - MIN_POINTS) * time_ratio
    return max(MIN_POINTS, math.floor(points + 0.5))


def is_answer_correct(selected_option_id: str, question: Question) -> bool:
    return selected_option_id == question.correct_option_id


def update_streak(participant: Participant, is_correct: bool) -> dict[str, int]:
    if is_correct:
        current = participant.current_streak + 1
        return {"current_streak": current, "longest_streak": max(participant.longest_streak, current)}
    return {"current_streak": 0, "longest_streak": participant.longest_streak}


def calculate_leaderboard(participants: Iterable[Participant]) -> List[ParticipantScore]:
    """Rank participants by score, then answer time, then name.

    Ranks run 1..N without gaps or shared places.
    """

    ordered = sorted(participants, key=lambda p: (-p.score, p.total_answer_time, p.name))
    return [
        ParticipantScore(
            rank=index + 1,
            participant_id=p.id,
            name=p.name,
            score=p.score,
            total_answer_time=p.total_answer_time,
        )
        for index, p in enumerate(ordered)
    ]


def calculate_answer_statistics(
    question_id: str,
    answers: Sequence[Answer],
    correct_option_id: str,
) -> AnswerStatistics:
    total = len(answers)
    counts: dict[str, OptionCount] = {}
    for answer in answers:
        counts.setdefault(answer.selected_option_id, OptionCount()).count += 1

    for option_count in counts.values():
        option_count.percentage = (option_count.count / total) * 100 if total > 0 else 0

    return AnswerStatistics(
        question_id=question_id,
        total_responses=total,
        option_counts=counts,
        correct_option_id=correct_option_id,
    )


def calculate_top_three(leaderboard: Sequence[ParticipantScore]) -> List[ParticipantScore]:
    return list(leaderboard[:PODIUM_SIZE])
