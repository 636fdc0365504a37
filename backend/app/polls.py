from __future__ import annotations

import logging
from typing import List

from .activities import ActivityManager, build_poll_options, manager
from .errors import DuplicateSubmission, StateConflict, ValidationFailed
from .models import PollActivity, PollResults, PollVote
from .utils import is_blank, new_id

logger = logging.getLogger(__name__)


class PollEngine:
    def __init__(self, activities: ActivityManager | None = None):
        self.activities = activities or manager
        self.repo = self.activities.repos.polls

    async def configure(self, activity_id: str, question: str, options: List[str]) -> PollActivity:
        if is_blank(question):
            raise ValidationFailed("Poll question is required")
        if not options or len(options) < 2:
            raise ValidationFailed("Poll must have at least 2 options")
        if any(is_blank(opt) for opt in options):
            raise ValidationFailed("All poll options must have text")

        poll = await self.activities.get_poll(activity_id)
        if poll.status == "active":
            raise StateConflict("Cannot configure poll while it is active")

        updated = await self.activities.repos.activities.update(
            activity_id,
            {
                "question": question.strip(),
                "options": [opt.model_dump() for opt in build_poll_options(options)],
                "status": "ready",
            },
        )
        return updated

    async def start(self, activity_id: str) -> PollActivity:
        poll = await self.activities.get_poll(activity_id)

        if not poll.question or not poll.options:
            raise ValidationFailed("Poll must be configured before starting")
        if poll.status not in ("ready", "draft"):
            raise StateConflict(f"Cannot start poll in {poll.status} status")

        await self.activities.go_live(poll)
        return await self.activities.get_poll(activity_id)

    async def submit_vote(self, activity_id: str, participant_id: str, option_ids: List[str]) -> PollVote:
        if is_blank(participant_id):
            raise ValidationFailed("Participant ID is required")
        if not option_ids:
            raise ValidationFailed("At least one option must be selected")

        poll = await self.activities.get_poll(activity_id)
        if poll.status != "active":
            raise StateConflict("Poll is not currently active")
        if not poll.allow_multiple_votes and len(option_ids) > 1:
            raise ValidationFailed("This poll does not allow multiple votes")

        valid_ids = {opt.id for opt in poll.options}
        invalid = [oid for oid in option_ids if oid not in valid_ids]
        if invalid:
            raise ValidationFailed(f"Invalid option IDs: {', '.join(invalid)}")

        if await self.repo.get_vote_by_participant(activity_id, participant_id):
            raise DuplicateSubmission("Participant has already voted in this poll")

        # a racing second vote still trips the unique (poll_id, participant_id) index
        vote = PollVote(
            id=new_id(),
            poll_id=activity_id,
            participant_id=participant_id,
            selected_option_ids=list(option_ids),
        )
        await self.repo.create_vote(vote)
        logger.debug("Recorded vote %s in poll %s", vote.id, activity_id)
        return vote

    async def get_results(self, activity_id: str) -> PollResults:
        poll = await self.activities.get_poll(activity_id)
        return await self.repo.get_results(activity_id, poll.options)

    async def end_poll(self, activity_id: str) -> PollResults:
        poll = await self.activities.get_poll(activity_id)
        if poll.status != "active":
            raise StateConflict("Poll is not currently active")

        results = await self.repo.get_results(activity_id, poll.options)
        await self.activities.finish(poll)
        logger.info("Poll %s ended with %d votes", activity_id, results.total_votes)
        return results


poll_engine = PollEngine()
