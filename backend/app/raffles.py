from __future__ import annotations

import logging
import random
from typing import List, Optional

from .activities import ActivityManager, manager
from .errors import DuplicateSubmission, InsufficientEntries, StateConflict, ValidationFailed
from .models import RaffleActivity, RaffleEntry, RaffleResults, RaffleWinner
from .utils import is_blank, new_id

logger = logging.getLogger(__name__)

ENTRY_METHODS = ("automatic", "manual")


def shuffle_entries(entries: List[RaffleEntry], rng: random.Random) -> List[RaffleEntry]:
    """Return a uniformly shuffled copy of ``entries`` (Fisher-Yates)."""

    shuffled = list(entries)
    for i in range(len(shuffled) - 1, 0, -1):
        j = rng.randint(0, i)
        shuffled[i], shuffled[j] = shuffled[j], shuffled[i]
    return shuffled


class RaffleEngine:
    def __init__(self, activities: ActivityManager | None = None, rng: random.Random | None = None):
        self.activities = activities or manager
        self.repo = self.activities.repos.raffles
        self.rng = rng or random.SystemRandom()

    async def configure(
        self,
        activity_id: str,
        prize_description: str,
        entry_method: str,
        winner_count: int,
    ) -> RaffleActivity:
        if is_blank(prize_description):
            raise ValidationFailed("Prize description is required")
        if entry_method not in ENTRY_METHODS:
            raise ValidationFailed('Entry method must be either "automatic" or "manual"')
        if not winner_count or winner_count < 1:
            raise ValidationFailed("Winner count must be at least 1")

        raffle = await self.activities.get_raffle(activity_id)
        if raffle.status == "active":
            raise StateConflict("Cannot configure raffle while it is active")

        return await self.activities.repos.activities.update(
            activity_id,
            {
                "prize_description": prize_description.strip(),
                "entry_method": entry_method,
                "winner_count": winner_count,
                "winners": [],
                "status": "ready",
            },
        )

    async def start(self, activity_id: str) -> RaffleActivity:
        raffle = await self.activities.get_raffle(activity_id)

        if not raffle.prize_description or raffle.winner_count < 1:
            raise ValidationFailed("Raffle must be configured before starting")
        # restarting a live raffle is allowed, unlike polls
        if raffle.status not in ("ready", "draft", "active"):
            raise StateConflict(f"Cannot start raffle in {raffle.status} status")

        await self.activities.go_live(raffle)
        return await self.activities.get_raffle(activity_id)

    async def enter_raffle(self, activity_id: str, participant_id: str, participant_name: str) -> RaffleEntry:
        if is_blank(participant_id):
            raise ValidationFailed("Participant ID is required")
        if is_blank(participant_name):
            raise ValidationFailed("Participant name is required")

        raffle = await self.activities.get_raffle(activity_id)
        if raffle.status != "active":
            raise StateConflict("Raffle is not currently active")

        if await self.repo.get_entry_by_participant(activity_id, participant_id):
            raise DuplicateSubmission("Participant has already entered this raffle")

        entry = RaffleEntry(
            id=new_id(),
            raffle_id=activity_id,
            participant_id=participant_id,
            participant_name=participant_name.strip(),
        )
        return await self.repo.create_entry(entry)

    async def get_entries(self, activity_id: str) -> List[RaffleEntry]:
        await self.activities.get_raffle(activity_id)
        return await self.repo.get_entries(activity_id)

    async def draw_winners(self, activity_id: str, count: Optional[int] = None) -> List[str]:
        """Pick ``count`` distinct winners and store them on the raffle.

        Each call reshuffles and overwrites the stored winners.
        """

        raffle = await self.activities.get_raffle(activity_id)
        if raffle.status != "active":
            raise StateConflict("Raffle is not currently active")

        winner_count = raffle.winner_count if count is None else count
        if winner_count < 1:
            raise ValidationFailed("Winner count must be at least 1")

        entries = await self.repo.get_entries(activity_id)
        if not entries:
            raise InsufficientEntries("Cannot draw winners: no entries in raffle")
        if len(entries) < winner_count:
            raise InsufficientEntries(
                f"Cannot draw {winner_count} winners: only {len(entries)} entries available"
            )

        winners = shuffle_entries(entries, self.rng)[:winner_count]
        winner_ids = [entry.participant_id for entry in winners]
        await self.repo.set_winners(activity_id, winner_ids)

        logger.info("Drew %d winner(s) for raffle %s from %d entries", len(winner_ids), activity_id, len(entries))
        return winner_ids

    async def end_raffle(self, activity_id: str) -> RaffleResults:
        raffle = await self.activities.get_raffle(activity_id)
        if raffle.status != "active":
            raise StateConflict("Raffle is not currently active")

        entries = await self.repo.get_entries(activity_id)
        by_participant = {entry.participant_id: entry for entry in entries}
        winners = [
            RaffleWinner(participant_id=pid, participant_name=by_participant[pid].participant_name)
            for pid in raffle.winners
            if pid in by_participant
        ]

        await self.activities.finish(raffle)

        return RaffleResults(
            raffle_id=activity_id,
            prize_description=raffle.prize_description,
            total_entries=len(entries),
            winner_count=len(raffle.winners),
            winners=winners,
        )


raffle_engine = RaffleEngine()
