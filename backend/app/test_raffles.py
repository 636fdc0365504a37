from __future__ import annotations

import random
from unittest import IsolatedAsyncioTestCase, TestCase

from .activities import ActivityManager
from .db import InMemoryDatabase
from .errors import DuplicateSubmission, InsufficientEntries, StateConflict, ValidationFailed
from .models import Event, RaffleEntry
from .raffles import RaffleEngine, shuffle_entries
from .repositories import Repositories


class ShuffleTests(TestCase):
    def test_shuffle_is_a_permutation(self):
        entries = [RaffleEntry(id=str(i), raffle_id="r", participant_id=f"p{i}", participant_name=f"P{i}") for i in range(10)]

        shuffled = shuffle_entries(entries, random.Random(7))

        self.assertEqual(sorted(e.participant_id for e in shuffled), sorted(e.participant_id for e in entries))
        self.assertEqual([e.participant_id for e in entries], [f"p{i}" for i in range(10)])


class RaffleEngineTests(IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.database = InMemoryDatabase()
        await self.database.ensure_indexes()
        self.repos = Repositories(self.database)
        self.manager = ActivityManager(self.repos)
        self.raffles = RaffleEngine(self.manager, rng=random.Random(1234))
        await self.repos.events.create(Event(id="evt-1", organizer_id="org-1", name="Gala"))
        self.raffle = await self.manager.create("evt-1", {"name": "Door prize", "type": "raffle"})

    async def _live(self, winner_count: int = 1, entrants=()):
        await self.raffles.configure(self.raffle.id, "Espresso machine", "automatic", winner_count)
        await self.raffles.start(self.raffle.id)
        for pid in entrants:
            await self.raffles.enter_raffle(self.raffle.id, pid, pid.upper())

    async def test_configure_marks_raffle_ready(self):
        raffle = await self.raffles.configure(self.raffle.id, "  Espresso machine ", "manual", 2)

        self.assertEqual(raffle.status, "ready")
        self.assertEqual(raffle.prize_description, "Espresso machine")
        self.assertEqual(raffle.entry_method, "manual")
        self.assertEqual(raffle.winner_count, 2)
        self.assertEqual(raffle.winners, [])

    async def test_configure_validation(self):
        with self.assertRaises(ValidationFailed):
            await self.raffles.configure(self.raffle.id, " ", "automatic", 1)
        with self.assertRaises(ValidationFailed):
            await self.raffles.configure(self.raffle.id, "Prize", "lottery", 1)
        with self.assertRaises(ValidationFailed):
            await self.raffles.configure(self.raffle.id, "Prize", "automatic", 0)

        poll = await self.manager.create("evt-1", {"name": "Poll", "type": "poll"})
        with self.assertRaises(ValidationFailed):
            await self.raffles.configure(poll.id, "Prize", "automatic", 1)

    async def test_cannot_reconfigure_live_raffle(self):
        await self._live()
        with self.assertRaises(StateConflict):
            await self.raffles.configure(self.raffle.id, "Other prize", "automatic", 1)

    async def test_start_requires_prize(self):
        with self.assertRaises(ValidationFailed):
            await self.raffles.start(self.raffle.id)

    async def test_live_raffle_can_be_restarted(self):
        await self._live()
        raffle = await self.raffles.start(self.raffle.id)

        self.assertEqual(raffle.status, "active")
        self.assertEqual((await self.repos.events.get("evt-1")).active_activity_id, self.raffle.id)

    async def test_entries(self):
        await self._live()

        entry = await self.raffles.enter_raffle(self.raffle.id, "p1", "  Ada ")
        self.assertEqual(entry.participant_name, "Ada")

        with self.assertRaises(DuplicateSubmission):
            await self.raffles.enter_raffle(self.raffle.id, "p1", "Ada again")
        with self.assertRaises(ValidationFailed):
            await self.raffles.enter_raffle(self.raffle.id, "", "Nobody")
        with self.assertRaises(ValidationFailed):
            await self.raffles.enter_raffle(self.raffle.id, "p2", " ")

        self.assertEqual(len(await self.raffles.get_entries(self.raffle.id)), 1)

    async def test_entry_requires_live_raffle(self):
        await self.raffles.configure(self.raffle.id, "Prize", "automatic", 1)
        with self.assertRaises(StateConflict):
            await self.raffles.enter_raffle(self.raffle.id, "p1", "Ada")

    async def test_draw_winners_from_entries(self):
        await self._live(winner_count=2, entrants=("p1", "p2", "p3"))

        winners = await self.raffles.draw_winners(self.raffle.id)

        self.assertEqual(len(winners), 2)
        self.assertEqual(len(set(winners)), 2)
        self.assertTrue(set(winners) <= {"p1", "p2", "p3"})
        self.assertEqual((await self.manager.get_raffle(self.raffle.id)).winners, winners)

    async def test_draw_more_winners_than_entries(self):
        await self._live(winner_count=2, entrants=("p1", "p2", "p3"))

        with self.assertRaises(InsufficientEntries) as ctx:
            await self.raffles.draw_winners(self.raffle.id, 5)
        self.assertIn("only 3 entries available", str(ctx.exception))

    async def test_draw_without_entries(self):
        await self._live()
        with self.assertRaises(InsufficientEntries):
            await self.raffles.draw_winners(self.raffle.id)

    async def test_draw_validation(self):
        await self.raffles.configure(self.raffle.id, "Prize", "automatic", 1)
        with self.assertRaises(StateConflict):
            await self.raffles.draw_winners(self.raffle.id)

        await self.raffles.start(self.raffle.id)
        await self.raffles.enter_raffle(self.raffle.id, "p1", "Ada")
        with self.assertRaises(ValidationFailed):
            await self.raffles.draw_winners(self.raffle.id, 0)

    async def test_redraw_overwrites_winners(self):
        await self._live(winner_count=1, entrants=("p1", "p2", "p3", "p4"))

        await self.raffles.draw_winners(self.raffle.id)
        second = await self.raffles.draw_winners(self.raffle.id, 3)

        self.assertEqual((await self.manager.get_raffle(self.raffle.id)).winners, second)
        self.assertEqual(len(second), 3)

    async def test_end_raffle_assembles_results(self):
        await self._live(winner_count=2, entrants=("p1", "p2", "p3"))
        winners = await self.raffles.draw_winners(self.raffle.id)

        results = await self.raffles.end_raffle(self.raffle.id)

        self.assertEqual(results.raffle_id, self.raffle.id)
        self.assertEqual(results.prize_description, "Espresso machine")
        self.assertEqual(results.total_entries, 3)
        self.assertEqual(results.winner_count, 2)
        self.assertEqual(
            sorted((w.participant_id, w.participant_name) for w in results.winners),
            sorted((pid, pid.upper()) for pid in winners),
        )
        self.assertEqual((await self.manager.get(self.raffle.id)).status, "completed")
        self.assertIsNone((await self.repos.events.get("evt-1")).active_activity_id)

        with self.assertRaises(StateConflict):
            await self.raffles.end_raffle(self.raffle.id)
