from __future__ import annotations

from unittest import IsolatedAsyncioTestCase, mock

from .activities import ActivityManager
from .db import InMemoryDatabase
from .errors import DuplicateSubmission, NotFound, StateConflict, ValidationFailed
from .models import Event
from .polls import PollEngine
from .repositories import Repositories


class PollEngineTests(IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.database = InMemoryDatabase()
        await self.database.ensure_indexes()
        self.repos = Repositories(self.database)
        self.manager = ActivityManager(self.repos)
        self.polls = PollEngine(self.manager)
        await self.repos.events.create(Event(id="evt-1", organizer_id="org-1", name="Town hall"))
        self.poll = await self.manager.create("evt-1", {"name": "Colour vote", "type": "poll"})

    async def _configured(self, options=("Red", "Blue"), **fields):
        if fields:
            await self.manager.update(self.poll.id, fields)
        return await self.polls.configure(self.poll.id, "Best colour?", list(options))

    def _option_id(self, poll, text: str) -> str:
        return next(o.id for o in poll.options if o.text == text)

    async def test_configure_marks_poll_ready(self):
        poll = await self._configured(options=(" Red ", "Blue", "Green"))

        self.assertEqual(poll.status, "ready")
        self.assertEqual(poll.question, "Best colour?")
        self.assertEqual([o.text for o in poll.options], ["Red", "Blue", "Green"])
        self.assertEqual(len({o.id for o in poll.options}), 3)
        self.assertTrue(all(o.vote_count == 0 for o in poll.options))

    async def test_configure_validation(self):
        with self.assertRaises(ValidationFailed):
            await self.polls.configure(self.poll.id, "  ", ["Red", "Blue"])
        with self.assertRaises(ValidationFailed):
            await self.polls.configure(self.poll.id, "Best colour?", ["Red"])
        with self.assertRaises(ValidationFailed):
            await self.polls.configure(self.poll.id, "Best colour?", ["Red", " "])
        with self.assertRaises(NotFound):
            await self.polls.configure("missing", "Best colour?", ["Red", "Blue"])

    async def test_configure_rejects_other_activity_types(self):
        raffle = await self.manager.create("evt-1", {"name": "Raffle", "type": "raffle"})
        with self.assertRaises(ValidationFailed):
            await self.polls.configure(raffle.id, "Best colour?", ["Red", "Blue"])

    async def test_cannot_reconfigure_live_poll(self):
        await self._configured()
        await self.polls.start(self.poll.id)
        with self.assertRaises(StateConflict):
            await self.polls.configure(self.poll.id, "Another?", ["Yes", "No"])

    async def test_start_requires_configuration(self):
        with self.assertRaises(ValidationFailed):
            await self.polls.start(self.poll.id)

    async def test_start_makes_poll_the_live_activity(self):
        other = await self.manager.create("evt-1", {"name": "Raffle", "type": "raffle"})
        await self.manager.update(other.id, {"status": "ready"})
        await self.manager.activate("evt-1", other.id)
        await self._configured()

        poll = await self.polls.start(self.poll.id)

        self.assertEqual(poll.status, "active")
        event = await self.repos.events.get("evt-1")
        self.assertEqual(event.active_activity_id, self.poll.id)
        self.assertEqual((await self.manager.get(other.id)).status, "completed")

    async def test_start_rejects_completed_poll(self):
        await self._configured()
        await self.polls.start(self.poll.id)
        await self.polls.end_poll(self.poll.id)
        with self.assertRaises(StateConflict):
            await self.polls.start(self.poll.id)

    async def test_duplicate_vote_is_rejected(self):
        poll = await self._configured()
        await self.polls.start(self.poll.id)
        red, blue = self._option_id(poll, "Red"), self._option_id(poll, "Blue")

        await self.polls.submit_vote(self.poll.id, "p1", [red])
        with self.assertRaises(DuplicateSubmission):
            await self.polls.submit_vote(self.poll.id, "p1", [blue])

        results = await self.polls.get_results(self.poll.id)
        self.assertEqual(results.total_votes, 1)
        self.assertEqual({o.text: o.vote_count for o in results.options}, {"Red": 1, "Blue": 0})

    async def test_racing_duplicate_hits_unique_index(self):
        poll = await self._configured()
        await self.polls.start(self.poll.id)
        red = self._option_id(poll, "Red")
        await self.polls.submit_vote(self.poll.id, "p1", [red])

        # both requests passed the lookup before either wrote
        with mock.patch.object(self.polls.repo, "get_vote_by_participant", new=mock.AsyncMock(return_value=None)):
            with self.assertRaises(DuplicateSubmission):
                await self.polls.submit_vote(self.poll.id, "p1", [red])

        self.assertEqual((await self.polls.get_results(self.poll.id)).total_votes, 1)

    async def test_vote_validation(self):
        poll = await self._configured()
        red, blue = self._option_id(poll, "Red"), self._option_id(poll, "Blue")

        with self.assertRaises(StateConflict):
            await self.polls.submit_vote(self.poll.id, "p1", [red])

        await self.polls.start(self.poll.id)

        with self.assertRaises(ValidationFailed):
            await self.polls.submit_vote(self.poll.id, " ", [red])
        with self.assertRaises(ValidationFailed):
            await self.polls.submit_vote(self.poll.id, "p1", [])
        with self.assertRaises(ValidationFailed):
            await self.polls.submit_vote(self.poll.id, "p1", [red, blue])
        with self.assertRaises(ValidationFailed) as ctx:
            await self.polls.submit_vote(self.poll.id, "p1", [red + "x"])
        self.assertIn(red + "x", str(ctx.exception))

    async def test_multiple_choice_poll(self):
        poll = await self._configured(options=("Red", "Blue", "Green"), allow_multiple_votes=True)
        await self.polls.start(self.poll.id)
        red, blue = self._option_id(poll, "Red"), self._option_id(poll, "Blue")

        await self.polls.submit_vote(self.poll.id, "p1", [red, blue])
        await self.polls.submit_vote(self.poll.id, "p2", [blue])

        results = await self.polls.get_results(self.poll.id)
        self.assertEqual(results.total_votes, 2)
        self.assertEqual({o.text: o.vote_count for o in results.options}, {"Red": 1, "Blue": 2, "Green": 0})

    async def test_end_poll_returns_final_tally(self):
        poll = await self._configured()
        await self.polls.start(self.poll.id)
        await self.polls.submit_vote(self.poll.id, "p1", [self._option_id(poll, "Blue")])

        results = await self.polls.end_poll(self.poll.id)

        self.assertEqual(results.poll_id, self.poll.id)
        self.assertEqual(results.total_votes, 1)
        self.assertEqual((await self.manager.get(self.poll.id)).status, "completed")
        self.assertIsNone((await self.repos.events.get("evt-1")).active_activity_id)

        with self.assertRaises(StateConflict):
            await self.polls.end_poll(self.poll.id)

    async def test_deleting_poll_removes_votes(self):
        poll = await self._configured()
        await self.polls.start(self.poll.id)
        await self.polls.submit_vote(self.poll.id, "p1", [self._option_id(poll, "Red")])
        await self.polls.end_poll(self.poll.id)

        await self.manager.delete(self.poll.id)

        self.assertEqual(await self.repos.polls.get_votes(self.poll.id), [])
