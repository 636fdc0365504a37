from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Mapping

from pydantic import ValidationError

from .db import settings
from .errors import CrossEventMismatch, NotFound, StateConflict, ValidationFailed
from .models import (
    Activity,
    BaseActivity,
    Event,
    PollActivity,
    PollOption,
    QuizActivity,
    RaffleActivity,
    parse_activity,
)
from .repositories import Repositories
from .utils import is_blank, new_id

logger = logging.getLogger(__name__)

IMMUTABLE_FIELDS = ("id", "event_id", "created_at", "type", "order")
ENGINE_FIELDS = ("winners", "current_question_index")
LIFECYCLE_FIELDS = set(BaseActivity.model_fields) | {"type", "questions"}


def build_poll_options(texts: List[str]) -> List[PollOption]:
    return [PollOption(id=new_id(f"option-{index}"), text=text.strip(), vote_count=0) for index, text in enumerate(texts)]


class ActivityManager:
    """Owns the activity state machine and the one-live-activity-per-event rule."""

    def __init__(self, repos: Repositories | None = None):
        self.repos = repos or Repositories()
        self.locks: Dict[str, asyncio.Lock] = {}

    def _lock(self, event_id: str) -> asyncio.Lock:
        self.locks.setdefault(event_id, asyncio.Lock())
        return self.locks[event_id]

    async def _require_event(self, event_id: str) -> Event:
        event = await self.repos.events.get(event_id)
        if not event:
            raise NotFound(f"Event not found: {event_id}")
        return event

    async def _require_activity(self, activity_id: str) -> Activity:
        activity = await self.repos.activities.find_by_id(activity_id)
        if not activity:
            raise NotFound(f"Activity not found: {activity_id}")
        return activity

    async def create(self, event_id: str, config: Mapping[str, Any]) -> Activity:
        await self._require_event(event_id)

        name = config.get("name")
        if is_blank(name):
            raise ValidationFailed("Activity name is required")

        order = await self.repos.activities.count_for_event(event_id)
        activity = self._build(new_id(), event_id, name.strip(), order, config)
        await self.repos.activities.create(activity)

        logger.info("Created %s activity %s for event %s", activity.type, activity.id, event_id)
        return activity

    def _build(self, activity_id: str, event_id: str, name: str, order: int, config: Mapping[str, Any]) -> Activity:
        base = {"id": activity_id, "event_id": event_id, "name": name, "status": "draft", "order": order}
        kind = config.get("type")
        try:
            if kind == "quiz":
                return QuizActivity(
                    **base,
                    scoring_enabled=_default(config, "scoring_enabled", True),
                    speed_bonus_enabled=_default(config, "speed_bonus_enabled", True),
                    streak_tracking_enabled=_default(config, "streak_tracking_enabled", True),
                )
            if kind == "poll":
                return PollActivity(
                    **base,
                    question=(config.get("question") or "").strip(),
                    options=build_poll_options(config.get("options") or []),
                    allow_multiple_votes=_default(config, "allow_multiple_votes", False),
                    show_results_live=_default(config, "show_results_live", True),
                )
            if kind == "raffle":
                return RaffleActivity(
                    **base,
                    prize_description=(config.get("prize_description") or "").strip(),
                    entry_method=config.get("entry_method") or "automatic",
                    winner_count=config.get("winner_count") or 1,
                )
        except ValidationError as exc:
            raise ValidationFailed(f"Invalid {kind} configuration: {exc.errors()[0]['msg']}") from exc
        raise ValidationFailed(f"Invalid activity type: {kind}")

    async def get(self, activity_id: str) -> Activity:
        activity = await self._require_activity(activity_id)
        if isinstance(activity, QuizActivity):
            try:
                activity.questions = await self.repos.questions.list(activity_id)
            except Exception:
                # enrichment only
                logger.exception("Failed to load questions for quiz activity %s", activity_id)
                activity.questions = []
        return activity

    async def list(self, event_id: str) -> List[Activity]:
        await self._require_event(event_id)
        return await self.repos.activities.find_by_event(event_id)

    async def update(self, activity_id: str, fields: Mapping[str, Any]) -> Activity:
        existing = await self._require_activity(activity_id)

        changes = {k: v for k, v in fields.items() if k not in IMMUTABLE_FIELDS}
        known = set(type(existing).model_fields) - {"questions"}
        unknown = sorted(set(changes) - known)
        if unknown:
            raise ValidationFailed(f"Unknown fields for {existing.type} activity: {', '.join(unknown)}")

        managed = sorted(set(changes) & set(ENGINE_FIELDS))
        if managed:
            raise ValidationFailed(f"Fields are managed by the {existing.type} engine: {', '.join(managed)}")

        config = sorted(set(changes) - LIFECYCLE_FIELDS)
        if config and existing.status == "active":
            raise StateConflict(f"Cannot change {', '.join(config)} while the activity is active")

        if "name" in changes and is_blank(changes["name"]):
            raise ValidationFailed("Activity name is required")

        new_status = changes.get("status", existing.status)
        if new_status != existing.status and not (existing.status == "draft" and new_status == "ready"):
            raise StateConflict(
                f"Cannot move activity from {existing.status} to {new_status}; use activate or deactivate"
            )

        merged = existing.model_dump(exclude={"questions"})
        merged.update(changes)
        try:
            validated = parse_activity(merged)
        except ValidationError as exc:
            raise ValidationFailed(f"Invalid activity update: {exc.errors()[0]['msg']}") from exc

        updated = await self.repos.activities.update(activity_id, validated.model_dump(include=set(changes)))
        if updated is None:
            raise NotFound(f"Activity not found: {activity_id}")
        return updated

    async def delete(self, activity_id: str) -> None:
        activity = await self._require_activity(activity_id)

        event = await self.repos.events.get(activity.event_id)
        if event and event.active_activity_id == activity_id:
            raise StateConflict("Cannot delete currently active activity. Deactivate it first.")

        await self._delete_children(activity)
        await self.repos.activities.delete(activity_id)
        logger.info("Deleted activity %s", activity_id)

    async def _delete_children(self, activity: Activity) -> None:
        if isinstance(activity, QuizActivity):
            await self.repos.questions.delete_for_activity(activity.id)
            await self.repos.answers.delete_for_activity(activity.id)
        elif isinstance(activity, PollActivity):
            await self.repos.polls.delete_for_poll(activity.id)
        elif isinstance(activity, RaffleActivity):
            await self.repos.raffles.delete_for_raffle(activity.id)
        else:  # pragma: no cover - the union is closed
            raise TypeError(f"Unhandled activity type: {type(activity).__name__}")

    async def delete_event(self, event_id: str) -> None:
        await self._require_event(event_id)
        activities = await self.repos.activities.find_by_event(event_id)
        logger.info("Deleting event %s with %d activities", event_id, len(activities))
        for activity in activities:
            await self._delete_children(activity)
            await self.repos.activities.delete(activity.id)
        await self.repos.participants.delete_for_event(event_id)
        await self.repos.events.delete(event_id)

    async def activate(self, event_id: str, activity_id: str) -> Event:
        event = await self._require_event(event_id)
        activity = await self._require_activity(activity_id)

        if activity.event_id != event_id:
            raise CrossEventMismatch(f"Activity {activity_id} does not belong to event {event_id}")
        if activity.status == "draft":
            raise StateConflict("Cannot activate activity in draft status. Activity must be ready.")
        if event.active_activity_id == activity_id and activity.status == "active":
            raise StateConflict(f"Activity {activity_id} is already active")

        return await self.go_live(activity)

    async def go_live(self, activity: Activity) -> Event:
        """Make ``activity`` the event's only live activity.

        Any other live activity is completed first; the event pointer is written
        last with a compare-and-swap against the value read at the start.
        """

        event_id = activity.event_id
        previous_status = activity.status

        async with self._lock(event_id):
            displaced: List[str] = []
            try:
                for attempt in range(settings.ACTIVATION_CAS_ATTEMPTS):
                    event = await self._require_event(event_id)
                    current_id = event.active_activity_id

                    if current_id and current_id != activity.id:
                        current = await self.repos.activities.find_by_id(current_id)
                        if current and current.status == "active":
                            await self.repos.activities.set_status(current_id, "completed")
                            displaced.append(current_id)
                            logger.info("Completed activity %s to make room for %s", current_id, activity.id)

                    await self.repos.activities.set_status(activity.id, "active")
                    updated = await self.repos.events.set_active_activity(event_id, activity.id, expected=current_id)
                    if updated is not None:
                        logger.info("Activated activity %s for event %s", activity.id, event_id)
                        return updated

                    logger.warning(
                        "Active activity for event %s changed concurrently; retrying (attempt %d/%d)",
                        event_id,
                        attempt + 1,
                        settings.ACTIVATION_CAS_ATTEMPTS,
                    )
            except Exception:
                logger.exception("Activation of %s failed; rolling back statuses", activity.id)
                await self._roll_back(event_id, activity.id, previous_status, displaced)
                raise

            await self._roll_back(event_id, activity.id, previous_status, displaced)
            raise StateConflict(f"Could not activate {activity.id}: event {event_id} kept changing")

    async def _roll_back(self, event_id: str, activity_id: str, previous_status: str, displaced: List[str]) -> None:
        await self.repos.activities.set_status(activity_id, previous_status)

        # only the activity the event still points at goes back to active
        event = await self.repos.events.get(event_id)
        pointer = event.active_activity_id if event else None
        for displaced_id in displaced:
            if displaced_id == pointer:
                await self.repos.activities.set_status(displaced_id, "active")

    async def deactivate(self, event_id: str, activity_id: str) -> Event:
        async with self._lock(event_id):
            event = await self._require_event(event_id)
            if event.active_activity_id != activity_id:
                raise StateConflict(f"Activity {activity_id} is not currently active")

            await self._require_activity(activity_id)
            await self.repos.activities.set_status(activity_id, "completed")
            updated = await self.repos.events.set_active_activity(event_id, None, expected=activity_id)

        logger.info("Deactivated activity %s for event %s", activity_id, event_id)
        return updated or await self._require_event(event_id)

    async def finish(self, activity: Activity) -> Activity:
        """Complete ``activity`` and release the event pointer if it holds it."""

        async with self._lock(activity.event_id):
            updated = await self.repos.activities.set_status(activity.id, "completed")
            await self.repos.events.set_active_activity(activity.event_id, None, expected=activity.id)
        return updated or activity

    async def get_quiz(self, activity_id: str) -> QuizActivity:
        return await self._typed(activity_id, QuizActivity, "quiz")

    async def get_poll(self, activity_id: str) -> PollActivity:
        return await self._typed(activity_id, PollActivity, "poll")

    async def get_raffle(self, activity_id: str) -> RaffleActivity:
        return await self._typed(activity_id, RaffleActivity, "raffle")

    async def _typed(self, activity_id: str, kind: type, label: str):
        activity = await self._require_activity(activity_id)
        if not isinstance(activity, kind):
            raise ValidationFailed(f"Activity {activity_id} is not a {label} activity")
        return activity


def _default(config: Mapping[str, Any], key: str, fallback: bool) -> bool:
    value = config.get(key)
    return fallback if value is None else value


manager = ActivityManager()
