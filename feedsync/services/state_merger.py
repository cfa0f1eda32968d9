from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timezone
import logging
import uuid

from feedsync.schemas.states import STATE_FIELDS, BatchStateMutation, ItemState, StateMutation
from feedsync.services.events import ITEM_STATE_CHANGED, EventPublisher, NullEventPublisher
from feedsync.services.repository import PostgresRepository, RepositoryNotFoundError, RepositoryValidationError

logger = logging.getLogger(__name__)


class StateMerger:
    """Timestamp-gated read/starred writes.

    A write lands only when its ``changed_at`` is strictly newer than the stored
    per-field timestamp, so replays and out-of-order writes converge. Callers
    always get the resulting state back, whether or not their write applied.
    """

    def __init__(self, repository: PostgresRepository, publisher: EventPublisher | None = None) -> None:
        self.repository = repository
        self.publisher = publisher or NullEventPublisher()

    async def apply(
        self,
        user_id: str,
        item_id: str,
        field: str,
        value: bool,
        changed_at: datetime | None = None,
    ) -> ItemState:
        _check_field(field)
        canonical_id = _canonical_uuid(item_id)
        if canonical_id is None:
            raise RepositoryNotFoundError("item not found")
        state = await self.repository.apply_item_state(
            user_id=user_id,
            item_id=canonical_id,
            field=field,
            value=value,
            changed_at=_as_utc(changed_at),
        )
        if state.applied:
            await self.publisher.publish(
                ITEM_STATE_CHANGED,
                {"user_id": user_id, "item_id": canonical_id, "field": field, "value": value},
            )
        return state

    async def apply_mutation(self, mutation: StateMutation) -> ItemState:
        return await self.apply(
            mutation.user_id,
            mutation.item_id,
            mutation.field,
            mutation.value,
            mutation.changed_at,
        )

    async def apply_batch(
        self,
        user_id: str,
        field: str,
        value: bool,
        entries: Iterable[tuple[str, datetime | None]],
    ) -> list[ItemState]:
        """Apply one value to many items; unknown items are left out of the result."""
        _check_field(field)
        latest: dict[str, datetime] = {}
        for item_id, changed_at in entries:
            canonical_id = _canonical_uuid(item_id)
            if canonical_id is None:
                logger.info("skipping unknown item in state batch user_id=%s item_id=%s", user_id, item_id)
                continue
            moment = _as_utc(changed_at)
            if canonical_id not in latest or moment > latest[canonical_id]:
                latest[canonical_id] = moment

        states = await self.repository.apply_item_states(
            user_id=user_id,
            field=field,
            value=value,
            entries=list(latest.items()),
        )
        missing = set(latest) - {state.item_id for state in states}
        if missing:
            logger.info("state batch omitted unknown items user_id=%s count=%s", user_id, len(missing))
        for state in states:
            if state.applied:
                await self.publisher.publish(
                    ITEM_STATE_CHANGED,
                    {"user_id": user_id, "item_id": state.item_id, "field": field, "value": value},
                )
        return states

    async def apply_batch_mutation(self, mutation: BatchStateMutation) -> list[ItemState]:
        return await self.apply_batch(
            mutation.user_id,
            mutation.field,
            mutation.value,
            [(entry.item_id, entry.changed_at) for entry in mutation.items],
        )

    async def observe(self, user_id: str, item_ids: Iterable[str]) -> int:
        """Create missing state rows for items the user has now seen."""
        valid_ids = sorted({canonical for canonical in map(_canonical_uuid, item_ids) if canonical is not None})
        return await self.repository.observe_items(user_id=user_id, item_ids=valid_ids)


def _check_field(field: str) -> None:
    if field not in STATE_FIELDS:
        raise RepositoryValidationError(f"unsupported state field: {field!r}")


def _as_utc(value: datetime | None) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _canonical_uuid(value: str) -> str | None:
    try:
        return str(uuid.UUID(str(value)))
    except ValueError:
        return None
