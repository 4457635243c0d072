"""Optimistic per-field state synchronization for the character dashboard.

Every edit goes through the same two phases: :meth:`StateSynchronizer.begin_edit`
snapshots the touched values and applies the change locally, then
:meth:`StateSynchronizer.settle_edit` persists the whole row and either keeps
the change or restores the snapshot. Several edits on one row may be in flight
at once. Edits to the same field form a chain: a failed edit hands its snapshot
to the next newer edit, so only the newest failure touches the visible value.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Set

from tracker_fields import (
    FIELD_BY_KEY,
    TIMED_FLAG_FIELD,
    GoldenGoose,
    coerce_value,
    decode_state,
    encode_state,
)

logger = logging.getLogger(__name__)

PersistFn = Callable[[Dict[str, Any]], Awaitable[None]]


class PersistenceError(Exception):
    """An edit's upsert was rejected by the remote store."""


def describe_failure(exc: BaseException) -> str:
    message = str(exc).strip()
    return message or "Failed to save"


@dataclass
class EditableRow:
    entity_id: str
    name: str
    values: Dict[str, Enum]
    activated_at: datetime | None = None
    is_saving: bool = False
    last_error: str | None = None
    pending: int = field(default=0, repr=False)
    in_flight: Dict[str, List["PendingEdit"]] = field(default_factory=dict, repr=False)

    def value(self, key: str) -> Enum:
        return self.values[key]

    def label(self, key: str) -> str:
        return self.values[key].value


@dataclass(eq=False)
class PendingEdit:
    row: EditableRow
    field: str
    new_value: Enum
    previous_value: Enum
    previous_activated_at: datetime | None
    payload: Dict[str, Any]


def build_rows(characters: Iterable[Mapping[str, Any]], states: Iterable[Mapping[str, Any]]) -> List[EditableRow]:
    state_by_character = {str(state.get("character_id")): state for state in states}
    rows: List[EditableRow] = []
    for character in characters:
        entity_id = str(character["id"])
        values, activated_at = decode_state(state_by_character.get(entity_id))
        rows.append(
            EditableRow(
                entity_id=entity_id,
                name=str(character.get("name") or entity_id),
                values=values,
                activated_at=activated_at,
            )
        )
    return rows


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class StateSynchronizer:
    def __init__(
        self,
        rows: Iterable[EditableRow],
        persist: PersistFn,
        actor_id: str,
        clock: Callable[[], datetime] = utc_now,
        on_change: Callable[[], None] | None = None,
    ) -> None:
        self.rows: Dict[str, EditableRow] = {}
        self.order: List[str] = []
        self.persist = persist
        self.actor_id = actor_id
        self.clock = clock
        self.on_change = on_change
        self._tasks: Set[asyncio.Task] = set()
        self._load(rows)

    def _load(self, rows: Iterable[EditableRow]) -> None:
        self.rows = {row.entity_id: row for row in rows}
        self.order = list(self.rows)

    def replace_rows(self, rows: Iterable[EditableRow]) -> None:
        self._load(rows)
        self._notify()

    def ordered_rows(self) -> List[EditableRow]:
        return [self.rows[entity_id] for entity_id in self.order]

    def _notify(self) -> None:
        if self.on_change is None:
            return
        try:
            self.on_change()
        except Exception:
            logger.exception("Change listener failed")

    def _build_payload(self, row: EditableRow) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "user_id": self.actor_id,
            "character_id": row.entity_id,
        }
        payload.update(encode_state(row.values, row.activated_at))
        payload["updated_at"] = self.clock()
        return payload

    def begin_edit(self, entity_id: str, field_key: str, value: Any) -> PendingEdit | None:
        row = self.rows.get(entity_id)
        if row is None:
            logger.warning("Ignoring edit for unknown character %s", entity_id)
            return None
        try:
            new_value = coerce_value(field_key, value)
        except KeyError:
            row.last_error = f"Unknown field {field_key!r}"
            self._notify()
            return None
        except ValueError as exc:
            row.last_error = str(exc)
            self._notify()
            return None

        previous_value = row.values[field_key]
        previous_activated_at = row.activated_at

        touches_timed_flag = field_key == TIMED_FLAG_FIELD
        if touches_timed_flag:
            activated_at = self.clock() if new_value is GoldenGoose.ACTIVE else None
        else:
            activated_at = row.activated_at

        row.values[field_key] = new_value
        row.activated_at = activated_at
        row.is_saving = True
        row.last_error = None
        row.pending += 1

        pending = PendingEdit(
            row=row,
            field=field_key,
            new_value=new_value,
            previous_value=previous_value,
            previous_activated_at=previous_activated_at,
            payload=self._build_payload(row),
        )
        row.in_flight.setdefault(field_key, []).append(pending)
        self._notify()
        return pending

    def _rollback(self, pending: PendingEdit) -> None:
        row = pending.row
        chain = row.in_flight.get(pending.field, [])
        if pending not in chain:
            # A newer edit of this field was already accepted.
            return
        index = chain.index(pending)
        chain.pop(index)
        if index < len(chain):
            successor = chain[index]
            successor.previous_value = pending.previous_value
            successor.previous_activated_at = pending.previous_activated_at
            return
        row.values[pending.field] = pending.previous_value
        if pending.field == TIMED_FLAG_FIELD:
            row.activated_at = pending.previous_activated_at

    def _confirm(self, pending: PendingEdit) -> None:
        chain = pending.row.in_flight.get(pending.field, [])
        if pending in chain:
            # Older edits of this field are superseded by the accepted value.
            del chain[: chain.index(pending) + 1]

    async def settle_edit(self, pending: PendingEdit) -> bool:
        row = pending.row
        try:
            await self.persist(pending.payload)
        except Exception as exc:
            error = PersistenceError(describe_failure(exc))
            logger.error(
                "Failed to save %s for character %s: %s",
                FIELD_BY_KEY[pending.field].label,
                row.entity_id,
                error,
            )
            self._rollback(pending)
            row.last_error = str(error)
            accepted = False
        else:
            self._confirm(pending)
            row.last_error = None
            accepted = True
        finally:
            row.pending = max(0, row.pending - 1)
            row.is_saving = row.pending > 0
            self._notify()
        return accepted

    async def apply_edit(self, entity_id: str, field_key: str, value: Any) -> bool:
        pending = self.begin_edit(entity_id, field_key, value)
        if pending is None:
            return False
        return await self.settle_edit(pending)

    def submit_edit(self, entity_id: str, field_key: str, value: Any) -> asyncio.Task | None:
        """Apply the edit locally now and persist it in the background.

        Must be called from a running event loop.
        """
        pending = self.begin_edit(entity_id, field_key, value)
        if pending is None:
            return None
        task = asyncio.get_running_loop().create_task(self.settle_edit(pending))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
