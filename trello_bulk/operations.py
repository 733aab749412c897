"""Bulk create/move/update/archive built on the selection and batch engine."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import timedelta, timezone
from typing import Any

from .batch import BatchExecutor, ItemOperation
from .client import TrelloClient
from .errors import SelectionError
from .executor import SleepFn
from .report import BulkReport, aggregate
from .selection import (
    Candidate,
    EntityKind,
    SelectionCriteria,
    SelectionResolver,
    parse_trello_datetime,
)
from .settings import TrelloSettings

logger = logging.getLogger(__name__)

CLEAR = "null"
ARCHIVE_CONFIRM_THRESHOLD = 10


async def run_candidates(
    candidates: Sequence[Candidate],
    op: ItemOperation,
    *,
    batch_size: int,
    safety_cap: int | None = None,
    pacing: float = 0.3,
    sleep: SleepFn = asyncio.sleep,
    cancel: asyncio.Event | None = None,
    unresolved: Sequence[tuple[str, Exception]] = (),
) -> BulkReport:
    executor = BatchExecutor(
        batch_size=batch_size, safety_cap=safety_cap, pacing=pacing, sleep=sleep
    )
    if not candidates:
        raise SelectionError("No items matched the selection criteria.")
    run = await executor.run(candidates, op, cancel=cancel)
    return aggregate(
        run.outcomes,
        safety_limit_applied=run.safety_limit_applied,
        unresolved=unresolved,
    )


async def run_bulk_operation(
    resolver: SelectionResolver,
    criteria: SelectionCriteria,
    op: ItemOperation,
    *,
    batch_size: int,
    safety_cap: int | None = None,
    pacing: float = 0.3,
    sleep: SleepFn = asyncio.sleep,
    cancel: asyncio.Event | None = None,
) -> BulkReport:
    """Resolve ``criteria``, run ``op`` over the candidates and report.

    Raises only when nothing can be processed at all: invalid configuration
    or a selection that resolves to zero candidates.
    """
    # Validate configuration before touching the API.
    BatchExecutor(batch_size=batch_size, safety_cap=safety_cap, pacing=pacing)
    resolution = await resolver.resolve(criteria)
    return await run_candidates(
        resolution.candidates,
        op,
        batch_size=batch_size,
        safety_cap=safety_cap,
        pacing=pacing,
        sleep=sleep,
        cancel=cancel,
        unresolved=resolution.unresolved,
    )


def _unique(*groups: Sequence[str] | None) -> list[str]:
    seen: dict[str, None] = {}
    for group in groups:
        for item in group or []:
            text = str(item).strip()
            if text:
                seen.setdefault(text, None)
    return list(seen)


def _choice(section: str, value: Any, allowed: Sequence[str]) -> str:
    op = str(value or "").strip().lower()
    if op not in allowed:
        raise ValueError(f"{section}.operation must be one of {', '.join(allowed)}.")
    return op


@dataclass(frozen=True)
class TextUpdate:
    operation: str
    value: str = ""
    search_value: str = ""


@dataclass(frozen=True)
class DueUpdate:
    operation: str
    value: str = ""
    days: int = 0


@dataclass(frozen=True)
class PositionUpdate:
    operation: str
    value: float | None = None


@dataclass(frozen=True)
class IdSetUpdate:
    operation: str
    ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class CardUpdate:
    name: TextUpdate | None = None
    description: TextUpdate | None = None
    due: DueUpdate | None = None
    position: PositionUpdate | None = None
    labels: IdSetUpdate | None = None
    members: IdSetUpdate | None = None
    archive: bool | None = None
    subscribe: bool | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> CardUpdate:
        data = data or {}
        known = {"name", "description", "desc", "due", "due_date", "duedate",
                 "position", "labels", "members", "archive", "subscribe"}
        unknown = [k for k in data if str(k).lower() not in known]
        if unknown:
            raise ValueError(f"Unknown update keys: {', '.join(map(str, unknown))}")
        data = {str(k).lower(): v for k, v in data.items()}

        name = None
        if data.get("name"):
            spec = data["name"]
            op = _choice("name", spec.get("operation"), ("set", "prefix", "suffix", "replace"))
            search = str(spec.get("search_value") or spec.get("searchValue") or "")
            if op == "replace" and not search:
                raise ValueError("name.replace requires search_value.")
            name = TextUpdate(op, str(spec.get("value") or ""), search)

        description = None
        desc_spec = data.get("description") or data.get("desc")
        if desc_spec:
            op = _choice("description", desc_spec.get("operation"), ("set", "append", "prepend", "clear"))
            description = TextUpdate(op, str(desc_spec.get("value") or ""))

        due = None
        due_spec = data.get("due") or data.get("due_date") or data.get("duedate")
        if due_spec:
            op = _choice("due", due_spec.get("operation"), ("set", "clear", "add_days", "subtract_days"))
            days = int(due_spec.get("days") or 0)
            if op in ("add_days", "subtract_days") and days <= 0:
                raise ValueError(f"due.{op} requires a positive days value.")
            due = DueUpdate(op, str(due_spec.get("value") or ""), days)

        position = None
        if data.get("position"):
            spec = data["position"]
            op = _choice("position", spec.get("operation"), ("top", "bottom", "set"))
            value = spec.get("value")
            if op == "set" and value is None:
                raise ValueError("position.set requires value.")
            position = PositionUpdate(op, float(value) if value is not None else None)

        id_sets: dict[str, IdSetUpdate | None] = {"labels": None, "members": None}
        for section, ids_key in (("labels", "label_ids"), ("members", "member_ids")):
            spec = data.get(section)
            if not spec:
                continue
            op = _choice(section, spec.get("operation"), ("add", "remove", "set", "clear"))
            camel = "labelIds" if section == "labels" else "memberIds"
            ids = tuple(_unique(spec.get(ids_key) or spec.get(camel)))
            if op in ("add", "remove") and not ids:
                raise ValueError(f"{section}.{op} requires {ids_key}.")
            id_sets[section] = IdSetUpdate(op, ids)

        update = cls(
            name=name,
            description=description,
            due=due,
            position=position,
            labels=id_sets["labels"],
            members=id_sets["members"],
            archive=None if data.get("archive") is None else bool(data["archive"]),
            subscribe=None if data.get("subscribe") is None else bool(data["subscribe"]),
        )
        if update == cls():
            raise ValueError("updates must contain at least one operation.")
        return update

    def operations(self) -> list[str]:
        return [
            name
            for name in ("name", "description", "due", "position", "labels", "members", "archive", "subscribe")
            if getattr(self, name) is not None
        ]

    def field_params(self, card: Mapping[str, Any]) -> dict[str, Any]:
        params: dict[str, Any] = {}
        current_name = str(card.get("name") or "")
        current_desc = str(card.get("desc") or "")

        if self.name is not None:
            op, value = self.name.operation, self.name.value
            if op == "set":
                params["name"] = value
            elif op == "prefix":
                params["name"] = value + current_name
            elif op == "suffix":
                params["name"] = current_name + value
            else:
                params["name"] = current_name.replace(self.name.search_value, value)

        if self.description is not None:
            op, value = self.description.operation, self.description.value
            if op == "set":
                params["desc"] = value
            elif op == "append":
                params["desc"] = current_desc + value
            elif op == "prepend":
                params["desc"] = value + current_desc
            else:
                params["desc"] = ""

        if self.due is not None:
            op = self.due.operation
            if op == "set":
                params["due"] = self.due.value or CLEAR
            elif op == "clear":
                params["due"] = CLEAR
            else:
                current = parse_trello_datetime(card.get("due"))
                if current is not None:
                    delta = timedelta(days=self.due.days)
                    shifted = current + delta if op == "add_days" else current - delta
                    params["due"] = shifted.astimezone(timezone.utc).strftime(
                        "%Y-%m-%dT%H:%M:%S.000Z"
                    )

        if self.position is not None:
            if self.position.operation == "set":
                params["pos"] = self.position.value
            else:
                params["pos"] = self.position.operation

        if self.archive is not None:
            params["closed"] = self.archive
        if self.subscribe is not None:
            params["subscribed"] = self.subscribe
        return params


class BulkOperations:
    def __init__(
        self,
        client: TrelloClient,
        settings: TrelloSettings,
        *,
        resolver: SelectionResolver | None = None,
        sleep: SleepFn = asyncio.sleep,
    ):
        self.client = client
        self.settings = settings
        self.resolver = resolver or SelectionResolver(client)
        self._sleep = sleep

    def _batch_size(self, batch_size: int | None) -> int:
        return int(batch_size) if batch_size else self.settings.batch_size

    async def _run(
        self,
        criteria: SelectionCriteria,
        op: ItemOperation,
        *,
        batch_size: int | None,
        safety_cap: int | None = None,
        cancel: asyncio.Event | None = None,
    ) -> BulkReport:
        return await run_bulk_operation(
            self.resolver,
            criteria,
            op,
            batch_size=self._batch_size(batch_size),
            safety_cap=safety_cap,
            pacing=self.settings.pacing,
            sleep=self._sleep,
            cancel=cancel,
        )

    async def bulk_create_cards(
        self,
        list_id: str,
        cards: Sequence[Mapping[str, Any]],
        *,
        defaults: Mapping[str, Any] | None = None,
        checklists: Sequence[Mapping[str, Any]] | None = None,
        batch_size: int | None = None,
        cancel: asyncio.Event | None = None,
    ) -> BulkReport:
        if not str(list_id or "").strip():
            raise ValueError("list_id is required.")
        for position, spec in enumerate(cards or []):
            if not str(spec.get("name") or "").strip():
                raise ValueError(f"cards[{position}].name is required.")
        defaults = defaults or {}
        templates = [t for t in checklists or [] if str(t.get("name") or "").strip()]

        async def create(candidate: Candidate) -> dict[str, Any]:
            spec = candidate.entity
            params: dict[str, Any] = {
                "idList": list_id,
                "name": spec.get("name"),
                "desc": spec.get("description") or defaults.get("description"),
                "due": spec.get("due_date") or spec.get("dueDate") or defaults.get("due_date") or defaults.get("dueDate"),
                "pos": spec.get("position"),
            }
            label_ids = _unique(
                spec.get("label_ids") or spec.get("labelIds"),
                defaults.get("label_ids") or defaults.get("labelIds"),
            )
            if label_ids:
                params["idLabels"] = label_ids
            member_ids = _unique(
                spec.get("member_ids") or spec.get("memberIds"),
                defaults.get("member_ids") or defaults.get("memberIds"),
            )
            if member_ids:
                params["idMembers"] = member_ids

            card = await self.client.create_card(params)
            card_id = str(card.get("id") or "")
            for template in templates:
                checklist = await self.client.create_checklist(card_id, str(template["name"]))
                for item in template.get("items") or []:
                    await self.client.add_check_item(str(checklist.get("id") or ""), str(item))
            return card

        candidates = [Candidate(i, dict(spec)) for i, spec in enumerate(cards or [])]
        return await run_candidates(
            candidates,
            create,
            batch_size=self._batch_size(batch_size),
            pacing=self.settings.pacing,
            sleep=self._sleep,
            cancel=cancel,
        )

    async def bulk_move_cards(
        self,
        selection: SelectionCriteria,
        target_list_id: str,
        *,
        positioning: Mapping[str, Any] | None = None,
        batch_size: int | None = None,
        max_items: int | None = None,
        cancel: asyncio.Event | None = None,
    ) -> BulkReport:
        if not str(target_list_id or "").strip():
            raise ValueError("target_list_id is required.")
        positioning = positioning or {}
        strategy = _choice(
            "positioning", positioning.get("strategy") or "bottom", ("top", "bottom", "preserve_order")
        )
        start = positioning.get("start_position", positioning.get("startPosition"))

        async def move(candidate: Candidate) -> dict[str, Any]:
            pos: str | float | None = strategy
            if strategy == "preserve_order":
                pos = float(start) + candidate.index if start is not None else None
            return await self.client.move_card(candidate.id, target_list_id, pos=pos)

        return await self._run(
            selection, move, batch_size=batch_size, safety_cap=max_items, cancel=cancel
        )

    async def bulk_update_cards(
        self,
        selection: SelectionCriteria,
        updates: Mapping[str, Any] | CardUpdate,
        *,
        batch_size: int | None = None,
        max_items: int | None = None,
        cancel: asyncio.Event | None = None,
    ) -> BulkReport:
        update = updates if isinstance(updates, CardUpdate) else CardUpdate.from_dict(updates)

        async def apply(candidate: Candidate) -> Any:
            card = candidate.entity
            result: Any = dict(card)
            params = update.field_params(card)
            if params:
                result = await self.client.update_card(candidate.id, params)
            if update.labels is not None:
                await self._apply_id_set(
                    candidate.id,
                    update.labels,
                    current=card.get("idLabels") or [],
                    add=self.client.add_label_to_card,
                    remove=self.client.remove_label_from_card,
                )
            if update.members is not None:
                await self._apply_id_set(
                    candidate.id,
                    update.members,
                    current=card.get("idMembers") or [],
                    add=self.client.add_member_to_card,
                    remove=self.client.remove_member_from_card,
                )
            return result

        return await self._run(
            selection, apply, batch_size=batch_size, safety_cap=max_items, cancel=cancel
        )

    @staticmethod
    async def _apply_id_set(card_id, update: IdSetUpdate, *, current, add, remove) -> None:
        current_ids = _unique(current)
        wanted = list(update.ids)
        if update.operation == "add":
            to_add, to_remove = [i for i in wanted if i not in current_ids], []
        elif update.operation == "remove":
            to_add, to_remove = [], [i for i in wanted if i in current_ids]
        elif update.operation == "clear":
            to_add, to_remove = [], current_ids
        else:
            to_add = [i for i in wanted if i not in current_ids]
            to_remove = [i for i in current_ids if i not in wanted]
        for item_id in to_remove:
            await remove(card_id, item_id)
        for item_id in to_add:
            await add(card_id, item_id)

    async def bulk_archive(
        self,
        selection: SelectionCriteria,
        *,
        max_items: int | None = None,
        batch_size: int | None = None,
        cancel: asyncio.Event | None = None,
    ) -> BulkReport:
        cap = int(max_items) if max_items else self.settings.safety_cap
        archive = (
            self.client.archive_list
            if selection.entity is EntityKind.LIST
            else self.client.archive_card
        )

        async def run_one(candidate: Candidate) -> dict[str, Any]:
            return await archive(candidate.id)

        report = await self._run(
            selection, run_one, batch_size=batch_size, safety_cap=cap, cancel=cancel
        )
        if report.requested > ARCHIVE_CONFIRM_THRESHOLD:
            logger.warning(
                "Archived %d of %d %ss in one call",
                report.succeeded,
                report.requested,
                selection.entity.value,
            )
        return report
