"""Turn a selection request into an ordered list of bulk-operation candidates.

A selection is either an explicit list of ids or a container (board or list)
plus predicates. Predicates are a closed set of frozen dataclasses evaluated
by :func:`matches`; unknown filter keys are rejected up front instead of being
silently ignored.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Union

from .errors import SelectionError, TrelloApiError

if TYPE_CHECKING:
    from .client import TrelloClient

logger = logging.getLogger(__name__)


class DueBucket(enum.Enum):
    OVERDUE = "overdue"
    DUE_TODAY = "due_today"
    DUE_WEEK = "due_week"
    NONE = "no_due_date"


@dataclass(frozen=True)
class NameContains:
    text: str


@dataclass(frozen=True)
class HasLabel:
    label: str


@dataclass(frozen=True)
class HasMember:
    member: str


@dataclass(frozen=True)
class DueDate:
    bucket: DueBucket


@dataclass(frozen=True)
class MaxAgeDays:
    days: float


@dataclass(frozen=True)
class MinIdleDays:
    days: float


@dataclass(frozen=True)
class Archived:
    flag: bool


@dataclass(frozen=True)
class WithoutMembers:
    pass


@dataclass(frozen=True)
class InListNamed:
    text: str


@dataclass(frozen=True)
class DuePassed:
    pass


@dataclass(frozen=True)
class CompletedBefore:
    moment: datetime


Predicate = Union[
    NameContains,
    HasLabel,
    HasMember,
    DueDate,
    MaxAgeDays,
    MinIdleDays,
    Archived,
    WithoutMembers,
    InListNamed,
    DuePassed,
    CompletedBefore,
]

_DUE_ALIASES = {
    "overdue": DueBucket.OVERDUE,
    "due_today": DueBucket.DUE_TODAY,
    "today": DueBucket.DUE_TODAY,
    "due_week": DueBucket.DUE_WEEK,
    "week": DueBucket.DUE_WEEK,
    "no_due_date": DueBucket.NONE,
    "none": DueBucket.NONE,
}

_FILTER_KEYS = {
    "name_contains": "name_contains",
    "namecontains": "name_contains",
    "has_label": "has_label",
    "haslabel": "has_label",
    "has_member": "has_member",
    "assigned_to_member": "has_member",
    "assignedtomember": "has_member",
    "due": "due",
    "due_date_status": "due",
    "duedatestatus": "due",
    "max_age_days": "max_age_days",
    "max_age": "max_age_days",
    "maxage": "max_age_days",
    "min_idle_days": "min_idle_days",
    "older_than_days": "min_idle_days",
    "olderthandays": "min_idle_days",
    "without_activity": "min_idle_days",
    "withoutactivity": "min_idle_days",
    "archived": "archived",
    "is_archived": "archived",
    "isarchived": "archived",
    "without_members": "without_members",
    "withoutmembers": "without_members",
    "in_list_named": "in_list_named",
    "inlistnamed": "in_list_named",
    "due_passed": "due_passed",
    "duepassed": "due_passed",
    "completed_before": "completed_before",
    "completedbefore": "completed_before",
}


def _normalize_key(key: str) -> str:
    return str(key or "").strip().replace("-", "_").lower()


def _flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _days(key: str, value: Any) -> float:
    try:
        days = float(value)
    except (TypeError, ValueError) as exc:
        raise SelectionError(f"Filter {key} expects a number of days, got {value!r}") from exc
    if days < 0:
        raise SelectionError(f"Filter {key} must not be negative.")
    return days


def _text(key: str, value: Any) -> str:
    text = str(value or "").strip()
    if not text:
        raise SelectionError(f"Filter {key} must not be empty.")
    return text


def parse_predicates(filters: Mapping[str, Any] | None) -> tuple[Predicate, ...]:
    """Build predicates from a filter mapping, rejecting unknown keys."""
    predicates: list[Predicate] = []
    for raw_key, value in (filters or {}).items():
        key = _FILTER_KEYS.get(_normalize_key(raw_key))
        if key is None:
            raise SelectionError(f"Unknown filter: {raw_key}")
        if value is None:
            continue
        if key == "name_contains":
            predicates.append(NameContains(_text(raw_key, value)))
        elif key == "has_label":
            predicates.append(HasLabel(_text(raw_key, value)))
        elif key == "has_member":
            predicates.append(HasMember(_text(raw_key, value)))
        elif key == "due":
            bucket = _DUE_ALIASES.get(_normalize_key(value))
            if bucket is None:
                raise SelectionError(
                    f"Unknown due date status: {value}. Use overdue, due_today, due_week or no_due_date."
                )
            predicates.append(DueDate(bucket))
        elif key == "max_age_days":
            predicates.append(MaxAgeDays(_days(raw_key, value)))
        elif key == "min_idle_days":
            predicates.append(MinIdleDays(_days(raw_key, value)))
        elif key == "archived":
            predicates.append(Archived(_flag(value)))
        elif key == "without_members":
            if _flag(value):
                predicates.append(WithoutMembers())
        elif key == "in_list_named":
            predicates.append(InListNamed(_text(raw_key, value)))
        elif key == "due_passed":
            if _flag(value):
                predicates.append(DuePassed())
        elif key == "completed_before":
            moment = parse_trello_datetime(value)
            if moment is None:
                raise SelectionError(f"Filter {raw_key} expects an ISO date, got {value!r}")
            predicates.append(CompletedBefore(moment))
    return tuple(predicates)


def parse_trello_datetime(value: Any) -> datetime | None:
    if not value:
        return None
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _fold_all(values: Iterable[Any]) -> frozenset[str]:
    return frozenset(str(v).strip().casefold() for v in values if v)


@dataclass(frozen=True)
class EntitySnapshot:
    """Normalized view of a card or list used for predicate evaluation."""

    id: str
    name: str
    labels: frozenset[str] = frozenset()
    members: frozenset[str] = frozenset()
    due: datetime | None = None
    last_activity: datetime | None = None
    closed: bool = False
    list_name: str = ""

    @classmethod
    def from_entity(
        cls, entity: Mapping[str, Any], *, list_names: Mapping[str, str] | None = None
    ) -> EntitySnapshot:
        labels: list[Any] = []
        for label in entity.get("labels") or []:
            if isinstance(label, Mapping):
                labels.extend([label.get("id"), label.get("name")])
        labels.extend(entity.get("idLabels") or [])

        members: list[Any] = list(entity.get("idMembers") or [])
        for member in entity.get("members") or []:
            if isinstance(member, Mapping):
                members.extend(
                    [member.get("id"), member.get("username"), member.get("fullName")]
                )

        list_name = ""
        if list_names:
            list_name = list_names.get(str(entity.get("idList") or ""), "")

        return cls(
            id=str(entity.get("id") or ""),
            name=str(entity.get("name") or "").casefold(),
            labels=_fold_all(labels),
            members=_fold_all(members),
            due=parse_trello_datetime(entity.get("due")),
            last_activity=parse_trello_datetime(entity.get("dateLastActivity")),
            closed=bool(entity.get("closed")),
            list_name=list_name.casefold(),
        )


def _due_bucket_matches(bucket: DueBucket, due: datetime | None, now: datetime) -> bool:
    if due is None:
        return bucket is DueBucket.NONE
    if bucket is DueBucket.NONE:
        return False
    today = now.date()
    due_day: date = due.astimezone(now.tzinfo).date() if now.tzinfo else due.date()
    if bucket is DueBucket.OVERDUE:
        return due_day < today
    if bucket is DueBucket.DUE_TODAY:
        return due_day == today
    return today <= due_day < today + timedelta(days=7)


def _idle_days(snapshot: EntitySnapshot, now: datetime) -> float | None:
    if snapshot.last_activity is None:
        return None
    return (now - snapshot.last_activity).total_seconds() / 86400


def matches(predicate: Predicate, snapshot: EntitySnapshot, now: datetime) -> bool:
    if isinstance(predicate, NameContains):
        return predicate.text.casefold() in snapshot.name
    if isinstance(predicate, HasLabel):
        return predicate.label.strip().casefold() in snapshot.labels
    if isinstance(predicate, HasMember):
        return predicate.member.strip().casefold() in snapshot.members
    if isinstance(predicate, DueDate):
        return _due_bucket_matches(predicate.bucket, snapshot.due, now)
    if isinstance(predicate, MaxAgeDays):
        idle = _idle_days(snapshot, now)
        return idle is not None and idle <= predicate.days
    if isinstance(predicate, MinIdleDays):
        idle = _idle_days(snapshot, now)
        return idle is not None and idle >= predicate.days
    if isinstance(predicate, Archived):
        return snapshot.closed is predicate.flag
    if isinstance(predicate, WithoutMembers):
        return not snapshot.members
    if isinstance(predicate, InListNamed):
        return predicate.text.casefold() in snapshot.list_name
    if isinstance(predicate, DuePassed):
        return snapshot.due is None or snapshot.due < now
    if isinstance(predicate, CompletedBefore):
        return snapshot.due is not None and snapshot.due <= predicate.moment
    raise TypeError(f"Unsupported predicate: {predicate!r}")


def matches_all(
    predicates: Sequence[Predicate], snapshot: EntitySnapshot, now: datetime
) -> bool:
    return all(matches(predicate, snapshot, now) for predicate in predicates)


class EntityKind(enum.Enum):
    CARD = "card"
    LIST = "list"


@dataclass(frozen=True)
class Container:
    kind: str
    id: str

    def __post_init__(self) -> None:
        if self.kind not in ("board", "list"):
            raise SelectionError(f"Unsupported container kind: {self.kind}")


@dataclass(frozen=True)
class SelectionCriteria:
    explicit_ids: tuple[str, ...] | None = None
    container: Container | None = None
    predicates: tuple[Predicate, ...] = ()
    entity: EntityKind = EntityKind.CARD

    @classmethod
    def from_dict(
        cls, data: Mapping[str, Any] | None, *, entity: str = "card"
    ) -> SelectionCriteria:
        """Build criteria from tool input.

        Accepts ``card_ids``/``ids``, ``from_list_id``, ``from_board_id`` and
        ``filters`` (or ``criteria``), in snake_case or camelCase.
        """
        data = {_normalize_key(k).replace("_", ""): v for k, v in (data or {}).items()}
        try:
            kind = EntityKind(str(entity or "card").strip().lower())
        except ValueError as exc:
            raise SelectionError(f"Unsupported resource: {entity}") from exc

        raw_ids = data.get("cardids") or data.get("listids") or data.get("ids")
        explicit: tuple[str, ...] | None = None
        if raw_ids:
            if isinstance(raw_ids, str):
                raw_ids = raw_ids.split(",")
            ids = (str(i).strip() for i in raw_ids)
            explicit = tuple(dict.fromkeys(i for i in ids if i))

        container = None
        if data.get("fromlistid"):
            container = Container("list", str(data["fromlistid"]).strip())
        elif data.get("fromboardid"):
            container = Container("board", str(data["fromboardid"]).strip())

        filters = data.get("filters") or data.get("criteria") or {}
        if not isinstance(filters, Mapping):
            raise SelectionError("filters must be an object.")
        return cls(
            explicit_ids=explicit,
            container=container,
            predicates=parse_predicates(filters),
            entity=kind,
        )

    def wants_archived(self) -> bool:
        return any(isinstance(p, Archived) and p.flag for p in self.predicates)


@dataclass(frozen=True)
class Candidate:
    index: int
    entity: Mapping[str, Any]

    @property
    def id(self) -> str:
        return str(self.entity.get("id") or "")

    @property
    def name(self) -> str:
        return str(self.entity.get("name") or "")


@dataclass(frozen=True)
class Resolution:
    candidates: tuple[Candidate, ...]
    unresolved: tuple[tuple[str, TrelloApiError], ...] = field(default=())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SelectionResolver:
    def __init__(self, client: TrelloClient, *, now: Callable[[], datetime] = _utcnow):
        self.client = client
        self._now = now

    async def resolve(self, criteria: SelectionCriteria) -> Resolution:
        if criteria.explicit_ids:
            return await self._resolve_explicit(criteria)
        if criteria.container is None:
            raise SelectionError(
                "Either explicit ids, from_list_id or from_board_id must be provided."
            )
        entities, list_names = await self._load_container(
            criteria, criteria.container
        )
        now = self._now()
        selected = [
            entity
            for entity in entities
            if matches_all(
                criteria.predicates,
                EntitySnapshot.from_entity(entity, list_names=list_names),
                now,
            )
        ]
        logger.info(
            "Selected %d of %d %ss from %s %s",
            len(selected),
            len(entities),
            criteria.entity.value,
            criteria.container.kind,
            criteria.container.id,
        )
        return Resolution(
            candidates=tuple(Candidate(i, e) for i, e in enumerate(selected))
        )

    async def _resolve_explicit(self, criteria: SelectionCriteria) -> Resolution:
        ids = tuple(dict.fromkeys(criteria.explicit_ids or ()))
        fetch = (
            self.client.get_card
            if criteria.entity is EntityKind.CARD
            else self.client.get_list
        )

        async def fetch_one(entity_id: str) -> dict[str, Any] | TrelloApiError:
            try:
                return await fetch(entity_id)
            except TrelloApiError as exc:
                return exc

        results = await asyncio.gather(*(fetch_one(i) for i in ids))
        entities: list[Mapping[str, Any]] = []
        unresolved: list[tuple[str, TrelloApiError]] = []
        for entity_id, result in zip(ids, results):
            if isinstance(result, TrelloApiError):
                logger.warning("Could not resolve %s %s: %s", criteria.entity.value, entity_id, result)
                unresolved.append((entity_id, result))
            else:
                entities.append(result)
        if not entities:
            raise SelectionError(
                f"None of the {len(ids)} requested {criteria.entity.value}s could be loaded."
            )
        return Resolution(
            candidates=tuple(Candidate(i, e) for i, e in enumerate(entities)),
            unresolved=tuple(unresolved),
        )

    async def _load_container(
        self, criteria: SelectionCriteria, container: Container
    ) -> tuple[list[dict[str, Any]], dict[str, str] | None]:
        state_filter = "all" if criteria.wants_archived() else None
        needs_list_names = any(isinstance(p, InListNamed) for p in criteria.predicates)
        if criteria.entity is EntityKind.LIST and container.kind != "board":
            raise SelectionError("Lists can only be selected from a board.")
        try:
            if criteria.entity is EntityKind.LIST:
                lists = await self.client.get_board_lists(
                    container.id, list_filter=state_filter or "open"
                )
                return lists, None

            if container.kind == "list":
                cards = await self.client.get_list_cards(
                    container.id, card_filter=state_filter or "open"
                )
                list_names = None
                if needs_list_names:
                    list_item = await self.client.get_list(container.id)
                    list_names = {container.id: str(list_item.get("name") or "")}
                return cards, list_names

            cards = await self.client.get_board_cards(
                container.id, card_filter=state_filter or "visible"
            )
            list_names = None
            if needs_list_names:
                lists = await self.client.get_board_lists(container.id, list_filter="all")
                list_names = {str(x.get("id")): str(x.get("name") or "") for x in lists}
            return cards, list_names
        except TrelloApiError as exc:
            raise SelectionError(
                f"Could not load {container.kind} {container.id}: {exc}"
            ) from exc
