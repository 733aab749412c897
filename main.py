import json
from typing import Any

from astrbot.api import logger
from astrbot.api.event import AstrMessageEvent, filter
from astrbot.api.star import Context, Star, register

from .trello_bulk import (
    BulkOperations,
    BulkReport,
    ExecutionState,
    RequestEvent,
    SelectionCriteria,
    SelectionError,
    TrelloApiError,
    TrelloAuthError,
    TrelloClient,
    TrelloSettings,
)


@register(
    "astrbot_plugin_trello_bulk",
    "Potatoworkshop",
    "Bulk create, move, update and archive Trello cards with retrying, batched API calls.",
    "0.3.0",
)
class TrelloPlugin(Star):
    def __init__(self, context: Context, config: dict | None = None):
        super().__init__(context, config)
        self.context = context
        self.config = config or {}
        self.settings = TrelloSettings.from_config(self.config)
        self.client = TrelloClient(
            api_key=self.settings.api_key,
            token=self.settings.token,
            timeout=self.settings.request_timeout,
            policy=self.settings.retry_policy(),
            on_event=self._log_request_event,
        )
        self.bulk = BulkOperations(self.client, self.settings)

    async def terminate(self):
        await self.client.close()

    def _log_request_event(self, event: RequestEvent) -> None:
        if event.state is ExecutionState.DONE:
            if self.settings.verbose_logging:
                logger.info(
                    f"[trello] {event.method} {event.path} -> {event.status} "
                    f"(attempt {event.attempt}, {event.latency * 1000:.0f}ms)"
                )
            return
        if event.state is ExecutionState.WAITING:
            logger.warning(
                f"[trello] {event.method} {event.path} attempt {event.attempt} failed "
                f"({event.error}); retrying in {event.delay:.1f}s"
            )
            return
        logger.warning(
            f"[trello] {event.method} {event.path} {event.state.value} "
            f"after {event.attempt} attempt(s): {event.error}"
        )

    def _ensure_credentials(self) -> str | None:
        if not self.settings.has_credentials:
            return "Trello credentials are not configured. Set trello_api_key and trello_token in plugin config."
        return None

    @staticmethod
    def _render(tool: str, report: BulkReport, **extra: Any) -> str:
        payload = report.to_dict()
        payload["summary"].update(extra)
        logger.info(
            f"[{tool}] {report.succeeded} succeeded, {report.failed} failed "
            f"of {report.requested}"
        )
        return json.dumps(payload, ensure_ascii=False, indent=2)

    @staticmethod
    def _optional_int(value: Any) -> int | None:
        if value in (None, "", 0):
            return None
        return int(value)

    async def _guarded(self, tool: str, coro) -> str:
        try:
            return await coro
        except TrelloAuthError:
            return "Trello authentication failed. Check key/token."
        except SelectionError as exc:
            return f"{tool} selection error: {exc}"
        except TrelloApiError as exc:
            return f"Trello error: {exc}"
        except Exception as exc:
            logger.error(f"[{tool}] {exc}")
            return f"{tool} input error: {exc}"

    @filter.command_group("trello")
    def trello(self):
        """Trello integration commands."""

    @trello.command("help")
    async def help(self, event: AstrMessageEvent):
        """Show Trello bulk tool help."""
        lines = [
            "Trello bulk tools (LLM):",
            "trello_bulk_create: list_id, cards[{name, description, due_date, label_ids, member_ids}]",
            "trello_bulk_move: target_list_id, selection{card_ids | from_list_id | from_board_id, filters}",
            "trello_bulk_update: selection, updates{name, description, due, position, labels, members, archive}",
            "trello_bulk_archive: selection, resource(card|list), max_items",
            "filters: name_contains, has_label, has_member, due(overdue|due_today|due_week|no_due_date),",
            "max_age_days, min_idle_days, archived, without_members, in_list_named, due_passed, completed_before",
            f"batch_size={self.settings.batch_size} safety_cap={self.settings.safety_cap} "
            f"retries={self.settings.retry_max_attempts}",
        ]
        yield event.plain_result("\n".join(lines))

    @filter.llm_tool("trello_bulk_create")
    async def trello_bulk_create_tool(
        self,
        event: AstrMessageEvent,
        list_id: str,
        cards: list | None = None,
        defaults: dict | None = None,
        checklists: list | None = None,
        batch_size: int = 0,
    ) -> str:
        """Create many Trello cards in one list, in batches.

        Args:
            list_id(string): Target list id.
            cards(array[object]): Cards to create. Keys: name, description, due_date, position, label_ids, member_ids.
            defaults(object): Optional defaults applied to every card. Keys: description, due_date, label_ids, member_ids.
            checklists(array[object]): Optional checklists added to every card. Keys: name, items.
            batch_size(number): Cards per batch. 0 uses the configured default.
        """
        cred_err = self._ensure_credentials()
        if cred_err:
            return cred_err

        async def run() -> str:
            report = await self.bulk.bulk_create_cards(
                list_id,
                cards or [],
                defaults=defaults,
                checklists=checklists,
                batch_size=self._optional_int(batch_size),
            )
            return self._render("trello_bulk_create", report, listId=list_id)

        return await self._guarded("trello_bulk_create", run())

    @filter.llm_tool("trello_bulk_move")
    async def trello_bulk_move_tool(
        self,
        event: AstrMessageEvent,
        target_list_id: str,
        selection: dict | None = None,
        positioning: dict | None = None,
        batch_size: int = 0,
        max_items: int = 0,
    ) -> str:
        """Move cards selected by ids or filters to another list.

        Args:
            target_list_id(string): Destination list id.
            selection(object): Card selection. Keys: card_ids, from_list_id, from_board_id, filters.
            positioning(object): Optional. Keys: strategy (top, bottom, preserve_order), start_position.
            batch_size(number): Cards per batch. 0 uses the configured default.
            max_items(number): Optional cap on how many cards are moved. 0 means no cap.
        """
        cred_err = self._ensure_credentials()
        if cred_err:
            return cred_err

        async def run() -> str:
            report = await self.bulk.bulk_move_cards(
                SelectionCriteria.from_dict(selection),
                target_list_id,
                positioning=positioning,
                batch_size=self._optional_int(batch_size),
                max_items=self._optional_int(max_items),
            )
            return self._render("trello_bulk_move", report, targetListId=target_list_id)

        return await self._guarded("trello_bulk_move", run())

    @filter.llm_tool("trello_bulk_update")
    async def trello_bulk_update_tool(
        self,
        event: AstrMessageEvent,
        selection: dict | None = None,
        updates: dict | None = None,
        batch_size: int = 0,
        max_items: int = 0,
    ) -> str:
        """Apply the same update to many cards selected by ids or filters.

        Args:
            selection(object): Card selection. Keys: card_ids, from_list_id, from_board_id, filters.
            updates(object): Update operations. Keys: name{operation: set|prefix|suffix|replace, value, search_value}, description{operation: set|append|prepend|clear, value}, due{operation: set|clear|add_days|subtract_days, value, days}, position{operation: top|bottom|set, value}, labels{operation: add|remove|set|clear, label_ids}, members{operation, member_ids}, archive, subscribe.
            batch_size(number): Cards per batch. 0 uses the configured default.
            max_items(number): Optional cap on how many cards are updated. 0 means no cap.
        """
        cred_err = self._ensure_credentials()
        if cred_err:
            return cred_err

        async def run() -> str:
            report = await self.bulk.bulk_update_cards(
                SelectionCriteria.from_dict(selection),
                updates or {},
                batch_size=self._optional_int(batch_size),
                max_items=self._optional_int(max_items),
            )
            return self._render(
                "trello_bulk_update", report, operations=sorted((updates or {}).keys())
            )

        return await self._guarded("trello_bulk_update", run())

    @filter.llm_tool("trello_bulk_archive")
    async def trello_bulk_archive_tool(
        self,
        event: AstrMessageEvent,
        selection: dict | None = None,
        resource: str = "card",
        max_items: int = 0,
        batch_size: int = 0,
    ) -> str:
        """Archive many cards (or lists of a board) selected by ids or filters.

        Args:
            selection(object): Selection. Keys: card_ids or list_ids, from_list_id, from_board_id, filters (name_contains, has_label, min_idle_days, due, without_members, in_list_named, due_passed, completed_before, ...).
            resource(string): What to archive. One of card, list.
            max_items(number): Safety cap on archived items. 0 uses the configured cap.
            batch_size(number): Items per batch. 0 uses the configured default.
        """
        cred_err = self._ensure_credentials()
        if cred_err:
            return cred_err

        async def run() -> str:
            criteria = SelectionCriteria.from_dict(selection, entity=resource)
            report = await self.bulk.bulk_archive(
                criteria,
                max_items=self._optional_int(max_items),
                batch_size=self._optional_int(batch_size),
            )
            return self._render(
                "trello_bulk_archive", report, resource=criteria.entity.value
            )

        return await self._guarded("trello_bulk_archive", run())
