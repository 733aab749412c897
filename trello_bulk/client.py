from __future__ import annotations

from typing import Any

from .errors import TrelloApiError
from .executor import EventHook, RequestDescriptor, RequestExecutor, RetryPolicy, SleepFn

CARD_FIELDS = "id,name,desc,url,shortUrl,idBoard,idList,closed,due,dueComplete,dateLastActivity,labels,idLabels,idMembers,pos"
LIST_FIELDS = "id,name,closed,idBoard,pos"


class TrelloClient:
    def __init__(
        self,
        *,
        api_key: str,
        token: str,
        base_url: str = "https://api.trello.com/1",
        timeout: float = 20,
        policy: RetryPolicy | None = None,
        on_event: EventHook | None = None,
        sleep: SleepFn | None = None,
    ):
        kwargs: dict[str, Any] = {}
        if sleep is not None:
            kwargs["sleep"] = sleep
        self.executor = RequestExecutor(
            api_key=api_key,
            token=token,
            base_url=base_url,
            timeout=timeout,
            policy=policy,
            on_event=on_event,
            **kwargs,
        )

    async def close(self) -> None:
        await self.executor.close()

    @staticmethod
    def _ensure_dict(data: Any, endpoint: str) -> dict[str, Any]:
        if not isinstance(data, dict):
            raise TrelloApiError(
                f"Unexpected response type for {endpoint}: {type(data).__name__}"
            )
        return data

    @staticmethod
    def _ensure_list_of_dict(data: Any, endpoint: str) -> list[dict[str, Any]]:
        if not isinstance(data, list):
            raise TrelloApiError(
                f"Unexpected response type for {endpoint}: {type(data).__name__}"
            )
        if not all(isinstance(item, dict) for item in data):
            raise TrelloApiError(
                f"Unexpected item type in response for {endpoint}: list contains non-object entries."
            )
        return data

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        policy: RetryPolicy | None = None,
    ) -> Any:
        descriptor = RequestDescriptor(method, path, params=params or {})
        return await self.executor.execute(descriptor, policy)

    async def get_card(self, card_id: str) -> dict[str, Any]:
        data = await self._request(
            "GET",
            f"/cards/{card_id}",
            params={
                "fields": CARD_FIELDS,
                "members": "true",
                "member_fields": "fullName,username",
            },
        )
        return self._ensure_dict(data, f"/cards/{card_id}")

    async def get_list(self, list_id: str) -> dict[str, Any]:
        data = await self._request(
            "GET", f"/lists/{list_id}", params={"fields": LIST_FIELDS}
        )
        return self._ensure_dict(data, f"/lists/{list_id}")

    async def get_list_cards(
        self, list_id: str, *, card_filter: str = "open"
    ) -> list[dict[str, Any]]:
        data = await self._request(
            "GET",
            f"/lists/{list_id}/cards/{card_filter}",
            params={
                "fields": CARD_FIELDS,
                "members": "true",
                "member_fields": "fullName,username",
            },
        )
        return self._ensure_list_of_dict(data, f"/lists/{list_id}/cards")

    async def get_board_cards(
        self, board_id: str, *, card_filter: str = "visible"
    ) -> list[dict[str, Any]]:
        data = await self._request(
            "GET",
            f"/boards/{board_id}/cards/{card_filter}",
            params={
                "fields": CARD_FIELDS,
                "members": "true",
                "member_fields": "fullName,username",
            },
        )
        return self._ensure_list_of_dict(data, f"/boards/{board_id}/cards")

    async def get_board_lists(
        self, board_id: str, *, list_filter: str = "open"
    ) -> list[dict[str, Any]]:
        data = await self._request(
            "GET",
            f"/boards/{board_id}/lists",
            params={"fields": LIST_FIELDS, "filter": list_filter},
        )
        return self._ensure_list_of_dict(data, f"/boards/{board_id}/lists")

    async def create_card(self, params: dict[str, Any]) -> dict[str, Any]:
        return await self._request("POST", "/cards", params=params)

    async def update_card(self, card_id: str, params: dict[str, Any]) -> dict[str, Any]:
        return await self._request("PUT", f"/cards/{card_id}", params=params)

    async def move_card(
        self, card_id: str, list_id: str, *, pos: str | float | None = None
    ) -> dict[str, Any]:
        return await self.update_card(card_id, {"idList": list_id, "pos": pos})

    async def archive_card(self, card_id: str) -> dict[str, Any]:
        return await self.update_card(card_id, {"closed": True})

    async def archive_list(self, list_id: str) -> dict[str, Any]:
        return await self._request(
            "PUT", f"/lists/{list_id}/closed", params={"value": True}
        )

    async def add_label_to_card(self, card_id: str, label_id: str) -> Any:
        return await self._request(
            "POST", f"/cards/{card_id}/idLabels", params={"value": label_id}
        )

    async def remove_label_from_card(self, card_id: str, label_id: str) -> Any:
        return await self._request("DELETE", f"/cards/{card_id}/idLabels/{label_id}")

    async def add_member_to_card(self, card_id: str, member_id: str) -> Any:
        return await self._request(
            "POST", f"/cards/{card_id}/idMembers", params={"value": member_id}
        )

    async def remove_member_from_card(self, card_id: str, member_id: str) -> Any:
        return await self._request("DELETE", f"/cards/{card_id}/idMembers/{member_id}")

    async def create_checklist(self, card_id: str, name: str) -> dict[str, Any]:
        return await self._request(
            "POST", "/checklists", params={"idCard": card_id, "name": name}
        )

    async def add_check_item(self, checklist_id: str, name: str) -> dict[str, Any]:
        return await self._request(
            "POST",
            f"/checklists/{checklist_id}/checkItems",
            params={"name": name, "pos": "bottom"},
        )
