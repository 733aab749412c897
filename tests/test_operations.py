import unittest

from fakes import RecordingSleep
from trello_bulk.errors import ClientFailure, SelectionError
from trello_bulk.operations import BulkOperations, CardUpdate
from trello_bulk.selection import Container, EntityKind, SelectionCriteria
from trello_bulk.settings import TrelloSettings


class FakeTrello:
    def __init__(self, cards=(), lists=(), fail_ids=()):
        self.cards = {c["id"]: dict(c) for c in cards}
        self.lists = list(lists)
        self.fail_ids = set(fail_ids)
        self.calls = []
        self._created = 0

    def _maybe_fail(self, entity_id):
        if entity_id in self.fail_ids:
            raise ClientFailure("HTTP 404: not found", status=404)

    async def get_card(self, card_id):
        self._maybe_fail(card_id)
        return self.cards[card_id]

    async def get_list_cards(self, list_id, *, card_filter="open"):
        return [c for c in self.cards.values() if c.get("idList") == list_id]

    async def get_board_cards(self, board_id, *, card_filter="visible"):
        return list(self.cards.values())

    async def get_board_lists(self, board_id, *, list_filter="open"):
        return list(self.lists)

    async def create_card(self, params):
        self._created += 1
        self.calls.append(("create_card", params))
        self._maybe_fail(params.get("name"))
        return {"id": f"new{self._created}", "name": params["name"], "idList": params["idList"]}

    async def update_card(self, card_id, params):
        self.calls.append(("update_card", card_id, params))
        self._maybe_fail(card_id)
        return {**self.cards.get(card_id, {"id": card_id}), **params}

    async def move_card(self, card_id, list_id, *, pos=None):
        self.calls.append(("move_card", card_id, list_id, pos))
        self._maybe_fail(card_id)
        return {"id": card_id, "idList": list_id}

    async def archive_card(self, card_id):
        self.calls.append(("archive_card", card_id))
        self._maybe_fail(card_id)
        return {"id": card_id, "closed": True}

    async def archive_list(self, list_id):
        self.calls.append(("archive_list", list_id))
        return {"id": list_id, "closed": True}

    async def add_label_to_card(self, card_id, label_id):
        self.calls.append(("add_label", card_id, label_id))

    async def remove_label_from_card(self, card_id, label_id):
        self.calls.append(("remove_label", card_id, label_id))

    async def add_member_to_card(self, card_id, member_id):
        self.calls.append(("add_member", card_id, member_id))

    async def remove_member_from_card(self, card_id, member_id):
        self.calls.append(("remove_member", card_id, member_id))

    async def create_checklist(self, card_id, name):
        self.calls.append(("create_checklist", card_id, name))
        return {"id": f"cl-{card_id}"}

    async def add_check_item(self, checklist_id, name):
        self.calls.append(("add_check_item", checklist_id, name))
        return {"id": "item"}

    def named(self, name):
        return [c for c in self.calls if c[0] == name]


def card(card_id, **extra):
    data = {"id": card_id, "name": f"Card {card_id}", "idList": "l1", "closed": False}
    data.update(extra)
    return data


def make_bulk(client, **settings):
    settings.setdefault("pacing", 0)
    return BulkOperations(client, TrelloSettings(**settings), sleep=RecordingSleep())


BOARD = SelectionCriteria(container=Container("board", "b1"))


class CardUpdateTests(unittest.TestCase):
    def test_requires_at_least_one_operation(self):
        with self.assertRaises(ValueError):
            CardUpdate.from_dict({})

    def test_rejects_unknown_keys_and_operations(self):
        with self.assertRaises(ValueError):
            CardUpdate.from_dict({"colour": {"operation": "set"}})
        with self.assertRaises(ValueError):
            CardUpdate.from_dict({"name": {"operation": "shout", "value": "x"}})
        with self.assertRaises(ValueError):
            CardUpdate.from_dict({"name": {"operation": "replace", "value": "x"}})
        with self.assertRaises(ValueError):
            CardUpdate.from_dict({"due": {"operation": "add_days"}})

    def test_field_params_for_text_updates(self):
        current = {"name": "Fix bug in bug tracker", "desc": "body"}

        replace = CardUpdate.from_dict(
            {"name": {"operation": "replace", "search_value": "bug", "value": "issue"}}
        )
        self.assertEqual(
            {"name": "Fix issue in issue tracker"}, replace.field_params(current)
        )
        prefix = CardUpdate.from_dict(
            {
                "name": {"operation": "prefix", "value": "[P1] "},
                "description": {"operation": "append", "value": "\nmore"},
            }
        )
        self.assertEqual(
            {"name": "[P1] Fix bug in bug tracker", "desc": "body\nmore"},
            prefix.field_params(current),
        )

    def test_field_params_for_due_shift(self):
        update = CardUpdate.from_dict({"due": {"operation": "add_days", "days": 3}})

        self.assertEqual(
            {"due": "2024-05-18T09:30:00.000Z"},
            update.field_params({"due": "2024-05-15T09:30:00.000Z"}),
        )
        self.assertEqual({}, update.field_params({"due": None}))

    def test_field_params_clear_position_and_flags(self):
        update = CardUpdate.from_dict(
            {
                "due": {"operation": "clear"},
                "position": {"operation": "top"},
                "archive": True,
            }
        )

        self.assertEqual(
            {"due": "null", "pos": "top", "closed": True}, update.field_params({})
        )
        self.assertEqual(["due", "position", "archive"], update.operations())


class BulkCreateTests(unittest.IsolatedAsyncioTestCase):
    async def test_merges_defaults_and_adds_checklists(self):
        client = FakeTrello()
        bulk = make_bulk(client)

        report = await bulk.bulk_create_cards(
            "l1",
            [{"name": "A", "label_ids": ["x"]}, {"name": "B", "description": "own"}],
            defaults={"description": "shared", "label_ids": ["x", "y"]},
            checklists=[{"name": "QA", "items": ["test", "ship"]}],
        )

        self.assertEqual((2, 2, 0), (report.requested, report.succeeded, report.failed))
        first, second = [c[1] for c in client.named("create_card")]
        self.assertEqual(["x", "y"], first["idLabels"])
        self.assertEqual("shared", first["desc"])
        self.assertEqual("own", second["desc"])
        self.assertEqual(2, len(client.named("create_checklist")))
        self.assertEqual(4, len(client.named("add_check_item")))

    async def test_failed_card_is_reported_not_raised(self):
        client = FakeTrello(fail_ids={"B"})
        bulk = make_bulk(client)

        report = await bulk.bulk_create_cards("l1", [{"name": "A"}, {"name": "B"}])

        self.assertEqual(1, report.succeeded)
        self.assertEqual(["B"], [f.candidate.name for f in report.failures])

    async def test_missing_name_is_rejected_before_any_call(self):
        client = FakeTrello()

        with self.assertRaises(ValueError):
            await make_bulk(client).bulk_create_cards("l1", [{"name": "A"}, {}])
        self.assertEqual([], client.calls)

    async def test_empty_card_list_is_selection_error(self):
        with self.assertRaises(SelectionError):
            await make_bulk(FakeTrello()).bulk_create_cards("l1", [])


class BulkMoveTests(unittest.IsolatedAsyncioTestCase):
    async def test_preserve_order_uses_start_position(self):
        client = FakeTrello(cards=[card("c1"), card("c2"), card("c3")])

        report = await make_bulk(client).bulk_move_cards(
            BOARD,
            "l9",
            positioning={"strategy": "preserve_order", "start_position": 100},
        )

        self.assertEqual(3, report.succeeded)
        moves = sorted(client.named("move_card"))
        self.assertEqual(
            [("move_card", "c1", "l9", 100.0), ("move_card", "c2", "l9", 101.0), ("move_card", "c3", "l9", 102.0)],
            moves,
        )

    async def test_max_items_caps_the_move(self):
        client = FakeTrello(cards=[card(f"c{i}") for i in range(5)])

        report = await make_bulk(client).bulk_move_cards(BOARD, "l9", max_items=2)

        self.assertTrue(report.safety_limit_applied)
        self.assertEqual(2, report.requested)
        self.assertEqual(2, len(client.named("move_card")))

    async def test_empty_selection_is_selection_error(self):
        client = FakeTrello(cards=[card("c1", name="Feature")])
        criteria = SelectionCriteria.from_dict(
            {"from_board_id": "b1", "filters": {"name_contains": "bug"}}
        )

        with self.assertRaises(SelectionError):
            await make_bulk(client).bulk_move_cards(criteria, "l9")
        self.assertEqual([], client.named("move_card"))

    async def test_missing_explicit_id_is_reported_as_unresolved(self):
        client = FakeTrello(cards=[card("c1")], fail_ids={"c2"})
        criteria = SelectionCriteria.from_dict({"card_ids": ["c1", "c2"]})

        report = await make_bulk(client).bulk_move_cards(criteria, "l9")

        self.assertEqual(1, report.succeeded)
        self.assertEqual(["c2"], [entity_id for entity_id, _ in report.unresolved])


    async def test_duplicate_ids_move_each_card_once(self):
        client = FakeTrello(cards=[card("c1")])
        criteria = SelectionCriteria.from_dict({"card_ids": ["c1", "c1"]})

        report = await make_bulk(client).bulk_move_cards(criteria, "l2")

        self.assertEqual((1, 1), (report.requested, report.succeeded))
        self.assertEqual([("move_card", "c1", "l2", "bottom")], client.named("move_card"))


class BulkUpdateTests(unittest.IsolatedAsyncioTestCase):
    async def test_label_set_adds_and_removes_difference(self):
        client = FakeTrello(cards=[card("c1", idLabels=["a", "b"])])
        criteria = SelectionCriteria(explicit_ids=("c1",))

        report = await make_bulk(client).bulk_update_cards(
            criteria, {"labels": {"operation": "set", "label_ids": ["b", "c"]}}
        )

        self.assertEqual(1, report.succeeded)
        self.assertEqual([], client.named("update_card"))
        self.assertEqual([("remove_label", "c1", "a")], client.named("remove_label"))
        self.assertEqual([("add_label", "c1", "c")], client.named("add_label"))

    async def test_partial_failure_keeps_going(self):
        client = FakeTrello(cards=[card("c1"), card("c2"), card("c3")], fail_ids={"c2"})

        report = await make_bulk(client).bulk_update_cards(
            BOARD, {"name": {"operation": "suffix", "value": " (old)"}}
        )

        self.assertEqual((3, 2, 1), (report.requested, report.succeeded, report.failed))
        self.assertEqual(404, report.failures[0].error.status)
        renamed = {c[1]: c[2]["name"] for c in client.named("update_card")}
        self.assertEqual("Card c3 (old)", renamed["c3"])

    async def test_invalid_updates_raise_before_selection(self):
        client = FakeTrello(cards=[card("c1")])

        with self.assertRaises(ValueError):
            await make_bulk(client).bulk_update_cards(BOARD, {})
        self.assertEqual([], client.calls)


class BulkArchiveTests(unittest.IsolatedAsyncioTestCase):
    async def test_defaults_to_configured_safety_cap(self):
        client = FakeTrello(cards=[card(f"c{i}") for i in range(8)])

        report = await make_bulk(client, safety_cap=5).bulk_archive(BOARD)

        self.assertTrue(report.safety_limit_applied)
        self.assertEqual(5, len(client.named("archive_card")))

    async def test_archives_lists_of_a_board(self):
        client = FakeTrello(
            lists=[{"id": "l1", "name": "Sprint 1"}, {"id": "l2", "name": "Sprint 2"}]
        )
        criteria = SelectionCriteria(
            container=Container("board", "b1"), entity=EntityKind.LIST
        )

        report = await make_bulk(client).bulk_archive(criteria)

        self.assertEqual(2, report.succeeded)
        self.assertEqual(
            {"l1", "l2"}, {c[1] for c in client.named("archive_list")}
        )
