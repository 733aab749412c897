import unittest

import aiohttp

from fakes import (
    FakeSession,
    HangingCtx,
    RaiseOnEnterCtx,
    RecordingSleep,
    error,
    malformed,
    ok,
)
from trello_bulk.errors import (
    ClientFailure,
    ExecutorError,
    NetworkFailure,
    RetriesExhausted,
    ServerFailure,
    TimeoutFailure,
)
from trello_bulk.executor import (
    ExecutionState,
    RequestDescriptor,
    RequestExecutor,
    RetryPolicy,
)


def make_executor(session, *, timeout=20, events=None):
    sleep = RecordingSleep()
    executor = RequestExecutor(
        api_key="k",
        token="t",
        timeout=timeout,
        sleep=sleep,
        on_event=events.append if events is not None else None,
    )
    executor._session = session
    return executor, sleep


POLICY = RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=5.0)
GET_CARD = RequestDescriptor("GET", "/cards/c1")


class RequestDescriptorTests(unittest.TestCase):
    def test_idempotency_follows_method(self):
        self.assertTrue(RequestDescriptor("get", "/cards/c1").idempotent)
        self.assertTrue(RequestDescriptor("PUT", "/cards/c1").idempotent)
        self.assertFalse(RequestDescriptor("POST", "/cards").idempotent)
        self.assertTrue(RequestDescriptor("POST", "/cards", idempotent=True).idempotent)

    def test_params_are_read_only(self):
        descriptor = RequestDescriptor("GET", "/cards/c1", params={"fields": "id"})

        with self.assertRaises(TypeError):
            descriptor.params["fields"] = "name"

    def test_query_normalizes_values(self):
        descriptor = RequestDescriptor(
            "PUT",
            "/cards/c1",
            params={"closed": False, "idLabels": ["a", "b"], "pos": None, "due": "null"},
        )

        self.assertEqual(
            {"closed": "false", "idLabels": "a,b", "due": "null"}, descriptor.query()
        )


class RetryPolicyTests(unittest.TestCase):
    def test_delay_doubles_until_cap(self):
        policy = RetryPolicy(max_attempts=6, base_delay=1.0, max_delay=5.0)

        self.assertEqual([1.0, 2.0, 4.0, 5.0, 5.0], [policy.delay_for(i) for i in range(5)])

    def test_rejects_zero_attempts(self):
        with self.assertRaises(ValueError):
            RetryPolicy(max_attempts=0)

    def test_from_settings_clamps_bad_values(self):
        policy = RetryPolicy.from_settings(max_attempts=0, base_delay=-1, max_delay=-5)

        self.assertEqual(1, policy.max_attempts)
        self.assertEqual(0.0, policy.base_delay)
        self.assertEqual(0.0, policy.max_delay)


class RequestExecutorTests(unittest.IsolatedAsyncioTestCase):
    async def test_persistent_503_is_attempted_three_times(self):
        session = FakeSession(error(503, "unavailable"))
        executor, sleep = make_executor(session)

        with self.assertRaises(RetriesExhausted) as ctx:
            await executor.execute(GET_CARD, POLICY)

        self.assertEqual(3, len(session.requests))
        self.assertEqual([1.0, 2.0], sleep.delays)
        self.assertEqual(3, ctx.exception.attempts)
        self.assertIsInstance(ctx.exception.last_failure, ServerFailure)
        self.assertEqual(503, ctx.exception.status)

    async def test_backoff_never_exceeds_cap(self):
        session = FakeSession(error(500))
        executor, sleep = make_executor(session)
        policy = RetryPolicy(max_attempts=5, base_delay=2.0, max_delay=5.0)

        with self.assertRaises(RetriesExhausted):
            await executor.execute(GET_CARD, policy)

        self.assertEqual([2.0, 4.0, 5.0, 5.0], sleep.delays)

    async def test_404_is_not_retried(self):
        session = FakeSession(error(404, "card not found"))
        executor, sleep = make_executor(session)

        with self.assertRaises(ClientFailure) as ctx:
            await executor.execute(GET_CARD, POLICY)

        self.assertEqual(1, len(session.requests))
        self.assertEqual([], sleep.delays)
        self.assertEqual(404, ctx.exception.status)
        self.assertNotIsInstance(ctx.exception, RetriesExhausted)

    async def test_recovers_after_transient_failures(self):
        session = FakeSession(
            RaiseOnEnterCtx(aiohttp.ClientConnectionError("reset")),
            error(502),
            ok({"id": "c1"}),
        )
        executor, sleep = make_executor(session)

        data = await executor.execute(GET_CARD, POLICY)

        self.assertEqual({"id": "c1"}, data)
        self.assertEqual(3, len(session.requests))
        self.assertEqual([1.0, 2.0], sleep.delays)

    async def test_deadline_cancels_hanging_request(self):
        session = FakeSession(HangingCtx())
        executor, _ = make_executor(session, timeout=0.01)

        with self.assertRaises(RetriesExhausted) as ctx:
            await executor.execute(GET_CARD, RetryPolicy(max_attempts=2, base_delay=0))

        self.assertIsInstance(ctx.exception.last_failure, TimeoutFailure)
        self.assertEqual(2, len(session.requests))

    async def test_network_failure_is_exhausted_with_single_attempt(self):
        session = FakeSession(RaiseOnEnterCtx(aiohttp.ClientError("dns")))
        executor, sleep = make_executor(session)

        with self.assertRaises(RetriesExhausted) as ctx:
            await executor.execute(GET_CARD, RetryPolicy.no_retry())

        self.assertIsInstance(ctx.exception.last_failure, NetworkFailure)
        self.assertEqual([], sleep.delays)

    async def test_custom_predicate_can_disable_retries(self):
        session = FakeSession(error(500))
        executor, _ = make_executor(session)
        policy = RetryPolicy(max_attempts=3, retryable=lambda exc: False)

        with self.assertRaises(ServerFailure):
            await executor.execute(GET_CARD, policy)

        self.assertEqual(1, len(session.requests))

    async def test_emits_one_event_per_attempt(self):
        events = []
        session = FakeSession(error(503), ok({"id": "c1"}))
        executor, _ = make_executor(session, events=events)

        await executor.execute(GET_CARD, POLICY)

        self.assertEqual(
            [ExecutionState.WAITING, ExecutionState.DONE], [e.state for e in events]
        )
        self.assertEqual([1, 2], [e.attempt for e in events])
        self.assertEqual(503, events[0].status)
        self.assertEqual(1.0, events[0].delay)
        self.assertEqual(200, events[1].status)

    async def test_emits_terminal_events(self):
        events = []
        executor, _ = make_executor(FakeSession(error(400)), events=events)

        with self.assertRaises(ClientFailure):
            await executor.execute(GET_CARD, POLICY)

        self.assertEqual([ExecutionState.FAILED], [e.state for e in events])

        events.clear()
        executor, _ = make_executor(FakeSession(error(500)), events=events)
        with self.assertRaises(RetriesExhausted):
            await executor.execute(GET_CARD, RetryPolicy(max_attempts=2))

        self.assertEqual(
            [ExecutionState.WAITING, ExecutionState.EXHAUSTED], [e.state for e in events]
        )

    async def test_empty_body_decodes_to_empty_dict(self):
        session = FakeSession(ok(None))
        session._ctxs[0]._response.content_length = 0
        executor, _ = make_executor(session)

        self.assertEqual({}, await executor.execute(GET_CARD, POLICY))

    async def test_malformed_json_body_is_a_failure_not_a_crash(self):
        session = FakeSession(malformed())
        executor, sleep = make_executor(session)

        with self.assertRaises(ExecutorError) as ctx:
            await executor.execute(GET_CARD, POLICY)

        self.assertIn("Malformed JSON response", str(ctx.exception))
        self.assertEqual(200, ctx.exception.status)
        self.assertEqual(1, len(session.requests))
        self.assertEqual([], sleep.delays)
