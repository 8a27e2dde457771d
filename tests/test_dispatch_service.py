import asyncio
import random

import httpx
import pytest

from shopchat.services.dispatch_service import (
    AdmissionLimiter,
    BoundedDispatcher,
    DispatchAction,
    DispatchRequest,
    decide,
)
from shopchat.services.llm import (
    CompletionError,
    DispatchAbortedError,
    DispatchExhaustedError,
    ErrorKind,
    LLMProvider,
    LLMResponse,
)
from tests.fakes import ScriptedProvider

REQUEST = DispatchRequest.build([{"role": "user", "content": "ฉาก 2x2 ราคาเท่าไหร่"}])


def err(kind):
    return CompletionError(kind, f"{kind.value} error")


class RecordingSleep:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


def make_dispatcher(provider, candidates=("m1", "m2", "m3"), **kwargs):
    kwargs.setdefault("sleep_func", RecordingSleep())
    kwargs.setdefault("rng", random.Random(7))
    return BoundedDispatcher(provider, list(candidates), **kwargs)


class TestDecide:
    @pytest.mark.parametrize(
        "kind,attempts,expected",
        [
            (ErrorKind.RATE_LIMITED, 1, DispatchAction.RETRY_SAME),
            (ErrorKind.RATE_LIMITED, 2, DispatchAction.NEXT_CANDIDATE),
            (ErrorKind.TIMEOUT, 1, DispatchAction.NEXT_CANDIDATE),
            (ErrorKind.NETWORK, 1, DispatchAction.NEXT_CANDIDATE),
            (ErrorKind.MALFORMED, 1, DispatchAction.NEXT_CANDIDATE),
            (ErrorKind.FATAL, 1, DispatchAction.ABORT),
            (ErrorKind.FATAL, 2, DispatchAction.ABORT),
        ],
    )
    def test_policy(self, kind, attempts, expected):
        assert decide(kind, attempts) == expected


class TestDispatchRequest:
    def test_build_copies_messages(self):
        messages = [{"role": "user", "content": "hi"}]
        request = DispatchRequest.build(messages, temperature=0.2, purpose="reassemble")
        messages[0]["content"] = "changed"
        assert request.messages[0]["content"] == "hi"
        assert request.purpose == "reassemble"
        assert request.temperature == 0.2


class TestFailover:
    def test_first_candidate_success(self):
        provider = ScriptedProvider({"m1": ["ok"]})
        response = asyncio.run(make_dispatcher(provider).dispatch(REQUEST))
        assert response.content == "ok"
        assert response.candidate == "m1"
        assert response.attempts == 1
        assert provider.models_called == ["m1"]

    def test_transient_errors_fail_over_in_order(self):
        provider = ScriptedProvider({"m1": [err(ErrorKind.NETWORK)], "m2": [err(ErrorKind.TIMEOUT)], "m3": ["ok"]})
        response = asyncio.run(make_dispatcher(provider).dispatch(REQUEST))
        assert provider.models_called == ["m1", "m2", "m3"]
        assert response.candidate == "m3"
        assert response.attempts == 3

    def test_empty_payload_counts_as_failure(self):
        provider = ScriptedProvider({"m1": ["   "], "m2": ["ok"]})
        response = asyncio.run(make_dispatcher(provider).dispatch(REQUEST))
        assert provider.models_called == ["m1", "m2"]
        assert response.content == "ok"

    def test_transport_error_is_network(self):
        provider = ScriptedProvider({"m1": [httpx.ConnectError("refused")], "m2": ["ok"]})
        response = asyncio.run(make_dispatcher(provider).dispatch(REQUEST))
        assert response.candidate == "m2"

    def test_explicit_candidate_list_overrides_default(self):
        provider = ScriptedProvider({"x": ["ok"]})
        response = asyncio.run(make_dispatcher(provider).dispatch(REQUEST, ["x"]))
        assert provider.models_called == ["x"]
        assert response.candidate == "x"

    def test_no_candidates_is_an_error(self):
        provider = ScriptedProvider()
        with pytest.raises(ValueError):
            asyncio.run(make_dispatcher(provider, candidates=()).dispatch(REQUEST))

    def test_content_is_stripped(self):
        provider = ScriptedProvider({"m1": ["  สวัสดีค่ะ \n"]})
        response = asyncio.run(make_dispatcher(provider).dispatch(REQUEST))
        assert response.content == "สวัสดีค่ะ"


class TestRateLimit:
    def test_retries_same_candidate_once_with_backoff(self):
        provider = ScriptedProvider({"m1": [err(ErrorKind.RATE_LIMITED), "ok"]})
        sleep = RecordingSleep()
        response = asyncio.run(make_dispatcher(provider, sleep_func=sleep).dispatch(REQUEST))
        assert provider.models_called == ["m1", "m1"]
        assert response.candidate == "m1"
        assert response.attempts == 2
        assert len(sleep.calls) == 1
        assert 0.3 <= sleep.calls[0] <= 0.8

    def test_second_rate_limit_moves_on(self):
        provider = ScriptedProvider(
            {"m1": [err(ErrorKind.RATE_LIMITED), err(ErrorKind.RATE_LIMITED)], "m2": ["ok"]}
        )
        sleep = RecordingSleep()
        response = asyncio.run(make_dispatcher(provider, sleep_func=sleep).dispatch(REQUEST))
        assert provider.models_called == ["m1", "m1", "m2"]
        assert response.candidate == "m2"
        assert len(sleep.calls) == 1

    def test_backoff_bounds_validated(self):
        with pytest.raises(ValueError):
            make_dispatcher(ScriptedProvider(), backoff_min_ms=900, backoff_max_ms=800)


class TestGiveUp:
    def test_fatal_aborts_without_trying_others(self):
        provider = ScriptedProvider({"m1": [err(ErrorKind.FATAL)], "m2": ["ok"]})
        with pytest.raises(DispatchAbortedError) as exc_info:
            asyncio.run(make_dispatcher(provider).dispatch(REQUEST))
        assert provider.models_called == ["m1"]
        assert exc_info.value.last_error.kind == ErrorKind.FATAL

    def test_exhaustion_reports_last_error(self):
        provider = ScriptedProvider(
            {
                "m1": [err(ErrorKind.NETWORK)],
                "m2": [err(ErrorKind.MALFORMED)],
                "m3": [err(ErrorKind.TIMEOUT)],
            }
        )
        with pytest.raises(DispatchExhaustedError) as exc_info:
            asyncio.run(make_dispatcher(provider).dispatch(REQUEST))
        assert provider.models_called == ["m1", "m2", "m3"]
        assert exc_info.value.last_error.kind == ErrorKind.TIMEOUT


class SlowProvider(LLMProvider):
    def __init__(self, slow_models):
        self.slow_models = set(slow_models)
        self.calls = []

    async def generate(self, messages, model, temperature=0.7):
        self.calls.append(model)
        if model in self.slow_models:
            await asyncio.sleep(10)
        return LLMResponse(content=f"from {model}", model=model)


class TestTimeout:
    def test_slow_candidate_times_out_and_fails_over(self):
        provider = SlowProvider({"m1"})
        dispatcher = make_dispatcher(provider, timeout_seconds=0.01)
        response = asyncio.run(dispatcher.dispatch(REQUEST))
        assert provider.calls == ["m1", "m2"]
        assert response.content == "from m2"
        assert dispatcher.limiter.in_flight == 0


class GatedProvider(LLMProvider):
    """Holds every call until released; tracks peak concurrency."""

    def __init__(self):
        self.active = 0
        self.peak = 0
        self.release = asyncio.Event()

    async def generate(self, messages, model, temperature=0.7):
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await self.release.wait()
            return LLMResponse(content=messages[-1]["content"], model=model)
        finally:
            self.active -= 1


class TestConcurrencyLimit:
    def test_never_exceeds_limit_and_all_complete(self):
        async def scenario():
            provider = GatedProvider()
            dispatcher = make_dispatcher(provider, concurrency=2)
            requests = [DispatchRequest.build([{"role": "user", "content": f"q{i}"}]) for i in range(5)]
            tasks = [asyncio.create_task(dispatcher.dispatch(r)) for r in requests]
            for _ in range(5):
                await asyncio.sleep(0)
            snapshot = (provider.active, dispatcher.limiter.in_flight, dispatcher.limiter.waiting)
            provider.release.set()
            responses = await asyncio.gather(*tasks)
            return provider, dispatcher, snapshot, responses

        provider, dispatcher, snapshot, responses = asyncio.run(scenario())
        assert snapshot == (2, 2, 3)
        assert provider.peak == 2
        assert [r.content for r in responses] == ["q0", "q1", "q2", "q3", "q4"]
        assert dispatcher.limiter.in_flight == 0


class TestAdmissionLimiter:
    def test_rejects_non_positive_limit(self):
        with pytest.raises(ValueError):
            AdmissionLimiter(0)

    def test_waiters_admitted_in_arrival_order(self):
        async def scenario():
            limiter = AdmissionLimiter(1)
            order = []
            await limiter.acquire()

            async def worker(name):
                async with limiter.slot():
                    order.append(name)

            tasks = []
            for name in ["a", "b", "c"]:
                tasks.append(asyncio.create_task(worker(name)))
                await asyncio.sleep(0)
            limiter.release()
            await asyncio.gather(*tasks)
            return order, limiter

        order, limiter = asyncio.run(scenario())
        assert order == ["a", "b", "c"]
        assert limiter.in_flight == 0

    def test_cancelled_waiter_leaves_queue(self):
        async def scenario():
            limiter = AdmissionLimiter(1)
            await limiter.acquire()
            task = asyncio.create_task(limiter.acquire())
            await asyncio.sleep(0)
            assert limiter.waiting == 1
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            limiter.release()
            return limiter

        limiter = asyncio.run(scenario())
        assert limiter.waiting == 0
        assert limiter.in_flight == 0

    def test_cancel_after_handoff_returns_slot(self):
        async def scenario():
            limiter = AdmissionLimiter(1)
            await limiter.acquire()
            task = asyncio.create_task(limiter.acquire())
            await asyncio.sleep(0)
            limiter.release()
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            return limiter

        limiter = asyncio.run(scenario())
        assert limiter.in_flight == 0
