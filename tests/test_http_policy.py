import requests

from courtatlas.http import RetryPolicy, is_retryable_status, linear_jitter_backoff

from conftest import FakeResponse


def _policy(candidates, sleeps):
    return RetryPolicy(
        candidates=candidates,
        attempts_per_candidate=2,
        backoff=lambda attempt: float(attempt),
        shuffle=False,
        sleep=sleeps.append,
    )


def test_first_success_returns_immediately():
    sleeps = []
    outcome = _policy(["a", "b"], sleeps).run(lambda ep: FakeResponse(200, {}))
    assert outcome.ok
    assert outcome.endpoint == "a"
    assert outcome.attempts == 1
    assert sleeps == []


def test_retryable_status_retries_same_mirror_then_moves_on():
    sleeps, seen = [], []

    def send(ep):
        seen.append(ep)
        return FakeResponse(200, {}) if ep == "b" else FakeResponse(429)

    outcome = _policy(["a", "b"], sleeps).run(send)
    assert outcome.ok and outcome.endpoint == "b"
    assert seen == ["a", "a", "b"]
    assert sleeps == [1.0, 2.0]


def test_non_retryable_status_moves_on_without_sleeping():
    sleeps, seen = [], []

    def send(ep):
        seen.append(ep)
        return FakeResponse(400)

    outcome = _policy(["a", "b"], sleeps).run(send)
    assert not outcome.ok
    assert seen == ["a", "b"]
    assert sleeps == []
    assert outcome.error == "HTTP 400"


def test_transport_error_moves_to_next_mirror():
    seen = []

    def send(ep):
        seen.append(ep)
        if ep == "a":
            raise requests.ConnectionError("boom")
        return FakeResponse(200, {})

    outcome = _policy(["a", "b"], []).run(send)
    assert outcome.ok and seen == ["a", "b"]


def test_all_failed_reports_last_error():
    outcome = _policy(["a"], []).run(lambda ep: FakeResponse(504))
    assert not outcome.ok
    assert outcome.status == 504
    assert outcome.attempts == 2


def test_helpers():
    assert is_retryable_status(503)
    assert not is_retryable_status(500)
    b = linear_jitter_backoff(0.8, 0.0)
    assert b(1) == 0.8
    assert abs(b(3) - 2.4) < 1e-9
