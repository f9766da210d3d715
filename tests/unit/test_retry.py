"""Unit tests for retry classification and backoff."""

import asyncio

import pytest

from conn_jobs.errors import ConfigurationError, UpstreamError
from conn_jobs.retry import (
    RetryPolicy,
    calculate_backoff,
    calculate_backoff_with_jitter,
    extract_status_code,
    is_retryable,
)


class StatusError(Exception):
    def __init__(self, status):
        super().__init__("request failed")
        self.status = status


@pytest.mark.parametrize("status", [429, 500, 502, 503, 599])
def test_rate_limit_and_server_errors_retry(status):
    assert is_retryable(UpstreamError("orders fetch failed", status_code=status))


@pytest.mark.parametrize("status", [400, 401, 403, 404, 409, 422])
def test_client_errors_do_not_retry(status):
    assert not is_retryable(UpstreamError("orders fetch failed", status_code=status))


def test_status_parsed_from_message():
    error = RuntimeError("Trendyol shipment-packages failed (503) upstream timeout")

    assert extract_status_code(error) == 503
    assert is_retryable(error)


def test_status_attribute_as_string():
    assert extract_status_code(StatusError("429")) == 429


@pytest.mark.parametrize(
    "error",
    [
        RuntimeError("connection reset"),
        TimeoutError(),
        asyncio.TimeoutError(),
        ConnectionResetError("peer closed"),
    ],
)
def test_unknown_status_not_retried_by_default(error):
    assert not is_retryable(error)


def test_timeout_retried_when_unknown_statuses_allowed():
    policy = RetryPolicy(retry_on_unknown=True)

    assert is_retryable(asyncio.TimeoutError(), policy)


def test_unknown_status_retried_when_enabled():
    policy = RetryPolicy(retry_on_unknown=True)

    assert is_retryable(RuntimeError("connection reset"), policy)


def test_configuration_error_never_retried():
    policy = RetryPolicy(retry_on_unknown=True)

    assert not is_retryable(ConfigurationError("missing api key (503)"), policy)


def test_extra_retryable_statuses():
    policy = RetryPolicy(extra_retryable_statuses=frozenset({409}))

    assert is_retryable(UpstreamError("conflict", status_code=409), policy)
    assert not is_retryable(UpstreamError("forbidden", status_code=403), policy)


def test_exponential_backoff():
    policy = {"type": "exponential", "base_seconds": 10}

    assert [calculate_backoff(policy, n) for n in range(1, 5)] == [10, 20, 40, 80]


def test_exponential_backoff_cap():
    assert calculate_backoff({"type": "exponential", "base_seconds": 1000}, 10) == 3600


def test_linear_backoff():
    policy = {"type": "linear", "base_seconds": 30}

    assert [calculate_backoff(policy, n) for n in range(1, 4)] == [30, 60, 90]


def test_constant_backoff():
    policy = {"type": "constant", "base_seconds": 60}

    assert calculate_backoff(policy, 1) == calculate_backoff(policy, 5) == 60


def test_unknown_backoff_type_defaults_to_exponential():
    policy = {"type": "unknown", "base_seconds": 10}

    assert calculate_backoff(policy, 2) == 20


def test_default_base_seconds():
    assert calculate_backoff({}, 1) == 10


def test_jitter_stays_within_twenty_percent():
    policy = {"type": "constant", "base_seconds": 100}

    for _ in range(50):
        assert 80 <= calculate_backoff_with_jitter(policy, 1) <= 120


def test_jitter_never_below_one_second():
    assert calculate_backoff_with_jitter({"type": "constant", "base_seconds": 0}, 1) == 1
