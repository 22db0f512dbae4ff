"""Tests for the pooled lineage host."""

from __future__ import annotations

import asyncio
import concurrent.futures
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from lineage_host import (  # noqa: E402
    HostConfig,
    LineageHost,
    LineageHostError,
    handle_request,
    new_request_id,
)
from query_lineage import BuildOptions, build_lineage_graph  # noqa: E402


HISTORY = [
    {"exact_query": "SELECT id, name FROM users", "duration": 4},
    "INSERT INTO t SELECT a, b FROM s",
]


class StalledExecutor(concurrent.futures.Executor):
    """Accepts work and never runs it."""

    def submit(self, fn, *args, **kwargs):
        return concurrent.futures.Future()


class ReplyingExecutor(concurrent.futures.Executor):
    """Completes every submission with a fixed reply."""

    def __init__(self, reply):
        self.reply = reply

    def submit(self, fn, *args, **kwargs):
        future = concurrent.futures.Future()
        future.set_result(self.reply)
        return future


def test_handle_request_success() -> None:
    reply = handle_request({"requestId": "r1", "historyEntries": HISTORY, "options": {"viewMode": "TABLE_QUERY"}})

    assert reply["requestId"] == "r1"
    assert reply["ok"] is True
    assert reply["result"] == build_lineage_graph(HISTORY, {"viewMode": "TABLE_QUERY"}).to_dict()


def test_handle_request_failure_keeps_request_id() -> None:
    reply = handle_request({"requestId": "r2", "historyEntries": 42})

    assert reply == {"requestId": "r2", "ok": False, "error": reply["error"]}
    assert isinstance(reply["error"], str) and reply["error"]


def test_handle_request_rejects_non_object() -> None:
    reply = handle_request(["not", "a", "message"])

    assert reply["ok"] is False
    assert reply["requestId"] is None


def test_request_ids_are_unique() -> None:
    ids = {new_request_id() for _ in range(50)}
    assert len(ids) == 50


def test_concurrent_requests_are_correlated() -> None:
    with LineageHost(HostConfig(max_workers=4)) as host:
        futures = {
            f"req-{i}": host.submit(HISTORY[i % 2:], request_id=f"req-{i}")
            for i in range(6)
        }
        replies = {request_id: future.result(timeout=10) for request_id, future in futures.items()}

    for request_id, reply in replies.items():
        assert reply["requestId"] == request_id
        assert reply["ok"] is True


def test_submit_accepts_build_options() -> None:
    with LineageHost() as host:
        reply = host.submit(HISTORY, BuildOptions(view_mode="TABLE_ONLY")).result(timeout=10)

    assert reply["result"]["graphData"]["meta"] == {"view_mode": "TABLE_ONLY"}


def test_build_returns_result_payload() -> None:
    with LineageHost() as host:
        result = host.build(HISTORY)

    assert result == build_lineage_graph(HISTORY).to_dict()


def test_build_falls_back_inline_on_timeout() -> None:
    host = LineageHost(HostConfig(timeout_s=0.01), executor=StalledExecutor())

    assert host.build(HISTORY) == build_lineage_graph(HISTORY).to_dict()


def test_build_falls_back_inline_on_mismatched_reply() -> None:
    reply = {"requestId": "someone-else", "ok": True, "result": {}}
    host = LineageHost(executor=ReplyingExecutor(reply))

    assert host.build(HISTORY) == build_lineage_graph(HISTORY).to_dict()


def test_build_without_fallback_raises() -> None:
    host = LineageHost(HostConfig(timeout_s=0.01, fallback_inline=False), executor=StalledExecutor())

    with pytest.raises(LineageHostError):
        host.build(HISTORY)


def test_request_async() -> None:
    async def run():
        with LineageHost() as host:
            return await asyncio.gather(
                host.request_async(HISTORY, request_id="a1"),
                host.request_async([], request_id="a2"),
            )

    first, second = asyncio.run(run())
    assert first["requestId"] == "a1"
    assert second["requestId"] == "a2"
    assert second["result"]["stats"]["sourceEntries"] == 0


def test_host_config_from_mapping() -> None:
    config = HostConfig.from_mapping({"max_workers": 0, "timeout_s": "5", "fallback_inline": False})

    assert config.max_workers == 1
    assert config.timeout_s == 5.0
    assert config.fallback_inline is False
    assert config.use_processes is False


def test_submit_rejects_a_bare_string() -> None:
    with LineageHost() as host:
        reply = host.submit("SELECT id FROM users", request_id="s1").result(timeout=10)

    assert reply["requestId"] == "s1"
    assert reply["ok"] is False
    assert reply["error"]


def test_submit_rejects_a_mapping() -> None:
    with LineageHost() as host:
        reply = host.submit({"sql": "SELECT id FROM users"}).result(timeout=10)

    assert reply["ok"] is False


def test_bad_options_come_back_as_an_error_reply() -> None:
    with LineageHost() as host:
        reply = host.submit(["SELECT 1 FROM t"], options="FULL", request_id="o1").result(timeout=10)

    assert reply["requestId"] == "o1"
    assert reply["ok"] is False
    assert isinstance(reply["error"], str) and reply["error"]


def test_request_async_bad_options() -> None:
    async def run():
        with LineageHost() as host:
            return await host.request_async(["SELECT 1 FROM t"], options=42, request_id="o2")

    reply = asyncio.run(run())
    assert reply["requestId"] == "o2"
    assert reply["ok"] is False
