"""Runs lineage builds off the calling thread and correlates replies by request id."""

from __future__ import annotations

import asyncio
import collections.abc
import concurrent.futures
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping, Optional

from query_lineage import BuildOptions, build_lineage_graph

logger = logging.getLogger(__name__)


class LineageHostError(Exception):
    """Raised when a background build fails and inline fallback is disabled."""


@dataclass
class HostConfig:
    max_workers: int = 2
    use_processes: bool = False
    timeout_s: float = 30.0
    fallback_inline: bool = True

    @classmethod
    def from_mapping(cls, raw: Optional[Mapping[str, Any]]) -> HostConfig:
        config = cls()
        if not raw:
            return config
        if "max_workers" in raw:
            config.max_workers = max(1, int(raw["max_workers"]))
        if "use_processes" in raw:
            config.use_processes = bool(raw["use_processes"])
        if "timeout_s" in raw:
            config.timeout_s = float(raw["timeout_s"])
        if "fallback_inline" in raw:
            config.fallback_inline = bool(raw["fallback_inline"])
        return config


def new_request_id() -> str:
    return f"{int(time.time() * 1000)}_{uuid.uuid4().hex[:10]}"


def _options_payload(options: Any) -> Dict[str, Any]:
    if options is None:
        return {}
    if isinstance(options, BuildOptions):
        return options.to_dict()
    return dict(options)


def _entries_payload(history_entries: Any) -> Any:
    # strings, mappings and scalars reach the builder unchanged so it can reject them
    if isinstance(history_entries, (str, bytes, collections.abc.Mapping)) or not isinstance(
        history_entries, collections.abc.Iterable
    ):
        return history_entries
    return list(history_entries)


def _error_reply(request_id: Optional[str], exc: BaseException) -> Dict[str, Any]:
    logger.warning(f"Lineage request {request_id} failed: {exc}")
    return {"requestId": request_id, "ok": False, "error": str(exc) or "Lineage build failed"}


def handle_request(message: Mapping[str, Any]) -> Dict[str, Any]:
    """Build lineage for one request message; failures come back as ``ok: False``."""
    request_id = message.get("requestId") if isinstance(message, Mapping) else None
    try:
        if not isinstance(message, Mapping):
            raise TypeError("request must be an object")
        result = build_lineage_graph(message.get("historyEntries"), message.get("options"))
        return {"requestId": request_id, "ok": True, "result": result.to_dict()}
    except Exception as exc:
        return _error_reply(request_id, exc)


class LineageHost:
    """Pool-backed front end for :func:`handle_request`.

    Every request is independent and may be in flight alongside others. The
    blocking :meth:`build` falls back to an inline build when the pool times
    out, breaks, or replies with an error.
    """

    def __init__(
        self,
        config: Optional[HostConfig] = None,
        executor: Optional[concurrent.futures.Executor] = None,
    ) -> None:
        self.config = config or HostConfig()
        self._owns_executor = executor is None
        if executor is not None:
            self._executor = executor
        elif self.config.use_processes:
            self._executor = concurrent.futures.ProcessPoolExecutor(max_workers=self.config.max_workers)
        else:
            self._executor = concurrent.futures.ThreadPoolExecutor(
                max_workers=self.config.max_workers,
                thread_name_prefix="lineage",
            )

    def request(self, message: Mapping[str, Any]) -> concurrent.futures.Future:
        return self._executor.submit(handle_request, dict(message))

    def submit(
        self,
        history_entries: Optional[Iterable[Any]],
        options: Any = None,
        request_id: Optional[str] = None,
    ) -> concurrent.futures.Future:
        request_id = request_id or new_request_id()
        try:
            message = {
                "requestId": request_id,
                "historyEntries": _entries_payload(history_entries),
                "options": _options_payload(options),
            }
        except Exception as exc:
            future: concurrent.futures.Future = concurrent.futures.Future()
            future.set_result(_error_reply(request_id, exc))
            return future
        return self.request(message)

    async def request_async(
        self,
        history_entries: Optional[Iterable[Any]],
        options: Any = None,
        request_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        return await asyncio.wrap_future(self.submit(history_entries, options, request_id))

    def build(
        self,
        history_entries: Optional[Iterable[Any]],
        options: Any = None,
    ) -> Dict[str, Any]:
        """Wait for a pooled build and return its ``{"graphData", "stats"}`` payload."""
        entries = _entries_payload(history_entries)
        request_id = new_request_id()
        try:
            reply = self.submit(entries, options, request_id).result(timeout=self.config.timeout_s)
            if reply.get("requestId") != request_id:
                raise LineageHostError(f"Reply for {reply.get('requestId')} does not match {request_id}")
            if not reply.get("ok"):
                raise LineageHostError(reply.get("error") or "Lineage build failed")
            return reply["result"]
        except (concurrent.futures.TimeoutError, concurrent.futures.BrokenExecutor, LineageHostError) as exc:
            if not self.config.fallback_inline:
                if isinstance(exc, LineageHostError):
                    raise
                raise LineageHostError(str(exc) or type(exc).__name__) from exc
            logger.warning(f"Background lineage build {request_id} failed ({exc!r}), building inline")

        return build_lineage_graph(entries, options).to_dict()

    def close(self, wait: bool = True) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=wait)

    def __enter__(self) -> LineageHost:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()
