# Libris – Local-first knowledge base with grounded answers
# Copyright (c) 2026 4rce.com Digital Technologies GmbH.
# Use of this software is governed by the Business Source License 1.1. See LICENSE.md.

"""
Reranker client – typed RPC over a pipe to the worker process.

Lifecycle:
  - the worker is spawned lazily on the first rerank() and must report
    "ready" within load_timeout before any request is sent
  - every request gets a uuid4 id; replies are matched by id, so several
    requests can be outstanding at once
  - worker exit rejects everything outstanding with WorkerCrashedError;
    the next call respawns (never sooner than respawn_interval after the
    previous spawn)
  - two failed starts in a row make the client terminal

Bookkeeping uses concurrent.futures and a reader thread per worker, so the
client is not tied to one event loop.
"""
import asyncio
import multiprocessing
import threading
import time
import uuid
from concurrent.futures import Future, InvalidStateError
from concurrent.futures import TimeoutError as FuturesTimeoutError
from typing import Callable, Optional, Protocol

from .config import Config
from .errors import RerankError, RerankTimeoutError, WorkerCrashedError, WorkerUnavailableError
from .reranker_worker import worker_main

MAX_START_FAILURES = 2


class WorkerHandle(Protocol):
    def send(self, message: dict) -> None: ...
    def recv(self) -> dict: ...
    def is_alive(self) -> bool: ...
    def close(self) -> None: ...


class ProcessWorkerHandle:
    """A spawned worker process plus the parent end of its pipe."""

    def __init__(self, process, conn):
        self._process = process
        self._conn = conn
        self._send_lock = threading.Lock()

    @classmethod
    def start(cls, model_name: str, cache_folder: Optional[str] = None) -> "ProcessWorkerHandle":
        return cls.spawn(worker_main, model_name, cache_folder)

    @classmethod
    def spawn(cls, target: Callable, *args) -> "ProcessWorkerHandle":
        """Run target(conn, *args) in a fresh spawn-context process."""
        ctx = multiprocessing.get_context("spawn")
        parent_conn, child_conn = ctx.Pipe()
        process = ctx.Process(
            target=target,
            args=(child_conn, *args),
            name="libris-reranker",
            daemon=True,
        )
        process.start()
        child_conn.close()
        return cls(process, parent_conn)

    def send(self, message: dict) -> None:
        with self._send_lock:
            self._conn.send(message)

    def recv(self) -> dict:
        return self._conn.recv()

    def is_alive(self) -> bool:
        return self._process.is_alive()

    def kill(self) -> None:
        """Hard-stop the process without asking it to shut down."""
        self._process.kill()
        self._process.join(timeout=5)

    def close(self) -> None:
        try:
            self.send({"type": "shutdown"})
        except (OSError, ValueError):
            pass
        self._process.join(timeout=5)
        if self._process.is_alive():
            self.kill()
        self._conn.close()


def _resolve(future: Future, result=None, error: Optional[BaseException] = None):
    try:
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(result)
    except InvalidStateError:
        pass  # cancelled by a timed-out caller


class RerankerClient:
    def __init__(
        self,
        model_name: str = "BAAI/bge-reranker-base",
        cache_folder: Optional[str] = None,
        request_timeout: float = 300.0,
        load_timeout: float = 600.0,
        respawn_interval: float = 1.0,
        spawn: Optional[Callable[[], WorkerHandle]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.model_name = model_name
        self.cache_folder = cache_folder
        self.request_timeout = request_timeout
        self.load_timeout = load_timeout
        self.respawn_interval = respawn_interval
        self._spawn = spawn or (lambda: ProcessWorkerHandle.start(model_name, cache_folder))
        self._clock = clock
        self._sleep = sleep

        self._lock = threading.Lock()
        self._spawn_lock = threading.Lock()
        self._handle: Optional[WorkerHandle] = None
        self._ready: Optional[Future] = None
        self._pending: dict[str, Future] = {}
        self._failures = 0
        self._terminal = False
        self._last_spawn_at: Optional[float] = None
        self.spawn_count = 0

    @classmethod
    def from_config(cls, config: Config, spawn: Optional[Callable[[], WorkerHandle]] = None) -> "RerankerClient":
        return cls(
            model_name=config.reranker_model,
            cache_folder=config.reranker_cache_dir or None,
            request_timeout=config.rerank_timeout,
            load_timeout=config.reranker_load_timeout,
            respawn_interval=config.reranker_respawn_interval,
            spawn=spawn,
        )

    # ── Public API ───────────────────────────────────────

    async def rerank(self, query: str, texts: list[str]) -> list[float]:
        """One relevance score per text, in input order."""
        if not texts:
            return []
        request_id, future = await asyncio.to_thread(self._submit, query, list(texts))
        try:
            scores = await asyncio.wait_for(asyncio.wrap_future(future), self.request_timeout)
        except asyncio.TimeoutError:
            raise RerankTimeoutError(
                f"Reranker did not answer within {self.request_timeout:.0f}s"
            ) from None
        finally:
            with self._lock:
                self._pending.pop(request_id, None)
        if len(scores) != len(texts):
            raise RerankError(f"Reranker returned {len(scores)} scores for {len(texts)} documents")
        return [float(s) for s in scores]

    def close(self):
        with self._lock:
            handle, self._handle = self._handle, None
            self._ready = None
            pending = list(self._pending.values())
            self._pending.clear()
        for future in pending:
            _resolve(future, error=WorkerCrashedError("Reranker was shut down"))
        if handle is not None:
            handle.close()

    @property
    def status(self) -> dict:
        with self._lock:
            handle = self._handle
            ready = self._ready
            return {
                "model": self.model_name,
                "alive": handle is not None and handle.is_alive(),
                "ready": ready is not None and ready.done() and ready.exception() is None,
                "pending": len(self._pending),
                "terminal": self._terminal,
                "consecutive_failures": self._failures,
                "spawn_count": self.spawn_count,
            }

    # ── Worker lifecycle ─────────────────────────────────

    def _submit(self, query: str, texts: list[str]) -> tuple[str, Future]:
        ready = self._ready_future()
        try:
            ready.result(timeout=self.load_timeout)
        except FuturesTimeoutError:
            self._abandon_start(ready)
            raise RerankTimeoutError(
                f"Reranker model did not load within {self.load_timeout:.0f}s"
            ) from None

        request_id = str(uuid.uuid4())
        future: Future = Future()
        with self._lock:
            handle = self._handle
            if handle is None:
                raise WorkerCrashedError("Reranker worker is not running")
            self._pending[request_id] = future
        try:
            handle.send({"type": "rerank", "id": request_id, "query": query, "documents": texts})
        except (OSError, EOFError, ValueError) as e:
            with self._lock:
                self._pending.pop(request_id, None)
            raise WorkerCrashedError(f"Reranker pipe is broken: {e}") from e
        return request_id, future

    def _ready_future(self) -> Future:
        with self._spawn_lock:
            with self._lock:
                if self._terminal:
                    raise WorkerUnavailableError(
                        f"Reranker '{self.model_name}' is unavailable after "
                        f"{self._failures} failed starts"
                    )
                if self._ready is not None:
                    return self._ready

            if self._last_spawn_at is not None:
                delay = self._last_spawn_at + self.respawn_interval - self._clock()
                if delay > 0:
                    self._sleep(delay)
            self._last_spawn_at = self._clock()
            self.spawn_count += 1

            try:
                handle = self._spawn()
            except Exception as e:
                raise self._record_start_failure(e) from e

            ready: Future = Future()
            with self._lock:
                self._handle = handle
                self._ready = ready
            threading.Thread(
                target=self._read_loop, args=(handle, ready),
                name="libris-reranker-reader", daemon=True,
            ).start()
            print(f"[Reranker] Worker started for {self.model_name}")
            return ready

    def _read_loop(self, handle: WorkerHandle, ready: Future):
        while True:
            try:
                msg = handle.recv()
            except (EOFError, OSError):
                break
            kind = msg.get("type")
            if kind == "ready":
                with self._lock:
                    self._failures = 0
                _resolve(ready, True)
                print(f"[Reranker] Model {self.model_name} ready")
            elif kind == "init-error":
                self._on_init_error(handle, ready, msg.get("message", "unknown error"))
                handle.close()
                return
            elif kind in ("result", "error"):
                with self._lock:
                    future = self._pending.pop(msg.get("id"), None)
                if future is None:
                    continue  # reply to a request that already timed out
                if kind == "result":
                    _resolve(future, msg.get("scores") or [])
                else:
                    _resolve(future, error=RerankError(msg.get("message", "rerank failed")))
        self._on_exit(handle, ready)

    def _on_init_error(self, handle: WorkerHandle, ready: Future, message: str):
        with self._lock:
            current = self._handle is handle
            if current:
                self._handle = None
                self._ready = None
        if current:
            _resolve(ready, error=self._record_start_failure(RerankError(message)))

    def _on_exit(self, handle: WorkerHandle, ready: Future):
        with self._lock:
            current = self._handle is handle
            pending: list[Future] = []
            if current:
                self._handle = None
                self._ready = None
                pending = list(self._pending.values())
                self._pending.clear()
        if not current:
            return
        if not ready.done():
            _resolve(ready, error=self._record_start_failure(
                RerankError("worker exited while loading the model")
            ))
            return
        print(f"Warning: Reranker worker exited, failing {len(pending)} pending requests")
        for future in pending:
            _resolve(future, error=WorkerCrashedError("Reranker worker exited"))

    def _abandon_start(self, ready: Future):
        with self._lock:
            handle = self._handle if self._ready is ready else None
            if handle is not None:
                self._handle = None
                self._ready = None
        if handle is None:
            return
        _resolve(ready, error=self._record_start_failure(RerankTimeoutError("model load timed out")))
        handle.close()

    def _record_start_failure(self, error: BaseException) -> RerankError:
        with self._lock:
            self._failures += 1
            if self._failures >= MAX_START_FAILURES:
                self._terminal = True
                exc: RerankError = WorkerUnavailableError(
                    f"Reranker '{self.model_name}' failed to start "
                    f"{self._failures} times in a row: {error}"
                )
            else:
                exc = WorkerCrashedError(f"Reranker failed to start: {error}")
        print(f"Warning: {exc}")
        return exc
