"""Transport bridge: one control channel carrying requests, responses and session events.

Wire messages are plain dicts:

* request   ``{"id", "operationName", "input"}``
* response  ``{"id", "result"}`` or ``{"id", "error": {"message", "kind", ...}}``
* event     ``{"sessionId", "kind": "data" | "exit" | "titleChange", "payload"}``

A single control thread dispatches requests in arrival order. Session input
operations run on that thread so a session's input is never reordered; every
other operation runs on a worker pool. Each open session has one pump thread
forwarding its events, which keeps per-session order; there is no ordering
between different sessions.
"""

import dataclasses
import itertools
import queue
import re
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import handlers
from error_handler import (ErrorCategory, ErrorSeverity, NotAGitRepository, NotFound,
                           PathCollision, PersistenceUnavailable, SessionBackpressure, SessionConflict,
                           SubprocessFailure, Unmerged, WorktreeError)
from logging_config import get_logger, log_performance
from models import EventKind

logger = get_logger(__name__)

INLINE_OPERATIONS = frozenset({"createSession", "sendSessionData", "resizeSession", "sessionExists"})
DEFAULT_WORKERS = 4

_CAMEL_BOUNDARY = re.compile(r"_([a-z])")


class UnknownOperation(WorktreeError):
    kind = "UnknownOperation"


class BridgeClosed(WorktreeError):
    kind = "BridgeClosed"


def _camel(name: str) -> str:
    return _CAMEL_BOUNDARY.sub(lambda m: m.group(1).upper(), name)


def to_jsonable(value: Any) -> Any:
    """Convert results to JSON-ready values; dataclass fields become camelCase keys."""
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {_camel(f.name): to_jsonable(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_jsonable(v) for v in value]
    return value


def _category_for(exc: Exception) -> ErrorCategory:
    if isinstance(exc, (SubprocessFailure, NotAGitRepository, PathCollision, Unmerged)):
        return ErrorCategory.GIT_OPERATION
    if isinstance(exc, (SessionConflict, SessionBackpressure)):
        return ErrorCategory.SESSION_MANAGEMENT
    if isinstance(exc, PersistenceUnavailable):
        return ErrorCategory.CONFIGURATION
    if isinstance(exc, (UnknownOperation, BridgeClosed)):
        return ErrorCategory.TRANSPORT
    if isinstance(exc, OSError):
        return ErrorCategory.FILE_SYSTEM
    return ErrorCategory.UNKNOWN


def _severity_for(exc: Exception) -> ErrorSeverity:
    if isinstance(exc, (Unmerged, PathCollision, NotFound, UnknownOperation, SessionBackpressure)):
        return ErrorSeverity.WARNING
    if isinstance(exc, WorktreeError):
        return ErrorSeverity.ERROR
    return ErrorSeverity.CRITICAL


class TransportBridge:
    """Multiplexes control-plane traffic between a UI and the core."""

    def __init__(self, ctx, send: Callable[[dict], None], max_workers: int = DEFAULT_WORKERS):
        self.ctx = ctx
        self._send = send
        self._send_lock = threading.Lock()
        self._inbound: "queue.Queue[Optional[dict]]" = queue.Queue()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="many-worker")
        self._control: threading.Thread | None = None
        self._closed = threading.Event()
        self._local_ids = itertools.count(1)
        self._pending: Dict[str, Future] = {}
        self._pending_lock = threading.Lock()
        self._pumps: Dict[str, threading.Thread] = {}
        self._unstarted: Dict[Any, Dict[str, Any]] = {}
        self._current = threading.local()
        self._pumps_lock = threading.Lock()
        self._operations: Dict[str, Callable] = dict(handlers.OPERATIONS)
        self._operations.update({
            "createWorktree": self._create_worktree,
            "createSession": self._create_session,
            "sendSessionData": self._send_session_data,
            "resizeSession": self._resize_session,
            "closeSession": self._close_session,
            "sessionExists": self._session_exists,
        })

    @property
    def operations(self) -> frozenset:
        return frozenset(self._operations)

    def start(self) -> "TransportBridge":
        if self._control is None:
            self._control = threading.Thread(target=self._control_loop, name="many-control", daemon=True)
            self._control.start()
        return self

    def submit(self, message: dict) -> None:
        """Queue one request for the control thread; returns immediately."""
        if self._closed.is_set():
            self._reject(message, BridgeClosed("The bridge is shut down"))
            return
        self._inbound.put(message)

    def request(self, operation: str, input: Any = None) -> Future:
        """In-process request; the future resolves to the result or raises the error."""
        request_id = f"local-{next(self._local_ids)}"
        future: Future = Future()
        with self._pending_lock:
            self._pending[request_id] = future
        self.submit({"id": request_id, "operationName": operation, "input": input or {}})
        return future

    def call(self, operation: str, input: Any = None, timeout: float | None = None) -> Any:
        return self.request(operation, input).result(timeout)

    def emit(self, message: dict) -> bool:
        """Send one outbound message; writes are serialized."""
        try:
            with self._send_lock:
                self._send(message)
            return True
        except Exception as e:
            self.ctx.error_handler.handle_error(e, "transport", ErrorCategory.TRANSPORT, ErrorSeverity.ERROR,
                                                context={"message_id": message.get("id")})
            return False

    def _control_loop(self) -> None:
        while True:
            message = self._inbound.get()
            if message is None:
                return
            self._dispatch(message)

    def _dispatch(self, message: dict) -> None:
        if not isinstance(message, dict) or "id" not in message:
            logger.warning(f"Dropping request without an id: {message!r}")
            return
        name = message.get("operationName")
        handler = self._operations.get(name)
        if handler is None:
            self._reject(message, UnknownOperation(f"Unknown operation '{name}'", operation=name))
            return
        if name in INLINE_OPERATIONS:
            self._execute(message["id"], name, handler, message.get("input"))
        else:
            self._executor.submit(self._execute, message["id"], name, handler, message.get("input"))

    def _execute(self, request_id, name: str, handler: Callable, params: Any) -> None:
        started = time.monotonic()
        self._current.request_id = request_id
        try:
            result = handler(self.ctx, params if isinstance(params, dict) else {})
        except Exception as e:
            self._fail(request_id, name, e)
        else:
            self._succeed(request_id, to_jsonable(result))
        finally:
            self._current.request_id = None
            log_performance(logger, name, time.monotonic() - started, request_id=request_id)
        self._start_pumps(request_id)

    def _succeed(self, request_id, result: Any) -> None:
        future = self._take_pending(request_id)
        if future is not None:
            future.set_result(result)
        else:
            self.emit({"id": request_id, "result": result})

    def _fail(self, request_id, name: str, exc: Exception) -> None:
        info = self.ctx.error_handler.handle_error(exc, name, _category_for(exc), _severity_for(exc),
                                                   context={"request_id": request_id})
        future = self._take_pending(request_id)
        if future is not None:
            future.set_exception(exc)
        else:
            self.emit({"id": request_id, "error": info.payload})

    def _reject(self, message: dict, exc: WorktreeError) -> None:
        request_id = message.get("id") if isinstance(message, dict) else None
        self._fail(request_id, str(message.get("operationName")) if isinstance(message, dict) else "?", exc)

    def _take_pending(self, request_id) -> Future | None:
        with self._pending_lock:
            return self._pending.pop(request_id, None)

    # Session operations

    def _open_session(self, **kwargs):
        info = self.ctx.sessions.open_session(**kwargs)
        subscription = self.ctx.sessions.subscribe(info.id)
        request_id = getattr(self._current, "request_id", None)
        with self._pumps_lock:
            self._unstarted.setdefault(request_id, {})[info.id] = subscription
        return info

    def _start_pumps(self, request_id=None) -> None:
        """Start pumps for sessions opened by the request that just answered.

        With no request id (shutdown) every waiting session gets its pump.
        """
        with self._pumps_lock:
            if request_id is None:
                groups, self._unstarted = list(self._unstarted.values()), {}
            else:
                groups = [self._unstarted.pop(request_id, {})]
            ready = {session_id: sub for group in groups for session_id, sub in group.items()}
            for session_id, subscription in ready.items():
                pump = threading.Thread(target=self._pump, args=(session_id, subscription),
                                        name=f"session-pump-{session_id}", daemon=True)
                self._pumps[session_id] = pump
                pump.start()

    def _pump(self, session_id: str, subscription) -> None:
        with subscription:
            for event in subscription:
                self.emit(event.to_message())
                if event.kind is EventKind.EXIT:
                    break
        self.ctx.sessions.dispose(session_id)
        with self._pumps_lock:
            self._pumps.pop(session_id, None)

    def _create_session(self, ctx, params):
        working_directory = params.get("workingDirectory")
        command = params.get("command")
        info = self._open_session(
            session_id=params.get("sessionId") or None,
            working_directory=Path(working_directory) if working_directory else None,
            cols=int(params.get("cols") or 80),
            rows=int(params.get("rows") or 24),
            command=list(command) if command else None,
            initial_command=params.get("initialCommand") or None,
        )
        result = to_jsonable(info)
        result["sessionId"] = info.id
        return result

    def _send_session_data(self, ctx, params):
        ctx.sessions.write(params.get("sessionId"), params.get("data") or "")
        return True

    def _resize_session(self, ctx, params):
        ctx.sessions.resize(params.get("sessionId"), int(params.get("cols") or 80), int(params.get("rows") or 24))
        return True

    def _close_session(self, ctx, params):
        return ctx.sessions.dispose(params.get("sessionId"))

    def _session_exists(self, ctx, params):
        return ctx.sessions.session_exists(params.get("sessionId"))

    def _create_worktree(self, ctx, params):
        """Create a worktree and run the repository's init command in a setup session."""
        result = handlers.create_worktree(ctx, params)
        if result.get("initCommand"):
            info = self._open_session(working_directory=Path(result["path"]),
                                      initial_command=result["initCommand"])
            result["setupSessionId"] = info.id
        return result

    def shutdown(self, timeout: float = 5.0) -> None:
        """Stop accepting requests and dispose every session."""
        if self._closed.is_set():
            return
        self._closed.set()
        self._inbound.put(None)
        if self._control is not None:
            self._control.join(timeout)
        self._executor.shutdown(wait=True, cancel_futures=True)
        self._start_pumps()
        self.ctx.sessions.dispose_all()
        with self._pumps_lock:
            pumps = list(self._pumps.values())
        for pump in pumps:
            pump.join(timeout)
        with self._pending_lock:
            pending, self._pending = self._pending, {}
        for future in pending.values():
            future.cancel()
        logger.info("Transport bridge shut down")
