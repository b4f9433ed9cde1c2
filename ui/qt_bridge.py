"""Qt adapter for the transport bridge.

Bridge threads never touch Qt objects: outbound messages are queued and a
QTimer on the GUI thread drains the queue and re-emits them as signals.
"""

import itertools
import queue

from PySide6.QtCore import QObject, QTimer, Signal

from bridge import TransportBridge
from logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_POLL_MS = 16


class QtSessionBridge(QObject):
    """Turns bridge traffic into Qt signals delivered on the GUI thread."""

    response_received = Signal(object, object)  # request id, result
    error_received = Signal(object, object)  # request id, error payload
    session_data = Signal(str, str)  # session id, text
    session_exited = Signal(str, object)  # session id, exit code or None
    session_title_changed = Signal(str, str)  # session id, title

    def __init__(self, ctx, parent=None, poll_interval_ms: int = DEFAULT_POLL_MS, max_workers: int = 4):
        super().__init__(parent)
        self._outbox: "queue.Queue[dict]" = queue.Queue()
        self._ids = itertools.count(1)
        self.bridge = TransportBridge(ctx, self._outbox.put, max_workers=max_workers)
        self._timer = QTimer(self)
        self._timer.setInterval(poll_interval_ms)
        self._timer.timeout.connect(self.pump)

    def start(self) -> None:
        self.bridge.start()
        self._timer.start()

    def request(self, operation: str, input: dict | None = None) -> str:
        """Submit a request; its answer arrives through response_received or error_received."""
        request_id = f"qt-{next(self._ids)}"
        self.bridge.submit({"id": request_id, "operationName": operation, "input": input or {}})
        return request_id

    def pump(self, max_messages: int | None = None) -> int:
        """Emit queued messages as signals; returns how many were delivered."""
        delivered = 0
        while max_messages is None or delivered < max_messages:
            try:
                message = self._outbox.get_nowait()
            except queue.Empty:
                break
            self._deliver(message)
            delivered += 1
        return delivered

    def _deliver(self, message: dict) -> None:
        if "sessionId" in message and "kind" in message:
            session_id, kind, payload = message["sessionId"], message["kind"], message.get("payload")
            if kind == "data":
                self.session_data.emit(session_id, payload)
            elif kind == "exit":
                self.session_exited.emit(session_id, (payload or {}).get("exitCode"))
            elif kind == "titleChange":
                self.session_title_changed.emit(session_id, payload)
            else:
                logger.warning(f"Unknown session event kind {kind!r}")
        elif "error" in message:
            self.error_received.emit(message.get("id"), message["error"])
        else:
            self.response_received.emit(message.get("id"), message.get("result"))

    def shutdown(self) -> None:
        self._timer.stop()
        self.bridge.shutdown()
        self.pump()
