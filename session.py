"""Session management for interactive terminal sessions in worktrees."""

import codecs
import collections
import fcntl
import os
import pty
import queue
import re
import select
import struct
import subprocess
import termios
import threading
import time
import uuid
from pathlib import Path

from error_handler import NotFound, SessionBackpressure, SessionConflict
from logging_config import get_logger
from models import EventKind, SessionEvent, SessionInfo, SessionState

logger = get_logger(__name__)

DEFAULT_BUFFER_BYTES = 1024 * 1024
READ_CHUNK = 4096
POLL_INTERVAL = 0.1
TERMINATE_TIMEOUT = 2.0

# OSC 0 / OSC 2: set window title, terminated by BEL or ST
_TITLE_SEQUENCE = re.compile(r"\x1b\][02];([^\x07\x1b]*)(?:\x07|\x1b\\)")

_PASSTHROUGH_ENV = (
    "PATH", "HOME", "USER", "SHELL", "LANG", "LC_ALL", "TMPDIR", "EDITOR", "PAGER",
    "GIT_CONFIG_GLOBAL", "GIT_CONFIG_SYSTEM", "GIT_AUTHOR_NAME", "GIT_AUTHOR_EMAIL",
    "GIT_COMMITTER_NAME", "GIT_COMMITTER_EMAIL",
)


def session_environment() -> dict[str, str]:
    """Clean environment for session processes."""
    env = {key: os.environ[key] for key in _PASSTHROUGH_ENV if key in os.environ}
    env["TERM"] = "xterm-256color"
    env["COLORTERM"] = "truecolor"
    env.setdefault("LANG", "en_US.UTF-8")
    return env


def default_shell_command(shell: str | None = None) -> list[str]:
    shell = shell or os.environ.get("SHELL") or "/bin/bash"
    return [shell, "-l"]


def _size(event: SessionEvent) -> int:
    """UTF-8 size of a data event's payload; other events count as zero."""
    if event.kind is EventKind.DATA:
        return len(event.payload.encode("utf-8"))
    return 0


class SessionChannel:
    """Bounded FIFO of events for one session.

    Holds at most `max_bytes` (UTF-8) of undelivered data; when full the
    oldest data events are dropped. Only the newest undelivered title event
    is kept, so titles cannot grow the queue either. Exit events are never
    dropped. One subscription may consume the channel at a time.
    """

    def __init__(self, max_bytes: int = DEFAULT_BUFFER_BYTES):
        self.max_bytes = max_bytes
        self.dropped_bytes = 0
        self._events: collections.deque[SessionEvent] = collections.deque()
        self._buffered = 0
        self._closed = False
        self._subscriber: "Subscription | None" = None
        self._cond = threading.Condition()

    def publish(self, event: SessionEvent) -> None:
        with self._cond:
            if self._closed:
                return
            if event.kind is EventKind.TITLE_CHANGE:
                self._events = collections.deque(
                    queued for queued in self._events if queued.kind is not EventKind.TITLE_CHANGE
                )
            self._events.append(event)
            if event.kind is EventKind.DATA:
                self._buffered += _size(event)
                self._drop_oldest()
            self._cond.notify_all()

    def _drop_oldest(self) -> None:
        while self._buffered > self.max_bytes:
            for index, queued in enumerate(self._events):
                if queued.kind is EventKind.DATA:
                    break
            else:
                return
            if index == len(self._events) - 1:
                # never drop the chunk that was just published
                return
            del self._events[index]
            size = _size(queued)
            self._buffered -= size
            self.dropped_bytes += size

    def close(self) -> None:
        """No more events will be published; queued ones can still be read."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    @property
    def closed(self) -> bool:
        return self._closed

    def attach(self, subscription: "Subscription") -> None:
        with self._cond:
            if self._subscriber is not None:
                raise SessionConflict("Session already has an active subscriber")
            self._subscriber = subscription

    def detach(self, subscription: "Subscription") -> None:
        with self._cond:
            if self._subscriber is subscription:
                self._subscriber = None
            self._cond.notify_all()

    def get(self, subscription: "Subscription", timeout: float | None = None) -> SessionEvent | None:
        """Next event, or None once closed and drained, detached, or timed out."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                if self._subscriber is not subscription:
                    return None
                if self._events:
                    event = self._events.popleft()
                    self._buffered -= _size(event)
                    return event
                if self._closed:
                    return None
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return None
                self._cond.wait(remaining)


class Subscription:
    """Handle on a session's event stream; closing it unsubscribes."""

    def __init__(self, session_id: str, channel: SessionChannel):
        self.session_id = session_id
        self._channel = channel
        self._closed = False
        channel.attach(self)

    def get(self, timeout: float | None = None) -> SessionEvent | None:
        return self._channel.get(self, timeout)

    def __iter__(self):
        while True:
            event = self.get()
            if event is None:
                return
            yield event

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._channel.detach(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class _Session:
    """Registry entry; only SessionManager touches the process and fd."""

    def __init__(self, session_id: str, working_directory: Path, command: list[str], buffer_bytes: int):
        self.id = session_id
        self.working_directory = working_directory
        self.command = command
        self.channel = SessionChannel(buffer_bytes)
        self.state = SessionState.CREATED
        self.started_at = time.time()
        self.process: subprocess.Popen | None = None
        self.master_fd: int | None = None
        self.reader: threading.Thread | None = None
        self.writer: threading.Thread | None = None
        self.input: queue.Queue[bytes | None] = queue.Queue()
        self.pending_input = 0
        self.stopping = threading.Event()
        self.exit_code: int | None = None
        self.title: str | None = None
        self.lock = threading.Lock()

    def info(self) -> SessionInfo:
        return SessionInfo(
            id=self.id,
            working_directory=self.working_directory,
            command=list(self.command),
            pid=self.process.pid if self.process else None,
            state=self.state,
            started_at=self.started_at,
            exit_code=self.exit_code,
        )


class SessionManager:
    """Owns every live interactive session, keyed by session id."""

    def __init__(self, buffer_bytes: int = DEFAULT_BUFFER_BYTES, shell: str | None = None):
        self.buffer_bytes = buffer_bytes
        self.shell = shell
        self._sessions: dict[str, _Session] = {}
        self._lock = threading.Lock()

    def open_session(self, session_id: str | None = None, working_directory: Path | None = None,
                     cols: int = 80, rows: int = 24, command: list[str] | None = None,
                     initial_command: str | None = None) -> SessionInfo:
        """Spawn a process on a pseudo-terminal and start streaming its output.

        A process that fails to start still yields a session: it carries one
        "Failed to start" data event followed by its exit event.
        """
        session_id = session_id or uuid.uuid4().hex
        cwd = Path(working_directory) if working_directory else Path.home()
        session = _Session(session_id, cwd, command or default_shell_command(self.shell), self.buffer_bytes)
        with self._lock:
            if session_id in self._sessions:
                raise SessionConflict(f"Session {session_id} already exists", session_id=session_id)
            self._sessions[session_id] = session

        try:
            self._spawn(session, cols, rows)
        except OSError as e:
            logger.error(f"Failed to start session {session_id} in {cwd}: {e}")
            session.channel.publish(SessionEvent(session_id, EventKind.DATA, f"Failed to start session: {e}\r\n"))
            self._mark_exited(session, None)
            return session.info()

        logger.info(f"Session {session_id} started (pid {session.process.pid}) in {cwd}")
        if initial_command:
            self.write(session_id, initial_command + "\r")
        return session.info()

    def _spawn(self, session: _Session, cols: int, rows: int) -> None:
        master_fd, slave_fd = pty.openpty()
        try:
            _set_winsize(slave_fd, cols, rows)
            session.process = subprocess.Popen(
                session.command,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=str(session.working_directory),
                env=session_environment(),
                start_new_session=True,
                close_fds=True,
            )
        except OSError:
            os.close(master_fd)
            raise
        finally:
            os.close(slave_fd)

        os.set_blocking(master_fd, False)
        session.master_fd = master_fd
        with session.lock:
            session.state = SessionState.ATTACHED
        session.reader = threading.Thread(
            target=self._read_pty, args=(session,), name=f"session-reader-{session.id}", daemon=True
        )
        session.writer = threading.Thread(
            target=self._write_pty, args=(session,), name=f"session-writer-{session.id}", daemon=True
        )
        session.reader.start()
        session.writer.start()

    def _read_pty(self, session: _Session) -> None:
        """Read from the pty until EOF or disposal."""
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while not session.stopping.is_set():
            try:
                r, _, _ = select.select([session.master_fd], [], [], POLL_INTERVAL)
                if not r:
                    continue
                data = os.read(session.master_fd, READ_CHUNK)
            except BlockingIOError:
                continue
            except OSError:
                # EIO once the child side is closed
                break
            if not data:
                break
            self._publish_output(session, decoder.decode(data))

        tail = decoder.decode(b"", final=True)
        if tail:
            self._publish_output(session, tail)
        if not session.stopping.is_set():
            self._mark_exited(session, session.process.wait())

    def _write_pty(self, session: _Session) -> None:
        """Feed queued input to the pty as fast as the process accepts it."""
        pending = b""
        while not session.stopping.is_set():
            if not pending:
                try:
                    chunk = session.input.get(timeout=POLL_INTERVAL)
                except queue.Empty:
                    continue
                if chunk is None:
                    break
                pending = chunk
            try:
                _, w, _ = select.select([], [session.master_fd], [], POLL_INTERVAL)
                if not w:
                    continue
                written = os.write(session.master_fd, pending)
            except BlockingIOError:
                continue
            except OSError as e:
                logger.debug(f"Stopped writing to session {session.id}: {e}")
                break
            pending = pending[written:]
            with session.lock:
                session.pending_input -= written

    def _publish_output(self, session: _Session, text: str) -> None:
        if not text:
            return
        session.channel.publish(SessionEvent(session.id, EventKind.DATA, text))
        titles = _TITLE_SEQUENCE.findall(text)
        if titles and titles[-1] != session.title:
            session.title = titles[-1]
            session.channel.publish(SessionEvent(session.id, EventKind.TITLE_CHANGE, session.title))

    def _mark_exited(self, session: _Session, exit_code: int | None) -> None:
        """Move to EXITED and emit the exit event, at most once per session."""
        with session.lock:
            if session.state not in (SessionState.CREATED, SessionState.ATTACHED):
                return
            session.state = SessionState.EXITED
            session.exit_code = exit_code
            session.channel.publish(SessionEvent(session.id, EventKind.EXIT, {"exitCode": exit_code}))
        logger.info(f"Session {session.id} exited with code {exit_code}")

    def _get(self, session_id: str) -> _Session:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise NotFound(f"No session with id {session_id}", session_id=session_id)
        return session

    def write(self, session_id: str, data: str) -> None:
        """Queue input for the session's process; never blocks.

        Raises SessionBackpressure when more than `buffer_bytes` of earlier
        input is still waiting for the process to read it.
        """
        session = self._get(session_id)
        payload = data.encode("utf-8")
        with session.lock:
            if session.state is not SessionState.ATTACHED:
                logger.debug(f"Dropping input for session {session_id} in state {session.state.value}")
                return
            if session.pending_input + len(payload) > self.buffer_bytes:
                raise SessionBackpressure(
                    f"Session {session_id} is not reading its input "
                    f"({session.pending_input} bytes pending)",
                    session_id=session_id,
                )
            session.pending_input += len(payload)
            session.input.put(payload)

    def resize(self, session_id: str, cols: int, rows: int) -> None:
        session = self._get(session_id)
        if session.state is SessionState.ATTACHED:
            _set_winsize(session.master_fd, cols, rows)

    def subscribe(self, session_id: str) -> Subscription:
        """Consume a session's events; close the returned handle to unsubscribe."""
        session = self._get(session_id)
        return Subscription(session_id, session.channel)

    def get_session(self, session_id: str) -> SessionInfo | None:
        with self._lock:
            session = self._sessions.get(session_id)
        return session.info() if session else None

    def session_exists(self, session_id: str) -> bool:
        """True while the session's process is running."""
        info = self.get_session(session_id)
        return info is not None and info.state is SessionState.ATTACHED

    def get_all_sessions(self) -> dict[str, SessionInfo]:
        with self._lock:
            sessions = list(self._sessions.values())
        return {session.id: session.info() for session in sessions}

    def sessions_in(self, working_directory: Path) -> list[str]:
        """Ids of sessions running in `working_directory`."""
        target = Path(working_directory)
        with self._lock:
            return [s.id for s in self._sessions.values() if s.working_directory == target]

    def dispose(self, session_id: str) -> bool:
        """Terminate the process and release the session.

        Safe to call repeatedly; returns False when there was nothing to do.
        """
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return False

        session.stopping.set()
        process = session.process
        if process is not None and process.poll() is None:
            try:
                process.terminate()
                process.wait(timeout=TERMINATE_TIMEOUT)
            except subprocess.TimeoutExpired:
                logger.warning(f"Session {session_id} did not terminate, killing it")
                process.kill()
                process.wait()
            except (ProcessLookupError, OSError) as e:
                logger.warning(f"Failed to terminate process for session {session_id}: {e}")
        session.input.put(None)
        for thread in (session.reader, session.writer):
            if thread is not None and thread is not threading.current_thread():
                thread.join(timeout=TERMINATE_TIMEOUT)
        if session.master_fd is not None:
            try:
                os.close(session.master_fd)
            except OSError as e:
                logger.warning(f"Failed to close pty for session {session_id}: {e}")
            session.master_fd = None

        self._mark_exited(session, process.returncode if process else None)
        with session.lock:
            session.state = SessionState.DISPOSED
        session.channel.close()
        logger.info(f"Session {session_id} disposed")
        return True

    def cleanup_terminated_sessions(self) -> list[str]:
        """Dispose sessions whose processes have exited."""
        with self._lock:
            exited = [s.id for s in self._sessions.values() if s.state is SessionState.EXITED]
        for session_id in exited:
            self.dispose(session_id)
        return exited

    def dispose_all(self) -> None:
        """Dispose every session; called before the process exits."""
        with self._lock:
            session_ids = list(self._sessions)
        for session_id in session_ids:
            self.dispose(session_id)


def _set_winsize(fd: int, cols: int, rows: int) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))
