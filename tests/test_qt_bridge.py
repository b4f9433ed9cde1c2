"""Tests for the Qt adapter of the transport bridge."""

import time
from pathlib import Path

import pytest
from PySide6.QtCore import QCoreApplication

from ui.qt_bridge import QtSessionBridge


@pytest.fixture(scope="module")
def qapp():
    return QCoreApplication.instance() or QCoreApplication([])


@pytest.fixture
def qt_bridge(qapp, app_context):
    adapter = QtSessionBridge(app_context)
    adapter.start()
    yield adapter
    adapter.shutdown()


def pump_until(adapter: QtSessionBridge, predicate, timeout: float = 5.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("Timed out waiting for bridge messages")
        adapter.pump()
        time.sleep(0.01)


class TestQtSessionBridge:
    """Tests for signal delivery."""

    def test_response_signal(self, qt_bridge):
        responses = []
        qt_bridge.response_received.connect(lambda request_id, result: responses.append((request_id, result)))

        request_id = qt_bridge.request("getSavedRepos")

        pump_until(qt_bridge, lambda: responses)
        assert responses == [(request_id, [])]

    def test_error_signal(self, qt_bridge):
        errors = []
        qt_bridge.error_received.connect(lambda request_id, payload: errors.append(payload))

        qt_bridge.request("noSuchOperation")

        pump_until(qt_bridge, lambda: errors)
        assert errors[0]["kind"] == "UnknownOperation"

    def test_session_signals(self, qt_bridge, temp_dir: Path):
        responses, output, exits = [], [], []
        qt_bridge.response_received.connect(lambda request_id, result: responses.append(result))
        qt_bridge.session_data.connect(lambda session_id, text: output.append(text))
        qt_bridge.session_exited.connect(lambda session_id, code: exits.append((session_id, code)))

        qt_bridge.request("createSession", {"workingDirectory": str(temp_dir),
                                            "command": ["sh", "-c", "echo from-qt; exit 4"]})

        pump_until(qt_bridge, lambda: exits)
        session_id = responses[0]["sessionId"]
        assert "from-qt" in "".join(output)
        assert exits == [(session_id, 4)]

    def test_pump_limit(self, qt_bridge):
        responses = []
        qt_bridge.response_received.connect(lambda request_id, result: responses.append(request_id))
        for _ in range(3):
            qt_bridge.request("getSavedRepos")

        deadline = time.monotonic() + 5
        while qt_bridge._outbox.qsize() < 3 and time.monotonic() < deadline:
            time.sleep(0.01)

        assert qt_bridge.pump(max_messages=1) == 1
        assert qt_bridge.pump() == 2
        assert len(responses) == 3
