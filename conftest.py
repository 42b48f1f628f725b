import logging

import pytest

import datasink


@pytest.fixture
def active_path(tmp_path):
    return datasink.ActivePath(str(tmp_path / "fallback.csv"))


@pytest.fixture
def data_receiver(active_path):
    receiver = datasink.DataReceiver(active_path, host='127.0.0.1', port=0, timeout=0.1)
    receiver.start()
    yield receiver
    receiver.stop()


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers = handlers
    root.setLevel(level)
