import logging

import pytest

from tello_link.logging import configure_logging


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    names = ("tello_link.adapters.ffmpeg", "aiohttp.access", "asyncio")
    levels = {name: logging.getLogger(name).level for name in names}
    yield
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    for handler in handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)
    for name, value in levels.items():
        logging.getLogger(name).setLevel(value)


def test_debug_level_reaches_ffmpeg_stderr_logger(restore_logging):
    configure_logging("DEBUG")

    assert logging.getLogger("tello_link.adapters.ffmpeg").isEnabledFor(logging.DEBUG)
    assert logging.getLogger("aiohttp.access").level == logging.WARNING


def test_info_level_hides_ffmpeg_stderr(restore_logging):
    configure_logging("INFO")

    assert not logging.getLogger("tello_link.adapters.ffmpeg").isEnabledFor(
        logging.DEBUG
    )


def test_log_file_handler(tmp_path, restore_logging):
    log_path = tmp_path / "logs" / "tello-link.log"

    configure_logging("INFO", log_path=log_path)
    logging.getLogger("tello_link.test").info("hello")
    for handler in logging.getLogger().handlers:
        handler.flush()

    assert "hello" in log_path.read_text()
