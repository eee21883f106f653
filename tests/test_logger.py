import logging

import pytest

from media_sync.logger import YtDlpLogger, configure_logging


@pytest.mark.parametrize(
    "message",
    [
        "ERROR: [BiliBili] BV1: HTTP Error 412: Precondition Failed",
        "ERROR: request is blocked by risk control (code -352)",
    ],
)
def test_risk_control_messages_are_counted(message):
    logger = YtDlpLogger()
    logger.error(message)

    assert logger.risk_control_hits == 1
    assert logger.rate_limit_count == 0
    assert logger.other_errors == 0


def test_mixed_messages_affect_counters():
    logger = YtDlpLogger()
    logger.error("Video unavailable")
    logger.error("Unexpected failure")
    logger.error("HTTP Error 429: Too Many Requests")

    assert logger.video_unavailable_errors == 1
    assert logger.other_errors == 1
    assert logger.rate_limit_count == 1


def test_log_summary_reports_and_clears_counters(caplog):
    logger = YtDlpLogger("test.ytdlp")
    logger.error("ERROR: request is blocked by risk control (code -352)")
    logger.error("Unexpected failure")
    with caplog.at_level(logging.INFO, logger="test.ytdlp"):
        logger.log_summary()

    assert "1 risk control, 0 unavailable, 1 other" in caplog.text
    assert caplog.records[-1].levelno == logging.WARNING
    assert (logger.risk_control_hits, logger.other_errors) == (0, 0)


def test_rate_limit_backoff_grows_and_resets():
    logger = YtDlpLogger()
    assert logger.check_rate_limit_backoff() is None

    backoffs = []
    for _ in range(4):
        logger.error("HTTP Error 429: Too Many Requests")
        backoffs.append(logger.check_rate_limit_backoff())
    assert backoffs == [30, 60, 120, 120]

    logger.reset_rate_limit()
    assert logger.check_rate_limit_backoff() is None


def test_unavailable_errors_are_logged_quietly(caplog):
    logger = YtDlpLogger("test.ytdlp")
    logger.set_context("https://www.bilibili.com/video/BV1", "BV1")
    with caplog.at_level(logging.DEBUG, logger="test.ytdlp"):
        logger.error("ERROR: Video unavailable")
        logger.error("ERROR: something broke")

    quiet, loud = caplog.records[-2:]
    assert quiet.levelno == logging.DEBUG
    assert loud.levelno == logging.ERROR
    assert "video_id=BV1" in loud.getMessage()


def test_debug_prefix_is_stripped(caplog):
    logger = YtDlpLogger("test.ytdlp")
    with caplog.at_level(logging.DEBUG, logger="test.ytdlp"):
        logger.debug("[debug] Invoking extractor")
    assert caplog.records[-1].getMessage() == "Invoking extractor"


def test_configure_logging_adds_file_handler(tmp_path):
    log_file = tmp_path / "sync.log"
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    try:
        configure_logging("debug", str(log_file))
        logging.getLogger("media_sync.test").debug("hello file")
        for handler in root.handlers:
            handler.flush()
        assert root.level == logging.DEBUG
        assert "hello file" in log_file.read_text(encoding="utf-8")
    finally:
        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()
        for handler in saved_handlers:
            root.addHandler(handler)
        root.setLevel(saved_level)
