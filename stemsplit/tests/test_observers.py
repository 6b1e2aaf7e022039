import logging

import pytest

from stemsplit.separation.observers import CallbackObserver, LoggingObserver, estimate_remaining


def test_callback_observer_forwards_lifecycle():
    calls = []
    observer = CallbackObserver(
        on_start=lambda: calls.append("start"),
        on_progress=lambda p: calls.append(p),
        on_completion=lambda ok, msg: calls.append((ok, msg)),
    )

    observer.on_processing_start()
    observer.on_progress_update(0.5)
    observer.on_processing_finish()
    observer.on_processing_error("bad")

    assert calls == ["start", 0.5, (True, None), (False, "bad")]


def test_callback_observer_tolerates_missing_callbacks():
    observer = CallbackObserver()
    observer.on_processing_start()
    observer.on_progress_update(0.1)
    observer.on_processing_finish()
    observer.on_processing_error("ignored")


def test_logging_observer_writes_progress(caplog):
    log = logging.getLogger("stemsplit.tests.observer")
    observer = LoggingObserver(label="song.wav", log=log)

    with caplog.at_level(logging.INFO, logger="stemsplit.tests.observer"):
        observer.on_processing_start()
        observer.on_progress_update(0.5)
        observer.on_processing_finish()
        observer.on_processing_error("engine died")

    messages = [r.getMessage() for r in caplog.records]
    assert messages[0] == "[song.wav] started"
    assert "50.0%" in messages[1]
    assert messages[2].startswith("[song.wav] finished in")
    assert caplog.records[3].levelno == logging.ERROR
    assert "engine died" in messages[3]


def test_logging_observer_elapsed_before_start():
    assert LoggingObserver().elapsed() == 0.0


@pytest.mark.parametrize("progress", [0.0, 0.05, 1.0, 1.5])
def test_no_estimate_outside_the_useful_range(progress):
    assert estimate_remaining(10.0, progress) is None


def test_estimate_includes_safety_margin():
    # half done after 10 s leaves 10 s, padded by 10%
    assert estimate_remaining(10.0, 0.5) == pytest.approx(11.0)
