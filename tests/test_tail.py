import os
import queue
import time

import pytest

from nodeagent.tail import Level, LogEntry, TailReader

POLL = 0.05


def _append(path, text):
    with open(path, "a") as f:
        f.write(text)


def _wait():
    time.sleep(3 * POLL)


def _next(ch):
    return ch.get(timeout=5).content


@pytest.fixture
def log_path(tmp_path):
    path = tmp_path / "log"
    path.write_text("")
    return str(path)


def test_tail_reader(log_path):
    ch = queue.Queue(maxsize=10)

    with TailReader(log_path, ch, POLL):
        _append(log_path, "foo 1\n")
        assert _next(ch) == "foo 1"

        # append
        _append(log_path, "bar 1\nbuz 1\n")
        assert _next(ch) == "bar 1"
        assert _next(ch) == "buz 1"

        # no end of line
        _append(log_path, "foo 2\nba")
        _wait()
        _append(log_path, "r 2\n")
        assert _next(ch) == "foo 2"
        assert _next(ch) == "bar 2"

        # move
        os.rename(log_path, log_path + ".1")
        _append(log_path, "foo 3\nbar 3\n")
        assert _next(ch) == "foo 3"
        assert _next(ch) == "bar 3"

        # truncate
        with open(log_path, "w") as f:
            f.write("foo 4\n")
        assert _next(ch) == "foo 4"

        # delete
        os.remove(log_path)
        _wait()
        _append(log_path, "foo 5\n")
        assert _next(ch) == "foo 5"


def test_existing_content_is_skipped(log_path):
    _append(log_path, "old line\n")
    ch = queue.Queue()
    with TailReader(log_path, ch, POLL):
        _append(log_path, "new line\n")
        entry = ch.get(timeout=5)
    assert entry == LogEntry(content="new line", level=Level.UNKNOWN)
    assert ch.empty()


def test_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        TailReader(str(tmp_path / "absent"), queue.Queue(), POLL)


def test_no_entries_after_stop(log_path):
    ch = queue.Queue()
    reader = TailReader(log_path, ch, POLL)
    reader.stop()
    reader.stop()
    _append(log_path, "late\n")
    _wait()
    assert ch.empty()