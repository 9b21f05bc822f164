"""Following a growing log file the way ``tail -F`` does."""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from enum import StrEnum
from queue import Full, Queue
from typing import BinaryIO

log = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 1.0


class Level(StrEnum):
    UNKNOWN = "unknown"
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


@dataclass(frozen=True)
class LogEntry:
    content: str
    level: Level = Level.UNKNOWN


class TailReader:
    """Read lines appended to a file, surviving rotation, truncation and deletion.

    Reading starts at the current end of the file; every complete line is put
    on ``queue`` as a LogEntry.
    """

    def __init__(
        self,
        file_name: str,
        queue: Queue[LogEntry],
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        self.file_name = file_name
        self._queue = queue
        self._poll_interval = poll_interval
        self._stop_event = threading.Event()
        self._stopped = False
        self._file: BinaryIO | None = open(file_name, "rb")
        try:
            self._info = os.fstat(self._file.fileno())
            self._file.seek(0, os.SEEK_END)
        except OSError:
            self._file.close()
            raise
        self._thread = threading.Thread(
            target=self._run, name=f"tail {file_name}", daemon=True
        )
        self._thread.start()

    def __enter__(self) -> TailReader:
        return self

    def __exit__(self, *exc: object) -> None:
        self.stop()

    def stop(self) -> None:
        """Stop following the file and release it."""
        if self._stopped:
            return
        self._stopped = True
        log.info("stopping tail reader for %s", self.file_name)
        self._stop_event.set()
        self._thread.join()
        self._close_file()

    def _run(self) -> None:
        prefix = b""
        while not self._stop_event.is_set():
            line = self._file.readline() if self._file is not None else b""
            if not line.endswith(b"\n"):
                prefix += line
                self._poll()
                continue
            line, prefix = prefix + line, b""
            self._emit(line[:-1].decode("utf-8", errors="replace"))

    def _emit(self, content: str) -> None:
        entry = LogEntry(content=content, level=Level.UNKNOWN)
        while not self._stop_event.is_set():
            try:
                self._queue.put(entry, timeout=self._poll_interval)
                return
            except Full:
                continue

    def _close_file(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None

    def _poll(self) -> None:
        """Wait until there may be something new to read, or until stopped."""
        while not self._stop_event.wait(self._poll_interval):
            try:
                info = os.stat(self.file_name)
            except OSError:
                self._close_file()
                continue
            if self._file is None:
                try:
                    self._file = open(self.file_name, "rb")
                except OSError:
                    continue
                self._info = info
                return
            if self._moved(info) or self._truncated(info) or self._appended(info):
                self._info = info
                return

    def _moved(self, info: os.stat_result) -> bool:
        if os.path.samestat(self._info, info):
            return False
        try:
            new_file = open(self.file_name, "rb")
        except OSError:
            self._close_file()
            return False
        self._close_file()
        self._file = new_file
        return True

    def _truncated(self, info: os.stat_result) -> bool:
        if self._file is None or info.st_size >= self._info.st_size:
            return False
        try:
            self._file.seek(0, os.SEEK_SET)
        except OSError:
            return False
        return True

    def _appended(self, info: os.stat_result) -> bool:
        return self._file is not None and info.st_size > self._info.st_size