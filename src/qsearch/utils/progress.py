"""Progress display utilities."""

import itertools
import sys
import threading
import time
from typing import TextIO


class SimpleProgressBar:
    """Lightweight progress bar using only the standard library."""

    def __init__(
        self,
        total: int,
        desc: str,
        unit: str = "file",
        width: int = 30,
        stream: TextIO | None = None,
    ):
        self.total = max(total, 0)
        self.desc = desc
        self.unit = unit
        self.width = width
        self.current = 0
        self.stream = stream or sys.stderr
        if self.total > 0:
            self._render()

    def update(self, step: int = 1) -> None:
        if self.total <= 0:
            return
        self.current = min(self.total, self.current + step)
        self._render()
        if self.current >= self.total:
            self.close()

    def close(self) -> None:
        if self.total > 0:
            self.stream.write("\n")
            self.stream.flush()
            self.total = 0

    def _render(self) -> None:
        progress = self.current / self.total if self.total else 0
        filled = int(self.width * progress)
        bar = "#" * filled + "-" * (self.width - filled)
        self.stream.write(
            f"\r{self.desc} [{bar}] {progress * 100:5.1f}% ({self.current}/{self.total} {self.unit}s)"
        )
        self.stream.flush()


class Spinner:
    """Simple console spinner to indicate long-running steps."""

    def __init__(self, desc: str, interval: float = 0.1, stream: TextIO | None = None):
        self.desc = desc
        self.interval = interval
        self.stream = stream or sys.stderr
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._line = desc

    def __enter__(self):
        self._thread = threading.Thread(target=self._spin, daemon=True)
        self._thread.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self._stop_event.set()
        if self._thread:
            self._thread.join()
        # Clear spinner line
        self.stream.write("\r" + " " * len(self._line) + "\r")
        self.stream.flush()

    def _spin(self) -> None:
        for char in itertools.cycle("|/-\\"):
            if self._stop_event.is_set():
                break
            self._line = f"{self.desc} {char}"
            self.stream.write("\r" + self._line)
            self.stream.flush()
            time.sleep(self.interval)


class NullProgress:
    """Progress sink that shows nothing. Used for library calls and tests."""

    def phase(self, message: str) -> None:
        pass

    def start(self, total: int, desc: str) -> None:
        pass

    def advance(self, step: int = 1) -> None:
        pass

    def finish(self) -> None:
        pass


class ConsoleProgress(NullProgress):
    """Phase messages plus a progress bar for the file-processing stage."""

    def __init__(self, stream: TextIO | None = None):
        self.stream = stream or sys.stderr
        self._bar: SimpleProgressBar | None = None

    def phase(self, message: str) -> None:
        self.finish()
        self.stream.write(f"{message}\n")
        self.stream.flush()

    def start(self, total: int, desc: str) -> None:
        self.finish()
        self._bar = SimpleProgressBar(total, desc, stream=self.stream)

    def advance(self, step: int = 1) -> None:
        if self._bar is not None:
            self._bar.update(step)

    def finish(self) -> None:
        if self._bar is not None:
            self._bar.close()
            self._bar = None
