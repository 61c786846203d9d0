"""Follow a log file by running ``tail -f`` in the background."""

from __future__ import annotations

import subprocess


class Tailer:
    """Copy the contents of a file to this process's output as it grows."""

    def __init__(self, filename: str) -> None:
        self.filename = filename
        self._process: subprocess.Popen | None = None

    def start(self) -> None:
        """Start following the file from its first line.

        Raises OSError if the ``tail`` command cannot be started.
        """
        self._process = subprocess.Popen(["tail", "-n", "+1", "-f", self.filename])

    def stop(self) -> int | None:
        """Kill the tail process and return its exit status.

        Returns None if the tailer was never started.
        """
        process = self._process
        if process is None:
            return None
        if process.poll() is None:
            process.kill()
        return process.wait()

    def __enter__(self) -> Tailer:
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()