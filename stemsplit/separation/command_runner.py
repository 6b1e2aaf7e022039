from __future__ import annotations

import json
import logging
import subprocess
import time
from pathlib import Path
from typing import List, Optional, Sequence

logger = logging.getLogger(__name__)


class CommandRunner:
    """Runs external tools (ffmpeg) and keeps an audit trail.

    Every call, failed or not, appends one JSON line to ``log_path`` with the
    argv, exit code, wall time and the tail of stdout/stderr.
    """

    def __init__(self, log_path: Path, tail_bytes: int = 4096) -> None:
        self.log_path = Path(log_path)
        self.tail_bytes = int(tail_bytes)
        self.log_path.parent.mkdir(parents=True, exist_ok=True)

    def run(
        self,
        argv: Sequence[str],
        cwd: Optional[str] = None,
        check: bool = True,
        timeout: Optional[float] = None,
    ) -> subprocess.CompletedProcess:
        argv = [str(a) for a in argv]
        logger.debug("exec: %s", " ".join(argv))
        started = time.monotonic()
        try:
            proc = subprocess.run(argv, cwd=cwd, capture_output=True, text=True, timeout=timeout, check=check)
        except subprocess.CalledProcessError as exc:
            self._record(argv, exc.returncode, started, exc.stdout, exc.stderr)
            logger.error("%s exited with %d", argv[0], exc.returncode)
            raise
        except subprocess.TimeoutExpired as exc:
            self._record(argv, None, started, exc.stdout, exc.stderr)
            raise
        self._record(argv, proc.returncode, started, proc.stdout, proc.stderr)
        return proc

    def _tail(self, text) -> str:
        if isinstance(text, bytes):
            text = text.decode("utf-8", errors="replace")
        return (text or "")[-self.tail_bytes:]

    def _record(self, argv: List[str], returncode: Optional[int], started: float, stdout, stderr) -> None:
        record = {
            "argv": argv,
            "returncode": returncode,
            "duration": round(time.monotonic() - started, 4),
            "stdout": self._tail(stdout),
            "stderr": self._tail(stderr),
        }
        with self.log_path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(record) + "\n")
