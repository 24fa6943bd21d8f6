"""
Stage bookkeeping shared by the build and upload scripts.

What this does (in plain English):
- Each pipeline step runs inside `with stage("download"):`.
- Anything that blows up inside the block comes back out as a StageError that
  remembers which step it was, so main() (and the tests) can tell where a run
  died without grepping the console output.
"""
from __future__ import annotations

import sys
from contextlib import contextmanager
from typing import Iterator, Optional


class StageError(Exception):
    """
    A pipeline step failed. Terminal for the run; nothing retries.

    Attributes:
        stage: short step name ("preflight", "download", "upload", ...).
        message: human-readable reason.
        hint: optional remediation advice printed under the error line.
    """

    def __init__(self, stage: str, message: str, hint: Optional[str] = None) -> None:
        super().__init__(f"{stage}: {message}")
        self.stage = stage
        self.message = message
        self.hint = hint


@contextmanager
def stage(name: str) -> Iterator[None]:
    """
    Tag any failure inside the block with the step name.

    A StageError raised inside keeps its own stage and hint.
    """
    try:
        yield
    except StageError:
        raise
    except Exception as e:
        raise StageError(name, str(e) or e.__class__.__name__) from e


def report_failure(err: StageError) -> int:
    """
    Print the one-line diagnostic (plus hint) to stderr and hand back exit code 1.
    """
    print(f"[ERROR] {err}", file=sys.stderr)
    if err.hint:
        print(f"[HINT] {err.hint}", file=sys.stderr)
    return 1
