# Copyright 2024 Wolfgang Hoschek AT mac DOT com
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
#
"""Collection of helper functions used across flux; includes environment variable parsing, duration and timestamp
parsing, dataset name validation and subprocess helpers.

Everything in this module relies only on the standard library so other modules remain dependency free.
"""

from __future__ import (
    annotations,
)
import argparse
import contextlib
import logging
import os
import re
import signal
import subprocess
import sys
import types
from datetime import (
    datetime,
    timezone,
    tzinfo,
)
from typing import (
    Any,
    Callable,
    Final,
    NoReturn,
    TextIO,
)

# constants:
PROG_NAME: Final[str] = "flux"
ENV_VAR_PREFIX: Final[str] = PROG_NAME + "_"
DIE_STATUS: Final[int] = 3
LOG_STDERR: Final[int] = (logging.INFO + logging.WARNING) // 2  # custom log level is halfway in between
LOG_STDOUT: Final[int] = (LOG_STDERR + logging.INFO) // 2  # custom log level is halfway in between
LOG_DEBUG: Final[int] = logging.DEBUG
LOG_TRACE: Final[int] = logging.DEBUG // 2  # custom log level is halfway in between
SHELL_CHARS: Final[str] = '"' + "'`~!@#$%^&*()+={}[]|;<>?,\\"
SNAPSHOT_LABEL_FORMAT: Final[str] = "%Y-%m-%dT%H:%M:%SZ"  # 2024-01-01T00:00:00Z; ZFS accepts ':' in snapshot names
UNIT_MILLISECONDS: Final[dict[str, int]] = {
    "milliseconds": 1,
    "millis": 1,
    "seconds": 1000,
    "secs": 1000,
    "s": 1000,
    "minutes": 60 * 1000,
    "mins": 60 * 1000,
    "hours": 60 * 60 * 1000,
    "h": 60 * 60 * 1000,
    "days": 86400 * 1000,
    "d": 86400 * 1000,
    "weeks": 7 * 86400 * 1000,
    "w": 7 * 86400 * 1000,
    "months": round(30.5 * 86400 * 1000),
    "years": 365 * 86400 * 1000,
}
DURATION_REGEX: Final[re.Pattern[str]] = re.compile(
    r"(\d+)\s*(" + "|".join(sorted(UNIT_MILLISECONDS.keys(), key=len, reverse=True)) + r")"
)


def getenv_any(key: str, default: str | None = None) -> str | None:
    """All shell environment variable names used for configuration start with this prefix."""
    return os.getenv(ENV_VAR_PREFIX + key, default)


def stderr_to_str(stderr: Any) -> str:
    """Workaround for https://github.com/python/cpython/issues/87597."""
    return str(stderr) if not isinstance(stderr, bytes) else stderr.decode("utf-8", errors="replace")


def xprint(log: logging.Logger, value: Any, run: bool = True, end: str = "\n", file: TextIO | None = None) -> None:
    """Optionally logs ``value`` at stdout/stderr level."""
    if run and value:
        value = value if end else str(value).rstrip()
        level = LOG_STDOUT if file is sys.stdout else LOG_STDERR
        log.log(level, "%s", value)


def die(msg: str, exit_code: int = DIE_STATUS, parser: argparse.ArgumentParser | None = None) -> NoReturn:
    """Exits the program with ``exit_code`` after logging ``msg``."""
    if parser is None:
        ex = SystemExit(msg)
        ex.code = exit_code
        raise ex
    else:
        parser.error(msg)


def subprocess_run(*args: Any, **kwargs: Any) -> subprocess.CompletedProcess:
    """Drop-in replacement for subprocess.run() that mimics its behavior except it kills the child on any exception,
    including KeyboardInterrupt, before re-raising."""
    input_value = kwargs.pop("input", None)
    check = kwargs.pop("check", False)
    if input_value is not None:
        if kwargs.get("stdin") is not None:
            raise ValueError("input and stdin are mutually exclusive")
        kwargs["stdin"] = subprocess.PIPE

    with subprocess.Popen(*args, **kwargs) as proc:
        try:
            stdout, stderr = proc.communicate(input_value)
        except BaseException:
            proc.kill()
            raise
        else:
            exitcode: int | None = proc.poll()
            assert exitcode is not None
            if check and exitcode:
                raise subprocess.CalledProcessError(exitcode, proc.args, output=stdout, stderr=stderr)
    return subprocess.CompletedProcess(proc.args, exitcode, stdout, stderr)


def validate_dataset_name(dataset: str, input_text: str) -> None:
    """'zfs create' CLI does not accept dataset names that are empty or start or end in a slash, etc."""
    # Also see https://github.com/openzfs/zfs/issues/439#issuecomment-2784424
    # and https://github.com/openzfs/zfs/issues/8798
    if (
        dataset in ("", ".", "..")
        or any(dataset.startswith(prefix) for prefix in ("/", "./", "../"))
        or any(dataset.endswith(suffix) for suffix in ("/", "/.", "/.."))
        or any(substring in dataset for substring in ("//", "/./", "/../"))
        or any(char in SHELL_CHARS or (char.isspace() and char != " ") for char in dataset)
        or not dataset[0].isalpha()
    ):
        die(f"Invalid ZFS dataset name: '{dataset}' for: '{input_text}'")


def validate_snapshot_label(label: str, input_text: str) -> None:
    """Snapshot labels may only contain alphanumeric characters plus '_', '-', ':' and '.'."""
    if not label or not re.fullmatch(r"[A-Za-z0-9_.:-]+", label):
        die(f"Invalid ZFS snapshot label: '{label}' for: '{input_text}'")


def parse_duration_to_milliseconds(duration: str, context: str = "") -> int:
    """Parses human duration strings like '7d', '36 hours' or '2weeks' to milliseconds."""
    match = DURATION_REGEX.fullmatch(duration.strip())
    if not match:
        if context:
            die(f"Invalid duration format: {duration} within {context}")
        else:
            raise ValueError(f"Invalid duration format: {duration}")
    quantity: int = int(match.group(1))
    unit: str = match.group(2)
    return quantity * UNIT_MILLISECONDS[unit]


def unixtime_to_datetime(unixtime_in_seconds: int) -> datetime:
    """Converts UTC Unix time seconds into an aware datetime in UTC."""
    return datetime.fromtimestamp(unixtime_in_seconds, tz=timezone.utc)


def current_datetime(now_fn: Callable[[tzinfo | None], datetime] | None = None) -> datetime:
    """Returns the current time as an aware datetime in UTC."""
    if now_fn is None:
        now_fn = datetime.now
    return now_fn(timezone.utc)


def terminate_process(proc: subprocess.Popen, sig: signal.Signals = signal.SIGTERM) -> None:
    """Sends ``sig`` to ``proc`` unless it has already exited."""
    if proc.poll() is None:
        with contextlib.suppress(OSError):
            proc.send_signal(sig)


#############################################################################
class _XFinally(contextlib.AbstractContextManager):
    """Context manager ensuring cleanup code executes after ``with`` blocks."""

    def __init__(self, cleanup: Callable[[], None]) -> None:
        """Records the callable to run upon exit."""
        self._cleanup = cleanup  # Zero-argument callable executed after the `with` block exits.

    def __exit__(  # type: ignore[exit-return]
        self, exc_type: type[BaseException] | None, exc: BaseException | None, tb: types.TracebackType | None
    ) -> bool:
        """Runs cleanup and propagate any exceptions appropriately."""
        try:
            self._cleanup()
        except BaseException as cleanup_exc:
            if exc is None:
                raise  # No main error --> propagate cleanup error normally
            # Both failed; attach so it shows up in traceback but doesn't mask
            exc.__context__ = cleanup_exc
            return False  # reraise original exception
        return False  # propagate main exception if any


def xfinally(cleanup: Callable[[], None]) -> _XFinally:
    """Usage: with xfinally(lambda: cleanup()): ...
    Returns a context manager that guarantees that cleanup() runs on exit and guarantees any error in cleanup() will never
    mask an exception raised earlier inside the body of the `with` block, while still surfacing both problems when possible.

    * Body raises, cleanup succeeds --> original body exception is re-raised.
    * Body raises, cleanup also raises --> re-raises body exception; cleanup exception is linked via ``__context__``.
    * Body succeeds, cleanup raises --> cleanup exception propagates normally.
    """
    return _XFinally(cleanup)
