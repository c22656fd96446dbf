from __future__ import annotations
import asyncio
import contextlib
import logging
import ntpath
from functools import wraps
from pathlib import Path
from typing import Any, Callable, Optional, Sequence

from .models import CommandResult

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"


class C:
    RESET = '\033[0m'
    RED = '\033[31m'
    YELLOW = '\033[33m'
    CYAN = '\033[36m'
    GRAY = '\033[90m'


def setup_logger(level: int = logging.INFO, log_file: Optional[str] = None) -> logging.Logger:
    root = logging.getLogger("examwatch")
    root.setLevel(level)

    if not root.handlers:
        formatter = logging.Formatter(LOG_FORMAT)
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        root.addHandler(console_handler)

        if log_file:
            file_handler = logging.FileHandler(log_file)
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)

    for handler in root.handlers:
        handler.setLevel(level)
    return root


def read_text(path: Path, limit: int = 1_000_000) -> str:
    try:
        with open(path, "r", errors="ignore") as f:
            return f.read(limit)
    except (IOError, OSError):
        return ""


def exe_basename(command_line: str) -> str:
    parts = (command_line or "").split()
    # ntpath splits on both "/" and "\\"
    return ntpath.basename(parts[0]).lower() if parts else ""


def _decode(raw: bytes | None) -> str:
    return (raw or b"").decode("utf-8", errors="ignore")


async def run_command(args: Sequence[str], timeout: float = 3.0) -> CommandResult:
    """Run an external utility and never raise.

    A missing binary, a non-zero exit status and a timeout all produce
    ``CommandResult(ok=False)``. On timeout the child is killed and reaped.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except (OSError, ValueError) as e:
        logger.debug("command %s unavailable: %s", args[0] if args else "?", e)
        return CommandResult(False, "", str(e))

    try:
        out, err = await asyncio.wait_for(proc.communicate(), timeout)
    except (asyncio.TimeoutError, asyncio.CancelledError) as e:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(proc.wait(), 1.0)
        if isinstance(e, asyncio.CancelledError):
            raise
        logger.debug("command %s timed out after %.1fs", args[0], timeout)
        return CommandResult(False, "", "timeout")

    if proc.returncode != 0:
        return CommandResult(False, _decode(out), _decode(err))
    return CommandResult(True, _decode(out), _decode(err))


async def run_blocking(fn: Callable[[], Any], timeout: float) -> Any:
    """Run a blocking callable in a worker thread, bounded by ``timeout``."""
    return await asyncio.wait_for(asyncio.to_thread(fn), timeout)


def soft_fail(default_factory: Callable[[], Any]):
    """Turn any failure of the wrapped coroutine into ``default_factory()``."""

    def decorator(fn):
        @wraps(fn)
        async def wrapper(*args, **kwargs):
            try:
                return await fn(*args, **kwargs)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.debug("telemetry %s failed: %r", fn.__name__, e)
                return default_factory()

        return wrapper

    return decorator


def strip_exe(name: str) -> str:
    return name[:-4] if name.endswith(".exe") else name
