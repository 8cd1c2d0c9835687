from __future__ import annotations
import logging
import os
import signal
import subprocess
import threading
from collections import deque
from pathlib import Path
from typing import Callable, Optional, Sequence

import psutil

from .cancellation import CancellationToken
from .errors import BuildToolError

logger = logging.getLogger("packager.process")

POSIX = os.name != "nt"


def terminate_tree(proc: subprocess.Popen, grace: float) -> None:
    """Stop a spawned tool and every descendant; SIGKILL whatever outlives `grace`."""
    try:
        descendants = psutil.Process(proc.pid).children(recursive=True)
    except psutil.NoSuchProcess:
        descendants = []

    if POSIX:
        try:
            os.killpg(proc.pid, signal.SIGTERM)
        except (ProcessLookupError, PermissionError):
            pass
    if proc.poll() is None:
        proc.terminate()
    for child in descendants:
        try:
            child.terminate()
        except psutil.NoSuchProcess:
            pass

    try:
        proc.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        logger.warning(f"pid {proc.pid} ignored SIGTERM, killing")
        if POSIX:
            try:
                os.killpg(proc.pid, signal.SIGKILL)
            except (ProcessLookupError, PermissionError):
                pass
        proc.kill()
        proc.wait()

    _, alive = psutil.wait_procs(descendants, timeout=grace)
    for child in alive:
        try:
            child.kill()
        except psutil.NoSuchProcess:
            pass
    psutil.wait_procs(alive, timeout=grace)


def run_tool(
    cmd: Sequence[str],
    token: CancellationToken,
    *,
    cwd: Optional[Path] = None,
    env: Optional[dict] = None,
    log_path: Optional[Path] = None,
    on_line: Optional[Callable[[str], None]] = None,
    poll_interval: float = 0.2,
    grace: float = 10.0,
) -> str:
    """
    Run one external packaging tool to completion.

    Output is appended to `log_path` and the last lines are returned. The
    token is checked before the tool starts, while it runs, and after it
    exits; cancellation or deadline kills the whole process tree and raises
    CancellationError / BuildTimeoutError. Non-zero exit raises BuildToolError.
    """
    cmd = [str(c) for c in cmd]
    tool = Path(cmd[0]).name
    token.check()

    log_file = open(log_path, "a", encoding="utf-8") if log_path else None
    if log_file:
        log_file.write("$ {}\n".format(" ".join(cmd)))
        log_file.flush()
    tail: deque[str] = deque(maxlen=40)

    try:
        try:
            proc = subprocess.Popen(
                cmd,
                cwd=str(cwd) if cwd else None,
                env={**os.environ, **(env or {})},
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                errors="replace",
                start_new_session=POSIX,
            )
        except OSError as e:
            raise BuildToolError(tool, 127, str(e)) from e
        logger.info(f"Started {tool} (pid {proc.pid})")

        def pump():
            for line in proc.stdout:  # type: ignore
                tail.append(line)
                if log_file:
                    log_file.write(line)
                if on_line:
                    on_line(line.rstrip())

        reader = threading.Thread(target=pump, name=f"{tool}-output", daemon=True)
        reader.start()

        try:
            while True:
                try:
                    proc.wait(timeout=poll_interval)
                    break
                except subprocess.TimeoutExpired:
                    pass
                if token.cancelled or token.expired:
                    logger.warning(f"Stopping {tool} (pid {proc.pid}): {'cancelled' if token.cancelled else 'timeout'}")
                    terminate_tree(proc, grace)
                    token.check()
        finally:
            if proc.poll() is None:
                terminate_tree(proc, grace)
            reader.join(timeout=grace)
    finally:
        if log_file:
            log_file.flush()
            log_file.close()

    output = "".join(tail)
    if proc.returncode != 0:
        logger.warning(f"{tool} exited with code {proc.returncode}")
        raise BuildToolError(tool, proc.returncode, output)
    token.check()
    return output
