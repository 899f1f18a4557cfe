"""
Service process helpers.

Spawning and killing processes block, so the async wrappers run them in a
worker thread to keep the event loop responsive.
"""

import asyncio
import logging
import os
import subprocess
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

KILL_WAIT_SECONDS: float = 5.0


def spawn(args: list[str], env_overrides: Optional[dict[str, str]] = None) -> subprocess.Popen:
    """
    Start a background service process.

    Raises:
        OSError: If the executable cannot be started
    """
    env = None
    if env_overrides:
        env = dict(os.environ)
        env.update(env_overrides)

    kwargs = {}
    if os.name == "nt":
        kwargs["creationflags"] = subprocess.CREATE_NO_WINDOW

    logger.debug(f"Spawning {args}")
    return subprocess.Popen(
        args,
        env=env,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        **kwargs,
    )


def terminate(proc: subprocess.Popen) -> Optional[int]:
    """
    Kill a process and reap it. Returns its exit code.

    A process that already exited is not an error.
    """
    if proc.poll() is not None:
        return proc.returncode
    try:
        proc.kill()
    except ProcessLookupError:
        pass
    try:
        return proc.wait(timeout=KILL_WAIT_SECONDS)
    except subprocess.TimeoutExpired:
        logger.warning(f"Process {proc.pid} did not exit within {KILL_WAIT_SECONDS}s after kill")
        return None


async def spawn_async(args: list[str], env_overrides: Optional[dict[str, str]] = None) -> subprocess.Popen:
    return await asyncio.to_thread(spawn, args, env_overrides)


async def terminate_async(proc: subprocess.Popen) -> Optional[int]:
    return await asyncio.to_thread(terminate, proc)


async def path_exists(path: Path) -> bool:
    return await asyncio.to_thread(path.exists)
