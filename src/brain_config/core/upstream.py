"""Upstream reload contract.

The upstream memory service reads ~/.basic-memory/config.json once at
startup and caches it, so writing the file alone changes nothing until the
process restarts. After every successful upstream config write the core
calls notify_upstream_restart(); the enclosing server registers a hook that
closes the current upstream child so the next request spawns a fresh one.

UpstreamProcessController is a ready-made owner for that child process.
"""

from __future__ import annotations

import contextlib
import logging
import subprocess
import threading
from collections.abc import Callable, Mapping, Sequence
from typing import TYPE_CHECKING, Any

from brain_config.core.exceptions import TranslationError

if TYPE_CHECKING:
    from brain_config.core.config.translation import UpstreamConfig

logger = logging.getLogger(__name__)

__all__ = [
    "RestartHook",
    "register_restart_hook",
    "unregister_restart_hook",
    "notify_upstream_restart",
    "UpstreamProcessController",
    "_reset_restart_hooks",
]

RestartHook = Callable[["UpstreamConfig"], None]

_hooks: list[RestartHook] = []
_hooks_lock = threading.Lock()


def register_restart_hook(hook: RestartHook) -> Callable[[], None]:
    """Register a hook called after each upstream config write.

    Returns:
        Callable that unregisters the hook.

    """
    with _hooks_lock:
        _hooks.append(hook)
    return lambda: unregister_restart_hook(hook)


def unregister_restart_hook(hook: RestartHook) -> bool:
    """Remove a hook. Returns False if it was not registered."""
    with _hooks_lock:
        try:
            _hooks.remove(hook)
        except ValueError:
            return False
    return True


def notify_upstream_restart(config: UpstreamConfig) -> int:
    """Signal that the upstream must re-read its config.

    Every hook runs even if an earlier one fails.

    Args:
        config: The upstream config just written.

    Returns:
        Number of hooks called.

    Raises:
        TranslationError: If any hook raised.

    """
    with _hooks_lock:
        hooks = list(_hooks)

    if not hooks:
        logger.warning(
            "Upstream config written but no restart hook is registered; "
            "the running upstream keeps its cached config until restarted"
        )
        return 0

    failures: list[Exception] = []
    for hook in hooks:
        try:
            hook(config)
        except Exception as e:
            logger.error("Upstream restart hook %r failed: %s", hook, e)
            failures.append(e)

    if failures:
        raise TranslationError(
            f"Upstream restart failed: {failures[0]}", cause=failures[0]
        ) from failures[0]

    logger.debug("Notified %d upstream restart hook(s)", len(hooks))
    return len(hooks)


def _reset_restart_hooks() -> None:
    """Drop all hooks. Testing only."""
    with _hooks_lock:
        _hooks.clear()


class UpstreamProcessController:
    """Owns the upstream child process.

    restart() terminates the current child; the next ensure_running() spawns
    a fresh one, which reads the updated config at startup.

    Args:
        command: Argument vector for the upstream server.
        terminate_timeout: Seconds to wait after SIGTERM before SIGKILL.
        popen_kwargs: Extra subprocess.Popen keyword arguments. stdin and
            stdout default to pipes.

    """

    def __init__(
        self,
        command: Sequence[str],
        *,
        terminate_timeout: float = 5.0,
        popen_kwargs: Mapping[str, Any] | None = None,
    ) -> None:
        if not command:
            raise ValueError("Upstream command cannot be empty")
        self.command = list(command)
        self.terminate_timeout = terminate_timeout
        self._popen_kwargs: dict[str, Any] = {
            "stdin": subprocess.PIPE,
            "stdout": subprocess.PIPE,
            **(popen_kwargs or {}),
        }
        self._process: subprocess.Popen[bytes] | None = None
        self._lock = threading.Lock()
        self.restart_count = 0

    @property
    def process(self) -> subprocess.Popen[bytes] | None:
        return self._process

    def is_running(self) -> bool:
        return self._process is not None and self._process.poll() is None

    def ensure_running(self) -> subprocess.Popen[bytes]:
        """Return the live child, spawning one if none is running."""
        with self._lock:
            if self._process is None or self._process.poll() is not None:
                self._process = subprocess.Popen(self.command, **self._popen_kwargs)
                logger.info("Started upstream process (PID %d)", self._process.pid)
            return self._process

    def _terminate(self, process: subprocess.Popen[bytes]) -> None:
        # Close stdin first (signals EOF to the process)
        if process.stdin and not process.stdin.closed:
            with contextlib.suppress(OSError):
                process.stdin.close()

        if process.poll() is None:
            process.terminate()
            try:
                process.wait(timeout=self.terminate_timeout)
            except subprocess.TimeoutExpired:
                logger.warning("Upstream PID %d ignored SIGTERM, killing", process.pid)
                process.kill()
                process.wait()

        if process.stdout and not process.stdout.closed:
            with contextlib.suppress(OSError):
                process.stdout.close()

    def restart(self, config: UpstreamConfig | None = None) -> None:
        """Close the current child so the next request spawns a fresh one."""
        with self._lock:
            process, self._process = self._process, None
        if process is None:
            logger.debug("No upstream process running, nothing to restart")
            return
        self._terminate(process)
        self.restart_count += 1
        logger.info("Closed upstream process (PID %d) to reload config", process.pid)

    def stop(self) -> None:
        with self._lock:
            process, self._process = self._process, None
        if process is not None:
            self._terminate(process)

    def as_hook(self) -> RestartHook:
        """Return restart() as a restart hook."""
        return self.restart

    def register(self) -> Callable[[], None]:
        """Register restart() as a hook. Returns the unregister callable."""
        return register_restart_hook(self.restart)
