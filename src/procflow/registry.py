"""Registry of live processes.

Every handle registers itself when its OS process is spawned and unregisters
when the process has exited, which gives the host application:
- an overview of running processes
- kill_all() for shutdown paths
- a callback when the last process is gone

All operations are synchronous and expected to run on one event loop.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Dict, Optional

if TYPE_CHECKING:
    from .process import ProcessHandle

__all__ = ["ProcessRegistry", "get_registry", "kill_all"]

logger = logging.getLogger(__name__)


class ProcessRegistry:
    """Registry of running process handles.

    Example:
        ```python
        registry = get_registry()

        if registry.has_active():
            print(f"Active: {registry.active_count}")

        # Signal every running process
        killed = registry.kill_all("SIGTERM")
        print(f"Signalled {killed} processes")
        ```
    """

    def __init__(self) -> None:
        self._handles: Dict[str, ProcessHandle] = {}
        self._registered_at: Dict[str, datetime] = {}
        self._on_empty_callbacks: list[Callable[[], None]] = []

    def register(self, handle: ProcessHandle) -> None:
        """Register a handle.

        Raises:
            ValueError: If the handle id is already registered
        """
        if handle.id in self._handles:
            raise ValueError(f"Process {handle.id} already registered")

        self._handles[handle.id] = handle
        self._registered_at[handle.id] = datetime.now()
        logger.debug(f"Registered process: {handle!r}")

    def unregister(self, handle_id: str) -> bool:
        """Unregister a handle.

        Returns:
            True if the handle was registered
        """
        if handle_id not in self._handles:
            return False

        handle = self._handles.pop(handle_id)
        self._registered_at.pop(handle_id, None)
        logger.debug(f"Unregistered process: {handle!r}")

        if not self._handles and self._on_empty_callbacks:
            for callback in self._on_empty_callbacks:
                try:
                    callback()
                except Exception as e:
                    logger.warning(f"Error in on_empty callback: {e}")

        return True

    def get(self, handle_id: str) -> Optional[ProcessHandle]:
        return self._handles.get(handle_id)

    def kill_all(self, signal: str | int | None = None) -> int:
        """Send a signal to every running process.

        Returns:
            Number of processes signalled
        """
        killed = 0
        for handle in list(self._handles.values()):
            if handle.is_running:
                handle.kill(signal)
                killed += 1

        if killed > 0:
            logger.info(f"Signalled {killed} running process(es)")

        return killed

    def has_active(self) -> bool:
        return any(handle.is_running for handle in self._handles.values())

    @property
    def active_count(self) -> int:
        return sum(1 for handle in self._handles.values() if handle.is_running)

    @property
    def total_count(self) -> int:
        """Registered handles, including exited ones not yet unregistered."""
        return len(self._handles)

    def list_active(self) -> list[ProcessHandle]:
        """Running handles, oldest first."""
        active = [
            (self._registered_at[handle_id], handle)
            for handle_id, handle in self._handles.items()
            if handle.is_running
        ]
        return [handle for _, handle in sorted(active, key=lambda x: x[0])]

    def add_on_empty_callback(self, callback: Callable[[], None]) -> None:
        """Call back whenever the last registered process is unregistered."""
        self._on_empty_callbacks.append(callback)

    def remove_on_empty_callback(self, callback: Callable[[], None]) -> None:
        if callback in self._on_empty_callbacks:
            self._on_empty_callbacks.remove(callback)

    def cleanup_done(self) -> int:
        """Unregister handles whose process has exited.

        Returns:
            Number of handles removed
        """
        done_ids = [
            handle_id
            for handle_id, handle in self._handles.items()
            if not handle.is_running
        ]

        for handle_id in done_ids:
            self.unregister(handle_id)

        if done_ids:
            logger.debug(f"Cleaned up {len(done_ids)} exited process(es)")

        return len(done_ids)

    def __len__(self) -> int:
        return len(self._handles)

    def __contains__(self, handle_id: str) -> bool:
        return handle_id in self._handles


_registry: ProcessRegistry | None = None


def get_registry() -> ProcessRegistry:
    """Return the process-wide registry."""
    global _registry
    if _registry is None:
        _registry = ProcessRegistry()
    return _registry


def kill_all(signal: str | int | None = None) -> int:
    """Send a signal to every running process started by procflow."""
    return get_registry().kill_all(signal)
