"""ProcessRegistry tests.

Covers:
- registration and removal
- kill_all over running handles
- active status queries
- on-empty callbacks
"""

from __future__ import annotations

from unittest import mock

import pytest

from procflow.registry import ProcessRegistry, get_registry, kill_all


def _handle(handle_id: str, running: bool = True) -> mock.MagicMock:
    handle = mock.MagicMock()
    handle.id = handle_id
    handle.is_running = running
    return handle


class TestProcessRegistry:
    """Registration basics."""

    def test_register_and_unregister(self):
        registry = ProcessRegistry()
        registry.register(_handle("p-1"))

        assert "p-1" in registry
        assert registry.total_count == 1
        assert len(registry) == 1

        assert registry.unregister("p-1") is True
        assert "p-1" not in registry
        assert registry.total_count == 0

    def test_register_duplicate_raises_error(self):
        registry = ProcessRegistry()
        registry.register(_handle("p-1"))

        with pytest.raises(ValueError, match="already registered"):
            registry.register(_handle("p-1"))

    def test_unregister_nonexistent_returns_false(self):
        assert ProcessRegistry().unregister("nonexistent") is False

    def test_get(self):
        registry = ProcessRegistry()
        handle = _handle("p-1")
        registry.register(handle)

        assert registry.get("p-1") is handle
        assert registry.get("nonexistent") is None


class TestProcessRegistryKill:
    """kill_all()."""

    def test_kill_all_running_only(self):
        registry = ProcessRegistry()
        running = _handle("p-1")
        exited = _handle("p-2", running=False)
        registry.register(running)
        registry.register(exited)

        assert registry.kill_all("SIGKILL") == 1
        running.kill.assert_called_once_with("SIGKILL")
        exited.kill.assert_not_called()

    def test_kill_all_empty(self):
        assert ProcessRegistry().kill_all() == 0

    def test_module_kill_all_uses_global_registry(self):
        handle = _handle("p-1")
        get_registry().register(handle)

        assert kill_all() == 1
        handle.kill.assert_called_once_with(None)


class TestProcessRegistryStatus:
    """Active status queries."""

    def test_has_active(self):
        registry = ProcessRegistry()
        assert registry.has_active() is False

        registry.register(_handle("p-1", running=False))
        assert registry.has_active() is False

        registry.register(_handle("p-2"))
        assert registry.has_active() is True

    def test_active_count_and_list(self):
        registry = ProcessRegistry()
        first, second = _handle("p-1"), _handle("p-2")
        registry.register(first)
        registry.register(_handle("p-3", running=False))
        registry.register(second)

        assert registry.active_count == 2
        assert registry.list_active() == [first, second]

    def test_global_registry_singleton(self):
        assert get_registry() is get_registry()


class TestProcessRegistryCallbacks:
    """on-empty callbacks."""

    def test_on_empty_callback(self):
        registry = ProcessRegistry()
        callback = mock.MagicMock()
        registry.add_on_empty_callback(callback)

        registry.register(_handle("p-1"))
        registry.register(_handle("p-2"))
        registry.unregister("p-1")
        callback.assert_not_called()

        registry.unregister("p-2")
        callback.assert_called_once()

    def test_remove_on_empty_callback(self):
        registry = ProcessRegistry()
        callback = mock.MagicMock()
        registry.add_on_empty_callback(callback)
        registry.remove_on_empty_callback(callback)

        registry.register(_handle("p-1"))
        registry.unregister("p-1")
        callback.assert_not_called()

    def test_failing_callback_is_logged(self):
        registry = ProcessRegistry()
        registry.add_on_empty_callback(mock.MagicMock(side_effect=RuntimeError("boom")))
        after = mock.MagicMock()
        registry.add_on_empty_callback(after)

        registry.register(_handle("p-1"))
        assert registry.unregister("p-1") is True
        after.assert_called_once()


class TestProcessRegistryCleanup:
    """cleanup_done()."""

    def test_cleanup_done(self):
        registry = ProcessRegistry()
        registry.register(_handle("p-1"))
        registry.register(_handle("p-2", running=False))
        registry.register(_handle("p-3", running=False))

        assert registry.cleanup_done() == 2
        assert registry.total_count == 1
        assert "p-1" in registry
