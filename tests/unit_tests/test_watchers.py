"""
Unit tests for the background watcher registry.
"""

import threading

import pytest

from ecs_deploy.watchers import WatcherRegistry


class TestWatcherRegistry:

    @pytest.fixture(autouse=True)
    def setup_teardown(self):
        self.registry = WatcherRegistry()
        self.release = threading.Event()
        self.calls = []
        yield
        self.release.set()
        self.registry.join(5)

    def _blocking_watcher(self, name):
        self.calls.append(name)
        self.release.wait(5)

    def test_second_launch_for_live_key_is_ignored(self):
        assert self.registry.launch(("drain", "i-1"), self._blocking_watcher, "first") is True
        assert self.registry.launch(("drain", "i-1"), self._blocking_watcher, "second") is False
        assert self.registry.is_running(("drain", "i-1"))

        self.release.set()
        self.registry.join(5)

        assert self.calls == ["first"]
        assert self.registry.keys() == []

    def test_watcher_errors_are_logged(self, caplog):
        registry = WatcherRegistry(run_inline=True)

        def broken():
            raise RuntimeError("boom")

        assert registry.launch(("deployment", "web", "t"), broken) is True
        assert "boom" in caplog.text
        assert registry.launch(("deployment", "web", "t"), lambda: None) is True
