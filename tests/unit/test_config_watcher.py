"""Unit tests for system rules file watching."""

import threading
from unittest.mock import MagicMock

import pytest
from watchdog.events import (
    DirModifiedEvent,
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
)

from nfguard.services.config_watcher import ConfigWatcher, RulesFileHandler


@pytest.fixture
def rules_path(tmp_path):
    return tmp_path / "rules.yaml"


class TestRulesFileHandler:
    """Tests for event filtering."""

    def test_modified_file_calls_back(self, rules_path):
        on_change = MagicMock()
        handler = RulesFileHandler(rules_path, on_change, MagicMock())

        handler.dispatch(FileModifiedEvent(str(rules_path)))

        on_change.assert_called_once()

    def test_created_and_deleted(self, rules_path):
        on_change = MagicMock()
        handler = RulesFileHandler(rules_path, on_change, MagicMock())

        handler.dispatch(FileCreatedEvent(str(rules_path)))
        handler.dispatch(FileDeletedEvent(str(rules_path)))

        assert on_change.call_count == 2

    def test_rename_into_place(self, rules_path):
        on_change = MagicMock()
        handler = RulesFileHandler(rules_path, on_change, MagicMock())

        handler.dispatch(FileMovedEvent(str(rules_path.with_suffix(".tmp")), str(rules_path)))

        on_change.assert_called_once()

    def test_other_files_ignored(self, rules_path):
        on_change = MagicMock()
        handler = RulesFileHandler(rules_path, on_change, MagicMock())

        handler.dispatch(FileModifiedEvent(str(rules_path.with_name("other.yaml"))))
        handler.dispatch(DirModifiedEvent(str(rules_path.parent)))

        on_change.assert_not_called()

    def test_callback_errors_are_logged(self, rules_path):
        console = MagicMock()
        handler = RulesFileHandler(rules_path, MagicMock(side_effect=RuntimeError("bad")), console)

        handler.dispatch(FileModifiedEvent(str(rules_path)))

        console.error.assert_called_once()
        assert "bad" in console.error.call_args[0][0]


class TestConfigWatcher:
    """Tests against real file events."""

    def test_new_file_calls_back(self, rules_path):
        changed = threading.Event()
        watcher = ConfigWatcher(rules_path, changed.set, console=MagicMock())
        watcher.start()
        try:
            rules_path.write_text("system_rules: []\n")
            assert changed.wait(5)
        finally:
            watcher.close()

    def test_modification_calls_back(self, rules_path):
        rules_path.write_text("system_rules: []\n")
        changed = threading.Event()
        watcher = ConfigWatcher(rules_path, changed.set, console=MagicMock())
        watcher.start()
        try:
            with rules_path.open("a") as f:
                f.write("# edited\n")
            assert changed.wait(5)
        finally:
            watcher.close()

    def test_removal_calls_back(self, rules_path):
        rules_path.write_text("system_rules: []\n")
        changed = threading.Event()
        watcher = ConfigWatcher(rules_path, changed.set, console=MagicMock())
        watcher.start()
        try:
            rules_path.unlink()
            assert changed.wait(5)
        finally:
            watcher.close()

    def test_sibling_file_ignored(self, rules_path):
        on_change = MagicMock()
        other = threading.Event()
        watcher = ConfigWatcher(rules_path, on_change, console=MagicMock())
        watcher.start()
        try:
            rules_path.with_name("other.yaml").write_text("x")
            # Wait for a second, matching event so the first has been dispatched
            watcher.handler.on_change = other.set
            rules_path.write_text("system_rules: []\n")
            assert other.wait(5)
        finally:
            watcher.close()
        on_change.assert_not_called()

    def test_close_stops_observer(self, rules_path):
        watcher = ConfigWatcher(rules_path, MagicMock(), console=MagicMock())
        watcher.start()
        assert watcher.is_alive()

        watcher.close()

        assert not watcher.is_alive()
        assert watcher._observer is None

    def test_close_without_start(self, rules_path):
        ConfigWatcher(rules_path, MagicMock(), console=MagicMock()).close()

    def test_missing_directory_is_not_watched(self, tmp_path):
        console = MagicMock()
        watcher = ConfigWatcher(tmp_path / "missing" / "rules.yaml", MagicMock(), console=console)

        watcher.start()

        assert not watcher.is_alive()
        console.warn.assert_called_once()
