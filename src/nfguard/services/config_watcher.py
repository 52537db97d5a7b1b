"""System rules file watching.

The parent directory is watched rather than the file itself, so the
callback also runs when the file is created, deleted or replaced by a
rename (as most editors save).
"""

import os
from pathlib import Path
from typing import Callable, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from nfguard.core.output import Console, console as default_console


class RulesFileHandler(FileSystemEventHandler):
    """Forwards events that touch one file to a callback."""

    def __init__(
        self,
        path: Path,
        on_change: Callable[[], None],
        console: Optional[Console] = None,
    ) -> None:
        super().__init__()
        self.path = path.absolute()
        self.on_change = on_change
        self.console = console or default_console

    def matches(self, event: FileSystemEvent) -> bool:
        if event.is_directory:
            return False
        paths = [event.src_path, getattr(event, "dest_path", "")]
        return any(p and Path(os.fsdecode(p)) == self.path for p in paths)

    def on_created(self, event):
        self._dispatch(event)

    def on_modified(self, event):
        self._dispatch(event)

    def on_deleted(self, event):
        self._dispatch(event)

    def on_moved(self, event):
        self._dispatch(event)

    def _dispatch(self, event: FileSystemEvent) -> None:
        if not self.matches(event):
            return
        self.console.info(f"Configuration file changed: {self.path}")
        try:
            self.on_change()
        except Exception as e:
            self.console.error(f"Error reloading configuration: {e}")


class ConfigWatcher:
    """Calls `on_change` from the observer thread when the file changes."""

    def __init__(
        self,
        path: Path,
        on_change: Callable[[], None],
        *,
        console: Optional[Console] = None,
    ) -> None:
        self.console = console or default_console
        self.handler = RulesFileHandler(path, on_change, self.console)
        self._observer: Optional[Observer] = None

    @property
    def path(self) -> Path:
        return self.handler.path

    def is_alive(self) -> bool:
        return self._observer is not None and self._observer.is_alive()

    def start(self) -> None:
        if self.is_alive():
            return
        directory = self.path.parent
        if not directory.is_dir():
            self.console.warn(f"Not watching {self.path}: {directory} does not exist")
            return
        observer = Observer()
        observer.schedule(self.handler, str(directory), recursive=False)
        observer.start()
        self._observer = observer
        self.console.debug(f"Watching {self.path} for changes")

    def close(self) -> None:
        """Stop watching and wait for the observer thread to exit."""
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join()
        self._observer = None
