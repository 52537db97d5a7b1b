"""Periodic drift detection.

Every CHECK_INTERVAL seconds the watchdog asks whether the rules are
still loaded and, when they are not, runs a full reload cycle. It runs
in its own thread; stop() signals it and waits for the thread to exit,
so no reload cycle can overlap the final cleanup.

States:
    IDLE --tick--> CHECKING --loaded--> IDLE
                   CHECKING --drift--> RELOADING --done--> IDLE
    any --stop--> EXITED

The stop signal is checked between every phase.
"""

import threading
from enum import Enum
from typing import Callable, Optional

from nfguard.core.audit import AuditEventType, AuditLogger, get_audit_logger
from nfguard.core.exceptions import FatalInstallError, NFGuardError
from nfguard.core.output import Console, console as default_console


# Seconds between two checks. Not configurable.
CHECK_INTERVAL = 30.0


class WatchdogState(str, Enum):
    IDLE = "idle"
    CHECKING = "checking"
    RELOADING = "reloading"
    EXITED = "exited"


class DriftWatchdog:
    """Re-verifies the rule set and reinstalls it on drift."""

    def __init__(
        self,
        check: Callable[[], bool],
        reload: Callable[[], None],
        *,
        interval: float = CHECK_INTERVAL,
        on_fatal: Optional[Callable[[FatalInstallError], None]] = None,
        console: Optional[Console] = None,
        audit: Optional[AuditLogger] = None,
    ) -> None:
        """Initialize the watchdog.

        Args:
            check: Returns True while the rules are loaded
            reload: Cleans and reinstalls every rule
            interval: Seconds between checks
            on_fatal: Called when a reload cannot install a critical rule
            console: Console for output
            audit: Event log
        """
        self.check = check
        self.reload = reload
        self.interval = interval
        self.on_fatal = on_fatal
        self.console = console or default_console
        self.audit = audit or get_audit_logger()

        self.state = WatchdogState.IDLE
        self.checks = 0
        self.reloads = 0

        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        """Start checking in a background thread."""
        if self.is_alive():
            return
        self._stop.clear()
        self.state = WatchdogState.IDLE
        self._thread = threading.Thread(
            target=self._loop,
            name="nfguard-watchdog",
            daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> bool:
        """Signal the thread and wait for it to exit.

        Returns:
            True if the thread has exited
        """
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
        return not self.is_alive()

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def _loop(self) -> None:
        try:
            while not self._stop.wait(self.interval):
                self.run_once()
        finally:
            self.state = WatchdogState.EXITED
            self.console.info("Exit checking firewall rules")

    def run_once(self) -> bool:
        """Run one check, and a reload if the rules drifted.

        Returns:
            True if a reload cycle ran
        """
        if self.stopping:
            return False

        self.state = WatchdogState.CHECKING
        self.checks += 1
        try:
            loaded = self.check()
        except NFGuardError as e:
            self.console.error(f"Cannot check firewall rules: {e.message}")
            loaded = False

        if self.stopping:
            return False
        if loaded:
            self.state = WatchdogState.IDLE
            return False

        self.console.important("Firewall rules changed, reloading")
        self.audit.log_success(
            AuditEventType.RULES_DRIFT,
            "ruleset",
            "nfguard",
            message="Rules missing from the live rule set",
        )

        self.state = WatchdogState.RELOADING
        try:
            with self.audit.correlation("reload"):
                self.reload()
        except FatalInstallError as e:
            self._stop.set()
            if self.on_fatal is None:
                raise
            self.on_fatal(e)
            return False
        except Exception as e:
            self.console.error(f"Reloading firewall rules failed: {e}")
            self.audit.log_failure(AuditEventType.RULES_RELOAD, "ruleset", "nfguard", str(e))
        else:
            self.reloads += 1
            self.audit.log_success(AuditEventType.RULES_RELOAD, "ruleset", "nfguard")

        if not self.stopping:
            self.state = WatchdogState.IDLE
        return True
