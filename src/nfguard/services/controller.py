"""Controller lifecycle.

FirewallController is the single owner of the rule set for the life of
the process: init() installs the baseline rules and the configured
system rules and starts the drift watchdog, stop() shuts the watchdog
down and removes everything nfguard added.
"""

import os
import threading
from typing import Callable, Optional

from nfguard.core.audit import AuditEventType, AuditLogger, get_audit_logger
from nfguard.core.config import FirewallConfig
from nfguard.core.context import ExecutionContext
from nfguard.core.exceptions import ConfigurationError, FatalInstallError
from nfguard.core.executor import CommandExecutor, DualStackRunner, RuleExecutor
from nfguard.services.config_watcher import ConfigWatcher
from nfguard.services.reconciler import Reconciler
from nfguard.services.rules import Action, Rule
from nfguard.services.verifier import VerificationReport
from nfguard.services.watchdog import CHECK_INTERVAL, DriftWatchdog


FatalHandler = Callable[[FatalInstallError], None]


class FirewallController:
    """Installs, watches and removes nfguard's firewall rules."""

    def __init__(
        self,
        ctx: ExecutionContext,
        *,
        executor: Optional[RuleExecutor] = None,
        reconciler: Optional[Reconciler] = None,
        watch_config: bool = True,
        check_interval: float = CHECK_INTERVAL,
        fatal_handler: Optional[FatalHandler] = None,
        audit: Optional[AuditLogger] = None,
    ) -> None:
        """Initialize the controller.

        Args:
            ctx: Execution context
            executor: iptables executor (default: subprocess-backed)
            reconciler: Pre-built reconciler (overrides executor)
            watch_config: Reload system rules when the config file changes
            check_interval: Seconds between drift checks
            fatal_handler: Called when a critical rule cannot be installed
                (default: terminate the process)
            audit: Event log
        """
        self.ctx = ctx
        self.audit = audit or get_audit_logger()
        if reconciler is None:
            runner = DualStackRunner(
                executor or CommandExecutor(ctx),
                ipv6=ctx.ipv6_enabled,
            )
            reconciler = Reconciler(
                runner,
                queue_num=ctx.effective_queue_num,
                console=ctx.console,
                audit=self.audit,
            )
        self.reconciler = reconciler
        self.watch_config = watch_config
        self.check_interval = check_interval
        self.fatal_handler = fatal_handler or self.terminate

        self.config = FirewallConfig()
        self.watchdog: Optional[DriftWatchdog] = None
        self.config_watcher: Optional[ConfigWatcher] = None

        self._running = False
        self._lifecycle_lock = threading.Lock()

    @property
    def queue_num(self) -> int:
        return self.reconciler.queue_num

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def init(self, queue_num: Optional[int] = None) -> None:
        """Install the rules and start watching them. No-op if running."""
        with self._lifecycle_lock:
            if self._running:
                return
            if queue_num is not None:
                self.reconciler.queue_num = queue_num

            try:
                self.reconciler.install_baseline(True, True)
            except FatalInstallError as e:
                self.fatal_handler(e)
                return

            if self.watch_config:
                self.config_watcher = ConfigWatcher(
                    self.ctx.rules_path,
                    self.reload_configuration,
                    console=self.ctx.console,
                )
                self.config_watcher.start()

            self.load_configuration(reload=False)

            self.watchdog = DriftWatchdog(
                self.reconciler.is_loaded,
                self._reload_rules,
                interval=self.check_interval,
                on_fatal=self.fatal_handler,
                console=self.ctx.console,
                audit=self.audit,
            )
            self.watchdog.start()

            self._running = True
            self.audit.log_success(
                AuditEventType.CONTROLLER_START,
                "controller",
                "nfguard",
                parameters={"queue_num": self.queue_num},
            )

    def stop(self, queue_num: Optional[int] = None) -> None:
        """Stop watching and remove every rule nfguard added. No-op if stopped."""
        with self._lifecycle_lock:
            if not self._running:
                return
            if queue_num is not None:
                self.reconciler.queue_num = queue_num

            if self.config_watcher is not None:
                self.config_watcher.close()
                self.config_watcher = None

            if self.watchdog is not None:
                self.watchdog.stop()
                self.watchdog = None

            self.reconciler.clean_all(self.ctx.is_debug)
            self._running = False
            self.audit.log_success(AuditEventType.CONTROLLER_STOP, "controller", "nfguard")

    def is_running(self) -> bool:
        return self._running

    # =========================================================================
    # Rule operations
    # =========================================================================

    def clean_rules(self, log_errors: bool = False) -> None:
        """Remove the baseline rules and every tracked chain."""
        self.reconciler.clean_all(log_errors)

    def add_system_rule(self, action: Action, rule: Rule, enable: bool = True) -> None:
        self.reconciler.add_system_rule(action, rule, enable)

    def are_rules_loaded(self) -> bool:
        return self.reconciler.is_loaded()

    def inspect(self) -> VerificationReport:
        return self.reconciler.inspect()

    # =========================================================================
    # Configuration
    # =========================================================================

    def load_configuration(self, reload: bool = False) -> int:
        """Read the system rules file and apply its enabled rules.

        Errors are logged, never raised: a bad file leaves the
        baseline rules in place.

        Args:
            reload: Tear down the chains of the previous configuration first

        Returns:
            Number of rules applied
        """
        try:
            self.config = FirewallConfig.load_or_default(self.ctx.rules_path)
        except ConfigurationError as e:
            self.ctx.console.error(e.message)
            for detail in e.details:
                self.ctx.console.verbose(f"  {detail}")
            return 0

        if reload:
            self.reconciler.teardown_system_rules(self.ctx.is_debug)

        rules = self.config.enabled_rules()
        applied = self.reconciler.apply_system_rules(rules)
        self.ctx.console.debug(f"Applied {applied}/{len(rules)} system rule(s)")
        return applied

    def reload_configuration(self) -> None:
        """Apply a changed system rules file."""
        with self.audit.correlation("config_reload"):
            applied = self.load_configuration(reload=True)
            self.audit.log_success(
                AuditEventType.CONFIG_RELOAD,
                "config",
                str(self.ctx.rules_path),
                parameters={"rules_applied": applied},
            )

    def _reload_rules(self) -> None:
        """Drift cycle: remove everything, then install it again."""
        self.reconciler.clean_all(self.ctx.is_debug)
        self.reconciler.install_baseline(True, True)
        self.load_configuration(reload=True)

    # =========================================================================
    # Fatal errors
    # =========================================================================

    def terminate(self, error: FatalInstallError) -> None:
        """Default fatal handler: running without interception is not allowed."""
        self.ctx.console.fatal(error.message)
        for detail in error.details:
            self.ctx.console.print(f"  [dim]{detail}[/dim]")
        self.audit.log_failure(
            AuditEventType.CONTROLLER_FATAL,
            "baseline",
            error.rule or "unknown",
            error.message,
        )
        if threading.current_thread() is threading.main_thread():
            raise SystemExit(error.exit_code)
        os._exit(error.exit_code)
