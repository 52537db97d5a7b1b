"""Rule reconciliation.

The Reconciler owns the single lock that serializes every change to
the live rule set and to the chain registry. Each public operation
holds it for its whole duration, so a baseline install, a teardown and
a verification listing never interleave.

Failure policy:
- DNS queue rule: logged, installation continues
- connection queue and drop rules: FatalInstallError, nothing else is attempted
- system rules: executor errors are raised unchanged to the caller
- teardown and removal: best-effort, every step is attempted on every stack
"""

import shlex
import threading
from typing import Iterable, Optional

from nfguard.core.audit import AuditEventType, AuditLogger, get_audit_logger
from nfguard.core.exceptions import ExecutionError, FatalInstallError, NFGuardError
from nfguard.core.executor import DualStackRunner
from nfguard.core.output import Console, console as default_console
from nfguard.services.registry import SystemChainRegistry
from nfguard.services.rules import (
    BASELINE_RULES,
    Action,
    Rule,
    delete_chain_args,
    flush_chain_args,
    jump_args,
    new_chain_args,
    resolve_action,
    system_rule_args,
)
from nfguard.services.verifier import StateVerifier, VerificationReport


class Reconciler:
    """Applies, removes and verifies nfguard's rules."""

    def __init__(
        self,
        runner: DualStackRunner,
        *,
        queue_num: int = 0,
        registry: Optional[SystemChainRegistry] = None,
        verifier: Optional[StateVerifier] = None,
        console: Optional[Console] = None,
        audit: Optional[AuditLogger] = None,
    ) -> None:
        self.runner = runner
        self.registry = registry if registry is not None else SystemChainRegistry()
        self.console = console or default_console
        self.verifier = verifier or StateVerifier(runner, self.console)
        self.audit = audit or get_audit_logger()
        self._queue_num = queue_num
        self._lock = threading.Lock()

    @property
    def queue_num(self) -> int:
        return self._queue_num

    @queue_num.setter
    def queue_num(self, value: int) -> None:
        with self._lock:
            self._queue_num = value

    # =========================================================================
    # Baseline rules
    # =========================================================================

    def install_baseline(self, enable: bool = True, log_errors: bool = True) -> None:
        """Add (or with enable=False, remove) the three baseline rules.

        Raises:
            FatalInstallError: If the connection queue or drop rule cannot be added
        """
        with self._lock:
            self._apply_baseline(enable, log_errors)

    def _apply_baseline(self, enable: bool, log_errors: bool) -> None:
        rules = BASELINE_RULES if enable else tuple(reversed(BASELINE_RULES))
        for baseline in rules:
            args = baseline.args(self._queue_num)
            if not enable:
                self._remove(Action.DELETE, args, f"remove the {baseline.name} rule", log_errors)
                continue
            try:
                self._ensure(baseline.action, args)
            except ExecutionError as e:
                if baseline.critical:
                    self.audit.log_failure(
                        AuditEventType.RULES_INSTALL, "baseline", baseline.name, e.message,
                    )
                    raise FatalInstallError(
                        f"Error while installing the {baseline.name} firewall rule: {e.message}",
                        rule=baseline.name,
                        chain=args[0],
                        hint="Without this rule no connection is intercepted",
                        details=e.details,
                    ) from e
                self.console.error(
                    f"Error while installing the {baseline.name} firewall rule: {e.message}"
                )

        if enable:
            self.console.debug(f"Baseline rules installed (queue {self._queue_num})")
            self.audit.log_success(
                AuditEventType.RULES_INSTALL,
                "baseline",
                "nfqueue",
                parameters={"queue_num": self._queue_num, "stacks": self._stack_names()},
            )

    # =========================================================================
    # System rules
    # =========================================================================

    def add_system_rule(self, action: Action, rule: Rule, enable: bool = True) -> None:
        """Install one configured rule in its own chain.

        The chain is created and linked from its parent the first time
        its key is seen; after that only the rule itself is applied.

        Raises:
            ConfigurationError: If the rule has no chain or target
            ExecutionError: From the failing iptables invocation
        """
        rule.validate()
        with self._lock:
            if enable:
                self._create_system_chain(rule)
            args = system_rule_args(rule)
            resolved = resolve_action(action, enable)
            if resolved in (Action.APPEND, Action.INSERT):
                self._ensure(resolved, args)
            else:
                self._run(resolved, args)
            self.audit.log_success(
                AuditEventType.SYSTEM_RULE_ADD,
                "chain",
                rule.chain_name,
                parameters={"table": rule.table, "action": resolved.value, "rule": str(rule)},
            )

    def _create_system_chain(self, rule: Rule) -> None:
        key = rule.key
        if self.registry.contains(key):
            return

        try:
            self._run(Action.NEW_CHAIN, new_chain_args(rule))
        except ExecutionError as e:
            # Left over from a previous run
            self.console.debug(f"Chain {key} not created: {e.message}")

        self._ensure(Action.INSERT, jump_args(rule))
        self.registry.register(key, rule)
        self.console.debug(f"Chain {key} linked from {rule.chain}")

    def track_system_chains(self, rules: Iterable[Rule]) -> None:
        """Register chains created by an earlier process so they can be torn down."""
        with self._lock:
            for rule in rules:
                if rule.chain and rule.target:
                    self.registry.register(rule.key, rule)

    def teardown_system_rules(self, log_errors: bool = True) -> None:
        """Flush, unlink and delete every tracked chain."""
        with self._lock:
            self._teardown(log_errors)

    def _teardown(self, log_errors: bool) -> None:
        for key, rule in self.registry.all():
            steps = (
                ("flush", Action.FLUSH, flush_chain_args(rule)),
                ("unlink", Action.DELETE, jump_args(rule)),
                ("delete", Action.DELETE_CHAIN, delete_chain_args(rule)),
            )
            for step, action, args in steps:
                # Untracked from here on even if still linked
                note = " (chain may be left behind)" if step == "unlink" else ""
                self._remove(action, args, f"{step} chain {key}", log_errors, note)
            self.registry.unregister(key)

    # =========================================================================
    # Whole rule set
    # =========================================================================

    def clean_all(self, log_errors: bool = True) -> None:
        """Remove the baseline rules, then every tracked chain."""
        with self._lock:
            chains = len(self.registry)
            self._apply_baseline(False, log_errors)
            self._teardown(log_errors)
            self.audit.log_success(
                AuditEventType.RULES_CLEAN,
                "ruleset",
                "nfguard",
                parameters={"chains_removed": chains},
            )

    def apply_system_rules(self, rules: Iterable[Rule]) -> int:
        """Add each rule with APPEND, logging failures.

        Returns:
            Number of rules applied
        """
        applied = 0
        for rule in rules:
            try:
                self.add_system_rule(Action.APPEND, rule, True)
                applied += 1
            except NFGuardError as e:
                self.console.error(f"Error adding system rule {rule}: {e.message}")
                for detail in e.details:
                    self.console.verbose(f"  {detail}")
        return applied

    def is_loaded(self) -> bool:
        with self._lock:
            return self.verifier.is_loaded(self.registry)

    def inspect(self) -> VerificationReport:
        with self._lock:
            return self.verifier.inspect(self.registry)

    # =========================================================================
    # Private Helpers
    # =========================================================================

    def _stack_names(self) -> list[str]:
        return [stack.value for stack in self.runner.stacks]

    def _run(self, action: Action, args: list[str]) -> None:
        argv = [action.value] + args
        self.console.debug(f"Rule: {shlex.join(argv)}")
        self.runner.run(argv)

    def _remove(
        self,
        action: Action,
        args: list[str],
        what: str,
        log_errors: bool,
        note: str = "",
    ) -> None:
        """Run a removal step on every stack, logging each stack's failure."""
        argv = [action.value] + args
        self.console.debug(f"Rule: {shlex.join(argv)}")
        failures = self.runner.run_all(argv)
        for stack, e in failures.items():
            message = f"Cannot {what} on {stack.value}: {e.message}{note}"
            if log_errors:
                self.console.warn(message)
            else:
                self.console.debug(message)

    def _ensure(self, action: Action, args: list[str]) -> None:
        """Add a rule on each stack where `-C` does not find it."""
        argv = [action.value] + args
        for stack in self.runner.stacks:
            if self.runner.exists(stack, args):
                self.console.debug(f"Already present on {stack.value}: {shlex.join(args)}")
                continue
            self.runner.executor.execute(stack.value, argv)
