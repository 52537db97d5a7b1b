"""Live rule-set verification.

Lists the relevant chains with `iptables -n -L` and looks for the
fingerprints of the rules nfguard installs. The fingerprints depend on
the listing format of the iptables binary; they are kept together here
so they can be adjusted, or replaced by a structured query, in one place.
"""

import re
from dataclasses import dataclass, field
from typing import Optional

from nfguard.core.exceptions import ExecutionError, VerificationError
from nfguard.core.executor import DualStackRunner, Stack
from nfguard.core.output import Console, console as default_console
from nfguard.services.registry import SystemChainRegistry
from nfguard.services.rules import DENY_MARK, Rule


QUEUE_RULE_PATTERN = re.compile(r"NFQUEUE.*ctstate NEW,RELATED.*NFQUEUE num.*bypass")
DROP_RULE_PATTERN = re.compile(rf"DROP.*mark match {DENY_MARK:#x}")


def system_chain_pattern(rule: Rule) -> re.Pattern:
    """Fingerprint of the jump into a rule's custom chain."""
    return re.compile(re.escape(rule.chain_name))


@dataclass
class VerificationReport:
    """What was found on each stack."""
    queue_rule: dict[Stack, bool] = field(default_factory=dict)
    drop_rule: dict[Stack, bool] = field(default_factory=dict)
    missing_chains: list[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def loaded(self) -> bool:
        if self.error is not None:
            return False
        return (
            bool(self.queue_rule)
            and all(self.queue_rule.values())
            and all(self.drop_rule.values())
            and not self.missing_chains
        )


class StateVerifier:
    """Decides whether the desired rules are currently loaded.

    A failed listing means the state is unknown; it is reported as not
    loaded so the watchdog reinstalls, and never raised.
    """

    def __init__(self, runner: DualStackRunner, console: Optional[Console] = None) -> None:
        self.runner = runner
        self.console = console or default_console

    def _list(self, stack: Stack, chain: str, table: Optional[str] = None) -> str:
        try:
            return self.runner.list_chain(stack, chain, table)
        except ExecutionError as e:
            where = f"{chain} ({table or 'filter'})"
            raise VerificationError(
                f"Cannot list {stack.value} chain {where}",
                details=e.details,
            ) from e

    def inspect(self, registry: SystemChainRegistry) -> VerificationReport:
        """Check every fingerprint on every enabled stack."""
        report = VerificationReport()
        try:
            for stack in self.runner.stacks:
                filter_out = self._list(stack, "OUTPUT")
                mangle_out = self._list(stack, "OUTPUT", "mangle")
                report.drop_rule[stack] = DROP_RULE_PATTERN.search(filter_out) is not None
                report.queue_rule[stack] = QUEUE_RULE_PATTERN.search(mangle_out) is not None

            for key, rule in registry.all():
                for stack in self.runner.stacks:
                    listing = self._list(stack, rule.chain, rule.table)
                    if not system_chain_pattern(rule).search(listing):
                        report.missing_chains.append(f"{stack.value}:{key}")
                        break
        except VerificationError as e:
            self.console.debug(f"{e.message}, assuming rules are not loaded")
            report.error = e.message
        return report

    def is_loaded(self, registry: SystemChainRegistry) -> bool:
        return self.inspect(registry).loaded
