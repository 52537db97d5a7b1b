"""iptables command execution.

Provides:
- The RuleExecutor interface the reconciler and verifier depend on
- A subprocess-backed executor with dry-run support and output capture
- Dual-stack fan-out (iptables, then ip6tables when IPv6 is enabled)
"""

import shlex
import subprocess
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol

from nfguard.core.context import ExecutionContext
from nfguard.core.exceptions import ExecutionError


class Stack(str, Enum):
    """Packet-filter binary per protocol stack."""
    IPV4 = "iptables"
    IPV6 = "ip6tables"


class RuleExecutor(Protocol):
    """Runs one packet-filter invocation.

    Implementations return the command's standard output and raise
    ExecutionError when the invocation fails.
    """

    def execute(self, binary: str, args: list[str]) -> str:
        ...


@dataclass
class CommandResult:
    """Result of a command execution."""
    command: list[str]
    return_code: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        """Check if command succeeded."""
        return self.return_code == 0


class CommandExecutor:
    """Subprocess command execution with dry-run support and output capture.

    No timeout is applied: an iptables invocation blocks until it returns.
    """

    def __init__(self, ctx: ExecutionContext) -> None:
        """Initialize executor with context.

        Args:
            ctx: Execution context with flags
        """
        self.ctx = ctx

    def run(
        self,
        command: list[str],
        *,
        description: Optional[str] = None,
        check: bool = True,
    ) -> CommandResult:
        """Execute a command.

        Args:
            command: Command as list of strings
            description: Human-readable description for logging
            check: Raise exception on non-zero exit

        Returns:
            CommandResult with output

        Raises:
            ExecutionError: If the binary is missing, or the command fails and check=True
        """
        if description:
            self.ctx.console.step(description)

        cmd_display = shlex.join(command)
        self.ctx.console.debug(f"Running: {cmd_display}")

        if self.ctx.dry_run:
            self.ctx.console.dry_run_msg(f"Run: {cmd_display}")
            return CommandResult(command=command, return_code=0, stdout="", stderr="")

        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
            )
        except FileNotFoundError as e:
            raise ExecutionError(
                f"Command not found: {command[0]}",
                command=cmd_display,
                hint="Install the iptables package",
            ) from e
        except PermissionError as e:
            raise ExecutionError(
                f"Permission denied: {command[0]}",
                command=cmd_display,
                hint="Run as root",
            ) from e

        cmd_result = CommandResult(
            command=command,
            return_code=result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
        )

        if check and result.returncode != 0:
            raise ExecutionError(
                f"Command failed: {description or cmd_display}",
                command=cmd_display,
                return_code=result.returncode,
                stderr=result.stderr.strip() or None,
            )

        return cmd_result

    def execute(self, binary: str, args: list[str]) -> str:
        """Run one iptables/ip6tables invocation and return its output.

        Uses -w to wait for the xtables lock instead of failing when
        another tool holds it.
        """
        return self.run([binary, "-w"] + args).stdout

    @property
    def dry_run(self) -> bool:
        return self.ctx.dry_run


class DualStackRunner:
    """Runs the same invocation against every enabled protocol stack.

    IPv4 always runs first. run() raises the first failure and skips
    the remaining stacks; run_all() attempts every stack and collects
    the failures, for removals that must not depend on each other.
    """

    def __init__(self, executor: RuleExecutor, *, ipv6: bool) -> None:
        self.executor = executor
        self.ipv6 = ipv6

    @property
    def stacks(self) -> list[Stack]:
        if self.ipv6:
            return [Stack.IPV4, Stack.IPV6]
        return [Stack.IPV4]

    def run(self, args: list[str]) -> list[str]:
        """Execute args on each stack in order.

        Returns:
            Output of each invocation, IPv4 first

        Raises:
            ExecutionError: From the first stack that failed
        """
        outputs = []
        for stack in self.stacks:
            outputs.append(self.executor.execute(stack.value, args))
        return outputs

    def run_all(self, args: list[str]) -> dict[Stack, ExecutionError]:
        """Execute args on each stack, continuing past failures.

        Returns:
            The error of each stack that failed (empty if all succeeded)
        """
        failures = {}
        for stack in self.stacks:
            try:
                self.executor.execute(stack.value, args)
            except ExecutionError as e:
                failures[stack] = e
        return failures

    def exists(self, stack: Stack, args: list[str]) -> bool:
        """Check for a rule with `-C` (always False in dry-run mode)."""
        if getattr(self.executor, "dry_run", False) is True:
            return False
        try:
            self.executor.execute(stack.value, ["-C"] + args)
        except ExecutionError:
            return False
        return True

    def list_chain(self, stack: Stack, chain: str, table: Optional[str] = None) -> str:
        """Numeric listing of one chain on one stack."""
        args = ["-n", "-L", chain]
        if table:
            args.extend(["-t", table])
        return self.executor.execute(stack.value, args)
