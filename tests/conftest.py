"""Shared fixtures: an in-memory iptables and controller wiring."""

import copy
import threading
from typing import Callable, Generator
from unittest.mock import MagicMock

import pytest

from nfguard.core.audit import AuditLogger, configure_audit_logger
from nfguard.core.config import ControllerSettings
from nfguard.core.context import ExecutionContext, create_context
from nfguard.core.exceptions import ExecutionError
from nfguard.core.executor import DualStackRunner
from nfguard.services.reconciler import Reconciler


BUILTIN_CHAINS = {
    "filter": ("INPUT", "FORWARD", "OUTPUT"),
    "mangle": ("PREROUTING", "INPUT", "FORWARD", "OUTPUT", "POSTROUTING"),
    "nat": ("PREROUTING", "INPUT", "OUTPUT", "POSTROUTING"),
}

Fault = Callable[[str, list[str]], bool]


def _pop_table(args: list[str]) -> tuple[str, list[str]]:
    rest = list(args)
    table = "filter"
    if "-t" in rest:
        i = rest.index("-t")
        table = rest[i + 1]
        del rest[i:i + 2]
    return table, rest


def _value(spec: tuple[str, ...], flag: str) -> str:
    if flag in spec:
        i = spec.index(flag)
        if i + 1 < len(spec):
            return spec[i + 1]
    return ""


def render_rule(binary: str, spec: tuple[str, ...]) -> str:
    """One line of `iptables -n -L` output for a rule spec."""
    target = _value(spec, "-j")
    prot = _value(spec, "--protocol") or _value(spec, "-p") or "all"
    anywhere = "::/0" if binary == "ip6tables" else "0.0.0.0/0"

    extras = []
    if "--sport" in spec:
        extras.append(f"{prot} spt:{_value(spec, '--sport')}")
    if "--ctstate" in spec:
        extras.append(f"ctstate {_value(spec, '--ctstate')}")
    if "--mark" in spec:
        extras.append(f"mark match {int(_value(spec, '--mark')):#x}")
    if target == "NFQUEUE":
        queue = f"NFQUEUE num {_value(spec, '--queue-num')}"
        if "--queue-bypass" in spec:
            queue += " bypass"
        extras.append(queue)

    return f"{target:<10} {prot:<4} --  {anywhere:<20} {anywhere:<20} {' '.join(extras)}".rstrip()


class FakeIptables:
    """In-memory iptables/ip6tables honoring the RuleExecutor interface.

    Keeps an ordered rule list per (binary, table, chain) and fails the
    way the real binaries do: missing chains, missing rules for -C/-D,
    existing chains for -N, non-empty or referenced chains for -X.
    """

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.calls: list[tuple[str, tuple[str, ...]]] = []
        self.faults: list[Fault] = []
        self.state = {binary: self._fresh() for binary in ("iptables", "ip6tables")}

    @staticmethod
    def _fresh() -> dict[str, dict[str, list[tuple[str, ...]]]]:
        return {table: {chain: [] for chain in chains} for table, chains in BUILTIN_CHAINS.items()}

    # Test controls

    def fail_when(self, fault: Fault) -> None:
        """Fail every invocation for which `fault(binary, args)` is true."""
        self.faults.append(fault)

    def clear_faults(self) -> None:
        self.faults.clear()

    def rules(self, binary: str, chain: str, table: str = "filter") -> list[tuple[str, ...]]:
        with self.lock:
            return list(self.state[binary][table].get(chain, []))

    def chains(self, binary: str, table: str = "filter") -> set[str]:
        with self.lock:
            return set(self.state[binary][table])

    def wipe(self, binary: str = None) -> None:
        """Flush every chain, as an external `iptables -F` in each table would."""
        with self.lock:
            binaries = [binary] if binary else list(self.state)
            for name in binaries:
                for chains in self.state[name].values():
                    for rules in chains.values():
                        rules.clear()

    def snapshot(self) -> dict:
        with self.lock:
            return copy.deepcopy(self.state)

    def is_pristine(self) -> bool:
        with self.lock:
            fresh = self._fresh()
            return all(self.state[binary] == fresh for binary in self.state)

    def calls_for(self, binary: str, flag: str = None) -> list[tuple[str, ...]]:
        with self.lock:
            return [
                args for name, args in self.calls
                if name == binary and (flag is None or args[0] == flag)
            ]

    # RuleExecutor

    def execute(self, binary: str, args: list[str]) -> str:
        with self.lock:
            self.calls.append((binary, tuple(args)))
            for fault in self.faults:
                if fault(binary, list(args)):
                    self._fail(binary, args, "injected failure")
            return self._dispatch(binary, list(args))

    def _fail(self, binary: str, args: list[str], stderr: str) -> None:
        raise ExecutionError(
            f"Command failed: {binary} {' '.join(args)}",
            command=f"{binary} {' '.join(args)}",
            return_code=1,
            stderr=stderr,
        )

    def _dispatch(self, binary: str, args: list[str]) -> str:
        tables = self.state[binary]

        if args[:2] == ["-n", "-L"]:
            table, rest = _pop_table(args[2:])
            chain = rest[0]
            if chain not in tables.get(table, {}):
                self._fail(binary, args, "No chain/target/match by that name.")
            lines = [
                f"Chain {chain} (policy ACCEPT)",
                "target     prot opt source               destination",
            ]
            lines.extend(render_rule(binary, spec) for spec in tables[table][chain])
            return "\n".join(lines) + "\n"

        flag = args[0]
        table, rest = _pop_table(args[1:])
        chain, spec = rest[0], tuple(rest[1:])
        chains = tables.setdefault(table, {})

        if flag == "-N":
            if chain in chains:
                self._fail(binary, args, "Chain already exists.")
            chains[chain] = []
            return ""

        if chain not in chains:
            self._fail(binary, args, "No chain/target/match by that name.")
        rules = chains[chain]

        if flag in ("-A", "-I"):
            target = _value(spec, "-j")
            if target.startswith("nfguard-") and target not in chains:
                self._fail(binary, args, "Couldn't load target")
            if flag == "-A":
                rules.append(spec)
            else:
                rules.insert(0, spec)
        elif flag in ("-C", "-D"):
            if spec not in rules:
                self._fail(binary, args, "Bad rule (does a matching rule exist in that chain?).")
            if flag == "-D":
                rules.remove(spec)
        elif flag == "-F":
            rules.clear()
        elif flag == "-X":
            if rules:
                self._fail(binary, args, "Directory not empty.")
            for other in chains.values():
                if any(_value(r, "-j") == chain for r in other):
                    self._fail(binary, args, "Too many links.")
            del chains[chain]
        else:
            self._fail(binary, args, f"Unknown option {flag}")
        return ""


@pytest.fixture(autouse=True)
def disabled_audit() -> Generator[AuditLogger, None, None]:
    """No test writes to /var/log."""
    yield configure_audit_logger(enabled=False)


@pytest.fixture
def fake_iptables() -> FakeIptables:
    return FakeIptables()


@pytest.fixture
def mock_console() -> MagicMock:
    return MagicMock()


@pytest.fixture
def runner(fake_iptables: FakeIptables) -> DualStackRunner:
    return DualStackRunner(fake_iptables, ipv6=True)


@pytest.fixture
def reconciler(
    runner: DualStackRunner,
    mock_console: MagicMock,
    disabled_audit: AuditLogger,
) -> Reconciler:
    return Reconciler(runner, queue_num=0, console=mock_console, audit=disabled_audit)


@pytest.fixture
def settings(tmp_path) -> ControllerSettings:
    return ControllerSettings(
        queue_num=0,
        ipv6=True,
        config_path=tmp_path / "system-fw.yaml",
        audit_log=tmp_path / "audit.log",
        audit_enabled=False,
    )


@pytest.fixture
def ctx(settings: ControllerSettings) -> ExecutionContext:
    return create_context(settings=settings)
