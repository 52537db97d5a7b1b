"""iptables rule construction.

Pure functions building the argument lists for:
- the three baseline rules (DNS responses and new connections sent to
  the decision queue, marked packets dropped)
- the per-rule custom chains created from the system rules file

Argument lists never contain the leading action flag; the reconciler
prepends it with the Action in effect.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, NamedTuple

from nfguard.core.exceptions import ConfigurationError


# Mark placed upstream on connections that were denied. Shared with the
# decision engine; dropped on OUTPUT.
DENY_MARK = 0x18BA5

DEFAULT_TABLE = "filter"
SYSTEM_CHAIN_PREFIX = "nfguard-filter"


class Action(str, Enum):
    """iptables command flag."""
    APPEND = "-A"
    INSERT = "-I"
    DELETE = "-D"
    FLUSH = "-F"
    NEW_CHAIN = "-N"
    DELETE_CHAIN = "-X"


def resolve_action(action: Action, enable: bool) -> Action:
    """Disabling a rule always means deleting it."""
    return action if enable else Action.DELETE


@dataclass(frozen=True)
class Rule:
    """A desired packet-filter directive.

    `parameters` and `target_parameters` are raw argument tails, split
    on single spaces when the command is built.
    """
    chain: str
    target: str
    table: str = DEFAULT_TABLE
    parameters: str = ""
    target_parameters: str = ""
    description: str = ""

    def __post_init__(self) -> None:
        if not self.table:
            object.__setattr__(self, "table", DEFAULT_TABLE)

    @property
    def chain_name(self) -> str:
        """Name of the custom chain holding this rule."""
        return f"{SYSTEM_CHAIN_PREFIX}-{self.chain}"

    @property
    def key(self) -> "ChainKey":
        return ChainKey(self.table, self.chain_name)

    def validate(self) -> None:
        """Check the rule can be turned into a command.

        Raises:
            ConfigurationError: If chain or target is empty
        """
        if not self.chain:
            raise ConfigurationError(
                f"System rule has no chain: {self}",
                hint="Set 'chain' (e.g. OUTPUT) in the system rules file",
            )
        if not self.target:
            raise ConfigurationError(
                f"System rule has no target: {self}",
                hint="Set 'target' (e.g. ACCEPT) in the system rules file",
            )

    def __str__(self) -> str:
        parts = [f"{self.table}/{self.chain or '?'}"]
        if self.parameters:
            parts.append(self.parameters)
        parts.append(f"-> {self.target or '?'}")
        if self.description:
            parts.append(f"({self.description})")
        return " ".join(parts)


class ChainKey(NamedTuple):
    """Identity of an installed custom chain."""
    table: str
    chain: str

    def __str__(self) -> str:
        return f"{self.table}-{self.chain}"


def _split(tail: str) -> list[str]:
    return [part for part in tail.split(" ") if part]


# =========================================================================
# Baseline rules
# =========================================================================

def dns_response_rule(queue_num: int) -> list[str]:
    """DNS responses to the decision queue, to keep a cache of resolved names.

    INPUT --protocol udp --sport 53 -j NFQUEUE --queue-num N --queue-bypass
    """
    return [
        "INPUT",
        "--protocol", "udp",
        "--sport", "53",
        "-j", "NFQUEUE",
        "--queue-num", str(queue_num),
        "--queue-bypass",
    ]


def connection_rule(queue_num: int) -> list[str]:
    """New and related connections to the decision queue.

    OUTPUT -t mangle -m conntrack --ctstate NEW,RELATED -j NFQUEUE --queue-num N --queue-bypass
    """
    return [
        "OUTPUT",
        "-t", "mangle",
        "-m", "conntrack",
        "--ctstate", "NEW,RELATED",
        "-j", "NFQUEUE",
        "--queue-num", str(queue_num),
        "--queue-bypass",
    ]


def drop_marked_rule() -> list[str]:
    """Drop packets carrying the deny mark.

    OUTPUT -m mark --mark 101285 -j DROP
    """
    return [
        "OUTPUT",
        "-m", "mark",
        "--mark", str(DENY_MARK),
        "-j", "DROP",
    ]


@dataclass(frozen=True)
class BaselineRule:
    """One of the always-present rules."""
    name: str
    action: Action
    build: Callable[[int], list[str]]
    critical: bool

    def args(self, queue_num: int) -> list[str]:
        return self.build(queue_num)


# Install order. Removal runs in reverse.
BASELINE_RULES: tuple[BaselineRule, ...] = (
    BaselineRule("dns-responses", Action.INSERT, dns_response_rule, critical=False),
    BaselineRule("connections", Action.INSERT, connection_rule, critical=True),
    BaselineRule("drop-marked", Action.APPEND, lambda _q: drop_marked_rule(), critical=True),
)


# =========================================================================
# Custom chains
# =========================================================================

def new_chain_args(rule: Rule) -> list[str]:
    """-N <chainName> -t <table>"""
    return [rule.chain_name, "-t", rule.table]


def jump_args(rule: Rule) -> list[str]:
    """Link the custom chain from its parent: <chain> -t <table> -j <chainName>"""
    return [rule.chain, "-t", rule.table, "-j", rule.chain_name]


def flush_chain_args(rule: Rule) -> list[str]:
    return [rule.chain_name, "-t", rule.table]


def delete_chain_args(rule: Rule) -> list[str]:
    return [rule.chain_name, "-t", rule.table]


def system_rule_args(rule: Rule) -> list[str]:
    """The configured rule inside its custom chain.

    <chainName> -t <table> <parameters> -j <target> <targetParameters>
    """
    args = [rule.chain_name, "-t", rule.table]
    args.extend(_split(rule.parameters))
    args.extend(["-j", rule.target])
    args.extend(_split(rule.target_parameters))
    return args
