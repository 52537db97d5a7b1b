"""Execution context for the controller and CLI commands.

The ExecutionContext holds the runtime flags and settings that affect
how rules are executed and how output is shown. It is passed to the
executor, the controller and the CLI commands.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from nfguard.core.config import ControllerSettings
from nfguard.core.output import Console, console, Verbosity


@dataclass
class ExecutionContext:
    """Execution context passed to executor, controller and commands.

    Attributes:
        dry_run: If True, show iptables commands without executing them
        verbosity: Output verbosity level (0-3)
        no_color: If True, disable colored output
        config_path: Path to the system rules file (None = from settings)
        queue_num: Decision queue override (None = from settings)
    """

    # Runtime flags
    dry_run: bool = False
    verbosity: int = 1
    no_color: bool = False

    # Overrides for settings
    config_path: Optional[Path] = None
    queue_num: Optional[int] = None

    # Internal state (initialized lazily)
    _settings: Optional[ControllerSettings] = field(default=None, repr=False)
    _console: Console = field(default_factory=lambda: console, repr=False)

    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Configure console after initialization."""
        self._console.configure(
            verbosity=self.verbosity,
            dry_run=self.dry_run,
            no_color=self.no_color,
        )

    @property
    def settings(self) -> ControllerSettings:
        """Get controller settings (lazy loaded from the environment)."""
        if self._settings is None:
            self._settings = ControllerSettings()
        return self._settings

    @property
    def console(self) -> Console:
        """Get console for output."""
        return self._console

    @property
    def rules_path(self) -> Path:
        """Path of the system rules file in effect."""
        return self.config_path or self.settings.config_path

    @property
    def effective_queue_num(self) -> int:
        """Decision queue number in effect."""
        if self.queue_num is not None:
            return self.queue_num
        return self.settings.queue_num

    @property
    def ipv6_enabled(self) -> bool:
        """Whether ip6tables invocations are issued too."""
        return self.settings.ipv6_enabled()

    @property
    def is_verbose(self) -> bool:
        """Check if verbose output is enabled."""
        return self.verbosity >= Verbosity.VERBOSE

    @property
    def is_debug(self) -> bool:
        """Check if debug output is enabled."""
        return self.verbosity >= Verbosity.DEBUG

    @property
    def is_quiet(self) -> bool:
        """Check if quiet mode is enabled."""
        return self.verbosity <= Verbosity.QUIET


def create_context(
    dry_run: bool = False,
    verbose: int = 0,
    quiet: bool = False,
    no_color: bool = False,
    config: Optional[Path] = None,
    queue_num: Optional[int] = None,
    settings: Optional[ControllerSettings] = None,
) -> ExecutionContext:
    """Create an execution context from CLI options.

    Args:
        dry_run: Print iptables commands without executing
        verbose: Increase verbosity (can be repeated)
        quiet: Suppress non-essential output
        no_color: Disable colored output
        config: Path to the system rules file
        queue_num: Decision queue number override
        settings: Pre-built settings (skips environment loading)

    Returns:
        Configured execution context
    """
    if quiet:
        verbosity = Verbosity.QUIET
    else:
        verbosity = min(Verbosity.NORMAL + verbose, Verbosity.DEBUG)

    return ExecutionContext(
        dry_run=dry_run,
        verbosity=verbosity,
        no_color=no_color,
        config_path=config,
        queue_num=queue_num,
        _settings=settings,
    )
