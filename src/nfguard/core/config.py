"""Configuration management using Pydantic.

Provides:
- Typed system-rule models with validation
- YAML file loading (JSON files are accepted as well)
- Environment variable overrides for controller settings
- Example configuration for `nfguard config example`
"""

from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from nfguard.core.exceptions import ConfigurationError
from nfguard.services.rules import DEFAULT_TABLE, Rule


# Default configuration paths
DEFAULT_CONFIG_PATH = Path("/etc/nfguard/system-fw.yaml")
DEFAULT_AUDIT_LOG = Path("/var/log/nfguard/audit.log")
IPV6_PROC_PATH = Path("/proc/net/if_inet6")

MAX_QUEUE_NUM = 65535


def _alias(name: str, legacy: str) -> Any:
    return Field(
        default="",
        validation_alias=AliasChoices(name, legacy),
        validate_default=True,
    )


class RuleConfig(BaseModel):
    """A single packet-filter directive as written in the config file.

    Capitalised keys (`Table`, `Chain`, `TargetParameters`, ...) are
    accepted for compatibility with the JSON system-fw format.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    description: str = _alias("description", "Description")
    table: str = _alias("table", "Table")
    chain: str = _alias("chain", "Chain")
    parameters: str = _alias("parameters", "Parameters")
    target: str = _alias("target", "Target")
    target_parameters: str = _alias("target_parameters", "TargetParameters")

    @field_validator(
        "description", "table", "chain", "parameters", "target", "target_parameters",
        mode="before",
    )
    @classmethod
    def strip_value(cls, v: Any) -> str:
        if v is None:
            return ""
        return str(v).strip()

    @field_validator("table")
    @classmethod
    def default_table(cls, v: str) -> str:
        return v or DEFAULT_TABLE

    def to_rule(self) -> Rule:
        """Build the immutable rule used by the reconciler."""
        return Rule(
            table=self.table,
            chain=self.chain,
            parameters=self.parameters,
            target=self.target,
            target_parameters=self.target_parameters,
            description=self.description,
        )


class SystemRuleConfig(BaseModel):
    """A configured rule plus its enable/disable intent."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    rule: RuleConfig = Field(validation_alias=AliasChoices("rule", "Rule"))
    enabled: bool = Field(default=True, validation_alias=AliasChoices("enabled", "Enabled"))

    @model_validator(mode="before")
    @classmethod
    def lift_enabled(cls, data: Any) -> Any:
        # The JSON format keeps Enabled inside the Rule object
        if not isinstance(data, dict):
            return data
        if "enabled" in data or "Enabled" in data:
            return data
        inner = data.get("rule", data.get("Rule"))
        if isinstance(inner, dict):
            for key in ("enabled", "Enabled"):
                if key in inner:
                    return {**data, "enabled": inner[key]}
        return data


class FirewallConfig(BaseModel):
    """Root model of the system rules file."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    system_rules: list[SystemRuleConfig] = Field(
        default_factory=list,
        validation_alias=AliasChoices("system_rules", "SystemRules"),
    )

    @field_validator("system_rules", mode="before")
    @classmethod
    def none_is_empty(cls, v: Any) -> Any:
        return v or []

    def enabled_rules(self) -> list[Rule]:
        """Rules to install, in file order."""
        return [entry.rule.to_rule() for entry in self.system_rules if entry.enabled]

    @classmethod
    def load(cls, path: Path) -> "FirewallConfig":
        """Load configuration from a YAML or JSON file.

        Args:
            path: Path to configuration file

        Returns:
            Loaded configuration

        Raises:
            ConfigurationError: If file not found or invalid
        """
        if not path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {path}",
                hint="Print a starting point with: nfguard config example",
            )

        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(
                f"Invalid YAML in configuration file: {path}",
                details=[str(e)],
            ) from e
        except PermissionError:
            raise ConfigurationError(
                f"Cannot read configuration file: {path}",
                hint="Check file permissions or run with sudo",
            )

        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Invalid configuration: expected a mapping in {path}",
            )

        try:
            return cls.model_validate(data)
        except Exception as e:
            raise ConfigurationError(
                f"Invalid configuration: {e}",
                details=[str(e)],
            ) from e

    @classmethod
    def load_or_default(cls, path: Optional[Path] = None) -> "FirewallConfig":
        """Load configuration, falling back to an empty rule set if missing.

        Args:
            path: Path to configuration file (uses default if None)

        Returns:
            Loaded or default configuration
        """
        if path is None:
            path = DEFAULT_CONFIG_PATH

        if path.exists():
            return cls.load(path)
        return cls()

    def to_yaml(self) -> str:
        """Convert configuration to YAML string."""
        data = self.model_dump()
        return yaml.dump(data, default_flow_style=False, sort_keys=False)


class ControllerSettings(BaseSettings):
    """Controller settings, overridable from NFGUARD_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="NFGUARD_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    queue_num: int = 0
    ipv6: Optional[bool] = None  # None = auto-detect
    config_path: Path = DEFAULT_CONFIG_PATH
    audit_log: Path = DEFAULT_AUDIT_LOG
    audit_enabled: bool = True

    @field_validator("queue_num")
    @classmethod
    def validate_queue_num(cls, v: int) -> int:
        if not 0 <= v <= MAX_QUEUE_NUM:
            raise ValueError(f"queue_num must be between 0 and {MAX_QUEUE_NUM}")
        return v

    def ipv6_enabled(self) -> bool:
        """Whether rules are mirrored with ip6tables."""
        if self.ipv6 is not None:
            return self.ipv6
        return detect_ipv6()


def detect_ipv6() -> bool:
    """Check whether the kernel has IPv6 enabled."""
    try:
        return IPV6_PROC_PATH.exists()
    except OSError:
        return False


def get_example_config() -> str:
    """Generate example configuration file content."""
    return """# nfguard system rules
# Each enabled rule gets its own chain (nfguard-filter-<chain>) linked
# at the top of <chain> in <table>. Changes are picked up automatically.

system_rules:
  - enabled: true
    rule:
      description: Allow pinging out
      table: mangle        # defaults to filter
      chain: OUTPUT
      parameters: -p icmp --icmp-type echo-request
      target: ACCEPT
      target_parameters: ""

  - enabled: false
    rule:
      description: Skip the queue for the local resolver
      table: mangle
      chain: OUTPUT
      parameters: -d 127.0.0.53 -p udp --dport 53
      target: ACCEPT
"""
