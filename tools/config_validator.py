"""
Configuration Validation Module

Validates policy.yaml and app.yaml against Pydantic schemas.
Invalid exit rules must stop the process at startup, never mid-run.

Usage:
    from tools.config_validator import validate_all_configs

    errors = validate_all_configs("config")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
from datetime import timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from core.exceptions import ConfigInvalid

logger = logging.getLogger(__name__)


# ===== Policy Schema =====
class ExitPolicyConfig(BaseModel):
    """Exit rules, read-only after load"""
    model_config = ConfigDict(frozen=True)

    price_targets: List[Decimal] = Field(min_length=1, description="Price multipliers for staged exits")
    sell_fractions: List[Decimal] = Field(min_length=1, description="Fraction of original size sold per tier")
    stop_loss_ratio: Decimal = Field(gt=0, lt=1, description="Sell all at or below this price/entry ratio")
    min_profit_ratio: Decimal = Field(gt=1, description="Sell all at or above this ratio before any partial exit")
    volume_spike_multiplier: Decimal = Field(gt=1, description="Sell all when volume exceeds entry volume by this factor")
    market_cap_target: Decimal = Field(gt=0, description="Sell all at or above this market cap")
    max_hold_hours: Decimal = Field(gt=0, description="Sell all after holding this long (hours)")

    @field_validator('price_targets')
    @classmethod
    def validate_targets_increasing(cls, v: List[Decimal]) -> List[Decimal]:
        """Targets must be positive and strictly increasing"""
        for idx, target in enumerate(v):
            if target <= 0:
                raise ValueError(f"price_targets[{idx}] must be > 0, got {target}")
            if idx > 0 and target <= v[idx - 1]:
                raise ValueError(
                    f"price_targets must be strictly increasing, got {v[idx - 1]} then {target}"
                )
        return v

    @field_validator('sell_fractions')
    @classmethod
    def validate_fraction_range(cls, v: List[Decimal]) -> List[Decimal]:
        """Each fraction must be in (0, 1]"""
        for idx, fraction in enumerate(v):
            if fraction <= 0 or fraction > 1:
                raise ValueError(f"sell_fractions[{idx}] must be 0 < f ≤ 1, got {fraction}")
        return v

    @model_validator(mode='after')
    def validate_tier_lengths(self) -> "ExitPolicyConfig":
        if len(self.price_targets) != len(self.sell_fractions):
            raise ValueError(
                f"price_targets ({len(self.price_targets)}) and sell_fractions "
                f"({len(self.sell_fractions)}) must have equal length"
            )
        return self

    @property
    def max_hold(self) -> timedelta:
        return timedelta(hours=float(self.max_hold_hours))


class EntryConfig(BaseModel):
    """Buy sizing and token validation"""
    risk_level: int = Field(default=50, ge=1, le=100, description="1-100, scales buy size and validation floors")
    buy_amount: Decimal = Field(gt=0, description="Quote amount per signal before risk scaling")
    max_buy_amount: Decimal = Field(gt=0, description="Cap on the risk-scaled buy amount")
    min_liquidity_usd: Decimal = Field(default=Decimal("10000"), ge=0, description="Liquidity floor at risk 100")
    min_volume_usd: Decimal = Field(default=Decimal("50000"), ge=0, description="24h volume floor at risk 100")


class LoopConfig(BaseModel):
    """Monitor loop scheduling"""
    interval_seconds: float = Field(default=300.0, gt=0, description="Seconds between sweep starts")
    jitter_pct: float = Field(default=0.0, ge=0, le=20, description="Random extra sleep as % of interval")
    max_workers: int = Field(default=4, ge=1, description="Accounts swept in parallel")


class PolicySchema(BaseModel):
    """Complete policy configuration schema"""
    exits: ExitPolicyConfig
    entry: EntryConfig
    loop: LoopConfig = Field(default_factory=LoopConfig)


# ===== App Schema =====
class AppSection(BaseModel):
    mode: str = Field(default="PAPER", pattern="^(PAPER|LIVE|paper|live)$", description="Trading mode")


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    file: str = Field(default="logs/exit-manager.log")


class MonitoringConfig(BaseModel):
    metrics_enabled: bool = Field(default=False)
    metrics_port: int = Field(default=9100, gt=0, lt=65536)


class MarketDataConfig(BaseModel):
    base_url: str = Field(default="https://api.dextools.io/v1", min_length=1)
    chain: str = Field(default="ether", min_length=1)
    api_key_env: str = Field(default="DEXTOOLS_API_KEY", min_length=1)
    timeout_seconds: float = Field(default=10.0, gt=0)


class ExecutorConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    class_path: Optional[str] = Field(default=None, alias="class", description="module:Class for LIVE mode")
    options: Dict[str, Any] = Field(default_factory=dict)


class StateConfig(BaseModel):
    file: Optional[str] = Field(default=None, description="Ledger state file; in-memory only when unset")


class AuditConfig(BaseModel):
    file: str = Field(default="logs/audit.jsonl")


class AppSchema(BaseModel):
    """Complete app configuration schema"""
    app: AppSection = Field(default_factory=AppSection)
    accounts: List[str] = Field(min_length=1, description="Accounts whose positions are managed")
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    alerts: Dict[str, Any] = Field(default_factory=dict)
    market_data: MarketDataConfig = Field(default_factory=MarketDataConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)

    @field_validator('accounts')
    @classmethod
    def validate_unique_accounts(cls, v: List[str]) -> List[str]:
        if len(set(v)) != len(v):
            raise ValueError("accounts must be unique")
        for account in v:
            if not account or not account.strip():
                raise ValueError("accounts must be non-empty strings")
        return v

    @model_validator(mode='after')
    def validate_live_executor(self) -> "AppSchema":
        if self.app.mode.upper() == "LIVE" and not self.executor.class_path:
            raise ValueError("LIVE mode requires executor.class (module:Class)")
        return self


# ===== Validation Functions =====
def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Return enriched message with line/column context for YAML errors."""

    message = f"Malformed YAML in {file_path}: {error}"
    mark = getattr(error, "problem_mark", None)
    if mark is None:
        return message

    line = getattr(mark, "line", None)
    column = getattr(mark, "column", None)

    if line is None or column is None:
        return message

    try:
        raw_lines = file_path.read_text().splitlines()
    except OSError:
        return (
            f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: "
            f"{getattr(error, 'problem', str(error))}"
        )

    start = max(line - 2, 0)
    end = min(line + 3, len(raw_lines))

    snippet_lines: List[str] = []
    for idx in range(start, end):
        pointer = "▶" if idx == line else " "
        snippet_lines.append(f"{pointer} {idx + 1:04d} | {raw_lines[idx]}")

    snippet = "\n".join(snippet_lines)
    problem = getattr(error, "problem", str(error))

    return (
        f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: {problem}\n"
        f"Context:\n{snippet}"
    )


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict.

    Args:
        file_path: Path to YAML file

    Returns:
        Parsed YAML as dict (empty dict for an empty file)

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, 'r') as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))


def _validate_file(config_dir: Path, filename: str, schema) -> List[str]:
    errors = []
    path = config_dir / filename

    try:
        config = load_yaml_file(path)
        schema(**config)
        logger.info(f"✅ {filename} validation passed")
    except FileNotFoundError as e:
        errors.append(f"{filename}: {e}")
    except yaml.YAMLError as e:
        errors.append(f"{filename}: Invalid YAML - {e}")
    except ValidationError as e:
        for error in e.errors():
            field = " -> ".join(str(loc) for loc in error['loc'])
            errors.append(f"{filename}: {field}: {error['msg']}")
    except TypeError as e:
        errors.append(f"{filename}: Top-level value must be a mapping - {e}")

    return errors


def validate_policy(config_dir: Union[str, Path]) -> List[str]:
    """
    Validate policy.yaml against schema.

    Args:
        config_dir: Path to config directory

    Returns:
        List of error messages (empty if valid)
    """
    return _validate_file(Path(config_dir), "policy.yaml", PolicySchema)


def validate_app(config_dir: Union[str, Path]) -> List[str]:
    """Validate app.yaml against schema."""
    return _validate_file(Path(config_dir), "app.yaml", AppSchema)


def validate_all_configs(config_dir: Union[str, Path] = "config") -> List[str]:
    """
    Validate every config file in the directory.

    Returns:
        Combined list of error messages (empty if all valid)
    """
    config_dir = Path(config_dir)
    errors: List[str] = []
    errors.extend(validate_policy(config_dir))
    errors.extend(validate_app(config_dir))
    return errors


def load_policy(config_dir: Union[str, Path] = "config") -> PolicySchema:
    """
    Load and validate policy.yaml.

    Raises:
        ConfigInvalid: if the file is missing, malformed or fails the schema
    """
    config_dir = Path(config_dir)
    errors = validate_policy(config_dir)
    if errors:
        raise ConfigInvalid(errors)
    policy = PolicySchema(**load_yaml_file(config_dir / "policy.yaml"))

    exits = policy.exits
    if exits.min_profit_ratio <= exits.price_targets[0]:
        logger.warning(
            f"min_profit_ratio {exits.min_profit_ratio} is at or below the first price target "
            f"{exits.price_targets[0]}; fresh positions will exit in full before any staged tier"
        )
    return policy


def load_exit_policy(config_dir: Union[str, Path] = "config") -> ExitPolicyConfig:
    """Load only the exit rules from policy.yaml."""
    return load_policy(config_dir).exits


def load_app_config(config_dir: Union[str, Path] = "config") -> AppSchema:
    """
    Load and validate app.yaml.

    Raises:
        ConfigInvalid: if the file is missing, malformed or fails the schema
    """
    config_dir = Path(config_dir)
    errors = validate_app(config_dir)
    if errors:
        raise ConfigInvalid(errors)
    return AppSchema(**load_yaml_file(config_dir / "app.yaml"))
