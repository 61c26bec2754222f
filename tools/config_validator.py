"""
Configuration Validation Module

Validates policy.yaml and app.yaml against Pydantic schemas and returns the
typed configuration objects the engine runs on. Every threshold the risk gate,
the position supervisor and the watchlist consult is an enumerated field
here; nothing is looked up by string at runtime.

Usage:
    from tools.config_validator import validate_all_configs

    errors = validate_all_configs("config")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


# ===== Policy Schema =====
class RiskPolicy(BaseModel):
    """Capital gate and sizing parameters"""
    initial_capital_sol: float = Field(default=0.6, gt=0, description="Capital the daily loss ratio is measured against")
    reserve_sol: float = Field(default=0.06, ge=0, description="Reserve floor never deployed")
    max_open_positions: int = Field(default=18, gt=0, description="Max concurrently open positions")
    size_pct_low: float = Field(default=2.5, gt=0, le=100, description="Low-tier size, % of deployable")
    size_pct_medium: float = Field(default=4.0, gt=0, le=100, description="Medium-tier size, % of deployable")
    size_pct_high: float = Field(default=6.0, gt=0, le=100, description="High-tier size, % of deployable")
    medium_score: float = Field(default=50, ge=0, le=100, description="Score at which the medium tier starts")
    high_score: float = Field(default=60, ge=0, le=100, description="Score at which the high tier starts")
    high_priority_score: float = Field(default=55, ge=0, le=100, description="Orders above this score are high priority")
    daily_loss_limit_pct: float = Field(default=30, gt=0, le=100, description="Daily loss ceiling, % of initial capital")
    pause_minutes: float = Field(default=20, gt=0, description="Pause duration after a daily loss breach")
    min_deployable_sol: float = Field(default=0.005, ge=0, description="Deny entries below this deployable capital")
    min_position_sol: float = Field(default=0.003, gt=0, description="Dust floor for a position size")
    max_position_pct: float = Field(default=15, gt=0, le=100, description="Size cap, % of deployable")
    loss_shrink_floor: float = Field(default=0.5, gt=0, le=1, description="Minimum size factor on a losing day")
    win_boost: float = Field(default=1.1, ge=1, description="Size multiplier on a winning day")
    win_boost_min_wins: int = Field(default=2, ge=0, description="Wins required before the boost applies")
    win_boost_min_rate: float = Field(default=0.6, ge=0, le=1, description="Win rate required before the boost applies")

    @model_validator(mode="after")
    def validate_tiers(self) -> "RiskPolicy":
        if not (self.size_pct_low <= self.size_pct_medium <= self.size_pct_high):
            raise ValueError("tier sizes must satisfy low <= medium <= high")
        if self.medium_score > self.high_score:
            raise ValueError(f"medium_score ({self.medium_score}) must be <= high_score ({self.high_score})")
        return self


class StopsPolicy(BaseModel):
    """Fast-loop protective stops (P&L in %, negative)"""
    quick_cut_pct: float = Field(default=-4, lt=0)
    quick_cut_seconds: float = Field(default=30, gt=0)
    early_stop_pct: float = Field(default=-7, lt=0)
    early_stop_seconds: float = Field(default=60, gt=0)
    hard_stop_pct: float = Field(default=-12, lt=0)
    max_trailing_loss_pct: float = Field(default=-20, lt=0, description="Absolute floor no position may fall through")

    @model_validator(mode="after")
    def validate_order(self) -> "StopsPolicy":
        if self.quick_cut_seconds > self.early_stop_seconds:
            raise ValueError("quick_cut_seconds must be <= early_stop_seconds")
        if self.max_trailing_loss_pct > self.hard_stop_pct:
            raise ValueError("max_trailing_loss_pct must be at or below hard_stop_pct")
        return self


class DeadDataPolicy(BaseModel):
    """Behaviour while no price can be obtained for a position"""
    positive_grace_seconds: float = Field(default=15, ge=0)
    timeout_seconds: float = Field(default=180, gt=0)
    extension_seconds: float = Field(default=120, ge=0)
    stop_loss_pct: float = Field(default=-10, lt=0, description="Below this floor the base timeout applies")
    hard_max_seconds: float = Field(default=420, gt=0)

    @model_validator(mode="after")
    def validate_windows(self) -> "DeadDataPolicy":
        if self.hard_max_seconds < self.timeout_seconds:
            raise ValueError("hard_max_seconds must be >= timeout_seconds")
        return self


class TrailLevel(BaseModel):
    above_pct: float = Field(ge=0, description="Peak P&L at which this band starts")
    trail: float = Field(gt=0, lt=1, description="Allowed pullback from the high, as a fraction")


class LadderStep(BaseModel):
    trigger_pct: float = Field(gt=0, description="P&L that fires this step")
    sell_fraction: float = Field(gt=0, le=1, description="Fraction of the original position to sell")


class ProfilePolicy(BaseModel):
    """One supervisory behaviour profile"""
    trailing_activation_pct: float = Field(ge=0, description="Trailing stop arms once peak P&L exceeds this")
    trailing_levels: List[TrailLevel] = Field(min_length=1)
    profit_ladder: List[LadderStep] = Field(default_factory=list)
    breakeven_peak_pct: float = Field(gt=0, description="Peak P&L that arms the breakeven exit")
    breakeven_pnl_pct: float = Field(description="Exit when P&L falls back to this after the peak")
    max_age_seconds: float = Field(gt=0)
    timeout_max_pnl_pct: float = Field(description="Timeout closes only while P&L is at or below this")

    @field_validator("trailing_levels")
    @classmethod
    def validate_levels(cls, v: List[TrailLevel]) -> List[TrailLevel]:
        thresholds = [lvl.above_pct for lvl in v]
        if thresholds != sorted(thresholds):
            raise ValueError("trailing_levels must be sorted ascending by above_pct")
        return v

    @field_validator("profit_ladder")
    @classmethod
    def validate_ladder(cls, v: List[LadderStep]) -> List[LadderStep]:
        triggers = [step.trigger_pct for step in v]
        if any(b <= a for a, b in zip(triggers, triggers[1:])):
            raise ValueError("profit_ladder triggers must be strictly ascending")
        total = sum(step.sell_fraction for step in v)
        if total > 1.0 + 1e-9:
            raise ValueError(f"profit_ladder sells {total:.2f} of the position (> 1)")
        return v

    def trail_for(self, peak_pnl_pct: float) -> float:
        """Band width for a peak P&L: the highest level whose threshold it reaches."""
        for level in reversed(self.trailing_levels):
            if peak_pnl_pct >= level.above_pct:
                return level.trail
        return self.trailing_levels[0].trail


class RunnerPolicy(ProfilePolicy):
    """Aggressive profile plus the promotion quorum"""
    promotion_pnl_pct: float = Field(default=15, gt=0)
    promotion_quorum: int = Field(default=3, ge=1, le=4)
    volume_acceleration: float = Field(default=1.5, gt=0, description="5m volume vs the 1h average per 5m")
    min_buy_ratio: float = Field(default=0.55, ge=0, le=1)
    max_market_cap: float = Field(default=200_000, gt=0)


class DipBuyerPolicy(BaseModel):
    """Pre-entry watchlist"""
    enabled: bool = True
    check_interval_seconds: float = Field(default=3, gt=0)
    max_watch_seconds: float = Field(default=600, gt=0)
    min_dip_pct: float = Field(default=5, gt=0, lt=100)
    max_dip_pct: float = Field(default=35, gt=0, lt=100)
    rebound_pct: float = Field(default=2, gt=0)
    confirm_delay_seconds: float = Field(default=2, ge=0)
    max_watchlist: int = Field(default=20, gt=0)

    @model_validator(mode="after")
    def validate_dip_range(self) -> "DipBuyerPolicy":
        if self.min_dip_pct >= self.max_dip_pct:
            raise ValueError(f"min_dip_pct ({self.min_dip_pct}) must be < max_dip_pct ({self.max_dip_pct})")
        return self


class EntryPolicy(BaseModel):
    """Pre-buy guards and entry classification"""
    drift_abort_pct: float = Field(default=-8, lt=0, description="Abort if price moved below this since detection")
    drift_caution_pct: float = Field(default=-4, lt=0)
    early_runner_max_market_cap: float = Field(default=50_000, ge=0)
    early_runner_min_buy_ratio: float = Field(default=0.55, ge=0, le=1)


def _default_scalp() -> ProfilePolicy:
    return ProfilePolicy(
        trailing_activation_pct=8,
        trailing_levels=[
            TrailLevel(above_pct=0, trail=0.10),
            TrailLevel(above_pct=15, trail=0.08),
            TrailLevel(above_pct=30, trail=0.07),
            TrailLevel(above_pct=50, trail=0.06),
        ],
        profit_ladder=[
            LadderStep(trigger_pct=20, sell_fraction=0.30),
            LadderStep(trigger_pct=40, sell_fraction=0.30),
        ],
        breakeven_peak_pct=12,
        breakeven_pnl_pct=1,
        max_age_seconds=90 * 60,
        timeout_max_pnl_pct=3,
    )


def _default_runner() -> RunnerPolicy:
    return RunnerPolicy(
        trailing_activation_pct=10,
        trailing_levels=[
            TrailLevel(above_pct=0, trail=0.20),
            TrailLevel(above_pct=30, trail=0.18),
            TrailLevel(above_pct=80, trail=0.15),
            TrailLevel(above_pct=150, trail=0.12),
            TrailLevel(above_pct=300, trail=0.10),
        ],
        profit_ladder=[
            LadderStep(trigger_pct=50, sell_fraction=0.15),
            LadderStep(trigger_pct=150, sell_fraction=0.15),
            LadderStep(trigger_pct=300, sell_fraction=0.10),
        ],
        breakeven_peak_pct=15,
        breakeven_pnl_pct=2,
        max_age_seconds=6 * 3600,
        timeout_max_pnl_pct=5,
    )


class PolicyConfig(BaseModel):
    """Complete policy configuration schema"""
    risk: RiskPolicy = Field(default_factory=RiskPolicy)
    stops: StopsPolicy = Field(default_factory=StopsPolicy)
    dead_data: DeadDataPolicy = Field(default_factory=DeadDataPolicy)
    scalp: ProfilePolicy = Field(default_factory=_default_scalp)
    runner: RunnerPolicy = Field(default_factory=_default_runner)
    dip_buyer: DipBuyerPolicy = Field(default_factory=DipBuyerPolicy)
    entry: EntryPolicy = Field(default_factory=EntryPolicy)


# ===== App Schema =====
class LoggingSettings(BaseModel):
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    file: str = "logs/sniper.log"


class LoopSettings(BaseModel):
    """Scheduler cadences (seconds unless noted)"""
    fast_seconds: float = Field(default=1.5, gt=0)
    slow_seconds: float = Field(default=2.0, gt=0)
    queue_seconds: float = Field(default=0.5, gt=0)
    dispatch_seconds: float = Field(default=0.5, gt=0)
    summary_minutes: float = Field(default=45, gt=0)


class AlertSettings(BaseModel):
    enabled: bool = False
    webhook_url: Optional[str] = None
    min_severity: str = Field(default="info", pattern="^(info|warning|critical)$")
    dry_run: bool = False
    timeout_seconds: float = Field(default=5.0, gt=0)
    dedupe_seconds: float = Field(default=60.0, ge=0)
    rate_limit_per_minute: int = Field(default=30, gt=0)


class MonitoringSettings(BaseModel):
    metrics_enabled: bool = False
    metrics_port: int = Field(default=9090, gt=0, lt=65536)
    alerts: AlertSettings = Field(default_factory=AlertSettings)


class StorageSettings(BaseModel):
    trades_dir: str = "data/trades"


class EndpointSettings(BaseModel):
    dexscreener_url: str = "https://api.dexscreener.com/latest/dex/tokens"
    solana_rpc_url: str = "${SOLANA_RPC_URL}"
    executor_url: Optional[str] = None
    request_timeout_seconds: float = Field(default=5.0, gt=0)


class WalletSettings(BaseModel):
    public_key: str = "${WALLET_PUBLIC_KEY}"


class PaperSettings(BaseModel):
    """Paper-trading fill simulation"""
    entry_slippage_pct: Tuple[float, float] = (1.0, 3.0)
    exit_slippage_pct: Tuple[float, float] = (2.0, 5.0)
    max_realistic_loss_pct: float = Field(default=-14, lt=0, description="Simulated losses are capped near this")
    loss_cap_jitter_pct: float = Field(default=2.0, ge=0)
    seed: Optional[int] = None

    @field_validator("entry_slippage_pct", "exit_slippage_pct")
    @classmethod
    def validate_range(cls, v: Tuple[float, float]) -> Tuple[float, float]:
        low, high = v
        if low < 0 or high < low:
            raise ValueError(f"slippage range must satisfy 0 <= low <= high, got {v}")
        return v


class AppConfig(BaseModel):
    """Process-level settings"""
    mode: str = Field(default="PAPER", pattern="^(PAPER|LIVE)$")
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    loops: LoopSettings = Field(default_factory=LoopSettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    endpoints: EndpointSettings = Field(default_factory=EndpointSettings)
    wallet: WalletSettings = Field(default_factory=WalletSettings)
    paper: PaperSettings = Field(default_factory=PaperSettings)


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

    problem = getattr(error, "problem", str(error))
    return f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: {problem}"


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, "r") as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))


def _validate_file(config_dir: Path, filename: str, schema) -> List[str]:
    errors = []
    try:
        config = load_yaml_file(config_dir / filename)
        schema(**config)
        logger.info(f"✅ {filename} validation passed")
    except FileNotFoundError as e:
        errors.append(f"{filename}: {e}")
    except yaml.YAMLError as e:
        errors.append(f"{filename}: Invalid YAML - {e}")
    except ValidationError as e:
        for error in e.errors():
            field = " -> ".join(str(loc) for loc in error["loc"]) or "(root)"
            errors.append(f"{filename}: {field}: {error['msg']}")
    except TypeError as e:
        errors.append(f"{filename}: top level must be a mapping - {e}")
    return errors


def validate_policy(config_dir: Path) -> List[str]:
    """Validate policy.yaml against schema. Returns error messages (empty if valid)."""
    return _validate_file(config_dir, "policy.yaml", PolicyConfig)


def validate_app(config_dir: Path) -> List[str]:
    """Validate app.yaml against schema. Returns error messages (empty if valid)."""
    return _validate_file(config_dir, "app.yaml", AppConfig)


def validate_sanity_checks(policy: PolicyConfig) -> List[str]:
    """
    Logical consistency checks that span sections.

    Schema validation catches each section on its own; these catch settings
    that are individually valid but contradict each other.
    """
    errors = []
    risk = policy.risk

    if risk.reserve_sol >= risk.initial_capital_sol:
        errors.append(
            f"risk.reserve_sol ({risk.reserve_sol}) leaves nothing deployable from "
            f"initial_capital_sol ({risk.initial_capital_sol})"
        )
    if risk.min_position_sol > risk.initial_capital_sol:
        errors.append("risk.min_position_sol exceeds initial capital")

    if policy.runner.promotion_pnl_pct < policy.runner.breakeven_peak_pct:
        # A promoted position could already sit below the runner breakeven peak
        logger.warning(
            "runner.promotion_pnl_pct is below runner.breakeven_peak_pct; "
            "fresh runners will not be covered by the breakeven exit"
        )

    if policy.dead_data.stop_loss_pct <= policy.stops.max_trailing_loss_pct:
        errors.append(
            "dead_data.stop_loss_pct must sit above stops.max_trailing_loss_pct "
            "(the absolute ceiling would always fire first)"
        )

    if policy.entry.drift_caution_pct < policy.entry.drift_abort_pct:
        errors.append("entry.drift_caution_pct must be >= entry.drift_abort_pct")

    return errors


def load_policy(config_dir: str = "config") -> PolicyConfig:
    """Load and validate policy.yaml; raises ConfigurationError on any problem."""
    config_path = Path(config_dir)
    errors = validate_policy(config_path)
    if errors:
        raise ConfigurationError(errors)
    policy = PolicyConfig(**load_yaml_file(config_path / "policy.yaml"))
    errors = validate_sanity_checks(policy)
    if errors:
        raise ConfigurationError(errors)
    return policy


def load_app_config(config_dir: str = "config") -> AppConfig:
    """Load and validate app.yaml; raises ConfigurationError on any problem."""
    config_path = Path(config_dir)
    errors = validate_app(config_path)
    if errors:
        raise ConfigurationError(errors)
    return AppConfig(**load_yaml_file(config_path / "app.yaml"))


def validate_all_configs(config_dir: str = "config") -> List[str]:
    """
    Validate all configuration files.

    Performs:
    1. Schema validation (Pydantic type checks)
    2. Sanity checks (logical consistency)

    Returns:
        List of all error messages (empty if all valid)
    """
    config_path = Path(config_dir)

    all_errors = []
    all_errors.extend(validate_policy(config_path))
    all_errors.extend(validate_app(config_path))

    # Sanity checks (only if schema validation passed)
    if not all_errors:
        policy = PolicyConfig(**load_yaml_file(config_path / "policy.yaml"))
        all_errors.extend(validate_sanity_checks(policy))

    if not all_errors:
        logger.info("✅ All config files validated successfully")
    else:
        logger.error(f"❌ {len(all_errors)} validation error(s) found")

    return all_errors


if __name__ == "__main__":
    """Run validation from command line"""
    import sys

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")

    config_dir = sys.argv[1] if len(sys.argv) > 1 else "config"

    errors = validate_all_configs(config_dir)

    if errors:
        print("\n❌ Configuration Validation Failed:\n")
        for error in errors:
            print(f"  • {error}")
        print()
        sys.exit(1)
    else:
        print("\n✅ All configuration files are valid!\n")
        sys.exit(0)
