"""
Settings Resolver - Immutable Per-Symbol Risk Parameters

Everything the service needs to know is loaded ONCE at process start from
config.yaml (thresholds, intervals) and the environment / .env file
(endpoints, credentials). After that it never changes.

FAIL CLOSED PRINCIPLE:
- Missing config file -> ConfigError (not defaults)
- Invalid values -> ConfigError (not silent correction)
- No symbols configured -> ConfigError (nothing to guard)

Defaults exist so per-symbol overrides can stay short, and so unit tests
can build settings with explicit construction.

Usage:
    config = load_config("config.yaml")
    resolver = SettingsResolver(config.symbols)

    settings = resolver.for_symbol("SOL")
    print(settings.take_profit_pct, settings.trailing.activation_pct)
"""

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

import yaml
from dotenv import load_dotenv


DEFAULT_SYMBOLS = ["SOL", "ETH", "BTC"]


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


def _check_positive(errors: List[str], owner: str, name: str, value: float) -> None:
    if value is None or value <= 0:
        errors.append(f"{owner}.{name} must be > 0, got {value}")


def _check_non_negative(errors: List[str], owner: str, name: str, value: float) -> None:
    if value is None or value < 0:
        errors.append(f"{owner}.{name} must be >= 0, got {value}")


def _known_keys(cls, data: Mapping[str, Any], section: str) -> Dict[str, Any]:
    """Reject unknown keys so typos in config.yaml fail loudly."""
    allowed = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - allowed)
    if unknown:
        raise ConfigError(f"Unknown keys in '{section}': {', '.join(unknown)}")
    return dict(data)


# =============================================================================
# PER-SYMBOL SETTINGS
# =============================================================================

@dataclass(frozen=True)
class TrailingSettings:
    """Trailing stop distances, both in balance-impact percent."""
    activation_pct: float = 0.6
    trail_pct: float = 0.1

    def to_dict(self) -> Dict[str, float]:
        return {"activation_pct": self.activation_pct, "trail_pct": self.trail_pct}


@dataclass(frozen=True)
class SymbolSettings:
    """
    Risk parameters for one tradable symbol.

    Percentages are balance-impact percent (see position.risk). Durations are
    milliseconds, matching config.yaml; use the *_s properties for asyncio.
    """
    symbol: str
    leverage_multiplier: float = 4.8
    take_profit_pct: float = 4.0
    stop_loss_pct: float = 4.0
    trailing: TrailingSettings = field(default_factory=TrailingSettings)
    confirmation_hit_count: int = 2
    monitor_interval_ms: int = 1000
    post_action_settle_ms: int = 15000
    verify_attempts: int = 3
    verify_interval_ms: int = 5000
    max_action_attempts: int = 3
    retry_backoff_ms: int = 1000
    retry_backoff_max_ms: int = 30000

    def __post_init__(self):
        """Validate values - fail closed on invalid."""
        self._validate()

    def _validate(self):
        errors: List[str] = []
        owner = self.symbol or "<symbol>"

        if not self.symbol:
            errors.append("symbol must be a non-empty string")

        _check_positive(errors, owner, "leverage_multiplier", self.leverage_multiplier)
        _check_positive(errors, owner, "take_profit_pct", self.take_profit_pct)
        _check_positive(errors, owner, "stop_loss_pct", self.stop_loss_pct)
        _check_positive(errors, owner, "trailing.activation_pct", self.trailing.activation_pct)
        _check_positive(errors, owner, "trailing.trail_pct", self.trailing.trail_pct)

        if not isinstance(self.confirmation_hit_count, int) or self.confirmation_hit_count < 1:
            errors.append(f"{owner}.confirmation_hit_count must be an int >= 1, got {self.confirmation_hit_count}")
        if not isinstance(self.verify_attempts, int) or self.verify_attempts < 1:
            errors.append(f"{owner}.verify_attempts must be an int >= 1, got {self.verify_attempts}")
        if not isinstance(self.max_action_attempts, int) or self.max_action_attempts < 1:
            errors.append(f"{owner}.max_action_attempts must be an int >= 1, got {self.max_action_attempts}")

        _check_positive(errors, owner, "monitor_interval_ms", self.monitor_interval_ms)
        _check_non_negative(errors, owner, "post_action_settle_ms", self.post_action_settle_ms)
        _check_non_negative(errors, owner, "verify_interval_ms", self.verify_interval_ms)
        _check_non_negative(errors, owner, "retry_backoff_ms", self.retry_backoff_ms)
        _check_non_negative(errors, owner, "retry_backoff_max_ms", self.retry_backoff_max_ms)

        if errors:
            raise ConfigError(f"Invalid settings: {'; '.join(errors)}")

    @property
    def monitor_interval_s(self) -> float:
        return self.monitor_interval_ms / 1000

    @property
    def settle_delay_s(self) -> float:
        return self.post_action_settle_ms / 1000

    @property
    def verify_interval_s(self) -> float:
        return self.verify_interval_ms / 1000

    @property
    def retry_backoff_s(self) -> float:
        return self.retry_backoff_ms / 1000

    @property
    def retry_backoff_max_s(self) -> float:
        return self.retry_backoff_max_ms / 1000

    @classmethod
    def from_dict(cls, symbol: str, data: Mapping[str, Any]) -> "SymbolSettings":
        """Build settings for a symbol from a (merged) config mapping."""
        values = _known_keys(cls, data, f"symbols.{symbol}")
        values.pop("symbol", None)
        trailing = values.pop("trailing", None) or {}
        if isinstance(trailing, TrailingSettings):
            trailing_settings = trailing
        else:
            try:
                trailing_settings = TrailingSettings(
                    **_known_keys(TrailingSettings, trailing, f"symbols.{symbol}.trailing")
                )
            except TypeError as e:
                raise ConfigError(f"Invalid trailing config for {symbol}: {e}")
        try:
            return cls(symbol=symbol, trailing=trailing_settings, **values)
        except TypeError as e:
            raise ConfigError(f"Invalid settings structure for {symbol}: {e}")

    def with_overrides(self, **changes: Any) -> "SymbolSettings":
        """Return a copy with some fields replaced (validated again)."""
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "leverage_multiplier": self.leverage_multiplier,
            "take_profit_pct": self.take_profit_pct,
            "stop_loss_pct": self.stop_loss_pct,
            "trailing": self.trailing.to_dict(),
            "confirmation_hit_count": self.confirmation_hit_count,
            "monitor_interval_ms": self.monitor_interval_ms,
            "post_action_settle_ms": self.post_action_settle_ms,
            "verify_attempts": self.verify_attempts,
            "verify_interval_ms": self.verify_interval_ms,
            "max_action_attempts": self.max_action_attempts,
        }


# =============================================================================
# SERVICE-LEVEL SETTINGS
# =============================================================================

@dataclass(frozen=True)
class StreamConfig:
    """Signal stream subscription settings."""
    url: str = ""
    channels: Tuple[str, ...] = ("long", "short")
    max_reconnect_attempts: int = 5
    reconnect_delay_ms: int = 5000
    message_queue_size: int = 1000
    receive_timeout_s: float = 5.0

    @property
    def reconnect_delay_s(self) -> float:
        return self.reconnect_delay_ms / 1000


@dataclass(frozen=True)
class IntervalConfig:
    """Orchestrator timers."""
    health_check_ms: int = 300000
    status_update_ms: int = 3600000


@dataclass(frozen=True)
class SentimentConfig:
    """Sentiment provider selection."""
    provider: str = "coinmarketcap"        # "coinmarketcap" or "fixed"
    api_url: str = "https://pro-api.coinmarketcap.com/v1/cryptocurrency/listings/latest"
    api_key: str = ""
    limit: int = 100
    timeout_s: float = 10.0
    fixed_index: int = 50


@dataclass(frozen=True)
class ExecutionConfig:
    """Execution gateway selection."""
    mode: str = "paper"                    # "paper" or "live"
    api_url: str = ""
    api_token: str = ""
    timeout_s: float = 15.0
    paper_starting_balance: float = 10000.0
    paper_prices: Dict[str, float] = field(default_factory=dict)
    paper_volatility_pct: float = 0.05


@dataclass(frozen=True)
class PathsConfig:
    """Runtime file locations."""
    snapshot: str = "runtime/position-snapshot.json"
    journal: str = "runtime/trailguard.db"
    log_file: str = "runtime/trailguard.log"


@dataclass(frozen=True)
class AppConfig:
    """Complete, validated service configuration."""
    symbols: Dict[str, SymbolSettings]
    stream: StreamConfig = field(default_factory=StreamConfig)
    intervals: IntervalConfig = field(default_factory=IntervalConfig)
    sentiment: SentimentConfig = field(default_factory=SentimentConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    paths: PathsConfig = field(default_factory=PathsConfig)
    discord_webhook_url: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], env: Optional[Mapping[str, str]] = None) -> "AppConfig":
        """
        Build and validate the configuration.

        Args:
            data: Parsed config.yaml contents
            env: Environment mapping (defaults to os.environ)

        Raises:
            ConfigError: On any missing or invalid value
        """
        env = os.environ if env is None else env
        errors: List[str] = []

        symbols = _build_symbols(data)

        stream_data = dict(data.get("stream") or {})
        stream_data.setdefault("url", env.get("SIGNAL_STREAM_URL", ""))
        if "channels" in stream_data:
            stream_data["channels"] = tuple(stream_data["channels"])
        intervals_data = dict(data.get("intervals") or {})
        sentiment_data = dict(data.get("sentiment") or {})
        sentiment_data.setdefault("api_key", env.get("CMC_API_KEY", ""))
        execution_data = dict(data.get("execution") or {})
        execution_data.setdefault("api_url", env.get("EXECUTION_API_URL", ""))
        execution_data.setdefault("api_token", env.get("EXECUTION_API_TOKEN", ""))
        paths_data = dict(data.get("paths") or {})

        try:
            stream = StreamConfig(**_known_keys(StreamConfig, stream_data, "stream"))
            intervals = IntervalConfig(**_known_keys(IntervalConfig, intervals_data, "intervals"))
            sentiment = SentimentConfig(**_known_keys(SentimentConfig, sentiment_data, "sentiment"))
            execution = ExecutionConfig(**_known_keys(ExecutionConfig, execution_data, "execution"))
            paths = PathsConfig(**_known_keys(PathsConfig, paths_data, "paths"))
        except TypeError as e:
            raise ConfigError(f"Invalid config structure: {e}")

        if stream.max_reconnect_attempts < 1:
            errors.append(f"stream.max_reconnect_attempts must be >= 1, got {stream.max_reconnect_attempts}")
        if stream.message_queue_size < 1:
            errors.append(f"stream.message_queue_size must be >= 1, got {stream.message_queue_size}")
        if stream.reconnect_delay_ms < 0:
            errors.append(f"stream.reconnect_delay_ms must be >= 0, got {stream.reconnect_delay_ms}")
        if intervals.health_check_ms <= 0:
            errors.append(f"intervals.health_check_ms must be > 0, got {intervals.health_check_ms}")
        if intervals.status_update_ms <= 0:
            errors.append(f"intervals.status_update_ms must be > 0, got {intervals.status_update_ms}")
        if sentiment.provider not in ("coinmarketcap", "fixed"):
            errors.append(f"sentiment.provider must be 'coinmarketcap' or 'fixed', got {sentiment.provider!r}")
        if not 0 <= sentiment.fixed_index <= 100:
            errors.append(f"sentiment.fixed_index must be within 0..100, got {sentiment.fixed_index}")
        if execution.mode not in ("paper", "live"):
            errors.append(f"execution.mode must be 'paper' or 'live', got {execution.mode!r}")
        if execution.mode == "live" and not execution.api_url:
            errors.append("execution.api_url (or EXECUTION_API_URL) is required in live mode")

        if errors:
            raise ConfigError(f"Invalid configuration: {'; '.join(errors)}")

        return cls(
            symbols=symbols,
            stream=stream,
            intervals=intervals,
            sentiment=sentiment,
            execution=execution,
            paths=paths,
            discord_webhook_url=env.get("DISCORD_WEBHOOK_URL", ""),
        )


def _build_symbols(data: Mapping[str, Any]) -> Dict[str, SymbolSettings]:
    """Merge the 'position' defaults into every entry of 'symbols'."""
    raw_symbols = data.get("symbols")
    if not raw_symbols:
        raise ConfigError("No 'symbols' section in config. At least one symbol is required.")

    defaults = dict(data.get("position") or {})

    # Accept either a list of names or a mapping of name -> overrides
    if isinstance(raw_symbols, list):
        raw_symbols = {name: {} for name in raw_symbols}
    if not isinstance(raw_symbols, dict):
        raise ConfigError(f"'symbols' must be a list or mapping, got {type(raw_symbols).__name__}")

    symbols: Dict[str, SymbolSettings] = {}
    for name, overrides in raw_symbols.items():
        merged = dict(defaults)
        overrides = dict(overrides or {})
        trailing = dict(defaults.get("trailing") or {})
        trailing.update(overrides.pop("trailing", None) or {})
        merged.update(overrides)
        if trailing:
            merged["trailing"] = trailing
        symbols[str(name)] = SymbolSettings.from_dict(str(name), merged)
    return symbols


def load_config(path: Optional[str] = None, env_file: Optional[str] = None) -> AppConfig:
    """
    Load config.yaml and the environment.

    FAIL CLOSED: Raises ConfigError if the file is missing, unparseable,
    empty, or contains invalid values.
    """
    load_dotenv(env_file)
    path = path or os.getenv("TRAILGUARD_CONFIG", "config.yaml")
    config_path = Path(path)

    if not config_path.exists():
        raise ConfigError(
            f"Config file not found: {path}. "
            f"Cannot run without explicit risk configuration."
        )

    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse config {path}: {e}")

    if data is None:
        raise ConfigError(f"Config file is empty: {path}")
    if not isinstance(data, dict):
        raise ConfigError(f"Config root must be a mapping: {path}")

    return AppConfig.from_dict(data)


class SettingsResolver:
    """Read-only lookup of per-symbol settings."""

    def __init__(self, settings: Mapping[str, SymbolSettings]):
        self._settings: Dict[str, SymbolSettings] = dict(settings)

    def for_symbol(self, symbol: str) -> SymbolSettings:
        try:
            return self._settings[symbol]
        except KeyError:
            raise KeyError(f"No settings configured for symbol {symbol!r}") from None

    @property
    def symbols(self) -> List[str]:
        return list(self._settings)

    def __contains__(self, symbol: object) -> bool:
        return symbol in self._settings

    def __iter__(self) -> Iterator[SymbolSettings]:
        return iter(self._settings.values())

    def __len__(self) -> int:
        return len(self._settings)
