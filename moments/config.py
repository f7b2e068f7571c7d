"""
Configuration
=============

Dataclass configuration for every layer, loaded from config/moments.json.

LOAD ORDER:
===========
1. Dataclass defaults
2. config/moments.json (or MOMENTS_CONFIG)
3. config/moments.local.json, deep-merged on top (not committed)
4. Environment overrides (MOMENTS_DATA_DIR, MOMENTS_PROVIDER, ...)

A missing config file is not an error: defaults apply.
An unreadable or invalid one raises ConfigurationError.
"""

from __future__ import annotations
from dataclasses import dataclass, field, fields, asdict
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple
import json
import os


class ConfigurationError(Exception):
    """Invalid or unreadable configuration."""


DEFAULT_CONFIG_PATH = Path(__file__).parent.parent / 'config' / 'moments.json'

PROVIDER_TYPES = ("anthropic", "bedrock", "mock")


# =============================================================================
# SECTIONS
# =============================================================================

@dataclass
class CatalogConfig:
    root: str = "."
    companies_folder: str = "companies"
    technologies_folder: str = "technologies"
    markdown_extensions: Tuple[str, ...] = (".md", ".mdx")
    image_extensions: Tuple[str, ...] = (".png", ".jpg", ".jpeg", ".webp", ".svg")


@dataclass
class AnalysisConfig:
    temporal_window_days: int = 14
    correlation_threshold: float = 0.6
    max_parallel_requests: int = 4
    model: str = "sonnet"
    temperature: float = 0.3
    max_tokens: int = 4000

    def __post_init__(self):
        if self.temporal_window_days < 1:
            raise ConfigurationError("temporal_window_days must be >= 1")
        if not 0.0 <= self.correlation_threshold <= 1.0:
            raise ConfigurationError("correlation_threshold must be within [0, 1]")
        if self.max_parallel_requests < 1:
            raise ConfigurationError("max_parallel_requests must be >= 1")


@dataclass
class StorageConfig:
    data_dir: str = "data"
    moments_folder: str = "moments"
    hash_file: str = "content_hashes.db"

    @property
    def moments_path(self) -> Path:
        return Path(self.data_dir) / self.moments_folder

    @property
    def hash_path(self) -> Path:
        return Path(self.data_dir) / self.hash_file


@dataclass
class AnthropicSettings:
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    timeout_seconds: float = 60.0
    max_retries: int = 2


@dataclass
class BedrockSettings:
    region: Optional[str] = None
    profile: Optional[str] = None


@dataclass
class ProviderConfig:
    type: str = "anthropic"
    fallback: Optional[str] = "bedrock"
    model_mapping: Dict[str, Dict[str, str]] = field(default_factory=dict)
    anthropic: Optional[AnthropicSettings] = None
    bedrock: Optional[BedrockSettings] = None
    enable_cache: bool = True
    cache_ttl_seconds: int = 3600
    cache_max_entries: int = 500

    def __post_init__(self):
        if isinstance(self.anthropic, Mapping):
            self.anthropic = _section(AnthropicSettings, self.anthropic)
        if isinstance(self.bedrock, Mapping):
            self.bedrock = _section(BedrockSettings, self.bedrock)
        self.anthropic = self.anthropic or AnthropicSettings()
        self.bedrock = self.bedrock or BedrockSettings()
        if self.type not in PROVIDER_TYPES:
            raise ConfigurationError(f"Unknown provider type: {self.type}")
        if self.fallback is not None and self.fallback not in PROVIDER_TYPES:
            raise ConfigurationError(f"Unknown fallback provider: {self.fallback}")
        if self.fallback == self.type:
            self.fallback = None


@dataclass
class AgentSettings:
    enabled: bool = True
    model: str = "sonnet"
    temperature: float = 0.3
    max_tokens: int = 4000
    parallel_batch_size: int = 10
    enable_parallel_batches: bool = True

    def __post_init__(self):
        if self.parallel_batch_size < 1:
            raise ConfigurationError("parallel_batch_size must be >= 1")


@dataclass
class AgentsConfig:
    content_analyzer: Optional[AgentSettings] = None
    classification_agent: Optional[AgentSettings] = None
    correlation_engine: Optional[AgentSettings] = None
    report_generator: Optional[AgentSettings] = None

    def __post_init__(self):
        defaults = {
            "content_analyzer": AgentSettings(temperature=0.3, parallel_batch_size=5),
            "classification_agent": AgentSettings(model="haiku", temperature=0.1, parallel_batch_size=10),
            "correlation_engine": AgentSettings(temperature=0.2, parallel_batch_size=15),
            "report_generator": AgentSettings(temperature=0.4, parallel_batch_size=1, enable_parallel_batches=False),
        }
        for name, default in defaults.items():
            value = getattr(self, name)
            if isinstance(value, Mapping):
                merged = asdict(default)
                merged.update(value)
                setattr(self, name, _section(AgentSettings, merged))
            elif value is None:
                setattr(self, name, default)


@dataclass
class AlertConfig:
    enabled: bool = True
    error_rate_threshold: float = 0.1
    latency_threshold_ms: float = 5000.0
    consecutive_failures: int = 3
    cooldown_minutes: float = 30.0
    webhook_url: Optional[str] = None


@dataclass
class MonitoringConfig:
    check_interval_seconds: float = 60.0
    retention_days: int = 7
    providers: Tuple[str, ...] = ("anthropic", "bedrock")
    alerts: Optional[AlertConfig] = None

    def __post_init__(self):
        if isinstance(self.alerts, Mapping):
            self.alerts = _section(AlertConfig, self.alerts)
        self.alerts = self.alerts or AlertConfig()
        self.providers = tuple(self.providers)


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    reset_timeout_seconds: float = 60.0


@dataclass
class FailoverConfig:
    health_threshold: float = 80.0
    max_failures: int = 3
    backoff_multiplier: float = 2.0
    max_backoff_ms: float = 300000.0
    recovery_threshold: int = 3
    circuit_breaker: Optional[CircuitBreakerConfig] = None

    def __post_init__(self):
        if isinstance(self.circuit_breaker, Mapping):
            self.circuit_breaker = _section(CircuitBreakerConfig, self.circuit_breaker)
        self.circuit_breaker = self.circuit_breaker or CircuitBreakerConfig()


@dataclass
class UsageConfig:
    """Usage tracking retention and optional USD budgets per period."""
    max_records: int = 10000
    daily_budget: Optional[float] = None
    weekly_budget: Optional[float] = None
    monthly_budget: Optional[float] = None

    def __post_init__(self):
        if self.max_records < 1:
            raise ConfigurationError("max_records must be >= 1")
        for name in ("daily_budget", "weekly_budget", "monthly_budget"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ConfigurationError(f"{name} must be > 0")

    def budgets(self) -> Dict[str, float]:
        limits = {
            "daily": self.daily_budget,
            "weekly": self.weekly_budget,
            "monthly": self.monthly_budget,
        }
        return {period: amount for period, amount in limits.items() if amount is not None}


# =============================================================================
# COMPOSITE
# =============================================================================

@dataclass
class MomentsConfig:
    """Complete configuration. None sections are filled with defaults."""
    catalog: Optional[CatalogConfig] = None
    analysis: Optional[AnalysisConfig] = None
    storage: Optional[StorageConfig] = None
    provider: Optional[ProviderConfig] = None
    agents: Optional[AgentsConfig] = None
    monitoring: Optional[MonitoringConfig] = None
    failover: Optional[FailoverConfig] = None
    usage: Optional[UsageConfig] = None

    def __post_init__(self):
        self.catalog = self.catalog or CatalogConfig()
        self.analysis = self.analysis or AnalysisConfig()
        self.storage = self.storage or StorageConfig()
        self.provider = self.provider or ProviderConfig()
        self.agents = self.agents or AgentsConfig()
        self.monitoring = self.monitoring or MonitoringConfig()
        self.failover = self.failover or FailoverConfig()
        self.usage = self.usage or UsageConfig()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'MomentsConfig':
        sections = {
            "catalog": CatalogConfig,
            "analysis": AnalysisConfig,
            "storage": StorageConfig,
            "provider": ProviderConfig,
            "agents": AgentsConfig,
            "monitoring": MonitoringConfig,
            "failover": FailoverConfig,
            "usage": UsageConfig,
        }
        kwargs = {}
        for name, section_cls in sections.items():
            if name in data and data[name] is not None:
                if not isinstance(data[name], Mapping):
                    raise ConfigurationError(f"Section '{name}' must be an object")
                kwargs[name] = _section(section_cls, data[name])
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _section(section_cls, data: Mapping[str, Any]):
    """Build a section dataclass, ignoring unknown keys."""
    known = {f.name for f in fields(section_cls)}
    kwargs = {}
    for key, value in data.items():
        if key not in known:
            continue
        kwargs[key] = tuple(value) if isinstance(value, list) else value
    try:
        return section_cls(**kwargs)
    except TypeError as e:
        raise ConfigurationError(f"Invalid {section_cls.__name__}: {e}") from e


# =============================================================================
# LOADING
# =============================================================================

def deep_merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    """Recursively merge override into a copy of base. Override wins."""
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = deep_merge(dict(merged[key]), value)
        else:
            merged[key] = value
    return merged


def _read_json(path: Path) -> Dict[str, Any]:
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid JSON in {path}: {e}") from e
    except OSError as e:
        raise ConfigurationError(f"Cannot read {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} must contain a JSON object")
    return data


def local_override_path(config_path: Path) -> Path:
    return config_path.with_name(f"{config_path.stem}.local{config_path.suffix}")


def apply_env_overrides(data: Dict[str, Any], env: Mapping[str, str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if env.get("MOMENTS_DATA_DIR"):
        overrides["storage"] = {"data_dir": env["MOMENTS_DATA_DIR"]}
    if env.get("MOMENTS_CATALOG_ROOT"):
        overrides["catalog"] = {"root": env["MOMENTS_CATALOG_ROOT"]}
    provider: Dict[str, Any] = {}
    if env.get("MOMENTS_PROVIDER"):
        provider["type"] = env["MOMENTS_PROVIDER"]
    if "MOMENTS_FALLBACK_PROVIDER" in env:
        provider["fallback"] = env["MOMENTS_FALLBACK_PROVIDER"] or None
    if env.get("ANTHROPIC_API_KEY"):
        provider["anthropic"] = {"api_key": env["ANTHROPIC_API_KEY"]}
    bedrock = {}
    if env.get("AWS_REGION"):
        bedrock["region"] = env["AWS_REGION"]
    if env.get("AWS_PROFILE"):
        bedrock["profile"] = env["AWS_PROFILE"]
    if bedrock:
        provider["bedrock"] = bedrock
    if provider:
        overrides["provider"] = provider
    return deep_merge(data, overrides)


def load_config(
    config_path: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None
) -> MomentsConfig:
    """Load configuration following the documented precedence."""
    env = os.environ if env is None else env
    if config_path is None:
        config_path = Path(env["MOMENTS_CONFIG"]) if env.get("MOMENTS_CONFIG") else DEFAULT_CONFIG_PATH
    config_path = Path(config_path)

    data: Dict[str, Any] = {}
    if config_path.exists():
        data = _read_json(config_path)
    local_path = local_override_path(config_path)
    if local_path.exists():
        data = deep_merge(data, _read_json(local_path))

    data = apply_env_overrides(data, env)
    return MomentsConfig.from_dict(data)


__all__ = [
    'ConfigurationError',
    'CatalogConfig',
    'AnalysisConfig',
    'StorageConfig',
    'AnthropicSettings',
    'BedrockSettings',
    'ProviderConfig',
    'AgentSettings',
    'AgentsConfig',
    'AlertConfig',
    'MonitoringConfig',
    'CircuitBreakerConfig',
    'FailoverConfig',
    'MomentsConfig',
    'deep_merge',
    'load_config',
]
