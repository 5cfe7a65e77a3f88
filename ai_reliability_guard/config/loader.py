"""
Configuration management and loading.

Builds immutable, eagerly validated configuration objects from YAML files or
plain dictionaries. Nothing here is process-global: the resulting GuardConfig
is passed explicitly to the engine.
"""

import importlib
import re
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple, Type

import yaml

from ai_reliability_guard.core.pricing import (
    DEFAULT_PRICING_TABLE,
    ModelPricing,
    PricingTable,
    to_decimal,
)
from ai_reliability_guard.errors import DEFAULT_NON_FALLBACK_ERRORS, FATAL_KINDS, ErrorKind


class BackoffKind(Enum):
    """Delay growth between retries."""
    CONSTANT = "constant"
    EXPONENTIAL = "exponential"


class Enforcement(Enum):
    """What happens when a budget limit is reached."""
    NONE = "none"  # Track only
    SOFT = "soft"  # Alert but allow
    HARD = "hard"  # Block before the provider call


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Failure threshold, rolling window and cooldown for breakers."""
    errors: int = 10
    within_seconds: float = 60
    cooldown_seconds: float = 300

    def __post_init__(self):
        if self.errors <= 0:
            raise ValueError("circuit_breaker.errors must be > 0")
        if self.within_seconds <= 0:
            raise ValueError("circuit_breaker.within_seconds must be > 0")
        if self.cooldown_seconds <= 0:
            raise ValueError("circuit_breaker.cooldown_seconds must be > 0")


@dataclass(frozen=True)
class ReliabilityConfig:
    """Retry, fallback, timeout and breaker settings for an agent."""
    max_retries: int = 0
    backoff: BackoffKind = BackoffKind.EXPONENTIAL
    base_delay: float = 0.4
    max_delay: float = 3.0
    fallback_models: Tuple[str, ...] = ()
    total_timeout: Optional[float] = None
    circuit_breaker: Optional[CircuitBreakerConfig] = None
    retryable_errors: FrozenSet[ErrorKind] = frozenset()
    retryable_patterns: Tuple[str, ...] = ()
    # Added to DEFAULT_NON_FALLBACK_ERRORS, never replacing them
    non_fallback_errors: Tuple[Type[Exception], ...] = ()

    @property
    def all_non_fallback_errors(self) -> Tuple[Type[Exception], ...]:
        return DEFAULT_NON_FALLBACK_ERRORS + tuple(
            e for e in self.non_fallback_errors if e not in DEFAULT_NON_FALLBACK_ERRORS
        )

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        if self.total_timeout is not None and self.total_timeout <= 0:
            raise ValueError("total_timeout must be > 0")
        fatal = self.retryable_errors & FATAL_KINDS
        if fatal:
            names = sorted(kind.value for kind in fatal)
            raise ValueError(f"retryable_errors cannot include fatal kinds: {names}")
        for pattern in self.retryable_patterns:
            try:
                re.compile(pattern)
            except re.error as e:
                raise ValueError(f"Invalid retryable pattern {pattern!r}: {e}")
        for error_class in self.non_fallback_errors:
            if not (isinstance(error_class, type) and issubclass(error_class, Exception)):
                raise ValueError(f"non_fallback_errors entries must be exception classes, got {error_class!r}")


@dataclass(frozen=True)
class AgentConfig:
    """Per-agent model and reliability settings."""
    model: Optional[str]
    reliability: ReliabilityConfig


@dataclass(frozen=True)
class BudgetConfig:
    """Budget limits and enforcement.

    Every field is optional so the same type describes both a partial layer
    (runtime override, tenant record) and the resolved configuration. ``None``
    means "not set here", which resolves to "unlimited" when no layer sets it.
    """
    enabled: Optional[bool] = None
    enforcement: Optional[Enforcement] = None
    global_daily_cost: Optional[float] = None
    global_monthly_cost: Optional[float] = None
    per_agent_daily_cost: Mapping[str, float] = field(default_factory=dict)
    per_agent_monthly_cost: Mapping[str, float] = field(default_factory=dict)
    daily_tokens: Optional[int] = None
    monthly_tokens: Optional[int] = None
    daily_executions: Optional[int] = None
    monthly_executions: Optional[int] = None
    warning_threshold: Optional[float] = None

    def __post_init__(self):
        for name in ("global_daily_cost", "global_monthly_cost", "daily_tokens",
                     "monthly_tokens", "daily_executions", "monthly_executions"):
            value = getattr(self, name)
            if value is not None and value < 0:
                raise ValueError(f"{name} must be >= 0")
        for name in ("per_agent_daily_cost", "per_agent_monthly_cost"):
            for agent, value in getattr(self, name).items():
                if value < 0:
                    raise ValueError(f"{name}.{agent} must be >= 0")
        if self.warning_threshold is not None and not 0 < self.warning_threshold <= 1:
            raise ValueError("warning_threshold must be in (0, 1]")

    def merged_over(self, fallback: "BudgetConfig") -> "BudgetConfig":
        """Fill every unset field from ``fallback``.

        Per-agent maps merge per agent key, with this layer winning.
        """
        def pick(name: str) -> Any:
            value = getattr(self, name)
            return value if value is not None else getattr(fallback, name)

        return BudgetConfig(
            enabled=pick("enabled"),
            enforcement=pick("enforcement"),
            global_daily_cost=pick("global_daily_cost"),
            global_monthly_cost=pick("global_monthly_cost"),
            per_agent_daily_cost={**fallback.per_agent_daily_cost, **self.per_agent_daily_cost},
            per_agent_monthly_cost={**fallback.per_agent_monthly_cost, **self.per_agent_monthly_cost},
            daily_tokens=pick("daily_tokens"),
            monthly_tokens=pick("monthly_tokens"),
            daily_executions=pick("daily_executions"),
            monthly_executions=pick("monthly_executions"),
            warning_threshold=pick("warning_threshold")
        )

    @property
    def effective_enforcement(self) -> Enforcement:
        return self.enforcement or Enforcement.SOFT

    @property
    def is_enabled(self) -> bool:
        if self.enabled is not None:
            return self.enabled
        return self.has_limits

    @property
    def has_limits(self) -> bool:
        return any(
            getattr(self, name) is not None
            for name in ("global_daily_cost", "global_monthly_cost", "daily_tokens",
                         "monthly_tokens", "daily_executions", "monthly_executions")
        ) or bool(self.per_agent_daily_cost) or bool(self.per_agent_monthly_cost)

    @property
    def effective_warning_threshold(self) -> float:
        return self.warning_threshold if self.warning_threshold is not None else 0.8


@dataclass(frozen=True)
class GuardConfig:
    """Complete guard configuration."""
    defaults: ReliabilityConfig = field(default_factory=ReliabilityConfig)
    agents: Dict[str, AgentConfig] = field(default_factory=dict)
    budgets: BudgetConfig = field(default_factory=BudgetConfig)
    multi_tenancy_enabled: bool = False
    pricing: PricingTable = DEFAULT_PRICING_TABLE

    def reliability_for(self, agent_type: str) -> ReliabilityConfig:
        """Reliability settings for an agent, using defaults if not specified."""
        agent = self.agents.get(agent_type)
        return agent.reliability if agent else self.defaults

    def model_for(self, agent_type: str) -> Optional[str]:
        agent = self.agents.get(agent_type)
        return agent.model if agent else None


RELIABILITY_KEYS = {
    'max_retries', 'backoff', 'base_delay', 'max_delay', 'fallback_models',
    'total_timeout', 'circuit_breaker', 'retryable_errors', 'retryable_patterns',
    'non_fallback_errors'
}
BUDGET_KEYS = {
    'enabled', 'enforcement', 'global_daily_cost', 'global_monthly_cost',
    'per_agent_daily_cost', 'per_agent_monthly_cost', 'daily_tokens',
    'monthly_tokens', 'daily_executions', 'monthly_executions', 'warning_threshold'
}
TOP_LEVEL_KEYS = RELIABILITY_KEYS | {'agents', 'budgets', 'multi_tenancy_enabled', 'pricing'}


def load_guard_config(path: str) -> GuardConfig:
    """Load and validate guard configuration from a YAML file.

    Strict validation ensures no silent misconfigurations that could lead to
    runaway retries or unenforced budgets.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated GuardConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Guard config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")

    return build_guard_config(raw_config)


def build_guard_config(raw_config: Mapping[str, Any]) -> GuardConfig:
    """Build a GuardConfig from a plain dictionary.

    Top-level reliability keys are the defaults; entries under ``agents``
    override them per agent type.

    Raises:
        ValueError: If configuration is invalid
    """
    if not isinstance(raw_config, Mapping):
        raise ValueError("Configuration must be a dictionary")

    unknown_keys = set(raw_config.keys()) - TOP_LEVEL_KEYS
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    default_data = {k: v for k, v in raw_config.items() if k in RELIABILITY_KEYS}
    defaults = parse_reliability_config(default_data, "defaults")

    agents_data = raw_config.get('agents') or {}
    if not isinstance(agents_data, Mapping):
        raise ValueError("'agents' must be a dictionary")

    agents = {}
    for agent_type, agent_data in agents_data.items():
        if not isinstance(agent_data, Mapping):
            raise ValueError(f"Agent '{agent_type}' must be a dictionary")
        path = f"agents.{agent_type}"
        unknown = set(agent_data.keys()) - RELIABILITY_KEYS - {'model'}
        if unknown:
            raise ValueError(f"Unknown keys in {path}: {unknown}")
        model = agent_data.get('model')
        if model is not None and (not isinstance(model, str) or not model.strip()):
            raise ValueError(f"'model' in {path} must be a non-empty string")
        merged = dict(default_data)
        merged.update({k: v for k, v in agent_data.items() if k != 'model'})
        agents[agent_type] = AgentConfig(
            model=model,
            reliability=parse_reliability_config(merged, path)
        )

    budgets_data = raw_config.get('budgets') or {}
    budgets = parse_budget_config(budgets_data, "budgets")

    multi_tenancy = raw_config.get('multi_tenancy_enabled', False)
    if not isinstance(multi_tenancy, bool):
        raise ValueError("'multi_tenancy_enabled' must be a boolean")

    pricing = DEFAULT_PRICING_TABLE
    if raw_config.get('pricing'):
        pricing = pricing.with_overrides(_parse_pricing(raw_config['pricing']))

    return GuardConfig(
        defaults=defaults,
        agents=agents,
        budgets=budgets,
        multi_tenancy_enabled=multi_tenancy,
        pricing=pricing
    )


def parse_reliability_config(data: Mapping[str, Any], path: str) -> ReliabilityConfig:
    """Parse and validate reliability settings.

    Args:
        data: Reliability configuration data
        path: Path for error messages

    Raises:
        ValueError: If configuration is invalid
    """
    unknown_keys = set(data.keys()) - RELIABILITY_KEYS
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    kwargs: Dict[str, Any] = {}

    if 'max_retries' in data:
        value = data['max_retries']
        if not isinstance(value, int) or isinstance(value, bool) or value < 0:
            raise ValueError(f"'max_retries' in {path} must be an integer >= 0")
        kwargs['max_retries'] = value

    if 'backoff' in data:
        kwargs['backoff'] = _parse_enum(BackoffKind, data['backoff'], 'backoff', path)

    for key in ('base_delay', 'max_delay'):
        if key in data:
            kwargs[key] = _parse_number(data[key], key, path, allow_zero=True)

    if data.get('total_timeout') is not None:
        kwargs['total_timeout'] = _parse_number(data['total_timeout'], 'total_timeout', path)

    if 'fallback_models' in data:
        models = data['fallback_models'] or []
        if not isinstance(models, (list, tuple)) or not all(
                isinstance(m, str) and m.strip() for m in models):
            raise ValueError(f"'fallback_models' in {path} must be a list of model names")
        kwargs['fallback_models'] = tuple(models)

    if data.get('circuit_breaker') is not None:
        kwargs['circuit_breaker'] = _parse_circuit_breaker(
            data['circuit_breaker'], f"{path}.circuit_breaker"
        )

    if 'retryable_errors' in data:
        names = data['retryable_errors'] or []
        if not isinstance(names, (list, tuple)):
            raise ValueError(f"'retryable_errors' in {path} must be a list")
        kwargs['retryable_errors'] = frozenset(
            _parse_enum(ErrorKind, name, 'retryable_errors', path) for name in names
        )

    if 'retryable_patterns' in data:
        patterns = data['retryable_patterns'] or []
        if not isinstance(patterns, (list, tuple)) or not all(isinstance(p, str) for p in patterns):
            raise ValueError(f"'retryable_patterns' in {path} must be a list of strings")
        kwargs['retryable_patterns'] = tuple(patterns)

    if 'non_fallback_errors' in data:
        names = data['non_fallback_errors'] or []
        if not isinstance(names, (list, tuple)):
            raise ValueError(f"'non_fallback_errors' in {path} must be a list")
        kwargs['non_fallback_errors'] = tuple(
            _parse_exception_class(name, f"{path}.non_fallback_errors") for name in names
        )

    try:
        return ReliabilityConfig(**kwargs)
    except ValueError as e:
        raise ValueError(f"Invalid reliability settings in {path}: {e}")


def parse_budget_config(data: Mapping[str, Any], path: str = "budgets") -> BudgetConfig:
    """Parse and validate a (possibly partial) budget configuration.

    Used for the global ``budgets`` section as well as runtime overrides and
    tenant resolver results.

    Raises:
        ValueError: If configuration is invalid
    """
    if not isinstance(data, Mapping):
        raise ValueError(f"'{path}' must be a dictionary")

    unknown_keys = set(data.keys()) - BUDGET_KEYS
    if unknown_keys:
        raise ValueError(f"Unknown budget keys in {path}: {unknown_keys}")

    kwargs: Dict[str, Any] = {}

    if data.get('enabled') is not None:
        if not isinstance(data['enabled'], bool):
            raise ValueError(f"'enabled' in {path} must be a boolean")
        kwargs['enabled'] = data['enabled']

    if data.get('enforcement') is not None:
        kwargs['enforcement'] = _parse_enum(Enforcement, data['enforcement'], 'enforcement', path)

    for key in ('global_daily_cost', 'global_monthly_cost'):
        if data.get(key) is not None:
            kwargs[key] = _parse_number(data[key], key, path, allow_zero=True)

    for key in ('daily_tokens', 'monthly_tokens', 'daily_executions', 'monthly_executions'):
        if data.get(key) is not None:
            value = data[key]
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise ValueError(f"'{key}' in {path} must be an integer >= 0")
            kwargs[key] = value

    for key in ('per_agent_daily_cost', 'per_agent_monthly_cost'):
        if data.get(key) is not None:
            limits = data[key]
            if not isinstance(limits, Mapping):
                raise ValueError(f"'{key}' in {path} must be a dictionary")
            kwargs[key] = {
                str(agent): _parse_number(limit, f"{key}.{agent}", path, allow_zero=True)
                for agent, limit in limits.items()
            }

    if data.get('warning_threshold') is not None:
        kwargs['warning_threshold'] = _parse_number(
            data['warning_threshold'], 'warning_threshold', path
        )

    try:
        return BudgetConfig(**kwargs)
    except ValueError as e:
        raise ValueError(f"Invalid budget settings in {path}: {e}")


def with_reliability(config: GuardConfig, agent_type: str, **changes: Any) -> GuardConfig:
    """Return a copy of config with an agent's reliability settings changed."""
    agent = config.agents.get(agent_type) or AgentConfig(model=None, reliability=config.defaults)
    agents = dict(config.agents)
    agents[agent_type] = AgentConfig(
        model=changes.pop('model', agent.model),
        reliability=replace(agent.reliability, **changes)
    )
    return replace(config, agents=agents)


def _parse_circuit_breaker(data: Any, path: str) -> CircuitBreakerConfig:
    if not isinstance(data, Mapping):
        raise ValueError(f"'{path}' must be a dictionary")

    allowed_keys = {'errors', 'within_seconds', 'cooldown_seconds'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    kwargs: Dict[str, Any] = {}
    if 'errors' in data:
        errors = data['errors']
        if not isinstance(errors, int) or isinstance(errors, bool) or errors <= 0:
            raise ValueError(f"'errors' in {path} must be an integer > 0")
        kwargs['errors'] = errors
    for key in ('within_seconds', 'cooldown_seconds'):
        if key in data:
            kwargs[key] = _parse_number(data[key], key, path)
    return CircuitBreakerConfig(**kwargs)


def _parse_pricing(data: Any) -> Dict[str, ModelPricing]:
    if not isinstance(data, Mapping):
        raise ValueError("'pricing' must be a dictionary")

    prices = {}
    for model, entry in data.items():
        path = f"pricing.{model}"
        if not isinstance(entry, Mapping) or set(entry.keys()) != {'input', 'output'}:
            raise ValueError(f"'{path}' must have exactly 'input' and 'output' prices")
        prices[str(model)] = ModelPricing(
            input_per_million=to_decimal(_parse_number(entry['input'], 'input', path, allow_zero=True)),
            output_per_million=to_decimal(_parse_number(entry['output'], 'output', path, allow_zero=True))
        )
    return prices


def _parse_number(value: Any, key: str, path: str, allow_zero: bool = False) -> float:
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        raise ValueError(f"'{key}' in {path} must be a number")
    if value < 0 or (value == 0 and not allow_zero):
        bound = ">= 0" if allow_zero else "> 0"
        raise ValueError(f"'{key}' in {path} must be {bound}")
    return float(value)


def _parse_exception_class(value: Any, path: str) -> Type[Exception]:
    """Resolve a builtin exception name or a dotted ``module.ClassName`` path."""
    if isinstance(value, type):
        target = value
    elif isinstance(value, str) and value.strip():
        module_name, _, attr = value.strip().rpartition('.')
        try:
            target = getattr(importlib.import_module(module_name or 'builtins'), attr)
        except (ImportError, AttributeError):
            raise ValueError(f"Unknown exception class {value!r} in {path}")
    else:
        raise ValueError(f"Entries in {path} must be exception class names")
    if not (isinstance(target, type) and issubclass(target, Exception)):
        raise ValueError(f"{value!r} in {path} is not an exception class")
    return target


def _parse_enum(enum_cls, value: Any, key: str, path: str):
    if isinstance(value, enum_cls):
        return value
    if not isinstance(value, str):
        raise ValueError(f"'{key}' in {path} must be a string")
    try:
        return enum_cls(value.lower())
    except ValueError:
        valid = [member.value for member in enum_cls]
        raise ValueError(f"'{key}' in {path} must be one of: {valid}")
