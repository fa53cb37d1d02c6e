"""
Configuration management and loading.

Handles governance limits, cache policy, error policy and alert thresholds.
"""

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

logger = logging.getLogger(__name__)

DEFAULT_TASK_LIMITS = {
    "explain_triage": 30,
    "review_treatment": 20,
    "imci_classification": 40,
    "clinical_assistance": 30,
    "default": 20,
}

DEFAULT_ROLE_QUOTAS = {
    "doctor": 500,
    "nurse": 300,
    "clinician": 400,
    "admin": 100,
    "default": 100,
}

DEFAULT_TASK_TTLS = {
    "explain_triage": 1800,       # triage can change quickly
    "review_treatment": 3600,
    "imci_classification": 7200,  # guideline-based
    "clinical_assistance": 1800,
}

DEFAULT_NON_CACHEABLE_TASKS = ("emergency_assessment", "critical_alert")

DEFAULT_VOLATILE_FIELDS = (
    "timestamp",
    "request_id",
    "requestId",
    "session_id",
    "sessionId",
    "user_id",
    "userId",
    "_token",
)

DEFAULT_CLINICAL_TASKS = ("explain_triage", "review_treatment", "emergency_assessment")


@dataclass(frozen=True)
class AdmissionConfig:
    """Request ceilings for admission control."""
    global_limit: int = 200
    task_limits: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_TASK_LIMITS))
    role_quotas: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_ROLE_QUOTAS))

    def __post_init__(self):
        """Validate limits are positive and defaults exist."""
        if self.global_limit <= 0:
            raise ValueError("global_limit must be > 0")
        for name, table in (("task_limits", self.task_limits), ("role_quotas", self.role_quotas)):
            if "default" not in table:
                raise ValueError(f"{name} must define a 'default' entry")
            for key, value in table.items():
                if value <= 0:
                    raise ValueError(f"{name}.{key} must be > 0")

    def task_limit(self, task: str) -> int:
        """Requests per minute allowed for a task, per user."""
        return self.task_limits.get(task, self.task_limits["default"])

    def role_quota(self, role: str) -> int:
        """Requests per day allowed for a role."""
        return self.role_quotas.get(role, self.role_quotas["default"])


@dataclass(frozen=True)
class CacheConfig:
    """Response cache policy."""
    default_ttl: int = 3600
    task_ttls: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_TASK_TTLS))
    non_cacheable_tasks: Tuple[str, ...] = DEFAULT_NON_CACHEABLE_TASKS
    volatile_fields: Tuple[str, ...] = DEFAULT_VOLATILE_FIELDS
    default_model: str = "gemma3:4b"
    default_temperature: float = 0.3
    version_ttl: int = 86400 * 30

    def __post_init__(self):
        """Validate TTLs and make sure version counters outlive entries."""
        if self.default_ttl <= 0:
            raise ValueError("default_ttl must be > 0")
        for task, ttl in self.task_ttls.items():
            if ttl <= 0:
                raise ValueError(f"task_ttls.{task} must be > 0")
        longest = max([self.default_ttl, *self.task_ttls.values()])
        if self.version_ttl <= longest:
            raise ValueError("version_ttl must be longer than every cache TTL")

    def ttl_for(self, task: str) -> int:
        """TTL in seconds for a task's cached responses."""
        return self.task_ttls.get(task, self.default_ttl)


@dataclass(frozen=True)
class ErrorPolicyConfig:
    """Error classification policy."""
    clinical_tasks: Tuple[str, ...] = DEFAULT_CLINICAL_TASKS


@dataclass(frozen=True)
class ThresholdBand:
    """Warning and critical levels for one monitored signal."""
    warning: float
    critical: float

    def __post_init__(self):
        """Validate thresholds are ordered."""
        if self.warning < 0:
            raise ValueError("warning threshold cannot be negative")
        if self.critical < self.warning:
            raise ValueError("critical threshold must be >= warning threshold")


@dataclass(frozen=True)
class MonitorConfig:
    """Alert thresholds and buffer sizes."""
    latency_ms: ThresholdBand = ThresholdBand(5000, 10000)
    error_rate: ThresholdBand = ThresholdBand(0.05, 0.15)
    validation_failure_rate: ThresholdBand = ThresholdBand(0.02, 0.05)
    daily_requests: ThresholdBand = ThresholdBand(1000, 2000)
    alert_history: int = 100
    latency_samples: int = 100
    alert_debounce_seconds: int = 60

    def __post_init__(self):
        """Validate buffer sizes."""
        if self.alert_history <= 0:
            raise ValueError("alert_history must be > 0")
        if self.latency_samples <= 0:
            raise ValueError("latency_samples must be > 0")
        if self.alert_debounce_seconds <= 0:
            raise ValueError("alert_debounce_seconds must be > 0")

    def thresholds(self) -> Dict[str, Dict[str, float]]:
        """Thresholds as a plain mapping for dashboards."""
        return {
            name: {"warning": band.warning, "critical": band.critical}
            for name, band in (
                ("latency_ms", self.latency_ms),
                ("error_rate", self.error_rate),
                ("validation_failure_rate", self.validation_failure_rate),
                ("daily_requests", self.daily_requests),
            )
        }


@dataclass(frozen=True)
class ProviderConfig:
    """Inference backend connection settings."""
    base_url: str = "http://localhost:11434/v1"
    api_key: str = "ollama"
    model: str = "gemma3:4b"
    timeout: float = 120.0

    def __post_init__(self):
        """Validate provider settings."""
        if not self.base_url:
            raise ValueError("base_url cannot be empty")
        if self.timeout <= 0:
            raise ValueError("timeout must be > 0")


@dataclass(frozen=True)
class GovernanceConfig:
    """Complete governance configuration."""
    admission: AdmissionConfig = field(default_factory=AdmissionConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    errors: ErrorPolicyConfig = field(default_factory=ErrorPolicyConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    provider: ProviderConfig = field(default_factory=ProviderConfig)


class ConfigSource:
    """Holds the live configuration.

    Components read ``current`` on every operation, so ``update`` is the one
    place a new configuration takes effect. Counters already in the store are
    untouched by a reload.
    """

    def __init__(self, config: Optional[GovernanceConfig] = None):
        self._config = config or GovernanceConfig()
        self._lock = threading.Lock()

    @property
    def current(self) -> GovernanceConfig:
        return self._config

    def update(self, config: GovernanceConfig) -> None:
        """Swap in a new configuration."""
        if not isinstance(config, GovernanceConfig):
            raise ValueError("config must be a GovernanceConfig")
        with self._lock:
            self._config = config
        logger.info(
            "Governance config updated: global_limit=%d task_limits=%s role_quotas=%s",
            config.admission.global_limit,
            config.admission.task_limits,
            config.admission.role_quotas,
        )

    def reload(self, path: str) -> GovernanceConfig:
        """Load a YAML file and make it current."""
        config = load_governance_config(path)
        self.update(config)
        return config


def load_governance_config(path: str) -> GovernanceConfig:
    """Load and validate governance configuration from YAML file.

    Every section is optional; missing values keep their built-in defaults.
    Unknown keys are rejected so a typo never silently disables a limit.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated GovernanceConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Governance config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    return parse_governance_config(raw_config)


def parse_governance_config(raw_config: Dict[str, Any]) -> GovernanceConfig:
    """Build a GovernanceConfig from already-parsed data.

    Raises:
        ValueError: If configuration is invalid
    """
    _check_keys(raw_config, {'admission', 'cache', 'errors', 'monitor', 'provider'}, "configuration")

    return GovernanceConfig(
        admission=_parse_admission(_section(raw_config, 'admission')),
        cache=_parse_cache(_section(raw_config, 'cache')),
        errors=_parse_errors(_section(raw_config, 'errors')),
        monitor=_parse_monitor(_section(raw_config, 'monitor')),
        provider=_parse_provider(_section(raw_config, 'provider')),
    )


def _section(raw_config: Dict[str, Any], name: str) -> Dict[str, Any]:
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    return data


def _check_keys(data: Dict[str, Any], allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _positive_int(value: Any, path: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValueError(f"'{path}' must be a positive integer")
    return value


def _positive_number(value: Any, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ValueError(f"'{path}' must be > 0")
    return float(value)


def _int_table(data: Any, path: str) -> Dict[str, int]:
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    return {str(k): _positive_int(v, f"{path}.{k}") for k, v in data.items()}


def _string_tuple(data: Any, path: str) -> Tuple[str, ...]:
    if not isinstance(data, list) or not all(isinstance(item, str) for item in data):
        raise ValueError(f"'{path}' must be a list of strings")
    return tuple(data)


def _parse_admission(data: Dict[str, Any]) -> AdmissionConfig:
    _check_keys(data, {'global_limit', 'task_limits', 'role_quotas'}, "admission")
    defaults = AdmissionConfig()

    # Partial tables extend the defaults rather than replacing them
    task_limits = dict(defaults.task_limits)
    task_limits.update(_int_table(data.get('task_limits', {}), "admission.task_limits"))
    role_quotas = dict(defaults.role_quotas)
    role_quotas.update(_int_table(data.get('role_quotas', {}), "admission.role_quotas"))

    global_limit = defaults.global_limit
    if 'global_limit' in data:
        global_limit = _positive_int(data['global_limit'], "admission.global_limit")

    return AdmissionConfig(global_limit=global_limit, task_limits=task_limits, role_quotas=role_quotas)


def _parse_cache(data: Dict[str, Any]) -> CacheConfig:
    allowed = {'default_ttl', 'task_ttls', 'non_cacheable_tasks', 'volatile_fields',
               'default_model', 'default_temperature', 'version_ttl'}
    _check_keys(data, allowed, "cache")
    defaults = CacheConfig()

    task_ttls = dict(defaults.task_ttls)
    task_ttls.update(_int_table(data.get('task_ttls', {}), "cache.task_ttls"))

    temperature = data.get('default_temperature', defaults.default_temperature)
    if isinstance(temperature, bool) or not isinstance(temperature, (int, float)) or temperature < 0:
        raise ValueError("'cache.default_temperature' must be >= 0")

    model = data.get('default_model', defaults.default_model)
    if not isinstance(model, str) or not model:
        raise ValueError("'cache.default_model' must be a non-empty string")

    return CacheConfig(
        default_ttl=_positive_int(data.get('default_ttl', defaults.default_ttl), "cache.default_ttl"),
        task_ttls=task_ttls,
        non_cacheable_tasks=_string_tuple(
            data.get('non_cacheable_tasks', list(defaults.non_cacheable_tasks)), "cache.non_cacheable_tasks"
        ),
        volatile_fields=_string_tuple(
            data.get('volatile_fields', list(defaults.volatile_fields)), "cache.volatile_fields"
        ),
        default_model=model,
        default_temperature=float(temperature),
        version_ttl=_positive_int(data.get('version_ttl', defaults.version_ttl), "cache.version_ttl"),
    )


def _parse_errors(data: Dict[str, Any]) -> ErrorPolicyConfig:
    _check_keys(data, {'clinical_tasks'}, "errors")
    if 'clinical_tasks' not in data:
        return ErrorPolicyConfig()
    return ErrorPolicyConfig(clinical_tasks=_string_tuple(data['clinical_tasks'], "errors.clinical_tasks"))


def _parse_band(data: Any, default: ThresholdBand, path: str) -> ThresholdBand:
    if data is None:
        return default
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    _check_keys(data, {'warning', 'critical'}, path)
    return ThresholdBand(
        warning=_positive_number(data.get('warning', default.warning), f"{path}.warning"),
        critical=_positive_number(data.get('critical', default.critical), f"{path}.critical"),
    )


def _parse_monitor(data: Dict[str, Any]) -> MonitorConfig:
    bands = {'latency_ms', 'error_rate', 'validation_failure_rate', 'daily_requests'}
    sizes = {'alert_history', 'latency_samples', 'alert_debounce_seconds'}
    _check_keys(data, bands | sizes, "monitor")
    defaults = MonitorConfig()

    kwargs: Dict[str, Any] = {}
    for name in bands:
        kwargs[name] = _parse_band(data.get(name), getattr(defaults, name), f"monitor.{name}")
    for name in sizes:
        kwargs[name] = _positive_int(data.get(name, getattr(defaults, name)), f"monitor.{name}")
    return MonitorConfig(**kwargs)


def _parse_provider(data: Dict[str, Any]) -> ProviderConfig:
    _check_keys(data, {'base_url', 'api_key', 'model', 'timeout'}, "provider")
    defaults = ProviderConfig()
    for name in ('base_url', 'api_key', 'model'):
        if name in data and not isinstance(data[name], str):
            raise ValueError(f"'provider.{name}' must be a string")
    return ProviderConfig(
        base_url=data.get('base_url', defaults.base_url),
        api_key=data.get('api_key', defaults.api_key),
        model=data.get('model', defaults.model),
        timeout=_positive_number(data.get('timeout', defaults.timeout), "provider.timeout"),
    )
