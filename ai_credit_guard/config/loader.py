"""
Configuration management and loading.

Handles service settings from YAML plus secrets from environment variables.
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

from ai_credit_guard.core.pricing import (
    CHAT_MODES,
    DEFAULT_PLAN_ID,
    MODEL_TIERS,
    OPERATIONS,
    PRICING_TABLE,
    ModelRates,
    PricingTable,
)
from ai_credit_guard.storage.models import UsageLimits

JWT_SECRET_ENV = "CREDIT_GUARD_JWT_SECRET"
DB_PATH_ENV = "CREDIT_GUARD_DB_PATH"


@dataclass(frozen=True)
class DatabaseConfig:
    """SQLite location and lock wait."""
    path: str = "ai_credit_guard.db"
    busy_timeout_seconds: float = 10.0

    def __post_init__(self):
        if not self.path:
            raise ValueError("database.path must not be empty")
        if self.busy_timeout_seconds <= 0:
            raise ValueError("database.busy_timeout_seconds must be > 0")


@dataclass(frozen=True)
class ModelConfig:
    """Model identifiers used for each kind of generation."""
    text_default: str = "gpt-4.1-mini"
    text_deep_dive: str = "gpt-4.1"
    image_standard: str = "gpt-image-1-mini"
    image_high_quality: str = "gpt-image-1"
    tts: str = "gpt-4o-mini-tts"
    tts_voice: str = "alloy"

    def text_model_for(self, mode: str, model_tier: str) -> str:
        """Deep-dive model only for researcher deep dives."""
        if mode == "researcher" and model_tier == "deep_dive":
            return self.text_deep_dive
        return self.text_default

    def image_model_for(self, model_tier: str) -> str:
        if model_tier == "high_quality":
            return self.image_high_quality
        return self.image_standard


@dataclass(frozen=True)
class DemoConfig:
    """Allowance granted to anonymous device-scoped sessions."""
    credits: int = 15
    images: int = 1
    session_days: int = 14

    def __post_init__(self):
        if self.credits < 0 or self.images < 0:
            raise ValueError("demo allowances must be >= 0")
        if self.session_days <= 0:
            raise ValueError("demo.session_days must be > 0")


@dataclass(frozen=True)
class BillingConfig:
    """Billing behavior shared by all endpoints."""
    plan_id: str = DEFAULT_PLAN_ID
    wallet_starting_credits: int = 0
    reservation_ttl_seconds: int = 600
    generation_timeout_seconds: float = 60.0

    def __post_init__(self):
        if self.wallet_starting_credits < 0:
            raise ValueError("billing.wallet_starting_credits must be >= 0")
        if self.reservation_ttl_seconds <= 0:
            raise ValueError("billing.reservation_ttl_seconds must be > 0")
        if self.generation_timeout_seconds <= 0:
            raise ValueError("billing.generation_timeout_seconds must be > 0")


@dataclass(frozen=True)
class AuthConfig:
    """Bearer token verification settings. No secret means demo-only."""
    jwt_secret: Optional[str] = None
    jwt_algorithms: Tuple[str, ...] = ("HS256",)
    jwt_audience: Optional[str] = None


@dataclass(frozen=True)
class ServiceConfig:
    """Complete service configuration, constructed once per process."""
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    models: ModelConfig = field(default_factory=ModelConfig)
    limits: UsageLimits = field(default_factory=UsageLimits)
    demo: DemoConfig = field(default_factory=DemoConfig)
    billing: BillingConfig = field(default_factory=BillingConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    pricing: PricingTable = PRICING_TABLE


def default_service_config(environ: Optional[Mapping[str, str]] = None) -> ServiceConfig:
    """Built-in defaults with environment overrides applied."""
    return _apply_environment(ServiceConfig(), environ)


def load_service_config(path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> ServiceConfig:
    """Load and validate service configuration from a YAML file.

    Unknown keys are rejected so that a typo never silently falls back
    to a default price or limit.

    Args:
        path: Path to YAML configuration file, or None for built-in defaults
        environ: Environment mapping (defaults to ``os.environ``)

    Returns:
        Validated ServiceConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    if path is None:
        return default_service_config(environ)

    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Service config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration root must be a dictionary")

    _check_keys(raw_config, {'database', 'models', 'limits', 'demo', 'billing', 'auth', 'pricing'}, "configuration")

    database = DatabaseConfig(**_section(raw_config, 'database', {'path', 'busy_timeout_seconds'}))
    models = ModelConfig(**_section(raw_config, 'models', {
        'text_default', 'text_deep_dive', 'image_standard', 'image_high_quality', 'tts', 'tts_voice'
    }))
    limits = UsageLimits(**_section(raw_config, 'limits', {
        'weekly_images', 'daily_messages', 'soft_usd_cap', 'period_days'
    }))
    demo = DemoConfig(**_section(raw_config, 'demo', {'credits', 'images', 'session_days'}))
    billing = BillingConfig(**_section(raw_config, 'billing', {
        'plan_id', 'wallet_starting_credits', 'reservation_ttl_seconds', 'generation_timeout_seconds'
    }))

    auth_data = _section(raw_config, 'auth', {'jwt_algorithms', 'jwt_audience'})
    if 'jwt_algorithms' in auth_data:
        algorithms = auth_data['jwt_algorithms']
        if not isinstance(algorithms, list) or not algorithms:
            raise ValueError("'auth.jwt_algorithms' must be a non-empty list")
        auth_data['jwt_algorithms'] = tuple(str(a) for a in algorithms)
    auth = AuthConfig(**auth_data)

    pricing = _parse_pricing(raw_config.get('pricing') or {})

    config = ServiceConfig(
        database=database,
        models=models,
        limits=limits,
        demo=demo,
        billing=billing,
        auth=auth,
        pricing=pricing,
    )
    return _apply_environment(config, environ)


def _apply_environment(config: ServiceConfig, environ: Optional[Mapping[str, str]]) -> ServiceConfig:
    env = os.environ if environ is None else environ
    database = config.database
    if env.get(DB_PATH_ENV):
        database = DatabaseConfig(path=env[DB_PATH_ENV], busy_timeout_seconds=database.busy_timeout_seconds)
    auth = config.auth
    if env.get(JWT_SECRET_ENV):
        auth = AuthConfig(
            jwt_secret=env[JWT_SECRET_ENV],
            jwt_algorithms=auth.jwt_algorithms,
            jwt_audience=auth.jwt_audience,
        )
    return ServiceConfig(
        database=database,
        models=config.models,
        limits=config.limits,
        demo=config.demo,
        billing=config.billing,
        auth=auth,
        pricing=config.pricing,
    )


def _check_keys(data: Dict, allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _section(raw_config: Dict, name: str, allowed: set) -> Dict[str, Any]:
    data = raw_config.get(name)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    _check_keys(data, allowed, name)
    return dict(data)


def _to_decimal(value: Any, path: str) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"'{path}' must be a number")
    try:
        number = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"'{path}' must be a number")
    if number < 0:
        raise ValueError(f"'{path}' must be >= 0")
    return number


def _parse_pricing(data: Dict) -> PricingTable:
    """Overlay YAML pricing entries on the built-in pricing table.

    Args:
        data: ``pricing`` section of the configuration

    Returns:
        Merged PricingTable

    Raises:
        ValueError: If an operation, mode, tier or rate is invalid
    """
    if not isinstance(data, dict):
        raise ValueError("'pricing' must be a dictionary")
    _check_keys(data, {'plans', 'text_rates_per_million', 'image_flat_usd'}, "pricing")

    plans = {plan_id: dict(prices) for plan_id, prices in PRICING_TABLE.plans.items()}
    for plan_id, operations in (data.get('plans') or {}).items():
        if not isinstance(operations, dict):
            raise ValueError(f"Plan '{plan_id}' must be a dictionary")
        plan = plans.setdefault(str(plan_id), {})
        for operation, modes in operations.items():
            if operation not in OPERATIONS:
                raise ValueError(f"Unknown operation in pricing.plans.{plan_id}: {operation}")
            if not isinstance(modes, dict):
                raise ValueError(f"pricing.plans.{plan_id}.{operation} must be a dictionary")
            for mode, tiers in modes.items():
                if mode not in CHAT_MODES:
                    raise ValueError(f"Unknown mode in pricing.plans.{plan_id}.{operation}: {mode}")
                if not isinstance(tiers, dict):
                    raise ValueError(f"pricing.plans.{plan_id}.{operation}.{mode} must be a dictionary")
                for tier, credits in tiers.items():
                    if tier not in MODEL_TIERS:
                        raise ValueError(f"Unknown tier in pricing.plans.{plan_id}.{operation}.{mode}: {tier}")
                    path = f"pricing.plans.{plan_id}.{operation}.{mode}.{tier}"
                    plan[(operation, mode, tier)] = _to_decimal(credits, path)

    text_rates = dict(PRICING_TABLE.text_rates)
    for model, rates in (data.get('text_rates_per_million') or {}).items():
        if not isinstance(rates, dict):
            raise ValueError(f"pricing.text_rates_per_million.{model} must be a dictionary")
        _check_keys(rates, {'input', 'output'}, f"pricing.text_rates_per_million.{model}")
        if 'input' not in rates or 'output' not in rates:
            raise ValueError(f"pricing.text_rates_per_million.{model} needs 'input' and 'output'")
        text_rates[str(model)] = ModelRates(
            input_per_million=_to_decimal(rates['input'], f"pricing.text_rates_per_million.{model}.input"),
            output_per_million=_to_decimal(rates['output'], f"pricing.text_rates_per_million.{model}.output"),
        )

    image_flat_usd = dict(PRICING_TABLE.image_flat_usd)
    for model, cost in (data.get('image_flat_usd') or {}).items():
        image_flat_usd[str(model)] = _to_decimal(cost, f"pricing.image_flat_usd.{model}")

    return PricingTable(plans=plans, text_rates=text_rates, image_flat_usd=image_flat_usd)
