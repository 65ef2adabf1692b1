"""
Configuration management and loading.

Settings come from a YAML file when CONTENT_FORGE_CONFIG points at one,
otherwise from environment variables with deployment defaults.
"""

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from ..core.pricing import PRICING_TABLE

CONFIG_ENV_VAR = "CONTENT_FORGE_CONFIG"

DEFAULT_MONTHLY_BUDGET = "10.00"
DEFAULT_ALERT_THRESHOLD = "8.00"
DEFAULT_DB_PATH = "content_forge.db"
DEFAULT_ARTIFACTS_DIR = "artifacts"
DEFAULT_TEMP_DIR = "tmp"
DEFAULT_TEXT_MODEL = "gpt-4o-mini"
DEFAULT_IMAGE_MODEL = "gpt-image-1"
DEFAULT_TRANSCRIPTION_MODEL = "whisper-1"


def _to_amount(value: Any, name: str) -> Decimal:
    if isinstance(value, bool):
        raise ValueError(f"'{name}' must be a number")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValueError(f"'{name}' must be a number, got {value!r}")
    if not amount.is_finite():
        raise ValueError(f"'{name}' must be a finite number")
    return amount


@dataclass(frozen=True)
class BudgetConfig:
    """Spend limits."""
    monthly: Decimal
    alert_threshold: Decimal
    daily_limit: Optional[Decimal] = None

    def __post_init__(self):
        """Validate budget values."""
        if self.monthly <= 0:
            raise ValueError("monthly budget must be > 0")
        if self.alert_threshold < 0:
            raise ValueError("alert_threshold must be >= 0")
        if self.alert_threshold > self.monthly:
            raise ValueError("alert_threshold cannot exceed the monthly budget")
        if self.daily_limit is not None and self.daily_limit <= 0:
            raise ValueError("daily_limit must be > 0")


@dataclass(frozen=True)
class StorageConfig:
    """Where the ledger database, artifacts and temporary files live."""
    db_path: str = DEFAULT_DB_PATH
    artifacts_dir: str = DEFAULT_ARTIFACTS_DIR
    temp_dir: str = DEFAULT_TEMP_DIR

    def __post_init__(self):
        for name in ("db_path", "artifacts_dir", "temp_dir"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value.strip():
                raise ValueError(f"'{name}' must be a non-empty string")


@dataclass(frozen=True)
class ProviderConfig:
    """Hosted model names."""
    text_model: str = DEFAULT_TEXT_MODEL
    image_model: str = DEFAULT_IMAGE_MODEL
    transcription_model: str = DEFAULT_TRANSCRIPTION_MODEL

    def __post_init__(self):
        """Text models must be priced so every call can be costed."""
        if not PRICING_TABLE.supports(self.text_model):
            supported = sorted(PRICING_TABLE.prices)
            raise ValueError(f"text_model '{self.text_model}' has no pricing; use one of: {supported}")
        if not self.image_model or not self.transcription_model:
            raise ValueError("image_model and transcription_model cannot be empty")


@dataclass(frozen=True)
class AppConfig:
    """Complete application configuration."""
    budget: BudgetConfig
    storage: StorageConfig
    providers: ProviderConfig


def _section(raw: Dict, name: str, allowed: set, required: set = frozenset()) -> Dict:
    data = raw.get(name, {})
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")

    unknown = set(data.keys()) - allowed
    if unknown:
        raise ValueError(f"Unknown {name} keys: {unknown}")
    for key in sorted(required):
        if key not in data:
            raise ValueError(f"Missing required '{key}' in {name}")
    return data


def load_app_config(path: str) -> AppConfig:
    """Load and validate configuration from a YAML file.

    Strict validation: unknown keys, missing budget values and unpriced
    text models are errors rather than silently defaulted.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated AppConfig

    Raises:
        FileNotFoundError: If the config file doesn't exist
        yaml.YAMLError: If the YAML is invalid
        ValueError: If the configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    allowed_top_keys = {'budget', 'storage', 'providers'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    if 'budget' not in raw_config:
        raise ValueError("Missing required 'budget' section")

    budget_data = _section(
        raw_config, 'budget',
        allowed={'monthly', 'alert_threshold', 'daily_limit'},
        required={'monthly', 'alert_threshold'},
    )
    daily = budget_data.get('daily_limit')
    budget = BudgetConfig(
        monthly=_to_amount(budget_data['monthly'], 'monthly'),
        alert_threshold=_to_amount(budget_data['alert_threshold'], 'alert_threshold'),
        daily_limit=_to_amount(daily, 'daily_limit') if daily is not None else None,
    )

    storage_data = _section(raw_config, 'storage', allowed={'db_path', 'artifacts_dir', 'temp_dir'})
    providers_data = _section(
        raw_config, 'providers',
        allowed={'text_model', 'image_model', 'transcription_model'},
    )

    return AppConfig(
        budget=budget,
        storage=StorageConfig(**storage_data),
        providers=ProviderConfig(**providers_data),
    )


def config_from_env(environ: Optional[Mapping[str, str]] = None) -> AppConfig:
    """Build configuration from environment variables.

    Raises:
        ValueError: If a variable holds an invalid value
    """
    env = os.environ if environ is None else environ
    daily = env.get("DAILY_LIMIT")

    return AppConfig(
        budget=BudgetConfig(
            monthly=_to_amount(env.get("MONTHLY_BUDGET_LIMIT", DEFAULT_MONTHLY_BUDGET), "MONTHLY_BUDGET_LIMIT"),
            alert_threshold=_to_amount(env.get("ALERT_THRESHOLD", DEFAULT_ALERT_THRESHOLD), "ALERT_THRESHOLD"),
            daily_limit=_to_amount(daily, "DAILY_LIMIT") if daily else None,
        ),
        storage=StorageConfig(
            db_path=env.get("CONTENT_FORGE_DB", DEFAULT_DB_PATH),
            artifacts_dir=env.get("CONTENT_FORGE_ARTIFACTS", DEFAULT_ARTIFACTS_DIR),
            temp_dir=env.get("CONTENT_FORGE_TEMP", DEFAULT_TEMP_DIR),
        ),
        providers=ProviderConfig(
            text_model=env.get("OPENAI_CHAT_MODEL", DEFAULT_TEXT_MODEL),
            image_model=env.get("OPENAI_IMAGE_MODEL", DEFAULT_IMAGE_MODEL),
            transcription_model=env.get("OPENAI_TRANSCRIPTION_MODEL", DEFAULT_TRANSCRIPTION_MODEL),
        ),
    )


def load_config(environ: Optional[Mapping[str, str]] = None) -> AppConfig:
    """YAML file named by CONTENT_FORGE_CONFIG if set, else the environment."""
    env = os.environ if environ is None else environ
    path = env.get(CONFIG_ENV_VAR)
    if path:
        return load_app_config(path)
    return config_from_env(env)
