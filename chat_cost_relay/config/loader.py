"""
Configuration management and loading.

Handles process settings from the environment and the optional YAML
pricing table.
"""

import os
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Mapping, Optional

import yaml
from dotenv import load_dotenv

from chat_cost_relay.core.pricing import (
    DEFAULT_MODEL,
    DEFAULT_PRICING_TABLE,
    ModelPricing,
    PricingTable,
)

DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"
DEFAULT_SQLITE_PATH = "chat_cost_relay.db"

_SUPABASE_REF_PATTERN = re.compile(r"@db\.([^.]+)\.supabase\.co")


class StorageBackend(Enum):
    """Where completed exchanges are persisted."""
    SUPABASE = "supabase"
    SQLITE = "sqlite"


@dataclass(frozen=True)
class RelaySettings:
    """Immutable process configuration, built once at startup."""
    openai_api_key: Optional[str] = None
    openai_base_url: str = DEFAULT_OPENAI_BASE_URL
    default_model: str = DEFAULT_MODEL
    default_temperature: float = 0.7
    upstream_idle_timeout: float = 60.0
    pricing_file: Optional[str] = None
    storage_backend: StorageBackend = StorageBackend.SUPABASE
    sqlite_path: str = DEFAULT_SQLITE_PATH
    supabase_url: str = ""
    supabase_service_role_key: Optional[str] = None
    log_level: str = "INFO"

    def __post_init__(self):
        """Validate numeric settings."""
        if self.upstream_idle_timeout <= 0:
            raise ValueError("upstream_idle_timeout must be > 0")
        if not 0 <= self.default_temperature <= 2:
            raise ValueError("default_temperature must be between 0 and 2")
        if not self.default_model or not self.default_model.strip():
            raise ValueError("default_model cannot be empty")


def derive_supabase_url(connection_string: str) -> str:
    """Derive the Supabase REST URL from a Postgres connection string.

    ``postgresql://postgres:pw@db.<ref>.supabase.co:5432/postgres`` maps to
    ``https://<ref>.supabase.co``. Anything else yields an empty string.
    """
    match = _SUPABASE_REF_PATTERN.search(connection_string or "")
    return f"https://{match.group(1)}.supabase.co" if match else ""


def _parse_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


def load_settings(env: Optional[Mapping[str, str]] = None, dotenv_path: Optional[str] = None) -> RelaySettings:
    """Load settings from the environment.

    When ``env`` is omitted the process environment is used, after
    ``.env`` has been loaded into it. Values already present in the
    environment win over ``.env``.

    Args:
        env: Explicit mapping of variables (tests pass one)
        dotenv_path: Path of the ``.env`` file to load

    Returns:
        Validated RelaySettings

    Raises:
        ValueError: If a value is invalid
    """
    if env is None:
        load_dotenv(dotenv_path)
        env = os.environ

    backend_raw = (env.get("RELAY_STORAGE_BACKEND") or StorageBackend.SUPABASE.value).strip().lower()
    try:
        backend = StorageBackend(backend_raw)
    except ValueError:
        valid_backends = [b.value for b in StorageBackend]
        raise ValueError(f"RELAY_STORAGE_BACKEND must be one of: {valid_backends}")

    supabase_url = env.get("SUPABASE_URL") or derive_supabase_url(env.get("CONNECTION_STRING", ""))

    return RelaySettings(
        openai_api_key=env.get("OPENAI_API_KEY") or None,
        openai_base_url=env.get("OPENAI_BASE_URL") or DEFAULT_OPENAI_BASE_URL,
        default_model=env.get("RELAY_DEFAULT_MODEL") or DEFAULT_MODEL,
        default_temperature=_parse_float(env, "RELAY_DEFAULT_TEMPERATURE", 0.7),
        upstream_idle_timeout=_parse_float(env, "RELAY_UPSTREAM_IDLE_TIMEOUT", 60.0),
        pricing_file=env.get("RELAY_PRICING_FILE") or None,
        storage_backend=backend,
        sqlite_path=env.get("RELAY_SQLITE_PATH") or DEFAULT_SQLITE_PATH,
        supabase_url=supabase_url,
        supabase_service_role_key=env.get("SUPABASE_SERVICE_ROLE_KEY") or None,
        log_level=(env.get("RELAY_LOG_LEVEL") or "INFO").upper(),
    )


def describe_settings(settings: RelaySettings) -> Dict[str, object]:
    """Loggable view of the settings; secrets are reported as present or not."""
    return {
        "OPENAI_API_KEY": bool(settings.openai_api_key),
        "OPENAI_BASE_URL": settings.openai_base_url,
        "RELAY_DEFAULT_MODEL": settings.default_model,
        "RELAY_STORAGE_BACKEND": settings.storage_backend.value,
        "RELAY_PRICING_FILE": settings.pricing_file,
        "SUPABASE_URL": settings.supabase_url,
        "SUPABASE_SERVICE_ROLE_KEY": bool(settings.supabase_service_role_key),
    }


def load_pricing_table(path: str) -> PricingTable:
    """Load and validate a pricing table from a YAML file.

    Strict validation ensures a typo cannot silently price every request
    at the fallback rate.

    Args:
        path: Path to YAML pricing file

    Returns:
        Validated PricingTable

    Raises:
        FileNotFoundError: If the file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If the table is invalid
    """
    pricing_path = Path(path)
    if not pricing_path.exists():
        raise FileNotFoundError(f"Pricing file not found: {path}")

    with open(pricing_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in pricing file {path}: {e}")

    if not raw_config:
        raise ValueError("Pricing file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Pricing file must contain a mapping")

    allowed_top_keys = {'default_model', 'models'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown pricing keys: {unknown_keys}")

    if 'models' not in raw_config:
        raise ValueError("Missing required 'models' section")

    models_data = raw_config['models']
    if not isinstance(models_data, dict) or not models_data:
        raise ValueError("'models' must be a non-empty dictionary")

    prices = {}
    for model_name, model_data in models_data.items():
        if not isinstance(model_data, dict):
            raise ValueError(f"Model '{model_name}' must be a dictionary")
        prices[str(model_name)] = _parse_model_pricing(model_data, f"models.{model_name}")

    default_model = raw_config.get('default_model', DEFAULT_MODEL)
    if default_model not in prices:
        raise ValueError(f"default_model '{default_model}' is not listed under 'models'")

    return PricingTable(prices=prices, default_model=default_model)


def _parse_model_pricing(data: Dict, path: str) -> ModelPricing:
    """Parse and validate one model's rates.

    Args:
        data: Model pricing data
        path: Path for error messages

    Returns:
        Validated ModelPricing
    """
    allowed_keys = {'input_per_million', 'output_per_million'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    rates = []
    for key in ('input_per_million', 'output_per_million'):
        if key not in data:
            raise ValueError(f"Missing required '{key}' in {path}")
        value = data[key]
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
            raise ValueError(f"'{key}' in {path} must be a number >= 0")
        rates.append(value)

    return ModelPricing.per_million(rates[0], rates[1])


def resolve_pricing_table(settings: RelaySettings) -> PricingTable:
    """The table named by ``settings.pricing_file``, or the built-in one."""
    if settings.pricing_file:
        return load_pricing_table(settings.pricing_file)
    return DEFAULT_PRICING_TABLE
