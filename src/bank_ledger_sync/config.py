"""Configuration loader and validation for ledger sync settings."""

from pathlib import Path
from typing import Annotated, Any, Literal, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
import logging
import os

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .utils.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

# Environment variables that override single config keys
ENV_OVERRIDES: dict[str, tuple[str, ...]] = {
    "LEDGER_BASE_URL": ("ledger", "base_url"),
    "LEDGER_TOKEN_API": ("ledger", "token"),
    "SCRAPER_PARALLEL": ("scraper", "parallel"),
    "SCRAPER_TIMEOUT": ("scraper", "timeout"),
    "LOG_LEVEL": ("logging", "level"),
}


class LedgerConfig(BaseModel):
    """Connection settings for the ledger API."""

    base_url: str
    token: str
    page_limit: int = 50
    timeout: float = 30.0
    state_key: str = "bank-ledger-sync"

    @field_validator("base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")


class CreditCardLogin(BaseModel):
    """A credit card login configured under a bank."""

    type: str
    name: Optional[str] = None
    credentials: dict[str, Optional[str]] = Field(default_factory=dict)


class BankLogin(BaseModel):
    """A bank login, optionally owning credit card logins."""

    type: str
    name: Optional[str] = None
    credentials: dict[str, Optional[str]] = Field(default_factory=dict)
    credit_cards: list[CreditCardLogin] = Field(default_factory=list)


class ScraperConfig(BaseModel):
    """Configuration for the acquisition stage."""

    parallel: bool = True
    max_concurrency: Optional[int] = Field(default=None, ge=1)
    export_dir: str = "scrapes"
    # Seconds allowed per source scrape; unlimited when unset
    timeout: Optional[float] = Field(default=None, gt=0)


class BillingCycleRule(BaseModel):
    """Description of a settlement withdrawal mapped to a credit card type."""

    kind: Literal["billing-cycle"] = "billing-cycle"
    description: str
    credit_card: str
    method: Literal["process-date", "reference"] = "process-date"


class StaticSettlementRule(BaseModel):
    """Fixed settlement rule: description + paying account (+ day range) to a card account."""

    kind: Literal["static"] = "static"
    description: str
    source_account: str
    credit_card: str
    day_from: Optional[int] = Field(default=None, ge=1, le=31)
    day_to: Optional[int] = Field(default=None, ge=1, le=31)

    @model_validator(mode="after")
    def _check_day_range(self) -> "StaticSettlementRule":
        if self.day_from is not None and self.day_to is not None and self.day_from > self.day_to:
            raise ValueError(
                f"day_from ({self.day_from}) must not be after day_to ({self.day_to})"
            )
        return self

    def covers_day(self, day: int) -> bool:
        """Check whether a day of month falls within this rule's range."""
        if self.day_from is not None and day < self.day_from:
            return False
        if self.day_to is not None and day > self.day_to:
            return False
        return True


SettlementRule = Annotated[
    Union[BillingCycleRule, StaticSettlementRule],
    Field(discriminator="kind"),
]


class LoggingConfig(BaseModel):
    """Configuration for logging."""

    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    file: Optional[str] = None


class SyncConfig(BaseModel):
    """Main configuration model for ledger sync."""

    ledger: LedgerConfig
    banks: list[BankLogin] = Field(min_length=1)
    scraper: ScraperConfig = Field(default_factory=ScraperConfig)
    identify_method: dict[str, str] = Field(default_factory=dict)
    currency_symbol_map: dict[str, str] = Field(default_factory=dict)
    auto_detect_transfers: bool = True
    transfer_date_tolerance: int = Field(default=2, ge=0)
    timezone: str = "Asia/Jerusalem"
    settlement_rules: list[SettlementRule] = Field(default_factory=list)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    config_file_path: Optional[str] = None

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {value}") from e
        return value

    @property
    def billing_cycle_rules(self) -> list[BillingCycleRule]:
        return [r for r in self.settlement_rules if isinstance(r, BillingCycleRule)]

    @property
    def static_rules(self) -> list[StaticSettlementRule]:
        return [r for r in self.settlement_rules if isinstance(r, StaticSettlementRule)]


def get_default_config() -> dict[str, Any]:
    """Return the default configuration as a dictionary."""
    return {
        "ledger": {
            "page_limit": 50,
            "timeout": 30.0,
            "state_key": "bank-ledger-sync",
        },
        "scraper": {
            "parallel": True,
            "max_concurrency": None,
            "export_dir": "scrapes",
            "timeout": None,
        },
        "identify_method": {
            "isracard": "hash",
            "amex": "hash",
        },
        "currency_symbol_map": {
            "₪": "ILS",
            "$": "USD",
            "€": "EUR",
        },
        "auto_detect_transfers": True,
        "transfer_date_tolerance": 2,
        "timezone": "Asia/Jerusalem",
        "settlement_rules": [],
        "logging": {
            "level": "INFO",
            "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            "file": None,
        },
    }


def get_sample_config() -> dict[str, Any]:
    """Defaults plus placeholder ledger, bank and rule entries for a new installation."""
    sample = get_default_config()
    sample["ledger"].update(
        {
            "base_url": "http://localhost:8080",
            "token": "<personal access token>",
        }
    )
    sample["banks"] = [
        {
            "type": "leumi",
            "name": "main",
            "credentials": {"username": "<username>", "password": "<password>"},
            "credit_cards": [
                {
                    "type": "isracard",
                    "name": "family-card",
                    "credentials": {"id": "<id>", "card6Digits": "<digits>", "password": "<password>"},
                }
            ],
        }
    ]
    sample["settlement_rules"] = [
        {
            "kind": "billing-cycle",
            "description": "ישראכרט",
            "credit_card": "isracard",
            "method": "process-date",
        },
        {
            "kind": "static",
            "description": "AMEX PAYMENT",
            "source_account": "<bank account number>",
            "credit_card": "<card account number>",
            "day_from": 1,
            "day_to": 15,
        },
    ]
    return sample


def load_config(config_path: Optional[Path] = None) -> SyncConfig:
    """
    Load configuration from a YAML file, environment overrides and defaults.

    Args:
        config_path: Path to YAML configuration file (optional)

    Returns:
        SyncConfig object with loaded or default settings

    Raises:
        ConfigurationError: If the file cannot be read or fails validation
    """
    config_dict = get_default_config()

    if config_path and config_path.exists():
        logger.info(f"Loading configuration from: {config_path}")
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                user_config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Failed to read configuration file: {e}") from e

        # Deep merge user config into defaults
        config_dict = _deep_merge(config_dict, user_config)
        config_dict["config_file_path"] = str(config_path)
    else:
        logger.info("Using default configuration")

    config_dict = _apply_env_overrides(config_dict, os.environ)

    try:
        return SyncConfig(**config_dict)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e


def _apply_env_overrides(config_dict: dict, environ) -> dict:
    """
    Apply environment variable overrides onto a configuration dictionary.

    Args:
        config_dict: Merged configuration dictionary
        environ: Mapping of environment variables

    Returns:
        Dictionary with overrides applied
    """
    result = config_dict
    for env_name, key_path in ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value is None or value == "":
            continue
        override: dict = {}
        cursor = override
        for key in key_path[:-1]:
            cursor = cursor.setdefault(key, {})
        cursor[key_path[-1]] = value
        result = _deep_merge(result, override)
    return result


def _deep_merge(base: dict, override: dict) -> dict:
    """
    Deep merge two dictionaries.

    Args:
        base: Base dictionary
        override: Dictionary to merge on top

    Returns:
        Merged dictionary
    """
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def generate_default_config(output_path: Path) -> None:
    """
    Generate a sample configuration file.

    Args:
        output_path: Path to write the configuration file
    """
    yaml_content = """# Bank to ledger sync configuration
# Generated configuration file - customize as needed

"""
    yaml_content += yaml.dump(
        get_sample_config(), default_flow_style=False, sort_keys=False, allow_unicode=True
    )

    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "w", encoding="utf-8") as f:
        f.write(yaml_content)

    logger.info(f"Generated configuration file: {output_path}")
