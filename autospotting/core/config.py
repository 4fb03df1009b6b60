"""Configuration management for AutoSpotting."""

import json
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from autospotting.core.exceptions import ConfigurationError


ENV_PREFIX = "AUTOSPOTTING_"

# Group tags that override run-wide settings, mapped to Config fields
OVERRIDE_TAGS = {
    "autospotting_min_on_demand_number": "min_on_demand_number",
    "autospotting_min_on_demand_percentage": "min_on_demand_percentage",
    "autospotting_on_demand_price_multiplier": "on_demand_price_multiplier",
    "autospotting_max_spot_price": "max_spot_price",
    "autospotting_bidding_policy": "bidding_policy",
    "autospotting_spot_price_buffer_percentage": "spot_price_buffer_percentage",
    "autospotting_allowed_instance_types": "allowed_instance_types",
    "autospotting_disallowed_instance_types": "disallowed_instance_types",
}

_LIST_FIELDS = {"regions", "allowed_instance_types", "disallowed_instance_types"}
_MAP_FIELDS = {"filter_tags"}


def _split_list(value: str) -> List[str]:
    return [item.strip() for item in re.split(r"[,\s]+", value) if item.strip()]


def _split_map(value: str) -> Dict[str, str]:
    result = {}
    for item in _split_list(value):
        if "=" not in item:
            raise ConfigurationError(f"Invalid key=value pair: {item}")
        key, _, val = item.partition("=")
        result[key.strip()] = val.strip()
    return result


class Config(BaseModel):
    """Run-wide configuration, passed explicitly through every component."""

    model_config = ConfigDict(frozen=True)

    default_region: str = Field(default="us-east-1", description="Home region for region listing and pricing")
    regions: List[str] = Field(default_factory=list, description="Region glob patterns, empty for all")
    role_arn: Optional[str] = Field(default=None, description="IAM role to assume")

    tag_filtering_mode: Literal["opt-in", "opt-out"] = "opt-in"
    filter_tags: Dict[str, str] = Field(default_factory=lambda: {"spot-enabled": "true"})

    min_on_demand_number: int = Field(default=0, ge=0)
    min_on_demand_percentage: float = Field(default=0.0, ge=0.0, le=100.0)
    max_replacements_per_group: int = Field(default=1, ge=1)

    on_demand_price_multiplier: float = Field(default=1.0, gt=0.0)
    max_spot_price: Optional[float] = Field(default=None, gt=0.0)
    bidding_policy: Literal["normal", "aggressive"] = "normal"
    spot_price_buffer_percentage: float = Field(default=10.0, ge=0.0)
    allowed_instance_types: List[str] = Field(default_factory=list)
    disallowed_instance_types: List[str] = Field(default_factory=list)
    preserve_availability_zone: bool = True
    spot_product_description: str = "Linux/UNIX"

    termination_method: Literal["detach", "autoscaling"] = "detach"

    max_workers: int = Field(default=8, ge=1)
    launch_timeout_seconds: float = Field(default=600.0, gt=0.0)
    lifecycle_hook_timeout_seconds: float = Field(default=3600.0, gt=0.0)
    run_timeout_seconds: Optional[float] = Field(default=None, gt=0.0)
    poll_interval_seconds: float = Field(default=5.0, gt=0.0)

    retry_max_attempts: int = Field(default=5, ge=1)
    retry_base_delay: float = Field(default=1.0, ge=0.0)
    retry_max_delay: float = Field(default=30.0, ge=0.0)

    dry_run: bool = False

    @field_validator('default_region')
    @classmethod
    def validate_region(cls, v: str) -> str:
        """Validate AWS region format."""
        region_pattern = r'^[a-z]{2,3}(-gov)?-[a-z]+-\d+$'
        if not re.match(region_pattern, v):
            raise ValueError(
                f"Invalid AWS region format: {v}. "
                "Expected format: us-east-1, eu-west-1, ap-southeast-3, etc."
            )
        return v

    @field_validator('role_arn')
    @classmethod
    def validate_role_arn(cls, v: Optional[str]) -> Optional[str]:
        """Validate IAM role ARN format."""
        if v is None:
            return v
        arn_pattern = r'^arn:aws[a-z-]*:iam::\d{12}:role/[a-zA-Z0-9+=,.@_/-]+$'
        if not re.match(arn_pattern, v):
            raise ValueError(
                f"Invalid IAM role ARN format: {v}. "
                "Expected format: arn:aws:iam::123456789012:role/RoleName"
            )
        return v

    @field_validator('regions', 'allowed_instance_types', 'disallowed_instance_types', mode='before')
    @classmethod
    def split_comma_lists(cls, v: Any) -> Any:
        if isinstance(v, str):
            return _split_list(v)
        return v

    @field_validator('filter_tags', mode='before')
    @classmethod
    def split_tag_pairs(cls, v: Any) -> Any:
        if isinstance(v, str):
            return _split_map(v)
        return v

    @model_validator(mode='after')
    def check_retry_delays(self) -> "Config":
        if self.retry_max_delay < self.retry_base_delay:
            raise ValueError("retry_max_delay must not be smaller than retry_base_delay")
        return self

    def for_group(self, tags: Mapping[str, str]) -> "Config":
        """Return a copy of this configuration with the group's override tags applied.

        Args:
            tags: The group's tags

        Returns:
            Validated configuration for the group

        Raises:
            ConfigurationError: If an override tag holds an invalid value
        """
        overrides = {
            field: tags[tag] for tag, field in OVERRIDE_TAGS.items()
            if tag in tags and tags[tag].strip() != ""
        }
        if not overrides:
            return self

        try:
            return self.updated(**overrides)
        except ConfigurationError as e:
            names = ", ".join(sorted(k for k, f in OVERRIDE_TAGS.items() if f in overrides))
            raise ConfigurationError(f"Invalid override tag value in {names}", details=e.details)

    def updated(self, **changes: Any) -> "Config":
        """Return a validated copy with the given fields replaced.

        Raises:
            ConfigurationError: If a new value is invalid
        """
        data = self.model_dump()
        data.update(changes)
        try:
            return Config(**data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration for {', '.join(sorted(changes))}", details=str(e))


class ConfigManager:
    """Manages the local configuration file for AutoSpotting."""

    def __init__(self, config_dir: Optional[Path] = None):
        """Initialize configuration manager.

        Args:
            config_dir: Optional custom configuration directory path.
                       Defaults to ~/.autospotting/
        """
        if config_dir is None:
            config_dir = Path.home() / ".autospotting"

        self.config_dir = config_dir
        self.config_file = config_dir / "config.json"

    def load_config(self, path: Optional[Path] = None) -> Config:
        """Load configuration from file, falling back to defaults when absent.

        Args:
            path: Optional explicit configuration file

        Returns:
            Config object

        Raises:
            ConfigurationError: If the configuration file is corrupted or invalid.
        """
        config_file = Path(path) if path else self.config_file
        if not config_file.exists():
            if path:
                raise ConfigurationError(f"Configuration file not found: {config_file}")
            return Config()

        try:
            with open(config_file, 'r') as f:
                config_data = json.load(f)
            return Config(**config_data)
        except (json.JSONDecodeError, ValidationError, TypeError) as e:
            raise ConfigurationError(f"Invalid configuration file {config_file}", details=str(e))

    def load_from_env(self, environ: Optional[Mapping[str, str]] = None, base: Optional[Config] = None) -> Config:
        """Build configuration from AUTOSPOTTING_* environment variables.

        Args:
            environ: Environment mapping, defaults to os.environ
            base: Configuration to override, defaults to built-in defaults

        Returns:
            Config object

        Raises:
            ConfigurationError: If a variable holds an invalid value
        """
        environ = os.environ if environ is None else environ
        data = (base or Config()).model_dump()

        for field in Config.model_fields:
            value = environ.get(ENV_PREFIX + field.upper())
            if value is None:
                continue
            if field in _LIST_FIELDS:
                data[field] = _split_list(value)
            elif field in _MAP_FIELDS:
                data[field] = _split_map(value)
            elif value == "" and Config.model_fields[field].default is None:
                data[field] = None
            else:
                data[field] = value

        try:
            return Config(**data)
        except ValidationError as e:
            raise ConfigurationError("Invalid AUTOSPOTTING_* environment configuration", details=str(e))

    def save_config(self, config: Config) -> None:
        """Save configuration to file.

        Args:
            config: Configuration object to save.

        Raises:
            OSError: If unable to write configuration file.
        """
        temp_file = self.config_file.with_suffix('.tmp')
        try:
            self.config_dir.mkdir(parents=True, exist_ok=True)

            # Write atomically by writing to temp file first
            with open(temp_file, 'w') as f:
                json.dump(config.model_dump(), f, indent=2)

            temp_file.replace(self.config_file)

        except Exception as e:
            if temp_file.exists():
                temp_file.unlink()
            raise OSError(f"Failed to save configuration: {e}")
