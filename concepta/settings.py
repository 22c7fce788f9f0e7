from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

# Load .env file from project root
_env_path = Path(__file__).parent.parent / ".env"
if _env_path.exists():
    load_dotenv(_env_path)


class StageModels(BaseModel):
    zoning_analysis: str = "gemini-2.0-flash-exp"
    rights_report: str = "gemini-2.0-flash-exp"
    unit_mix: str = "gemini-2.0-flash"
    massing: str = "gemini-2.0-flash"
    reference_analysis: str = "gemini-2.0-flash"
    styling: str = "gemini-2.0-flash"
    model_analysis: str = "gemini-2.0-flash"
    building_reference: str = "gemini-2.0-flash"
    facade_rendering: str = "gemini-2.0-flash"


class ProviderSettings(BaseModel):
    name: str = "gemini"
    api_url: str = "https://generativelanguage.googleapis.com"
    api_version: str = "v1beta"
    api_key_env: str = "GEMINI_API_KEY"
    models: StageModels = Field(default_factory=StageModels)
    timeout_seconds: float | None = Field(120.0, gt=0.0)

    @property
    def api_key(self) -> str:
        return os.getenv(self.api_key_env, "")


class PromptSettings(BaseModel):
    templates_dir: Path | None = None
    list_separator: str = ", "


class ReconcileSettings(BaseModel):
    # None means half a percent per summary row (integer rounding of each row)
    percentage_tolerance: float | None = Field(default=None, ge=0.0)
    main_area_tolerance_pct: float = Field(2.0, ge=0.0, le=100.0)
    expected_alternatives: int = Field(3, ge=1)


class UnitTypeConfig(BaseModel):
    unit_type: str
    label: str | None = None
    min_area_sqm: float = Field(..., gt=0.0)
    max_area_sqm: float | None = Field(default=None, gt=0.0)
    color: str = "#BDBDBD"
    penthouse: bool = False

    @field_validator("max_area_sqm")
    @classmethod
    def _band_ordered(cls, value: float | None, info: Any) -> float | None:
        minimum = info.data.get("min_area_sqm")
        if value is not None and minimum is not None and value < minimum:
            raise ValueError("max_area_sqm must not be below min_area_sqm")
        return value


def _default_catalogue() -> list[UnitTypeConfig]:
    return [
        UnitTypeConfig(unit_type="n3", label="n3", min_area_sqm=81, color="#81C784"),
        UnitTypeConfig(unit_type="n4", label="n4", min_area_sqm=109, max_area_sqm=115, color="#FFD54F"),
        UnitTypeConfig(unit_type="n5", label="n5", min_area_sqm=135, max_area_sqm=145, color="#FF8A65"),
        UnitTypeConfig(unit_type="mini_ph", label="mini PH", min_area_sqm=154, color="#CE93D8", penthouse=True),
        UnitTypeConfig(unit_type="ph", label="PH", min_area_sqm=180, color="#4FC3F7", penthouse=True),
    ]


class LoggingSettings(BaseModel):
    level: str = "INFO"
    json_format: bool = False
    log_file: Path | None = None


class Settings(BaseModel):
    provider: ProviderSettings = Field(default_factory=ProviderSettings)
    prompts: PromptSettings = Field(default_factory=PromptSettings)
    reconcile: ReconcileSettings = Field(default_factory=ReconcileSettings)
    catalogue: list[UnitTypeConfig] = Field(default_factory=_default_catalogue)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @field_validator("catalogue")
    @classmethod
    def _unique_unit_types(cls, value: list[UnitTypeConfig]) -> list[UnitTypeConfig]:
        if not value:
            raise ValueError("catalogue must define at least one unit type")
        seen: set[str] = set()
        for entry in value:
            if entry.unit_type in seen:
                raise ValueError(f"duplicate unit type in catalogue: {entry.unit_type}")
            seen.add(entry.unit_type)
        return value

    @classmethod
    def load(cls, path: Path | None = None) -> "Settings":
        """Load settings from YAML configuration file.

        Args:
            path: Optional path to configuration file. If not provided, uses
                CONCEPTA_CONFIG environment variable or defaults to config/default.yaml.

        Returns:
            Settings instance with loaded configuration.

        Raises:
            FileNotFoundError: If configuration file does not exist.
            ValueError: If configuration is invalid.
        """
        config_path = path or Path(os.getenv("CONCEPTA_CONFIG", "config/default.yaml"))
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")
        with config_path.open("r", encoding="utf-8") as fp:
            payload = yaml.safe_load(fp) or {}
        try:
            return cls(**payload)
        except Exception as exc:
            raise ValueError(f"Invalid configuration: {exc}") from exc


@lru_cache(maxsize=1)
def get_settings(path: str | None = None) -> Settings:
    return Settings.load(Path(path) if path else None)


__all__ = [
    "Settings",
    "StageModels",
    "ProviderSettings",
    "PromptSettings",
    "ReconcileSettings",
    "UnitTypeConfig",
    "LoggingSettings",
    "get_settings",
]
