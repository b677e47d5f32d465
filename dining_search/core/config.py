"""Configuration models and YAML loader for the dining search core.

Every decision engine receives its own section explicitly; nothing here
reads the process environment.
"""

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

HARD_CONSTRAINT_FIELDS = ("isKosher",)


class DedupConfig(BaseModel):
    """Staleness windows for job reuse."""

    running_max_age_ms: int = Field(default=90_000, ge=1000)
    success_fresh_window_ms: int = Field(default=5_000, ge=0)


class RequeryConfig(BaseModel):
    """Thresholds that decide whether the places provider is called again."""

    location_change_threshold_m: float = Field(default=500.0, gt=0)
    radius_increase_threshold_pct: float = Field(default=50.0, gt=0)
    default_radius_m: int = Field(default=5000, gt=0)
    pool_exhaustion_floor: int = Field(default=5, ge=1)


class RelaxConfig(BaseModel):
    """Filter relaxation limits."""

    max_attempts: int = Field(default=2, ge=0, le=10)
    min_acceptable: int = Field(default=5, ge=1)
    hard_constraints: list[str] = Field(default_factory=list)

    @field_validator("hard_constraints")
    @classmethod
    def known_hard_constraints(cls, v: list[str]) -> list[str]:
        unknown = [f for f in v if f not in HARD_CONSTRAINT_FIELDS]
        if unknown:
            msg = f"unsupported hard constraint(s): {', '.join(unknown)}"
            raise ValueError(msg)
        return v


class RankingConfig(BaseModel):
    """Weight strategy selection and clamp bounds for the rule engine."""

    strategy: Literal["rules", "profile"] = "rules"
    min_weight: int = Field(default=5, ge=0)
    max_weight: int = Field(default=50, le=100)
    renormalize_after_enforcement: bool = True

    @model_validator(mode="after")
    def bounds_admit_total(self) -> "RankingConfig":
        if self.min_weight >= self.max_weight:
            msg = "min_weight must be lower than max_weight"
            raise ValueError(msg)
        # Five components must be able to reach exactly 100.
        if self.min_weight * 5 > 100 or self.max_weight * 5 < 100:
            msg = "clamp bounds cannot produce weights summing to 100"
            raise ValueError(msg)
        if self.strategy == "rules":
            # Deferred: the weight engine imports this module.
            from dining_search.pipeline.weights import unreachable_rule_combinations

            failing = unreachable_rule_combinations(self.min_weight, self.max_weight)
            if failing:
                first = "+".join(failing[0]) or "BASE_BALANCED"
                msg = (
                    f"clamp bounds [{self.min_weight}, {self.max_weight}] break the rule engine "
                    f"for {len(failing)} rule combination(s), e.g. {first}"
                )
                raise ValueError(msg)
        return self


class SignalsConfig(BaseModel):
    """Thresholds for the publisher-facing ranking signals."""

    low_results_threshold: int = Field(default=10, ge=0)
    many_open_unknown_ratio: float = Field(default=0.4, ge=0.0, le=1.0)
    dominant_weight_threshold: float = Field(default=0.55, ge=0.0, le=1.0)


class LanguageConfig(BaseModel):
    """Supported language codes and the fallback used for unsupported ones."""

    supported: list[str] = Field(default_factory=lambda: ["he", "en", "ru", "ar", "fr", "es"])
    default: str = "en"

    @field_validator("supported")
    @classmethod
    def supported_not_empty(cls, v: list[str]) -> list[str]:
        cleaned = [code.strip().lower() for code in v if code.strip()]
        if not cleaned:
            msg = "at least one supported language must be configured"
            raise ValueError(msg)
        return cleaned

    @model_validator(mode="after")
    def default_is_supported(self) -> "LanguageConfig":
        if self.default not in self.supported:
            msg = f"default language '{self.default}' is not in supported languages"
            raise ValueError(msg)
        return self


class DatabaseConfig(BaseModel):
    """Job store database configuration."""

    path: str = "data/jobs.db"


class Settings(BaseModel):
    """Top-level settings loaded from YAML."""

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    dedup: DedupConfig = Field(default_factory=DedupConfig)
    requery: RequeryConfig = Field(default_factory=RequeryConfig)
    relax: RelaxConfig = Field(default_factory=RelaxConfig)
    ranking: RankingConfig = Field(default_factory=RankingConfig)
    signals: SignalsConfig = Field(default_factory=SignalsConfig)
    language: LanguageConfig = Field(default_factory=LanguageConfig)

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Settings":
        """Load settings from a YAML file."""
        path = Path(path)
        if not path.exists():
            msg = f"Config file not found: {path}"
            raise FileNotFoundError(msg)
        raw: dict[str, Any] = yaml.safe_load(path.read_text()) or {}
        return cls.model_validate(raw)
