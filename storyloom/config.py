"""Engine configuration with environment overrides."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from .advisors import PRODUCT_TYPES
from .models import MAX_TEXT_LENGTH

logger = logging.getLogger("storyloom")


@dataclass(slots=True)
class EngineConfig:
    """Tunable thresholds and runtime settings for one corpus run."""

    QUALITY_THRESHOLD_ENV = "STORYLOOM_QUALITY_THRESHOLD"
    AUTO_APPLY_THRESHOLD_ENV = "STORYLOOM_AUTO_APPLY_THRESHOLD"
    MAX_TEXT_LENGTH_ENV = "STORYLOOM_MAX_TEXT_LENGTH"
    PASS2_WORKERS_ENV = "STORYLOOM_PASS2_WORKERS"
    PRODUCT_TYPE_ENV = "STORYLOOM_PRODUCT_TYPE"
    LOG_LEVEL_ENV = "STORYLOOM_LOG_LEVEL"
    LOG_FILE_ENV = "STORYLOOM_LOG_FILE"

    quality_threshold: float = 3.5
    auto_apply_threshold: float = 0.75
    max_text_length: int = MAX_TEXT_LENGTH
    pass2_workers: int = 4
    product_type: str = "web"
    log_level: str = "INFO"
    log_file: Optional[Path] = None

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Build a config from defaults overridden by ``STORYLOOM_*`` variables.

        A value that does not parse is ignored with a warning.
        """
        config = cls()
        config.quality_threshold = _env_number(cls.QUALITY_THRESHOLD_ENV, float, config.quality_threshold)
        config.auto_apply_threshold = _env_number(cls.AUTO_APPLY_THRESHOLD_ENV, float, config.auto_apply_threshold)
        config.max_text_length = _env_number(cls.MAX_TEXT_LENGTH_ENV, int, config.max_text_length)
        config.pass2_workers = _env_number(cls.PASS2_WORKERS_ENV, int, config.pass2_workers)
        config.product_type = os.getenv(cls.PRODUCT_TYPE_ENV) or config.product_type
        config.log_level = (os.getenv(cls.LOG_LEVEL_ENV) or config.log_level).upper()
        log_file = os.getenv(cls.LOG_FILE_ENV)
        if log_file:
            config.log_file = Path(log_file)
        return config

    def validate(self) -> List[str]:
        """Validate the configuration and return any issues."""
        issues = []

        if not 0 <= self.quality_threshold <= 5:
            issues.append(f"Quality threshold must be between 0 and 5, got {self.quality_threshold}")
        if not 0 <= self.auto_apply_threshold <= 1:
            issues.append(f"Auto-apply threshold must be between 0 and 1, got {self.auto_apply_threshold}")
        if self.max_text_length < 1:
            issues.append("Max text length must be positive")
        if self.pass2_workers < 1:
            issues.append("Pass 2 worker count must be at least 1")
        if self.product_type not in PRODUCT_TYPES:
            issues.append(f"Invalid product type: {self.product_type}")
        if self.log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            issues.append(f"Invalid log level: {self.log_level}")

        return issues

    def to_dict(self) -> Dict[str, Any]:
        return {
            "qualityThreshold": self.quality_threshold,
            "autoApplyThreshold": self.auto_apply_threshold,
            "maxTextLength": self.max_text_length,
            "pass2Workers": self.pass2_workers,
            "productType": self.product_type,
            "logLevel": self.log_level,
            "logFile": str(self.log_file) if self.log_file else None,
        }


def _env_number(name: str, kind: type, default):
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return kind(raw)
    except ValueError:
        logger.warning(f"Ignoring {name}={raw!r}: not a valid {kind.__name__}")
        return default
