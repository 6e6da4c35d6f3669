"""Service configuration.

All settings are read once from the environment by `Settings.from_env()`
and then passed explicitly to the components that need them. Nothing in the
package looks configuration up globally.
"""

import logging
import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

# Model versions used by the original deployment
DEFAULT_NLP_MODEL = "2c1608e18606fad2812020dc541930f2d0495ce32eee50074220b87300bc16e1"
DEFAULT_CARTOONIFY_MODEL = "f109015d60170dfb20460f17da8cb863155823c85ece1115e1e9e4ec7ef51d3b"
DEFAULT_BACKGROUND_MODEL = "a00d0b7dcbb9c3fbb34ba87d2d5b46c56969c84a628bf778a7fdaec30b1b99c5"

NEGATIVE_PROMPTS = [
    "ugly",
    "blurry",
    "low quality",
    "deformed",
    "disfigured",
    "mutated",
    "bad anatomy",
    "bad proportions",
    "duplicate",
    "cropped",
]


class RetryPolicy(BaseModel):
    """Per-item retry budget applied at the submission boundary."""

    max_attempts: int = Field(default=3, ge=1)
    delay_seconds: float = Field(default=1.0, ge=0)


class Settings(BaseModel):
    """Runtime settings for the orchestrator, its collaborators and the API."""

    # Storage
    state_dir: Path = Path("./var/state")
    output_dir: Path = Path("./var/generated")
    public_base_url: str = "http://localhost:8000"

    environment: str = "production"
    log_level: str = "INFO"

    # Inference provider
    replicate_api_url: str = "https://api.replicate.com/v1"
    replicate_api_token: Optional[str] = None
    webhook_secret: Optional[str] = None
    nlp_model: str = DEFAULT_NLP_MODEL
    cartoonify_model: str = DEFAULT_CARTOONIFY_MODEL
    background_model: str = DEFAULT_BACKGROUND_MODEL

    # Boundary timeouts (seconds)
    submission_timeout: float = 30.0
    fetch_timeout: float = 30.0

    # Retry / stall handling
    max_attempts: int = Field(default=3, ge=1)
    retry_delay: float = Field(default=1.0, ge=0)
    item_timeout: float = 300.0
    sweep_interval: float = 0.0
    max_parallel_submissions: int = Field(default=4, ge=1)

    # Panel / strip geometry
    panel_width: int = 1024
    panel_height: int = 1024
    panel_gap: int = 20
    strip_padding: int = 40
    strip_max_width: int = 4096
    strip_max_height: int = 1024
    character_scale: float = 0.3

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(max_attempts=self.max_attempts, delay_seconds=self.retry_delay)

    @property
    def webhook_url(self) -> str:
        return self.public_base_url.rstrip("/") + "/v1/webhooks/inference"

    @property
    def generated_base_url(self) -> str:
        return self.public_base_url.rstrip("/") + "/generated"

    @property
    def is_development(self) -> bool:
        return self.environment.lower() in ("development", "dev", "local")

    @classmethod
    def from_env(cls, env: Optional[dict] = None) -> "Settings":
        """Build settings from environment variables.

        Unset variables fall back to the field defaults.
        """
        env = os.environ if env is None else env
        mapping = {
            "STRIPFORGE_STATE_DIR": "state_dir",
            "STRIPFORGE_OUTPUT_DIR": "output_dir",
            "STRIPFORGE_BASE_URL": "public_base_url",
            "STRIPFORGE_ENV": "environment",
            "STRIPFORGE_LOG_LEVEL": "log_level",
            "REPLICATE_API_URL": "replicate_api_url",
            "REPLICATE_API_TOKEN": "replicate_api_token",
            "REPLICATE_WEBHOOK_SECRET": "webhook_secret",
            "STRIPFORGE_NLP_MODEL": "nlp_model",
            "STRIPFORGE_CARTOONIFY_MODEL": "cartoonify_model",
            "STRIPFORGE_BACKGROUND_MODEL": "background_model",
            "STRIPFORGE_SUBMISSION_TIMEOUT": "submission_timeout",
            "STRIPFORGE_FETCH_TIMEOUT": "fetch_timeout",
            "STRIPFORGE_MAX_ATTEMPTS": "max_attempts",
            "STRIPFORGE_RETRY_DELAY": "retry_delay",
            "STRIPFORGE_ITEM_TIMEOUT": "item_timeout",
            "STRIPFORGE_SWEEP_INTERVAL": "sweep_interval",
            "STRIPFORGE_MAX_PARALLEL": "max_parallel_submissions",
            "STRIPFORGE_PANEL_WIDTH": "panel_width",
            "STRIPFORGE_PANEL_HEIGHT": "panel_height",
            "STRIPFORGE_PANEL_GAP": "panel_gap",
            "STRIPFORGE_STRIP_PADDING": "strip_padding",
            "STRIPFORGE_STRIP_MAX_WIDTH": "strip_max_width",
            "STRIPFORGE_STRIP_MAX_HEIGHT": "strip_max_height",
            "STRIPFORGE_CHARACTER_SCALE": "character_scale",
        }
        values = {}
        for var, field_name in mapping.items():
            raw = env.get(var)
            if raw is not None and raw != "":
                values[field_name] = raw

        settings = cls.model_validate(values)
        logger.debug(
            f"Loaded settings: env={settings.environment}, "
            f"state_dir={settings.state_dir}, output_dir={settings.output_dir}"
        )
        return settings
