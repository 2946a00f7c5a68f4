from typing import Optional

from pydantic import BaseModel, Field, field_validator


class RefinementConfig(BaseModel):
    """Knobs of the refinement loop, read from the ``refinement`` config section."""

    confidence_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    max_retries: int = Field(default=3, ge=0)
    implicit_wait_ms: int = Field(default=1000, ge=0)
    max_manual_retries: int = Field(default=2, ge=0)
    human_timeout_seconds: Optional[float] = None
    env_file: str = ".env"
    step_timeout_ms: int = Field(default=30000, gt=0)

    @field_validator("human_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, value):
        if value is not None and value <= 0:
            raise ValueError("human_timeout_seconds must be positive when set")
        return value
