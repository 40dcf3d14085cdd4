from __future__ import annotations

import logging
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

__all__ = ["Settings", "settings"]

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("xasset.core")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="XA_", case_sensitive=False)

    discretization: Literal["euler", "exact"] = "euler"
    salvaging: Literal["spectral", "higham", "none"] = "spectral"

    psd_tolerance: float = Field(default=1e-10, ge=0.0, le=1e-2)
    symmetry_tolerance: float = Field(default=1e-10, ge=0.0, le=1e-2)
    max_relative_perturbation: float = Field(default=0.5, gt=0.0)
    higham_max_iterations: int = Field(default=200, ge=1, le=100_000)
    higham_tolerance: float = Field(default=1e-12, gt=0.0)

    cache_enabled: bool = True
    cache_key_policy: Literal["exact", "rounded"] = "exact"
    cache_key_decimals: int = Field(default=12, ge=0, le=17)

    quadrature_epsabs: float = Field(default=1e-14, gt=0.0)
    quadrature_epsrel: float = Field(default=1e-10, gt=0.0)


settings = Settings()
logger.debug(
    "settings loaded: discretization=%s salvaging=%s cache=%s/%s",
    settings.discretization,
    settings.salvaging,
    settings.cache_enabled,
    settings.cache_key_policy,
)
