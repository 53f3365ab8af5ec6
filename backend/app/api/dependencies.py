"""Shared API dependencies."""

from __future__ import annotations

from functools import lru_cache

from ..config import Settings, load_settings
from ..domain.od01_intake import IntakeService
from ..domain.od02_window import WindowScheduler
from ..pipeline import Pipeline, build_pipeline

__all__ = [
    "get_intake_service",
    "get_pipeline",
    "get_settings",
    "get_window_scheduler",
]


@lru_cache()
def _settings_singleton() -> Settings:
    return load_settings()


def get_settings() -> Settings:
    """Return the settings loaded once per process."""

    return _settings_singleton()


@lru_cache()
def _pipeline_singleton() -> Pipeline:
    return build_pipeline(get_settings())


def get_pipeline() -> Pipeline:
    """Return the process-wide consolidation pipeline."""

    return _pipeline_singleton()


def get_intake_service() -> IntakeService:
    return get_pipeline().intake


def get_window_scheduler() -> WindowScheduler:
    return get_pipeline().scheduler
