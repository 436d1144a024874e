"""Configuration package."""

from app.config.plans import PLAN_CATALOG, PlanConfig, get_plan_config
from app.config.settings import Settings, settings

__all__ = [
    "PlanConfig",
    "PLAN_CATALOG",
    "get_plan_config",
    "Settings",
    "settings",
]
