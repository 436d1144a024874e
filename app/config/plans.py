"""Plan catalog seed - pricing, duration and feature limits for each plan.

These definitions are upserted into the ``plans`` table by
``plan_ops.seed``. Prices are in minor units (cents/paise).
"""

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class PlanConfig:
    """Seed definition for a subscription plan."""

    id: str
    name: str
    description: str
    price_minor_units: int
    currency: str
    duration_days: int
    is_recurring: bool
    features: dict[str, bool | int] = field(default_factory=dict)

    @property
    def is_trial(self) -> bool:
        return self.price_minor_units == 0

    def as_row(self) -> dict[str, Any]:
        """Column values for the ``plans`` table."""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "price_minor_units": self.price_minor_units,
            "currency": self.currency,
            "duration_days": self.duration_days,
            "is_recurring": self.is_recurring,
            "features": dict(self.features),
        }


PLAN_CATALOG: dict[str, PlanConfig] = {
    "free-trial": PlanConfig(
        id="free-trial",
        name="Free Trial",
        description="3-day access to explore the platform",
        price_minor_units=0,
        currency="INR",
        duration_days=3,
        is_recurring=False,
        features={
            "max_projects": 1,
            "max_deployments": 3,
            "ai_assistant": True,
            "basic_monitoring": True,
            "community_support": True,
        },
    ),
    "weekly": PlanConfig(
        id="weekly",
        name="Weekly",
        description="Perfect for short-term projects",
        price_minor_units=10000,  # $100
        currency="USD",
        duration_days=7,
        is_recurring=False,
        features={
            "max_projects": 5,
            "max_deployments": 20,
            "ai_assistant": True,
            "advanced_monitoring": True,
            "priority_support": True,
            "custom_domains": True,
        },
    ),
    "monthly": PlanConfig(
        id="monthly",
        name="Monthly",
        description="Ideal for monthly projects",
        price_minor_units=18000,  # $180
        currency="USD",
        duration_days=30,
        is_recurring=False,
        features={
            "max_projects": 10,
            "max_deployments": 50,
            "ai_assistant": True,
            "advanced_monitoring": True,
            "priority_support": True,
            "custom_domains": True,
            "auto_scaling": True,
        },
    ),
    "two-months": PlanConfig(
        id="two-months",
        name="Two Months",
        description="Extended project support",
        price_minor_units=34000,  # $340
        currency="USD",
        duration_days=60,
        is_recurring=False,
        features={
            "max_projects": 15,
            "max_deployments": 100,
            "ai_assistant": True,
            "advanced_monitoring": True,
            "priority_support": True,
            "custom_domains": True,
            "auto_scaling": True,
            "team_collaboration": True,
        },
    ),
    "six-months": PlanConfig(
        id="six-months",
        name="Six Months",
        description="Semi-annual subscription with savings",
        price_minor_units=100000,  # $1000
        currency="USD",
        duration_days=180,
        is_recurring=True,
        features={
            "max_projects": 25,
            "max_deployments": 300,
            "ai_assistant": True,
            "advanced_monitoring": True,
            "priority_support": True,
            "custom_domains": True,
            "auto_scaling": True,
            "team_collaboration": True,
            "enterprise_integrations": True,
        },
    ),
    "yearly": PlanConfig(
        id="yearly",
        name="Yearly",
        description="Annual subscription with maximum savings",
        price_minor_units=140000,  # $1400
        currency="USD",
        duration_days=365,
        is_recurring=True,
        features={
            "max_projects": 50,
            "max_deployments": 1000,
            "ai_assistant": True,
            "advanced_monitoring": True,
            "priority_support": True,
            "custom_domains": True,
            "auto_scaling": True,
            "team_collaboration": True,
            "enterprise_integrations": True,
            "dedicated_support": True,
        },
    ),
}

TRIAL_PLAN_ID = "free-trial"


def get_plan_config(plan_id: str) -> PlanConfig | None:
    """Get the seed definition for a plan id, or None if unknown."""
    return PLAN_CATALOG.get(plan_id)


def billing_interval(duration_days: int) -> tuple[str, int]:
    """
    Map a plan duration to a provider billing interval.

    Returns (interval, interval_count), e.g. 180 days -> ("month", 6).
    """
    if duration_days % 365 == 0:
        return "year", duration_days // 365
    if duration_days % 30 == 0:
        return "month", duration_days // 30
    if duration_days % 7 == 0:
        return "week", duration_days // 7
    return "day", duration_days
