"""Unit tests for the plan catalog seed and billing interval mapping."""

import pytest

from app.config.plans import PLAN_CATALOG, TRIAL_PLAN_ID, billing_interval, get_plan_config


class TestPlanCatalog:
    """Tests for PLAN_CATALOG definitions."""

    def test_trial_plan_is_free_with_three_day_window(self):
        plan = get_plan_config(TRIAL_PLAN_ID)
        assert plan is not None
        assert plan.is_trial is True
        assert plan.price_minor_units == 0
        assert plan.duration_days == 3

    def test_fixed_term_plans_are_not_recurring(self):
        for plan_id in ("weekly", "monthly", "two-months"):
            assert PLAN_CATALOG[plan_id].is_recurring is False

    def test_long_plans_are_recurring(self):
        assert PLAN_CATALOG["six-months"].is_recurring is True
        assert PLAN_CATALOG["yearly"].is_recurring is True

    def test_durations(self):
        durations = {plan_id: plan.duration_days for plan_id, plan in PLAN_CATALOG.items()}
        assert durations == {
            "free-trial": 3,
            "weekly": 7,
            "monthly": 30,
            "two-months": 60,
            "six-months": 180,
            "yearly": 365,
        }

    def test_names_are_unique(self):
        names = [plan.name for plan in PLAN_CATALOG.values()]
        assert len(names) == len(set(names))

    def test_only_trial_is_free(self):
        free = [plan.id for plan in PLAN_CATALOG.values() if plan.is_trial]
        assert free == [TRIAL_PLAN_ID]

    def test_as_row_copies_features(self):
        plan = PLAN_CATALOG["monthly"]
        row = plan.as_row()
        row["features"]["max_projects"] = -1
        assert plan.features["max_projects"] != -1

    def test_unknown_plan_returns_none(self):
        assert get_plan_config("lifetime") is None


class TestBillingInterval:
    """Tests for duration -> provider interval mapping."""

    @pytest.mark.parametrize(
        ("days", "expected"),
        [
            (365, ("year", 1)),
            (730, ("year", 2)),
            (180, ("month", 6)),
            (30, ("month", 1)),
            (14, ("week", 2)),
            (7, ("week", 1)),
            (3, ("day", 3)),
        ],
    )
    def test_maps_duration(self, days, expected):
        assert billing_interval(days) == expected
