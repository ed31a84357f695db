"""
Tests for grant condition evaluation.
"""

from datetime import datetime

import pytest

from chatbot_rbac.features.permissions.conditions import (
    build_context,
    evaluate_condition,
    grant_applies,
    scope_context_satisfied,
)


# 2030-01-07 is a Monday
MONDAY_10AM = datetime(2030, 1, 7, 10, 0)


class TestTimeWindow:

    def test_inside_and_outside_window(self):
        condition = {"kind": "time_window", "start": "09:00", "end": "17:00"}
        assert evaluate_condition(condition, build_context(at=MONDAY_10AM)) is True
        assert evaluate_condition(condition, build_context(at=datetime(2030, 1, 7, 17, 0))) is False

    def test_window_crossing_midnight(self):
        condition = {"kind": "time_window", "start": "22:00", "end": "06:00"}
        assert evaluate_condition(condition, build_context(at=datetime(2030, 1, 7, 23, 30))) is True
        assert evaluate_condition(condition, build_context(at=datetime(2030, 1, 7, 5, 59))) is True
        assert evaluate_condition(condition, build_context(at=MONDAY_10AM)) is False

    def test_timezone_shifts_wall_clock(self):
        # 10:00 UTC is 05:00 in New York in January
        condition = {"kind": "time_window", "start": "09:00", "end": "17:00", "timezone": "America/New_York"}
        assert evaluate_condition(condition, build_context(at=MONDAY_10AM)) is False

    def test_unknown_timezone_is_uninterpretable(self):
        condition = {"kind": "time_window", "start": "09:00", "end": "17:00", "timezone": "Mars/Olympus_Mons"}
        assert evaluate_condition(condition, build_context(at=MONDAY_10AM)) is None


class TestOtherKinds:

    def test_day_of_week(self):
        assert evaluate_condition({"kind": "day_of_week", "days": ["Monday"]}, build_context(at=MONDAY_10AM)) is True
        assert evaluate_condition({"kind": "day_of_week", "days": ["sunday"]}, build_context(at=MONDAY_10AM)) is False

    def test_ip_range(self):
        condition = {"kind": "ip_range", "cidrs": ["192.168.1.0/24", "10.0.0.7"]}
        assert evaluate_condition(condition, build_context(ip_address="192.168.1.20")) is True
        assert evaluate_condition(condition, build_context(ip_address="10.0.0.7")) is True
        assert evaluate_condition(condition, build_context(ip_address="172.16.0.1")) is False
        assert evaluate_condition(condition, build_context()) is False

    def test_attribute(self):
        condition = {"kind": "attribute", "key": "channel", "values": ["web", "whatsapp"]}
        assert evaluate_condition(condition, build_context(attributes={"channel": "web"})) is True
        assert evaluate_condition(condition, build_context(attributes={"channel": "sms"})) is False
        assert evaluate_condition(condition, build_context()) is False

    @pytest.mark.parametrize("condition", [
        {"kind": "moon_phase", "phase": "full"},
        {"kind": "time_window", "start": "9am"},
        {"kind": "ip_range", "cidrs": ["not-a-network"]},
        "time_window",
    ])
    def test_uninterpretable_conditions(self, condition):
        assert evaluate_condition(condition, build_context(at=MONDAY_10AM, ip_address="10.0.0.1")) is None


class TestGrantApplies:

    def test_no_conditions_always_apply(self):
        assert grant_applies(True, None, build_context())
        assert grant_applies(False, [], build_context())

    def test_all_conditions_must_hold(self):
        conditions = [
            {"kind": "day_of_week", "days": ["monday"]},
            {"kind": "time_window", "start": "12:00", "end": "13:00"},
        ]
        assert not grant_applies(True, conditions, build_context(at=MONDAY_10AM))

    def test_unknown_condition_fails_closed(self):
        conditions = [{"kind": "moon_phase"}]
        # Blocks an allow, keeps a deny in force
        assert grant_applies(True, conditions, build_context()) is False
        assert grant_applies(False, conditions, build_context()) is True


class TestScopeContext:

    def test_every_key_must_match(self):
        context = build_context(attributes={"team": "billing", "region": "eu"})
        assert scope_context_satisfied({"team": "billing"}, context)
        assert scope_context_satisfied(None, context)
        assert not scope_context_satisfied({"team": "sales"}, context)
        assert not scope_context_satisfied({"team": "billing", "site": "hq"}, context)
