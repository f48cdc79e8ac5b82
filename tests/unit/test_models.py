"""Tests for rollout policy models and payload validation."""

import pytest
from pydantic import ValidationError

from rollout_control.core.rollout.models import (
    ExposureRecord,
    FeatureRule,
    Policy,
    ResolutionReason,
    RolloutTarget,
)


def _payload(**overrides):
    payload = {
        "version": 3,
        "features": [
            {"key": "beta", "rolloutPercent": 25, "overrides": {"vip": True}},
            {"key": "search", "defaultValue": True, "rolloutPercent": 100, "killSwitch": False},
        ],
    }
    payload.update(overrides)
    return payload


class TestFeatureRule:
    """Tests for FeatureRule."""

    def test_defaults(self):
        rule = FeatureRule()
        assert rule.default_value is False
        assert rule.rollout_percent == 0
        assert dict(rule.overrides) == {}
        assert rule.kill_switch is False

    @pytest.mark.parametrize("percent", [-1, 101, 150])
    def test_percent_out_of_range(self, percent):
        with pytest.raises(ValueError):
            FeatureRule(rollout_percent=percent)

    def test_percent_must_be_int(self):
        with pytest.raises(TypeError):
            FeatureRule(rollout_percent=True)
        with pytest.raises(TypeError):
            FeatureRule(rollout_percent=12.5)

    def test_rule_is_immutable(self):
        rule = FeatureRule(overrides={"a": True})
        with pytest.raises(Exception):
            rule.rollout_percent = 50
        with pytest.raises(TypeError):
            rule.overrides["b"] = True

    def test_overrides_are_copied(self):
        source = {"a": True}
        rule = FeatureRule(overrides=source)
        source["b"] = True
        assert "b" not in rule.overrides

    def test_with_helpers_return_new_rules(self):
        rule = FeatureRule(rollout_percent=10)
        assert rule.with_percent(20).rollout_percent == 20
        assert rule.with_kill_switch(True).kill_switch is True
        assert rule.rollout_percent == 10
        assert rule.kill_switch is False


class TestPolicy:
    """Tests for Policy snapshots."""

    def test_with_rule_bumps_version(self):
        policy = Policy(version=4, features={"beta": FeatureRule()})
        updated = policy.with_rule("beta", FeatureRule(rollout_percent=10))
        assert updated.version == 5
        assert updated.get("beta").rollout_percent == 10
        assert policy.get("beta").rollout_percent == 0

    def test_with_rule_explicit_version(self):
        policy = Policy(version=4)
        assert policy.with_rule("new", FeatureRule(), version=9).version == 9

    def test_negative_version_rejected(self):
        with pytest.raises(ValueError):
            Policy(version=-1)

    def test_contains_and_iter(self):
        policy = Policy(version=1, features={"a": FeatureRule(), "b": FeatureRule()})
        assert "a" in policy
        assert "c" not in policy
        assert set(policy) == {"a", "b"}

    def test_from_payload(self):
        policy = Policy.from_payload(_payload())
        assert policy.version == 3
        assert policy.get("beta").rollout_percent == 25
        assert policy.get("beta").overrides["vip"] is True
        assert policy.get("search").default_value is True

    def test_payload_round_trip(self):
        policy = Policy.from_payload(_payload())
        assert Policy.from_payload(policy.to_payload()) == policy


class TestPayloadValidation:
    """Malformed payloads are rejected as a whole."""

    def test_percent_out_of_range(self):
        bad = _payload(features=[{"key": "beta", "rolloutPercent": 150}])
        with pytest.raises(ValidationError):
            Policy.from_payload(bad)

    def test_duplicate_keys(self):
        bad = _payload(
            features=[
                {"key": "beta", "rolloutPercent": 10},
                {"key": "beta", "rolloutPercent": 20},
            ]
        )
        with pytest.raises(ValidationError, match="duplicate feature key"):
            Policy.from_payload(bad)

    def test_unknown_field(self):
        bad = _payload(features=[{"key": "beta", "rolloutPercent": 10, "rollout": 5}])
        with pytest.raises(ValidationError):
            Policy.from_payload(bad)

    def test_missing_percent(self):
        with pytest.raises(ValidationError):
            Policy.from_payload(_payload(features=[{"key": "beta"}]))

    def test_string_percent_not_coerced(self):
        with pytest.raises(ValidationError):
            Policy.from_payload(_payload(features=[{"key": "beta", "rolloutPercent": "10"}]))

    def test_negative_version(self):
        with pytest.raises(ValidationError):
            Policy.from_payload(_payload(version=-1))

    def test_not_a_mapping(self):
        with pytest.raises(ValidationError):
            Policy.from_payload(["version", 1])

    def test_validation_error_is_value_error(self):
        with pytest.raises(ValueError):
            Policy.from_payload({"features": []})


class TestRolloutTarget:
    """Tests for RolloutTarget stepping."""

    def test_steps_up_without_overshoot(self):
        target = RolloutTarget(feature_key="beta", desired_percent=25, step_size=10)
        assert target.next_percent(0) == 10
        assert target.next_percent(20) == 25
        assert target.next_percent(25) == 25

    def test_steps_down(self):
        target = RolloutTarget(feature_key="beta", desired_percent=5, step_size=10)
        assert target.next_percent(30) == 20
        assert target.next_percent(10) == 5

    def test_invalid_target(self):
        with pytest.raises(ValueError):
            RolloutTarget(feature_key="beta", desired_percent=120)
        with pytest.raises(ValueError):
            RolloutTarget(feature_key="beta", step_size=0)


class TestExposureRecord:
    """Tests for ExposureRecord."""

    def test_policy_miss(self):
        record = ExposureRecord(
            identity="u1",
            feature_key="gone",
            decision=False,
            policy_version=2,
            reason=ResolutionReason.FALLBACK,
        )
        assert record.policy_miss is True
        data = record.to_dict()
        assert data["reason"] == "fallback"
        assert data["policy_miss"] is True

    def test_rule_hit_is_not_a_miss(self):
        for reason in (ResolutionReason.ROLLOUT, ResolutionReason.KILL_SWITCH, ResolutionReason.ERROR):
            assert reason.policy_miss is False
