import json
import logging
import sys

import pytest
from pydantic import ValidationError

from fleet.config import Settings
from fleet.controller import build_probe
from fleet.executor import RetryPolicy
from fleet.health import CommandProbe, StaticProbe
from fleet.logging_config import JSONFormatter
from fleet.rollout import RolloutConfig


class TestSettings:
    def test_defaults(self):
        s = Settings()
        assert s.RAMP_STEPS == [10, 30, 60, 100]
        assert s.MIN_HEALTHY_FRACTION == 1.0
        assert s.COMPUTE_BACKEND == "memory"

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("FLEET_MAX_CAPACITY", "9")
        monkeypatch.setenv("FLEET_RAMP_STEPS", "[25, 50, 100]")
        s = Settings()
        assert s.MAX_CAPACITY == 9
        assert RolloutConfig.from_settings(s).steps == (25, 50, 100)

    @pytest.mark.parametrize("steps", [[], [10, 10, 100], [30, 10, 100], [10, 50], [0, 100]])
    def test_invalid_ramp_steps(self, steps):
        with pytest.raises(ValidationError):
            Settings(RAMP_STEPS=steps)

    @pytest.mark.parametrize(
        "overrides",
        [
            {"MIN_HEALTHY_FRACTION": 0},
            {"MIN_HEALTHY_FRACTION": 1.5},
            {"MIN_CAPACITY": 0},
            {"MIN_CAPACITY": 5, "MAX_CAPACITY": 3},
            {"SCALE_IN_THRESHOLD": 80, "SCALE_OUT_THRESHOLD": 70},
        ],
    )
    def test_invalid_bounds(self, overrides):
        with pytest.raises(ValidationError):
            Settings(**overrides)

    def test_retry_policy_from_settings(self):
        policy = RetryPolicy.from_settings(Settings(PROVIDER_RETRY_ATTEMPTS=2, PROVIDER_RETRY_BASE_DELAY=1))
        assert policy.attempts == 2
        assert policy.backoff(2) == 2

    def test_command_health_check_from_settings(self):
        settings = Settings(
            COMPUTE_BACKEND="docker", PROBE_KIND="command", HEALTH_COMMAND="nc -z {address}"
        )
        check = build_probe(settings)
        assert isinstance(check, CommandProbe)
        assert check.command == "nc -z {address}"

    def test_memory_backend_forces_static_checks(self):
        assert isinstance(build_probe(Settings(PROBE_KIND="command")), StaticProbe)


class TestJSONFormatter:
    def _record(self, **extra):
        record = logging.LogRecord("fleet.rollout", logging.INFO, __file__, 1, "step applied", None, None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_structured_fields(self):
        entry = json.loads(JSONFormatter().format(
            self._record(event_type="rollout_step", plan_id="p1", weight=30, unrelated="x")
        ))
        assert entry["event"] == "step applied"
        assert entry["level"] == "INFO"
        assert entry["plan_id"] == "p1"
        assert entry["weight"] == 30
        assert "unrelated" not in entry
        assert entry["timestamp"].endswith("Z")

    def test_exception_is_included(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = self._record()
            record.exc_info = sys.exc_info()
        entry = json.loads(JSONFormatter().format(record))
        assert "RuntimeError: boom" in entry["exception"]
