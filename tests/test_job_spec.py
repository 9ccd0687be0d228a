"""Tests for job spec parsing and validation."""

import json

import pytest

from code_agent_controller.core.job_spec import (
    JobSpec,
    merge_env,
    parse_job_spec,
    parse_job_spec_json,
    validate_env_payload,
)
from code_agent_controller.errors import JobSpecError


class TestParseJobSpec:
    """Tests for parse_job_spec and parse_job_spec_json."""

    def test_full_spec(self):
        spec = parse_job_spec(
            {
                "runtime": {"node": " 20.11.1 ", "pnpm": "8.15.4"},
                "env": {"NODE_ENV": "test"},
                "setupCommands": ["pnpm install", " pnpm build "],
            }
        )

        assert spec.runtime.node == "20.11.1"
        assert spec.runtime.pnpm == "8.15.4"
        assert spec.env == {"NODE_ENV": "test"}
        assert spec.setup_commands == ["pnpm install", "pnpm build"]

    def test_json_round_trip(self):
        """Serialized specs parse back to an equal spec."""
        spec = parse_job_spec(
            {"runtime": {"node": "22.1.0"}, "env": {"A": "1"}, "setupCommands": ["make"]}
        )

        assert parse_job_spec_json(spec.to_json()) == spec
        assert json.loads(spec.to_json()) == {
            "runtime": {"node": "22.1.0"},
            "env": {"A": "1"},
            "setupCommands": ["make"],
        }

    def test_optional_fields_normalized(self):
        spec = parse_job_spec({"runtime": {"node": "22", "pnpm": "  "}, "setupCommands": []})

        assert spec.runtime.pnpm is None
        assert spec.setup_commands is None
        assert spec.to_dict() == {"runtime": {"node": "22"}}

    def test_accepts_model_instance(self):
        spec = JobSpec.model_validate({"runtime": {"node": "22"}})

        assert parse_job_spec(spec) == spec

    @pytest.mark.parametrize(
        "payload",
        [
            {},
            {"runtime": {}},
            {"runtime": {"node": "   "}},
            {"runtime": {"node": 22}},
            {"runtime": {"node": "22"}, "env": {"1BAD": "x"}},
            {"runtime": {"node": "22"}, "env": {"GOOD": 1}},
            {"runtime": {"node": "22"}, "setupCommands": ["ok", " "]},
            "not an object",
            None,
        ],
    )
    def test_invalid_payloads(self, payload):
        with pytest.raises(JobSpecError):
            parse_job_spec(payload)

    def test_missing_node_message(self):
        with pytest.raises(JobSpecError, match="runtime.node"):
            parse_job_spec({"runtime": {"pnpm": "9"}})

    def test_invalid_json(self):
        with pytest.raises(JobSpecError, match="Invalid JSON"):
            parse_job_spec_json("{runtime:")

    def test_error_is_value_error(self):
        with pytest.raises(ValueError):
            parse_job_spec({})


class TestEnvHelpers:
    """Tests for merge_env and validate_env_payload."""

    def test_merge_env_overlay_wins(self):
        assert merge_env({"A": "1", "B": "2"}, {"B": "3"}) == {"A": "1", "B": "3"}
        assert merge_env(None, {"A": "1"}) == {"A": "1"}
        assert merge_env(None, None) is None

    def test_validate_env_payload(self):
        validate_env_payload(None)
        validate_env_payload({"API_KEY": "secret", "_X": ""})

        with pytest.raises(JobSpecError, match="key"):
            validate_env_payload({"BAD-KEY": "x"})
        with pytest.raises(JobSpecError, match="value"):
            validate_env_payload({"NUM": 3})
