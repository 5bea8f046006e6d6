"""
Tests for payload decoding and schema validation.
"""

import pytest

from hld_bench.entities import HLDOutput, Problem
from hld_bench.schema_manager import (
    PayloadDecodeError,
    SchemaManager,
    ValidationFailure,
    ValidationIssue,
    ValidationSuccess,
)


@pytest.fixture
def manager():
    return SchemaManager()


class TestLoadFaultTolerantJson:

    def test_plain_json(self, manager):
        assert manager.load_fault_tolerant_json('{"a": 1}') == {"a": 1}

    def test_comments_and_fences(self, manager):
        text = '```json\n{\n  // a comment\n  "a": 1\n}\n```'
        assert manager.load_fault_tolerant_json(text) == {"a": 1}

    def test_trailing_comma_is_repaired(self, manager):
        assert manager.load_fault_tolerant_json('{"a": 1, "b": [1, 2,],}') == {"a": 1, "b": [1, 2]}

    def test_empty_object_is_a_valid_payload(self, manager):
        assert manager.load_fault_tolerant_json("{}") == {}

    def test_prose_is_rejected(self, manager):
        with pytest.raises(PayloadDecodeError):
            manager.load_fault_tolerant_json("definitely not json")

    def test_empty_input_is_rejected(self, manager):
        with pytest.raises(PayloadDecodeError):
            manager.load_fault_tolerant_json("")


class TestValidate:

    def test_success_returns_model(self, manager, valid_payload):
        result = manager.validate(valid_payload, HLDOutput)
        assert isinstance(result, ValidationSuccess)
        assert result.ok
        assert result.data.requirements.non_functional == valid_payload["requirements"]["nonFunctional"]
        assert result.data.data_storage[1].type == "cache"

    def test_model_instance_is_revalidated(self, manager, valid_payload):
        model = HLDOutput.model_validate(valid_payload)
        result = manager.validate(model, HLDOutput)
        assert isinstance(result, ValidationSuccess)
        assert result.data == model

    def test_failure_lists_every_issue_with_path(self, manager, valid_payload):
        del valid_payload["tradeoffs"]
        valid_payload["dataStorage"][0]["type"] = "graph"
        result = manager.validate(valid_payload, HLDOutput)
        assert isinstance(result, ValidationFailure)
        assert not result.ok
        paths = {issue.path for issue in result.issues}
        assert ("tradeoffs",) in paths
        assert ("dataStorage", 0, "type") in paths

    def test_numeric_bounds_enforced(self, manager):
        problem = {
            "version": 1,
            "key": "k",
            "title": "t",
            "description": "d",
            "scoringParameters": [{"name": "n", "description": "d", "weight": 101}],
        }
        result = manager.validate(problem, Problem)
        assert isinstance(result, ValidationFailure)
        assert result.issues[0].path == ("scoringParameters", 0, "weight")

    def test_non_object_candidate(self, manager):
        result = manager.validate([1, 2], HLDOutput)
        assert isinstance(result, ValidationFailure)


class TestParseCandidate:

    def test_fenced_valid_payload(self, manager, valid_json):
        payload, result = manager.parse_candidate(f"```json\n{valid_json}\n```", HLDOutput)
        assert payload.text == valid_json
        assert isinstance(result, ValidationSuccess)

    def test_decode_failure_is_a_root_issue(self, manager):
        payload, result = manager.parse_candidate("definitely not json", HLDOutput)
        assert payload.value is None
        assert payload.decode_error
        assert isinstance(result, ValidationFailure)
        assert result.issues == [ValidationIssue(path=(), message="Response is not valid JSON")]


class TestFeedbackHelpers:

    def test_required_top_level_keys_use_wire_names(self, manager):
        assert manager.required_top_level_keys(HLDOutput) == [
            "title",
            "overview",
            "requirements",
            "components",
            "dataFlow",
            "architectureDiagram",
            "dataStorage",
            "apiDesign",
            "scalabilityStrategy",
            "tradeoffs",
        ]

    def test_format_issues(self, manager):
        issues = [
            ValidationIssue(path=("components", 0, "name"), message="Field required"),
            ValidationIssue(path=(), message="Response is not valid JSON"),
        ]
        assert manager.format_issues(issues) == (
            "- components.0.name: Field required\n"
            "- $: Response is not valid JSON"
        )
