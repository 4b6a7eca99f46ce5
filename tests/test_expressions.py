"""Tests for the sandboxed expression evaluator."""

import pytest

from stepflow.engine import ExpressionError, ExpressionEvaluator, expressions
from stepflow.engine.expressions import check_template, expression_source, is_expression


@pytest.fixture
def evaluator() -> ExpressionEvaluator:
    return ExpressionEvaluator()


class TestExpressionSyntax:
    def test_whole_string_expression(self) -> None:
        assert is_expression("{{ states.input.jobId }}")
        assert expression_source("  {{ states.input.jobId }} ") == "states.input.jobId"

    def test_partial_interpolation_is_not_an_expression(self) -> None:
        assert not is_expression("dmq/{{ states.input.jobId }}")
        assert not is_expression(42)

    def test_check_template_rejects_partial_interpolation(self) -> None:
        errors = check_template({"s3Key": "dmq/{{ states.input.jobId }}/request"}, "Arguments")
        assert len(errors) == 1
        assert "Arguments.s3Key" in errors[0]
        assert "whole string" in errors[0]

    def test_check_template_reports_syntax_errors(self) -> None:
        errors = check_template(["{{ states.input. }}", "{{ }}"], "Items")
        assert len(errors) == 2
        assert "Items[0]" in errors[0]
        assert "empty expression" in errors[1]

    def test_check_template_accepts_valid_templates(self) -> None:
        template = {
            "jobId": "{{ states.input.jobId }}",
            "direction": "driveToS3",
            "resolution": [1080, "{{ states.input.height }}"],
        }
        assert check_template(template) == []


class TestEvaluate:
    def test_literals_pass_through(self, evaluator: ExpressionEvaluator) -> None:
        template = {"direction": "s3ToDrive", "count": 3, "flags": [True, None]}
        assert evaluator.evaluate(template, {}) == template

    def test_field_projection(self, evaluator: ExpressionEvaluator) -> None:
        data = {"job": {"id": "abc", "sizes": [1080, 1350]}}
        assert evaluator.evaluate("{{ states.input.job.id }}", data) == "abc"
        assert evaluator.evaluate("{{ states.input.job.sizes[1] }}", data) == 1350

    def test_keys_shadow_dict_methods(self, evaluator: ExpressionEvaluator) -> None:
        assert evaluator.evaluate("{{ states.input.items }}", {"items": [1, 2]}) == [1, 2]

    def test_scope_variables(self, evaluator: ExpressionEvaluator) -> None:
        scope = {"suffix": "square", "input": {"jobId": "j1"}}
        value = evaluator.evaluate(
            "{{ 'dmq/' ~ input.jobId ~ '/result-' ~ suffix ~ '.png' }}", {}, scope
        )
        assert value == "dmq/j1/result-square.png"

    def test_nested_templates_resolve_member_by_member(
        self, evaluator: ExpressionEvaluator
    ) -> None:
        template = {
            "payload": {"jobId": "{{ states.input.jobId }}", "kind": "photo"},
            "keys": ["{{ states.input.jobId ~ '/a' }}", "static"],
        }
        assert evaluator.evaluate(template, {"jobId": "j2"}) == {
            "payload": {"jobId": "j2", "kind": "photo"},
            "keys": ["j2/a", "static"],
        }

    def test_result_and_error_output_bindings(self, evaluator: ExpressionEvaluator) -> None:
        assert evaluator.evaluate("{{ states.result.Payload }}", {}, result={"Payload": 7}) == 7
        error_output = {"Error": "ThrottlingError", "Cause": "slow down"}
        assert (
            evaluator.evaluate("{{ states.errorOutput.Error }}", {}, error_output=error_output)
            == "ThrottlingError"
        )

    def test_context_binding(self, evaluator: ExpressionEvaluator) -> None:
        context = {"Execution": {"Id": "exec_1", "Input": {}}, "State": {"Name": "Copy in"}}
        value = evaluator.evaluate("{{ states.context.State.Name }}", {}, context=context)
        assert value == "Copy in"

    def test_comparisons(self, evaluator: ExpressionEvaluator) -> None:
        data = {"count": 3, "name": "b"}
        assert evaluator.evaluate("{{ states.input.count >= 3 }}", data) is True
        assert evaluator.evaluate("{{ states.input.name < 'c' }}", data) is True
        assert evaluator.evaluate("{{ states.input.name == 'a' }}", data) is False

    def test_lookup_table(self, evaluator: ExpressionEvaluator) -> None:
        data = {"fontMap": {"Open Sans": "fonts/open_sans_bold.ttf"}}
        scope = {"font": "Open Sans"}
        value = evaluator.evaluate("{{ lookup(states.input.fontMap, font) }}", data, scope)
        assert value == "fonts/open_sans_bold.ttf"
        missing = "{{ exists(lookup(states.input.fontMap, 'Comic Sans')) }}"
        assert evaluator.evaluate(missing, data) is False

    def test_merge_and_string_helpers(self, evaluator: ExpressionEvaluator) -> None:
        data = {"a": {"x": 1}, "flag": True}
        assert evaluator.evaluate("{{ merge(states.input.a, {'y': 2}) }}", data) == {
            "x": 1,
            "y": 2,
        }
        assert evaluator.evaluate("{{ string(states.input.flag) }}", data) == "true"
        assert evaluator.evaluate("{{ number('12') + 1 }}", data) == 13

    def test_evaluation_does_not_mutate_input(self, evaluator: ExpressionEvaluator) -> None:
        data = {"a": {"x": 1}}
        evaluator.evaluate("{{ merge(states.input.a, {'x': 2}) }}", data)
        assert data == {"a": {"x": 1}}

    def test_is_deterministic(self, evaluator: ExpressionEvaluator) -> None:
        data = {"jobId": "abc"}
        first = evaluator.evaluate({"k": "{{ states.input.jobId ~ '-1' }}"}, data)
        second = evaluator.evaluate({"k": "{{ states.input.jobId ~ '-1' }}"}, data)
        assert first == second == {"k": "abc-1"}

    def test_compile_cache_is_bounded(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(expressions, "COMPILE_CACHE_SIZE", 8)
        small = ExpressionEvaluator()
        for n in range(20):
            assert small.evaluate(f"{{{{ states.input.value + {n} }}}}", {"value": 1}) == n + 1
        info = small._compile.cache_info()
        assert info.maxsize == 8
        assert info.currsize == 8

        assert small.compile("states.input.x") is small.compile("states.input.x")


class TestUndefined:
    def test_exists_checks(self, evaluator: ExpressionEvaluator) -> None:
        data = {"font": "Open Sans"}
        assert evaluator.evaluate("{{ exists(states.input.font) }}", data) is True
        assert evaluator.evaluate("{{ exists(states.input.missing) }}", data) is False
        assert evaluator.evaluate("{{ exists(states.input.missing.deeper) }}", data) is False

    def test_conditional_on_missing_field(self, evaluator: ExpressionEvaluator) -> None:
        template = "{{ states.input.font if exists(states.input.font) else none }}"
        assert evaluator.evaluate(template, {}) is None

    def test_undefined_member_is_dropped_from_objects(
        self, evaluator: ExpressionEvaluator
    ) -> None:
        template = {"jobId": "{{ states.input.jobId }}", "font": "{{ states.input.font }}"}
        assert evaluator.evaluate(template, {"jobId": "j"}) == {"jobId": "j"}

    def test_undefined_top_level_value_fails(self, evaluator: ExpressionEvaluator) -> None:
        with pytest.raises(ExpressionError, match="undefined"):
            evaluator.evaluate("{{ states.input.missing }}", {})

    def test_concatenation_with_undefined_fails(self, evaluator: ExpressionEvaluator) -> None:
        with pytest.raises(ExpressionError) as exc_info:
            evaluator.evaluate("{{ 'dmq/' ~ states.input.jobId }}", {})
        assert exc_info.value.expression == "'dmq/' ~ states.input.jobId"

    def test_arithmetic_with_undefined_fails(self, evaluator: ExpressionEvaluator) -> None:
        with pytest.raises(ExpressionError):
            evaluator.evaluate("{{ states.input.count + 1 }}", {})

    def test_undefined_is_unequal_to_everything(self, evaluator: ExpressionEvaluator) -> None:
        data = {"valid": None}
        assert evaluator.evaluate("{{ states.input.missing == 'googleSpreadsheet' }}", {}) is False
        assert evaluator.evaluate("{{ true == states.input.missing }}", {}) is False
        assert evaluator.evaluate("{{ states.input.missing == states.input.other }}", {}) is False
        assert evaluator.evaluate("{{ states.input.missing != true }}", {}) is True
        assert evaluator.evaluate("{{ states.input.missing == states.input.valid }}", data) is False

    def test_ordering_undefined_fails(self, evaluator: ExpressionEvaluator) -> None:
        with pytest.raises(ExpressionError):
            evaluator.evaluate("{{ states.input.size > 10 }}", {})

    def test_truth_test_on_undefined_fails(self, evaluator: ExpressionEvaluator) -> None:
        with pytest.raises(ExpressionError):
            evaluator.evaluate_condition("{{ states.input.valid }}", {})

    def test_undefined_in_built_object_is_dropped(self, evaluator: ExpressionEvaluator) -> None:
        result = evaluator.evaluate(
            "{{ {'a': states.input.missing, 'b': {'c': states.input.gone, 'd': 1}} }}", {}
        )
        assert result == {"b": {"d": 1}}

        member = evaluator.evaluate({"out": "{{ {'a': states.input.missing, 'b': 2} }}"}, {})
        assert member == {"out": {"b": 2}}

    def test_undefined_in_built_list_fails(self, evaluator: ExpressionEvaluator) -> None:
        with pytest.raises(ExpressionError, match="list element 1"):
            evaluator.evaluate("{{ [states.input.a, states.input.missing] }}", {"a": 1})
        with pytest.raises(ExpressionError, match="list element 0"):
            evaluator.evaluate({"items": "{{ [{'x': 1}, [states.input.missing]] }}"}, {})

    def test_merge_skips_undefined_members(self, evaluator: ExpressionEvaluator) -> None:
        data = {"jobId": "j1", "valid": False}
        result = evaluator.evaluate(
            "{{ merge(states.input, {'valid': states.result.valid}) }}", data, result={}
        )
        assert result == {"jobId": "j1", "valid": False}


class TestFailures:
    def test_incompatible_comparison(self, evaluator: ExpressionEvaluator) -> None:
        with pytest.raises(ExpressionError, match="TypeError"):
            evaluator.evaluate("{{ states.input.name < 3 }}", {"name": "b"})

    def test_sandbox_blocks_internals(self, evaluator: ExpressionEvaluator) -> None:
        with pytest.raises(ExpressionError):
            evaluator.evaluate("{{ states.input.name.__class__.__mro__ }}", {"name": "b"})

    def test_sandbox_blocks_mutation(self, evaluator: ExpressionEvaluator) -> None:
        data = {"values": [1, 2]}
        with pytest.raises(ExpressionError):
            evaluator.evaluate("{{ states.input['values'].append(3) }}", data)
        assert data == {"values": [1, 2]}

    def test_condition_truthiness(self, evaluator: ExpressionEvaluator) -> None:
        assert evaluator.evaluate_condition("{{ states.input.valid }}", {"valid": True})
        assert not evaluator.evaluate_condition("{{ states.input.items }}", {"items": []})
