import random

import pytest

from conftest import instructions_stage, survey_stage
from experiment_engine.services.branch_evaluator import (
    ParticipantContext,
    compare_response,
    evaluate,
    next_stage,
)
from experiment_engine.services.stage_graph import StageGraph


def graph_with(conditions, default="D", questions=None):
    questions = questions or [
        {"id": "q1", "type": "multipleChoice", "options": ["yes", "no"]},
        {"id": "age", "type": "text"},
        {"id": "tags", "type": "checkboxes", "options": ["a", "b", "c"]},
    ]
    return StageGraph.from_documents({
        "id": "exp",
        "stages": [
            survey_stage("A", questions, order=0),
            instructions_stage("B", order=1),
            instructions_stage("C", order=2),
            instructions_stage("D", order=3),
        ],
        "branches": [{"fromStageId": "A", "conditions": conditions, "defaultTargetStageId": default}],
    })


def response(question_id, expected, target, operator="equals"):
    return {
        "type": "response",
        "sourceStageId": "A",
        "questionId": question_id,
        "operator": operator,
        "expectedResponse": expected,
        "targetStageId": target,
    }


class TestCompareResponse:
    @pytest.mark.parametrize("answer, operator, expected, result", [
        ("yes", "equals", "yes", True),
        (" yes ", None, "yes", True),
        ("5", "equals", 5, True),
        ("5.0", "equals", "5", True),
        ("no", "equals", "yes", False),
        (["a", "b"], "equals", "b", True),
        (["a", "b"], "equals", "c", False),
        ("hello world", "contains", "world", True),
        (["alpha", "beta"], "contains", "et", True),
        ("30", "greaterThan", 18, True),
        ("10", "greaterThan", "18", False),
        ("10", "lessThan", 18, True),
        ("abc", "greaterThan", 1, False),
        (None, "equals", "yes", False),
    ])
    def test_operators(self, answer, operator, expected, result):
        assert compare_response(answer, operator, expected) is result

    def test_unknown_operator(self):
        with pytest.raises(ValueError):
            compare_response("a", "startsWith", "a")


class TestEvaluate:
    def test_yes_goes_to_c_and_no_goes_back_to_a(self):
        """测试回答 yes 跳转到 C，回答 no 回到默认目标 A"""
        graph = graph_with([response("q1", "yes", "C")], default="A")

        yes = ParticipantContext(responses={"A": {"q1": "yes"}})
        no = ParticipantContext(responses={"A": {"q1": "no"}})

        assert next_stage(graph, "A", yes) == "C"
        assert next_stage(graph, "A", no) == "A"

    def test_no_branch_returns_none(self):
        graph = graph_with([])
        decision = evaluate(graph, "B", ParticipantContext())
        assert decision.target_stage_id is None
        assert decision.matched_index is None

    def test_first_match_wins(self):
        """测试多个条件都匹配时，按作者顺序第一个胜出"""
        graph = graph_with([
            response("q1", "no", "B"),
            {"type": "always", "targetStageId": "C"},
            response("q1", "yes", "B"),
        ])
        decision = evaluate(graph, "A", ParticipantContext(responses={"A": {"q1": "yes"}}))
        assert decision.target_stage_id == "C"
        assert decision.matched_index == 1

    def test_default_when_nothing_matches(self):
        graph = graph_with([response("q1", "yes", "B")])
        decision = evaluate(graph, "A", ParticipantContext())
        assert decision.target_stage_id == "D"
        assert decision.reason == "default target"

    def test_unknown_question_is_treated_as_no_match(self):
        graph = graph_with([response("ghost", "yes", "B"), {"type": "always", "targetStageId": "C"}])
        context = ParticipantContext(responses={"A": {"ghost": "yes"}})
        assert next_stage(graph, "A", context) == "C"

    def test_numeric_comparison(self):
        graph = graph_with([response("age", 18, "B", operator="greaterThan")])
        assert next_stage(graph, "A", ParticipantContext(responses={"A": {"age": "30"}})) == "B"
        assert next_stage(graph, "A", ParticipantContext(responses={"A": {"age": "ten"}})) == "D"

    def test_completion_and_time_conditions(self):
        graph = graph_with([
            {"type": "completion", "sourceStageId": "A", "threshold": 100, "targetStageId": "B"},
            {"type": "time", "sourceStageId": "A", "threshold": 60, "targetStageId": "C"},
        ])
        assert next_stage(graph, "A", ParticipantContext(completion={"A": 100})) == "B"
        assert next_stage(graph, "A", ParticipantContext(completion={"A": 50}, elapsed={"A": 61})) == "C"
        assert next_stage(graph, "A", ParticipantContext(completion={"A": 50}, elapsed={"A": 10})) == "D"

    def test_random_condition_uses_given_sample(self):
        graph = graph_with([{"type": "random", "probability": 30, "targetStageId": "B"}])
        assert next_stage(graph, "A", ParticipantContext(random_sample=29.9)) == "B"
        assert next_stage(graph, "A", ParticipantContext(random_sample=30)) == "D"

    def test_random_sample_drawn_once_per_evaluation(self):
        """测试一次求值中的多个 random 条件共享同一个随机样本"""
        graph = graph_with([
            {"type": "random", "probability": 50, "targetStageId": "B"},
            {"type": "random", "probability": 100, "targetStageId": "C"},
        ])
        context = ParticipantContext(rng=random.Random(7))
        decision = evaluate(graph, "A", context)
        sample = random.Random(7).random() * 100
        assert decision.random_sample == pytest.approx(sample)
        assert decision.target_stage_id == ("B" if sample < 50 else "C")

    def test_random_not_drawn_when_not_needed(self):
        graph = graph_with([{"type": "always", "targetStageId": "B"},
                            {"type": "random", "probability": 50, "targetStageId": "C"}])
        decision = evaluate(graph, "A", ParticipantContext())
        assert decision.random_sample is None

    def test_deterministic_for_same_inputs(self):
        """测试相同的图和上下文（含随机样本）总是得到相同结果"""
        graph = graph_with([
            response("tags", "b", "B"),
            {"type": "random", "probability": 40, "targetStageId": "C"},
        ])
        context = ParticipantContext(responses={"A": {"tags": ["a", "c"]}}, random_sample=12.5)
        results = {next_stage(graph, "A", context) for _ in range(20)}
        assert results == {"C"}

    def test_unknown_from_stage(self):
        graph = graph_with([])
        with pytest.raises(LookupError):
            evaluate(graph, "Z", ParticipantContext())
