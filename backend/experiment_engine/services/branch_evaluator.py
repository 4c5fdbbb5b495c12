"""
分支求值器（Branch Evaluator）

纯函数：(阶段图, 当前阶段, 参与者上下文) -> 下一个阶段ID 或 None。

求值顺序是确定的：
1. 当前阶段没有出边分支 -> 返回 None（由调用方决定完成实验或顺序推进）
2. 按作者给定的顺序逐个检查条件，第一个匹配的条件胜出
3. 所有条件都不匹配 -> 返回分支的默认目标

random 条件在一次求值中最多抽样一次，同一次跳转内的结果保持幂等。
"""
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from experiment_engine.core.errors import UnknownQuestion
from experiment_engine.schemas.branch import (
    AlwaysCondition,
    CompletionCondition,
    Condition,
    RandomCondition,
    ResponseCondition,
    TimeCondition,
)
from experiment_engine.services.stage_graph import StageGraph

logger = logging.getLogger(__name__)


@dataclass
class ParticipantContext:
    """
    一次求值所需的参与者状态

    Attributes:
        responses: { stage_id: { question_id: answer } } 各阶段最近一次提交的答案
        completion: { stage_id: 完成百分比 0-100 }
        elapsed: { stage_id: 停留秒数 }
        random_sample: 预先抽好的 [0, 100) 随机数；为空时从 rng 抽取
        rng: 随机数来源
    """
    responses: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)
    completion: Mapping[str, float] = field(default_factory=dict)
    elapsed: Mapping[str, float] = field(default_factory=dict)
    random_sample: Optional[float] = None
    rng: random.Random = field(default_factory=random.Random)


@dataclass
class BranchDecision:
    """求值结果，matched_index 为 None 表示走了默认目标或没有分支"""
    target_stage_id: Optional[str]
    matched_index: Optional[int] = None
    reason: str = ""
    random_sample: Optional[float] = None


class _RandomDraw:
    """一次求值内共享的随机样本，第一次用到时才抽取"""

    def __init__(self, context: ParticipantContext):
        self._context = context
        self.value = context.random_sample

    def get(self) -> float:
        if self.value is None:
            self.value = self._context.rng.random() * 100
        return self.value


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _equals(answer: Any, expected: Any) -> bool:
    answer_number = _to_number(answer)
    expected_number = _to_number(expected)
    if answer_number is not None and expected_number is not None:
        return answer_number == expected_number
    return str(answer).strip() == str(expected).strip()


def compare_response(answer: Any, operator: Optional[str], expected: Any) -> bool:
    """
    按操作符比较参与者的回答与期望值

    Args:
        answer: 参与者的回答，多选题为列表
        operator: equals / contains / greaterThan / lessThan，缺省为 equals
        expected: 期望值

    Returns:
        bool: 是否匹配；无法转换为数值的大小比较视为不匹配
    """
    operator = operator or "equals"
    if answer is None or expected is None:
        return False

    if operator == "equals":
        if isinstance(answer, (list, tuple)):
            return any(_equals(item, expected) for item in answer)
        return _equals(answer, expected)
    if operator == "contains":
        needle = str(expected)
        if isinstance(answer, (list, tuple)):
            return any(needle in str(item) for item in answer)
        return needle in str(answer)
    if operator in ("greaterThan", "lessThan"):
        answer_number = _to_number(answer)
        expected_number = _to_number(expected)
        if answer_number is None or expected_number is None:
            return False
        if operator == "greaterThan":
            return answer_number > expected_number
        return answer_number < expected_number
    raise ValueError(f"Unsupported operator: {operator}")


def _response_matches(graph: StageGraph, condition: ResponseCondition, context: ParticipantContext) -> bool:
    declared = {question.id for question in graph.questions_for(condition.source_stage_id)}
    if condition.question_id not in declared:
        raise UnknownQuestion(condition.source_stage_id, condition.question_id)
    stage_answers = context.responses.get(condition.source_stage_id) or {}
    if condition.question_id not in stage_answers:
        return False
    return compare_response(
        stage_answers[condition.question_id], condition.operator, condition.expected_response
    )


def condition_matches(
    graph: StageGraph,
    condition: Condition,
    context: ParticipantContext,
    draw: _RandomDraw,
) -> bool:
    if isinstance(condition, ResponseCondition):
        try:
            return _response_matches(graph, condition, context)
        except UnknownQuestion as e:
            logger.warning(f"BranchEvaluator: {e.message}, treating condition as no match")
            return False
    if isinstance(condition, CompletionCondition):
        return context.completion.get(condition.source_stage_id, 0) >= condition.threshold
    if isinstance(condition, TimeCondition):
        return context.elapsed.get(condition.source_stage_id, 0) >= condition.threshold
    if isinstance(condition, RandomCondition):
        return draw.get() < condition.probability
    if isinstance(condition, AlwaysCondition):
        return True
    raise TypeError(f"Unhandled condition type: {type(condition).__name__}")


def evaluate(graph: StageGraph, from_stage_id: str, context: ParticipantContext) -> BranchDecision:
    """
    计算从 from_stage_id 出发的下一个阶段

    Args:
        graph: 已校验的阶段图
        from_stage_id: 当前阶段ID
        context: 参与者上下文

    Returns:
        BranchDecision: target_stage_id 为 None 表示当前阶段没有出边分支
    """
    graph.stage_by_id(from_stage_id)
    branch = graph.branch_from(from_stage_id)
    if branch is None:
        return BranchDecision(target_stage_id=None, reason="no branch")

    draw = _RandomDraw(context)
    for index, condition in enumerate(branch.conditions):
        if condition_matches(graph, condition, context, draw):
            return BranchDecision(
                target_stage_id=condition.target_stage_id,
                matched_index=index,
                reason=f"condition {index} ({condition.type}) matched",
                random_sample=draw.value,
            )

    return BranchDecision(
        target_stage_id=branch.default_target_stage_id,
        reason="default target",
        random_sample=draw.value,
    )


def next_stage(graph: StageGraph, from_stage_id: str, context: ParticipantContext) -> Optional[str]:
    return evaluate(graph, from_stage_id, context).target_stage_id
