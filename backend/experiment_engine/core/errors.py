"""
实验执行引擎的错误类型

所有错误都继承自 ExperimentEngineError，并带有稳定的 code 字符串，
便于 API 层把错误原样返回给参与者界面。

- GraphInvalid: 致命错误，实验图结构非法，拒绝激活/启动实验
- UnknownQuestion: 非致命，分支条件引用了不存在的问题，按"不匹配"处理
- TradeRejected 及其子类: 可恢复，交易被拒绝，不修改任何状态
- StaleTransition: 过期的跳转请求（参与者已不在该阶段），静默丢弃
"""
from typing import List, Optional


class ExperimentEngineError(Exception):
    code = "engine_error"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.code

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class GraphInvalid(ExperimentEngineError):
    """实验图校验失败，problems 中列出全部问题"""
    code = "graph_invalid"

    def __init__(self, problems: List[str]):
        self.problems = list(problems)
        super().__init__("; ".join(self.problems) or "invalid experiment graph")

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["problems"] = self.problems
        return data


class StageNotFound(ExperimentEngineError, LookupError):
    code = "stage_not_found"

    def __init__(self, stage_id: str):
        self.stage_id = stage_id
        super().__init__(f"Stage {stage_id!r} not found")


class ExperimentNotFound(ExperimentEngineError, LookupError):
    code = "experiment_not_found"

    def __init__(self, experiment_id: str):
        self.experiment_id = experiment_id
        super().__init__(f"Experiment {experiment_id!r} not found")


class UnknownQuestion(ExperimentEngineError):
    code = "unknown_question"

    def __init__(self, stage_id: str, question_id: str):
        self.stage_id = stage_id
        self.question_id = question_id
        super().__init__(f"Question {question_id!r} is not declared by stage {stage_id!r}")


class InvalidSurveyResponse(ExperimentEngineError):
    code = "invalid_survey_response"

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


class StaleTransition(ExperimentEngineError):
    code = "stale_transition"

    def __init__(self, requested_stage_id: Optional[str], current_stage_id: Optional[str]):
        self.requested_stage_id = requested_stage_id
        self.current_stage_id = current_stage_id
        super().__init__(
            f"Transition from {requested_stage_id!r} ignored, participant is on {current_stage_id!r}"
        )


class TradeRejected(ExperimentEngineError):
    code = "trade_rejected"


class InsufficientFunds(TradeRejected):
    code = "insufficient_funds"


class InsufficientHoldings(TradeRejected):
    code = "insufficient_holdings"


class ScenarioNotActive(TradeRejected):
    code = "scenario_not_active"


class ActionNotAllowed(ExperimentEngineError):
    """当前阶段不接受该动作，例如在问卷阶段直接点击“下一步”"""
    code = "action_not_allowed"
