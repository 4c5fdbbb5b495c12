from typing import Annotated, Any, List, Literal, Optional, Union
from pydantic import Field
from experiment_engine.schemas.document import DocumentModel

Operator = Literal["equals", "contains", "greaterThan", "lessThan"]


class ConditionBase(DocumentModel):
    target_stage_id: str


class ResponseCondition(ConditionBase):
    """根据某个阶段中某个问题的回答进行跳转"""
    type: Literal["response"] = "response"
    source_stage_id: Optional[str] = None
    question_id: Optional[str] = None
    operator: Optional[Operator] = None
    expected_response: Optional[Any] = None


class CompletionCondition(ConditionBase):
    """来源阶段必填子项完成百分比达到阈值时匹配"""
    type: Literal["completion"] = "completion"
    source_stage_id: Optional[str] = None
    threshold: float = Field(100, ge=0, le=100)


class TimeCondition(ConditionBase):
    """来源阶段停留秒数达到阈值时匹配"""
    type: Literal["time"] = "time"
    source_stage_id: Optional[str] = None
    threshold: Optional[float] = None


class RandomCondition(ConditionBase):
    type: Literal["random"] = "random"
    probability: float = Field(..., ge=0, le=100)


class AlwaysCondition(ConditionBase):
    type: Literal["always"] = "always"


Condition = Annotated[
    Union[ResponseCondition, CompletionCondition, TimeCondition, RandomCondition, AlwaysCondition],
    Field(discriminator="type"),
]


class Branch(DocumentModel):
    """阶段的出边规则集

    conditions 按作者给定的顺序求值，第一个匹配的条件胜出；
    都不匹配时跳转到 default_target_stage_id。
    """
    id: Optional[str] = None
    from_stage_id: str
    conditions: List[Condition] = Field(default_factory=list)
    default_target_stage_id: str
