from typing import Annotated, List, Literal, Optional, Union
from pydantic import Field
from experiment_engine.schemas.document import DocumentModel

QuestionType = Literal["text", "textarea", "multipleChoice", "checkboxes", "scale", "rating"]


class Question(DocumentModel):
    """问卷问题

    Attributes:
        id: 问题ID，在所属问卷内唯一
        type: 问题类型
        options: 选择题/多选题的选项
        min_value / max_value: 量表题的取值范围
        max_rating: 评分题的最高分
    """
    id: str
    text: str = ""
    type: QuestionType
    required: bool = True
    options: List[str] = Field(default_factory=list)
    min_value: float = 1
    max_value: float = 10
    max_rating: int = 5
    order: int = 0


class StageBase(DocumentModel):
    """所有阶段类型的公共字段

    order 只用于管理端展示排序，不决定执行路径。
    duration_seconds 为 0 表示不计时、不自动跳转。
    """
    id: str
    title: str = ""
    description: str = ""
    duration_seconds: int = Field(0, ge=0)
    required: bool = True
    order: int = Field(0, ge=0)
    terminal: bool = False


class InstructionsStage(StageBase):
    type: Literal["instructions"] = "instructions"
    content: str = ""
    format: Literal["text", "markdown", "html"] = "markdown"


class ScenarioStage(StageBase):
    type: Literal["scenario"] = "scenario"
    scenario_id: str


class SurveyStage(StageBase):
    type: Literal["survey"] = "survey"
    survey_id: Optional[str] = None
    questions: List[Question] = Field(default_factory=list)


class BreakStage(StageBase):
    type: Literal["break"] = "break"
    message: str = ""


Stage = Annotated[
    Union[InstructionsStage, ScenarioStage, SurveyStage, BreakStage],
    Field(discriminator="type"),
]
