from typing import List, Literal, Optional
from pydantic import Field
from experiment_engine.schemas.document import DocumentModel
from experiment_engine.schemas.stage import Stage, Question
from experiment_engine.schemas.branch import Branch

ExperimentStatus = Literal["draft", "active", "paused", "completed", "archived"]


class ExperimentDocument(DocumentModel):
    """实验文档 { id, stages, branches, startStageId }"""
    id: str
    name: str = ""
    description: str = ""
    status: ExperimentStatus = "draft"
    stages: List[Stage] = Field(default_factory=list)
    branches: List[Branch] = Field(default_factory=list)
    start_stage_id: Optional[str] = None


class SurveyDocument(DocumentModel):
    """共享问卷文档 { id, questions }"""
    id: str
    title: str = ""
    questions: List[Question] = Field(default_factory=list)


class ActivationResult(DocumentModel):
    experiment_id: str
    status: ExperimentStatus
    warnings: List[str] = Field(default_factory=list)
