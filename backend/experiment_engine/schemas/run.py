from typing import Any, Dict, List, Literal, Optional
from pydantic import Field
from experiment_engine.schemas.document import DocumentModel
from experiment_engine.schemas.progress import ProgressDocument
from experiment_engine.schemas.stage import Stage

TransitionOutcome = Literal["entered", "advanced", "completed", "stale", "rejected", "unchanged"]


class StageActionRequest(DocumentModel):
    """参与者针对某个阶段的动作（如阅读完说明后点击"下一步"）"""
    stage_id: str


class TickRequest(DocumentModel):
    seconds: int = Field(1, ge=1, le=3600)


class ScenarioRunView(DocumentModel):
    stage_id: str
    scenario_id: str
    rounds: int
    round_duration: int
    current_round: int
    time_remaining: int
    status: Literal["running", "completed"]
    suspended: bool = False
    current_prices: Dict[str, float] = Field(default_factory=dict)


class CountdownView(DocumentModel):
    stage_id: str
    duration: int
    time_remaining: int
    expired: bool = False
    suspended: bool = False


class RunView(DocumentModel):
    """参与者当前运行状态的快照，供参与者界面渲染"""
    progress: ProgressDocument
    current_stage: Optional[Stage] = None
    scenario: Optional[ScenarioRunView] = None
    countdown: Optional[CountdownView] = None
    balances: Dict[str, float] = Field(default_factory=dict)


class TransitionResult(DocumentModel):
    """一次参与者动作的结果

    outcome:
        entered: 进入了第一个阶段（或恢复了当前阶段）
        advanced: 跳转到了下一个阶段
        completed: 实验完成
        stale: 过期请求，被静默丢弃
        rejected: 请求被拒绝（如问卷校验失败），状态未改变
        unchanged: 计时推进但未触发跳转
    """
    outcome: TransitionOutcome
    view: RunView
    previous_stage_id: Optional[str] = None
    next_stage_id: Optional[str] = None
    matched_condition: Optional[int] = None
    error: Optional[Dict[str, Any]] = None
    opened_rounds: List[int] = Field(default_factory=list)
