from datetime import datetime
from typing import Dict, List, Literal, Optional
from pydantic import Field
from experiment_engine.schemas.document import DocumentModel

ProgressStatus = Literal["not_started", "in_progress", "completed"]


class ProgressDocument(DocumentModel):
    """参与者进度文档

    Attributes:
        status: 'not_started' | 'in_progress' | 'completed'
        current_stage_id: 当前阶段，未开始时为空
        completed_stages: 已完成阶段ID列表
        attempt: 第几次尝试（重置后递增）
        stage_visits: 每个阶段的进入次数
        stage_elapsed: 每个阶段最近一次已结束访问的停留秒数
    """
    user_id: str
    experiment_id: str
    status: ProgressStatus = "not_started"
    current_stage_id: Optional[str] = None
    completed_stages: List[str] = Field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None
    attempt: int = 1
    stage_visits: Dict[str, int] = Field(default_factory=dict)
    stage_elapsed: Dict[str, float] = Field(default_factory=dict)
