from sqlalchemy import Column, String, DateTime, JSON, Text
from datetime import datetime, UTC
from experiment_engine.db.base_class import Base

class ExperimentRecord(Base):
    """实验模型

    存储管理员编排好的实验文档（阶段、分支、起始阶段）。
    阶段和分支按 id 寻址，整体以 JSON 文档形式保存。

    Attributes:
        id: 实验ID
        name: 实验名称
        status: 'draft' | 'active' | 'paused' | 'completed' | 'archived'
        document: 实验文档 { stages, branches, startStageId }
        updated_at: 最后编辑时间
    """
    __tablename__ = "experiments"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False, default="")
    description = Column(Text, nullable=True)
    status = Column(String, nullable=False, default="draft")
    document = Column(JSON, nullable=False)
    updated_at = Column(DateTime, default=lambda: datetime.now(UTC), onupdate=lambda: datetime.now(UTC))
