from sqlalchemy import Column, Integer, String, DateTime, JSON, UniqueConstraint
from datetime import datetime, UTC
from experiment_engine.db.base_class import Base

class ParticipantProgress(Base):
    """参与者进度模型

    每个 (参与者, 实验, 尝试次数) 一条记录。记录从不删除，
    实验重置时旧记录被标记为 superseded，并新建下一次尝试。

    Attributes:
        user_id: 参与者ID
        experiment_id: 实验ID
        attempt: 第几次尝试，从1开始
        status: 'not_started' | 'in_progress' | 'completed'
        current_stage_id: 当前阶段ID
        completed_stages: 已完成阶段ID列表（保持完成顺序）
        stage_visits: { stage_id: 进入次数 }
        stage_elapsed: { stage_id: 最近一次已结束访问的停留秒数 }
        current_stage_entered_at: 进入当前阶段的时间
        superseded_at: 被重置取代的时间，当前有效记录为空
        run_state: 当前阶段计时器状态的持久副本，Redis 中的状态丢失时据此恢复
    """
    __tablename__ = "participant_progress"
    __table_args__ = (
        UniqueConstraint("user_id", "experiment_id", "attempt", name="uq_progress_attempt"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, index=True, nullable=False)
    experiment_id = Column(String, index=True, nullable=False)
    attempt = Column(Integer, nullable=False, default=1)
    status = Column(String, nullable=False, default="not_started", index=True)
    current_stage_id = Column(String, nullable=True)
    completed_stages = Column(JSON, nullable=False, default=list)
    stage_visits = Column(JSON, nullable=False, default=dict)
    stage_elapsed = Column(JSON, nullable=False, default=dict)
    current_stage_entered_at = Column(DateTime, nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    last_activity_at = Column(DateTime, default=lambda: datetime.now(UTC), nullable=False)
    superseded_at = Column(DateTime, nullable=True)
    run_state = Column(JSON, nullable=True)
