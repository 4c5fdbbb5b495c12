from sqlalchemy import Column, Integer, String, DateTime, JSON, UniqueConstraint
from datetime import datetime, UTC
from experiment_engine.db.base_class import Base

class SurveyResponse(Base):
    """问卷作答模型

    每个 (实验, 阶段, 参与者, 尝试次数) 唯一一条，同一次尝试内重复提交时覆盖答案。
    重置进度后新的尝试另起记录，旧尝试的答案保留且不参与新尝试的分支求值。

    Attributes:
        responses: { question_id: answer }
        submitted_at: 提交时间
    """
    __tablename__ = "survey_responses"
    __table_args__ = (
        UniqueConstraint("experiment_id", "stage_id", "user_id", "attempt", name="uq_survey_response"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    experiment_id = Column(String, index=True, nullable=False)
    stage_id = Column(String, nullable=False)
    user_id = Column(String, index=True, nullable=False)
    attempt = Column(Integer, nullable=False, default=1)
    responses = Column(JSON, nullable=False)
    submitted_at = Column(DateTime, default=lambda: datetime.now(UTC))
