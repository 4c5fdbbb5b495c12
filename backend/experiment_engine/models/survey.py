from sqlalchemy import Column, String, JSON
from experiment_engine.db.base_class import Base

class SurveyRecord(Base):
    """共享问卷模型

    问卷阶段可以通过 surveyId 引用这里的问卷，而不是内联问题列表。

    Attributes:
        id: 问卷ID
        title: 问卷标题
        questions: 问题列表（JSON）
    """
    __tablename__ = "surveys"

    id = Column(String, primary_key=True)
    title = Column(String, nullable=False, default="")
    questions = Column(JSON, nullable=False, default=list)
