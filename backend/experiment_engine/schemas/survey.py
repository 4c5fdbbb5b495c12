from datetime import datetime
from typing import Any, Dict, Optional
from experiment_engine.schemas.document import DocumentModel


class SurveySubmission(DocumentModel):
    """问卷提交请求"""
    stage_id: str
    responses: Dict[str, Any]


class SurveyResponseCreate(DocumentModel):
    experiment_id: str
    stage_id: str
    user_id: str
    attempt: int = 1
    responses: Dict[str, Any]


class SurveyResponseDocument(SurveyResponseCreate):
    submitted_at: Optional[datetime] = None
