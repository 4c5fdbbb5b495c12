from datetime import datetime, UTC
from typing import Any, Dict
from sqlalchemy.orm import Session
from experiment_engine.crud.base import CRUDBase
from experiment_engine.models.survey_response import SurveyResponse
from experiment_engine.schemas.survey import SurveyResponseCreate


class CRUDSurveyResponse(CRUDBase[SurveyResponse, SurveyResponseCreate, SurveyResponseCreate]):
    def upsert(self, db: Session, *, obj_in: SurveyResponseCreate, commit: bool = True) -> SurveyResponse:
        """
        保存问卷作答，同一 (实验, 阶段, 参与者, 尝试次数) 只保留一条，重复提交时覆盖答案
        """
        existing = self.get_one(db, filter_conditions={
            "experiment_id": obj_in.experiment_id,
            "stage_id": obj_in.stage_id,
            "user_id": obj_in.user_id,
            "attempt": obj_in.attempt,
        })
        if existing is None:
            return self.create(db, obj_in=obj_in, commit=commit)
        return self.update(
            db,
            db_obj=existing,
            obj_in={"responses": dict(obj_in.responses), "submitted_at": datetime.now(UTC)},
            commit=commit,
        )

    def get_answers_by_stage(
        self, db: Session, *, experiment_id: str, user_id: str, attempt: int = 1
    ) -> Dict[str, Dict[str, Any]]:
        """返回参与者在某次尝试中各阶段的答案 { stage_id: { question_id: answer } }"""
        records = self.get_multi(
            db,
            filter_conditions={"experiment_id": experiment_id, "user_id": user_id, "attempt": attempt},
            limit=None,
        )
        return {record.stage_id: dict(record.responses or {}) for record in records}


# 实例化并暴露给 服务层 使用
survey_response = CRUDSurveyResponse(SurveyResponse)
