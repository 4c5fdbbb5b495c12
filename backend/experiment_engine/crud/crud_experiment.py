from typing import Dict, Iterable, Optional
from sqlalchemy.orm import Session
from experiment_engine.crud.base import CRUDBase
from experiment_engine.models.experiment import ExperimentRecord
from experiment_engine.models.survey import SurveyRecord
from experiment_engine.schemas.experiment import ExperimentDocument, SurveyDocument


class CRUDExperiment(CRUDBase[ExperimentRecord, ExperimentDocument, ExperimentDocument]):
    def get_document(self, db: Session, experiment_id: str) -> Optional[ExperimentDocument]:
        """
        读取实验并转换为实验文档。

        Returns:
            Optional[ExperimentDocument]: 不存在时返回None
        """
        record = self.get(db, experiment_id)
        if record is None:
            return None
        data = dict(record.document or {})
        data.update(id=record.id, name=record.name, status=record.status)
        return ExperimentDocument.model_validate(data)

    def create_from_document(self, db: Session, *, document: ExperimentDocument) -> ExperimentRecord:
        payload = document.to_document()
        return self.create(db, obj_in={
            "id": document.id,
            "name": document.name,
            "description": document.description,
            "status": document.status,
            "document": {
                "stages": payload["stages"],
                "branches": payload["branches"],
                "startStageId": payload["startStageId"],
            },
        })

    def set_status(self, db: Session, *, experiment_id: str, status: str) -> Optional[ExperimentRecord]:
        record = self.get(db, experiment_id)
        if record is None:
            return None
        return self.update(db, db_obj=record, obj_in={"status": status})


class CRUDSurvey(CRUDBase[SurveyRecord, SurveyDocument, SurveyDocument]):
    def get_documents(self, db: Session, survey_ids: Iterable[str]) -> Dict[str, SurveyDocument]:
        """批量读取问卷，返回 { survey_id: SurveyDocument }，不存在的ID直接跳过"""
        ids = {survey_id for survey_id in survey_ids if survey_id}
        if not ids:
            return {}
        records = db.query(SurveyRecord).filter(SurveyRecord.id.in_(ids)).all()
        return {
            record.id: SurveyDocument.model_validate(
                {"id": record.id, "title": record.title, "questions": record.questions or []}
            )
            for record in records
        }


# 实例化并暴露给 服务层 使用
experiment = CRUDExperiment(ExperimentRecord)
survey = CRUDSurvey(SurveyRecord)
