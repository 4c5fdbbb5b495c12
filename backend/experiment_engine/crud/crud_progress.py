from typing import List, Optional
from sqlalchemy.orm import Session
from experiment_engine.crud.base import CRUDBase, SortDirection
from experiment_engine.models.participant_progress import ParticipantProgress
from experiment_engine.schemas.progress import ProgressDocument

class CRUDProgress(CRUDBase[ParticipantProgress, ProgressDocument, ProgressDocument]):
    def get_current(self, db: Session, *, user_id: str, experiment_id: str) -> Optional[ParticipantProgress]:
        """
        查询参与者在某个实验上当前有效（未被重置取代）的进度记录
        """
        results = self.get_multi(
            db,
            filter_conditions={
                "user_id": user_id,
                "experiment_id": experiment_id,
                "superseded_at": None,
            },
            sort_by=[("attempt", SortDirection.DESC)],
            limit=1,
        )
        return results[0] if results else None

    def get_attempts(self, db: Session, *, user_id: str, experiment_id: str) -> List[ParticipantProgress]:
        """按尝试次数升序返回全部进度记录（包括已被取代的）"""
        return self.get_multi(
            db,
            filter_conditions={"user_id": user_id, "experiment_id": experiment_id},
            sort_by=[("attempt", SortDirection.ASC)],
            limit=None,
        )

# 实例化并暴露给 服务层 使用
progress = CRUDProgress(ParticipantProgress)
