"""
进度追踪器（Progress Tracker）

每个 (参与者, 实验) 一台状态机：not_started -> in_progress -> completed。

- 第一次 enter_stage 进入 in_progress 并记录 started_at
- 重复进入当前阶段、重复完成已完成阶段都是空操作，记录保持不变
- completed 是终态，之后的任何更新都被吸收
- 重置不会删除记录，只把当前尝试标记为 superseded 并新建下一次尝试

同一个 (参与者, 实验) 的更新通过追踪器实例持有的锁串行化。
"""
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, UTC
from typing import Callable, Iterator, List, Optional, Tuple

from sqlalchemy.orm import Session

from experiment_engine.crud.crud_progress import progress as crud_progress
from experiment_engine.models.participant_progress import ParticipantProgress
from experiment_engine.schemas.progress import ProgressDocument

logger = logging.getLogger(__name__)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite 读回的时间不带时区，统一补成 UTC"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class ProgressTracker:
    LOCK_STRIPES = 64

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or (lambda: datetime.now(UTC))
        # 固定数量的锁，按 (参与者, 实验) 的哈希分配，不随参与者数量增长
        self._locks: List[threading.RLock] = [threading.RLock() for _ in range(self.LOCK_STRIPES)]

    def now(self) -> datetime:
        return self._clock()

    @contextmanager
    def lock(self, user_id: str, experiment_id: str) -> Iterator[None]:
        """串行化同一 (参与者, 实验) 的更新，可重入"""
        key_lock = self._locks[hash((user_id, experiment_id)) % len(self._locks)]
        with key_lock:
            yield

    # --- 读取 ---

    @staticmethod
    def to_document(record: ParticipantProgress) -> ProgressDocument:
        return ProgressDocument(
            user_id=record.user_id,
            experiment_id=record.experiment_id,
            status=record.status,
            current_stage_id=record.current_stage_id,
            completed_stages=list(record.completed_stages or []),
            started_at=as_utc(record.started_at),
            completed_at=as_utc(record.completed_at),
            last_activity_at=as_utc(record.last_activity_at),
            attempt=record.attempt,
            stage_visits=dict(record.stage_visits or {}),
            stage_elapsed=dict(record.stage_elapsed or {}),
        )

    def get(self, db: Session, user_id: str, experiment_id: str) -> ProgressDocument:
        """
        获取进度文档，没有记录时返回默认的 not_started 文档（不写库）
        """
        record = crud_progress.get_current(db, user_id=user_id, experiment_id=experiment_id)
        if record is None:
            return ProgressDocument(user_id=user_id, experiment_id=experiment_id)
        return self.to_document(record)

    def attempts(self, db: Session, user_id: str, experiment_id: str) -> List[ProgressDocument]:
        """全部尝试的进度文档，按尝试次数升序，包括被重置取代的旧尝试"""
        records = crud_progress.get_attempts(db, user_id=user_id, experiment_id=experiment_id)
        return [self.to_document(record) for record in records]

    def get_or_create(self, db: Session, user_id: str, experiment_id: str, commit: bool = True) -> ParticipantProgress:
        record = crud_progress.get_current(db, user_id=user_id, experiment_id=experiment_id)
        if record is not None:
            return record
        logger.info(f"ProgressTracker: 为参与者 {user_id} 创建实验 {experiment_id} 的进度记录")
        return crud_progress.create(db, obj_in={
            "user_id": user_id,
            "experiment_id": experiment_id,
            "attempt": 1,
            "status": "not_started",
            "completed_stages": [],
            "stage_visits": {},
            "stage_elapsed": {},
            "last_activity_at": self.now(),
        }, commit=commit)

    def current_visit_seconds(self, record: ParticipantProgress) -> float:
        entered_at = as_utc(record.current_stage_entered_at)
        if entered_at is None:
            return 0.0
        return max(0.0, (self.now() - entered_at).total_seconds())

    # --- 状态转移 ---

    def enter_stage(
        self,
        db: Session,
        user_id: str,
        experiment_id: str,
        stage_id: str,
        commit: bool = True,
        revisit: bool = False,
    ) -> Tuple[ParticipantProgress, bool]:
        """
        进入阶段

        当前已在该阶段时为空操作；只有分支显式跳回自身（revisit=True）才算一次新的访问。

        Args:
            db: 数据库会话
            user_id: 参与者ID
            experiment_id: 实验ID
            stage_id: 要进入的阶段
            commit: 是否立即提交
            revisit: 是否把重新进入当前阶段记为新的访问

        Returns:
            tuple: (进度记录, 是否发生了变化)
        """
        with self.lock(user_id, experiment_id):
            record = self.get_or_create(db, user_id, experiment_id, commit=commit)
            if record.status == "completed":
                return record, False
            if record.current_stage_id == stage_id and not revisit:
                return record, False

            now = self.now()
            update = {
                "current_stage_id": stage_id,
                "current_stage_entered_at": now,
                "last_activity_at": now,
            }
            if record.current_stage_id is not None:
                # 离开上一个阶段时记录这次访问的停留时间
                elapsed = dict(record.stage_elapsed or {})
                elapsed[record.current_stage_id] = self.current_visit_seconds(record)
                update["stage_elapsed"] = elapsed

            visits = dict(record.stage_visits or {})
            visits[stage_id] = visits.get(stage_id, 0) + 1
            update["stage_visits"] = visits

            if record.status == "not_started":
                update["status"] = "in_progress"
                if record.started_at is None:
                    update["started_at"] = now

            record = crud_progress.update(db, db_obj=record, obj_in=update, commit=commit)
            logger.info(f"ProgressTracker: 参与者 {user_id} 进入阶段 {stage_id}（实验 {experiment_id}）")
            return record, True

    def complete_stage(
        self,
        db: Session,
        user_id: str,
        experiment_id: str,
        stage_id: str,
        commit: bool = True,
    ) -> Tuple[ParticipantProgress, bool]:
        """
        标记阶段完成，已完成的阶段再次标记为空操作
        """
        with self.lock(user_id, experiment_id):
            record = self.get_or_create(db, user_id, experiment_id, commit=commit)
            completed = list(record.completed_stages or [])
            if record.status != "in_progress" or stage_id in completed:
                return record, False
            completed.append(stage_id)
            record = crud_progress.update(db, db_obj=record, obj_in={
                "completed_stages": completed,
                "last_activity_at": self.now(),
            }, commit=commit)
            return record, True

    def finalize(self, db: Session, user_id: str, experiment_id: str, commit: bool = True) -> Tuple[ParticipantProgress, bool]:
        """实验完成：in_progress -> completed，completed 之后不再变化"""
        with self.lock(user_id, experiment_id):
            record = self.get_or_create(db, user_id, experiment_id, commit=commit)
            if record.status == "completed":
                return record, False
            now = self.now()
            update = {"status": "completed", "completed_at": now, "last_activity_at": now}
            if record.started_at is None:
                update["started_at"] = now
            if record.current_stage_id is not None:
                elapsed = dict(record.stage_elapsed or {})
                elapsed[record.current_stage_id] = self.current_visit_seconds(record)
                update["stage_elapsed"] = elapsed
            record = crud_progress.update(db, db_obj=record, obj_in=update, commit=commit)
            logger.info(f"ProgressTracker: 参与者 {user_id} 完成实验 {experiment_id}")
            return record, True

    def reset(self, db: Session, user_id: str, experiment_id: str) -> ParticipantProgress:
        """
        重置实验进度：当前尝试被标记为 superseded，新建下一次尝试
        """
        with self.lock(user_id, experiment_id):
            now = self.now()
            current = crud_progress.get_current(db, user_id=user_id, experiment_id=experiment_id)
            attempt = 1
            if current is not None:
                attempt = current.attempt + 1
                crud_progress.update(db, db_obj=current, obj_in={"superseded_at": now}, commit=False)
            record = crud_progress.create(db, obj_in={
                "user_id": user_id,
                "experiment_id": experiment_id,
                "attempt": attempt,
                "status": "not_started",
                "completed_stages": [],
                "stage_visits": {},
                "stage_elapsed": {},
                "last_activity_at": now,
            }, commit=True)
            logger.info(f"ProgressTracker: 参与者 {user_id} 重置实验 {experiment_id}，第 {attempt} 次尝试")
            return record
