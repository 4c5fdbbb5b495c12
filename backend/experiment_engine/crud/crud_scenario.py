from typing import Iterable, Optional, Set
from sqlalchemy.orm import Session
from experiment_engine.crud.base import CRUDBase
from experiment_engine.models.scenario import ScenarioRecord
from experiment_engine.models.wallet import WalletRecord, ParticipantWallet
from experiment_engine.schemas.scenario import ScenarioDocument, WalletDocument


class CRUDScenario(CRUDBase[ScenarioRecord, ScenarioDocument, ScenarioDocument]):
    def get_document(self, db: Session, scenario_id: str) -> Optional[ScenarioDocument]:
        record = self.get(db, scenario_id)
        if record is None:
            return None
        return ScenarioDocument.model_validate({
            "id": record.id,
            "name": record.name,
            "description": record.description or "",
            "wallet_id": record.wallet_id,
            "rounds": record.rounds,
            "round_duration": record.round_duration,
            "asset_prices": record.asset_prices or [],
            "is_active": bool(record.is_active),
        })

    def existing_ids(self, db: Session, scenario_ids: Iterable[str]) -> Set[str]:
        ids = {scenario_id for scenario_id in scenario_ids if scenario_id}
        if not ids:
            return set()
        rows = db.query(ScenarioRecord.id).filter(ScenarioRecord.id.in_(ids)).all()
        return {row[0] for row in rows}


class CRUDWallet(CRUDBase[WalletRecord, WalletDocument, WalletDocument]):
    def get_document(self, db: Session, wallet_id: str) -> Optional[WalletDocument]:
        record = self.get(db, wallet_id)
        if record is None:
            return None
        return WalletDocument.model_validate(
            {"id": record.id, "name": record.name, "assets": record.assets or []}
        )


class CRUDParticipantWallet(CRUDBase[ParticipantWallet, WalletDocument, WalletDocument]):
    def get_run_wallet(
        self, db: Session, *, experiment_id: str, user_id: str, stage_id: str, attempt: int = 1
    ) -> Optional[ParticipantWallet]:
        """获取参与者某次尝试在某个场景阶段的运行期钱包"""
        return self.get_one(db, filter_conditions={
            "experiment_id": experiment_id,
            "user_id": user_id,
            "stage_id": stage_id,
            "attempt": attempt,
        })


# 实例化并暴露给 服务层 使用
scenario = CRUDScenario(ScenarioRecord)
wallet = CRUDWallet(WalletRecord)
participant_wallet = CRUDParticipantWallet(ParticipantWallet)
