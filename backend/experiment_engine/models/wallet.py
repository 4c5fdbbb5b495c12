from sqlalchemy import Column, String, JSON, DateTime, Integer, UniqueConstraint
from datetime import datetime, UTC
from experiment_engine.db.base_class import Base

class WalletRecord(Base):
    """钱包模板模型

    Attributes:
        id: 钱包ID
        name: 钱包名称
        assets: [{id, type, name, symbol, amount, initialAmount}]
    """
    __tablename__ = "wallets"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False, default="")
    assets = Column(JSON, nullable=False, default=list)


class ParticipantWallet(Base):
    """参与者运行期钱包

    每个参与者在每次尝试的每个场景阶段拥有一份独立的钱包副本，交易只作用于该副本。
    重置进度后新的尝试会得到新的副本。
    离开场景阶段后仍然保留，不会回滚已经执行的交易。
    """
    __tablename__ = "participant_wallets"
    __table_args__ = (
        UniqueConstraint("experiment_id", "user_id", "stage_id", "attempt", name="uq_participant_wallet_run"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    experiment_id = Column(String, index=True, nullable=False)
    user_id = Column(String, index=True, nullable=False)
    stage_id = Column(String, nullable=False)
    attempt = Column(Integer, nullable=False, default=1)
    scenario_id = Column(String, nullable=False)
    assets = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, default=lambda: datetime.now(UTC))
    updated_at = Column(DateTime, default=lambda: datetime.now(UTC), onupdate=lambda: datetime.now(UTC))
