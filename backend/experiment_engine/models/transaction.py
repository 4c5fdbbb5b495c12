from sqlalchemy import Column, Integer, String, DateTime, Float
from datetime import datetime, UTC
from experiment_engine.db.base_class import Base

class Transaction(Base):
    """交易记录模型

    只追加、不可修改的买卖记录，由市场模拟在交易校验通过后写入。
    """
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    experiment_id = Column(String, index=True, nullable=False)
    user_id = Column(String, index=True, nullable=False)
    stage_id = Column(String, nullable=False)
    asset_id = Column(String, nullable=False)
    symbol = Column(String, index=True, nullable=False)
    type = Column(String, nullable=False)  # 'buy' or 'sell'
    quantity = Column(Integer, nullable=False)
    price = Column(Float, nullable=False)
    total_value = Column(Float, nullable=False)
    round_number = Column(Integer, index=True, nullable=False)
    timestamp = Column(DateTime, default=lambda: datetime.now(UTC), nullable=False)
