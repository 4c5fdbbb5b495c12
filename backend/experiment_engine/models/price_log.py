from sqlalchemy import Column, Integer, String, DateTime, Float
from datetime import datetime, UTC
from experiment_engine.db.base_class import Base

class PriceLog(Base):
    """价格日志模型

    参与者的场景每开启一轮，为每个资产记录一条当轮价格。
    第1轮的 previous_price 和 percent_change 为空。
    """
    __tablename__ = "price_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    experiment_id = Column(String, index=True, nullable=False)
    user_id = Column(String, index=True, nullable=False)
    asset_id = Column(String, nullable=False)
    symbol = Column(String, index=True, nullable=False)
    round_number = Column(Integer, index=True, nullable=False)
    price = Column(Float, nullable=False)
    previous_price = Column(Float, nullable=True)
    percent_change = Column(Float, nullable=True)
    timestamp = Column(DateTime, default=lambda: datetime.now(UTC), nullable=False)
