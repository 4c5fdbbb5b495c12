from sqlalchemy import Column, String, Integer, Boolean, JSON, Text
from experiment_engine.db.base_class import Base

class ScenarioRecord(Base):
    """市场模拟场景模型

    价格序列在场景创建时生成一次并持久化，之后每次读取都返回同一份数据。

    Attributes:
        id: 场景ID
        wallet_id: 关联的钱包模板ID
        rounds: 轮数（1-50）
        round_duration: 每轮时长（秒，5-300）
        asset_prices: [{assetId, symbol, prices}]
    """
    __tablename__ = "scenarios"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False, default="")
    description = Column(Text, nullable=True)
    wallet_id = Column(String, index=True, nullable=False)
    rounds = Column(Integer, nullable=False)
    round_duration = Column(Integer, nullable=False)
    asset_prices = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, default=True)
