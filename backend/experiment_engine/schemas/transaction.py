from datetime import datetime
from typing import Any, Dict, Literal, Optional
from pydantic import Field
from experiment_engine.schemas.document import DocumentModel

TradeType = Literal["buy", "sell"]


class TradeRequest(DocumentModel):
    """买卖请求

    quantity 保持为数值类型，是否为正整数由市场模拟校验，
    这样非法数量会得到 InsufficientFunds / InsufficientHoldings 的业务拒绝而不是 422。
    """
    stage_id: str
    asset_id: str
    type: TradeType
    quantity: float


class TransactionDocument(DocumentModel):
    experiment_id: str
    user_id: str
    stage_id: str
    asset_id: str
    symbol: str
    type: TradeType
    quantity: int
    price: float
    total_value: float
    round_number: int
    timestamp: Optional[datetime] = None


class TradeResult(DocumentModel):
    """交易结果：被拒绝时 accepted=False，error 中给出原因，余额不变"""
    accepted: bool
    error: Optional[Dict[str, Any]] = None
    transaction: Optional[TransactionDocument] = None
    balances: Dict[str, float] = Field(default_factory=dict)
    round_number: Optional[int] = None


class PriceLogDocument(DocumentModel):
    experiment_id: str
    user_id: str
    asset_id: str
    symbol: str
    round_number: int
    price: float
    previous_price: Optional[float] = None
    percent_change: Optional[float] = None
    timestamp: Optional[datetime] = None
