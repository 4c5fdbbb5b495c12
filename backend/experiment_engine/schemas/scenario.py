from typing import List, Literal, Optional
from pydantic import Field
from experiment_engine.schemas.document import DocumentModel

AssetType = Literal["share", "cryptocurrency", "fiat"]


class Asset(DocumentModel):
    id: str
    type: AssetType = "share"
    name: str = ""
    symbol: str
    amount: float = 0
    initial_amount: Optional[float] = None


class WalletDocument(DocumentModel):
    """钱包文档 { assets: [{id, symbol, amount}] }"""
    id: str
    name: str = ""
    assets: List[Asset] = Field(default_factory=list)


class AssetPrice(DocumentModel):
    asset_id: str
    symbol: str
    prices: List[float] = Field(default_factory=list)


class ScenarioCreate(DocumentModel):
    """创建场景的请求模型，价格序列由服务端生成"""
    id: Optional[str] = None
    name: str
    description: str = ""
    wallet_id: str
    rounds: int = Field(..., ge=1, le=50)
    round_duration: int = Field(..., ge=5, le=300)
    is_active: bool = True


class ScenarioDocument(DocumentModel):
    """场景文档 { id, rounds, roundDuration, assetPrices }"""
    id: str
    name: str = ""
    description: str = ""
    wallet_id: str
    rounds: int = Field(..., ge=1, le=50)
    round_duration: int = Field(..., ge=5, le=300)
    asset_prices: List[AssetPrice] = Field(default_factory=list)
    is_active: bool = True

    def prices_for(self, asset_id: str) -> Optional[List[float]]:
        for asset_price in self.asset_prices:
            if asset_price.asset_id == asset_id:
                return asset_price.prices
        return None
