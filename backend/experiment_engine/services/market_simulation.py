"""
市场模拟子引擎（Market Simulation Sub-engine）

负责场景阶段的三件事：

1. 价格序列：场景创建时为钱包中的每个（非现金）资产生成 rounds 个价格，
   第1轮价格等于资产的 amount，之后每轮 = 上一轮 × U[0.8, 1.2]。只生成一次并持久化。
2. 轮次计时：每轮从 roundDuration 倒数，归零后进入下一轮，最后一轮归零则场景完成。
   计时器按秒协作式推进，暂停后从保存的 time_remaining 继续，而不是重新开始。
3. 交易：买入校验资金，卖出校验持仓；通过后在同一个数据库事务里
   追加交易记录并更新现金与资产余额，要么全部成功，要么全部不生效。
"""
import copy
import logging
import math
import random
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from experiment_engine.core.config import settings
from experiment_engine.core.errors import (
    InsufficientFunds,
    InsufficientHoldings,
    ScenarioNotActive,
    TradeRejected,
)
from experiment_engine.crud.crud_scenario import participant_wallet as crud_participant_wallet
from experiment_engine.crud.crud_scenario import scenario as crud_scenario
from experiment_engine.crud.crud_transaction import price_log as crud_price_log
from experiment_engine.crud.crud_transaction import transaction as crud_transaction
from experiment_engine.models.wallet import ParticipantWallet
from experiment_engine.schemas.scenario import (
    AssetPrice,
    ScenarioCreate,
    ScenarioDocument,
    WalletDocument,
)
from experiment_engine.schemas.transaction import TradeResult, TransactionDocument

logger = logging.getLogger(__name__)


# --- 价格序列 ---

def generate_price_series(
    seed: float,
    rounds: int,
    rng: random.Random,
    low: float = 0.8,
    high: float = 1.2,
) -> List[float]:
    """
    生成单个资产的价格序列

    Args:
        seed: 第1轮价格
        rounds: 轮数
        rng: 随机数来源
        low / high: 每轮波动因子的取值区间

    Returns:
        List[float]: 长度为 rounds 的价格列表
    """
    if rounds < 1:
        raise ValueError("rounds must be at least 1")
    prices = [float(seed)]
    for _ in range(1, rounds):
        prices.append(prices[-1] * rng.uniform(low, high))
    return prices


def generate_asset_prices(wallet: WalletDocument, rounds: int, rng: random.Random) -> List[AssetPrice]:
    """为钱包中每个非现金资产生成价格序列，种子取资产当前的 amount"""
    return [
        AssetPrice(
            asset_id=asset.id,
            symbol=asset.symbol,
            prices=generate_price_series(
                asset.amount,
                rounds,
                rng,
                low=settings.PRICE_FLUCTUATION_MIN,
                high=settings.PRICE_FLUCTUATION_MAX,
            ),
        )
        for asset in wallet.assets
        if asset.type != "fiat"
    ]


def ensure_asset_prices(
    scenario: ScenarioDocument, wallet: WalletDocument, rng: random.Random
) -> Tuple[ScenarioDocument, bool]:
    """
    幂等地确保场景拥有完整的价格序列

    已有的价格序列原样返回；只有缺失或长度不符的资产才会生成。

    Returns:
        tuple: (场景文档, 是否生成了新的价格)
    """
    existing = {asset_price.asset_id: asset_price for asset_price in scenario.asset_prices}
    result = []
    generated = False
    for asset in wallet.assets:
        if asset.type == "fiat":
            continue
        current = existing.get(asset.id)
        if current is not None and len(current.prices) == scenario.rounds:
            result.append(current)
            continue
        result.append(AssetPrice(
            asset_id=asset.id,
            symbol=asset.symbol,
            prices=generate_price_series(
                asset.amount,
                scenario.rounds,
                rng,
                low=settings.PRICE_FLUCTUATION_MIN,
                high=settings.PRICE_FLUCTUATION_MAX,
            ),
        ))
        generated = True
    if not generated:
        return scenario, False
    return scenario.model_copy(update={"asset_prices": result}), True


# --- 计时器 ---

class Countdown(ABC):
    """按秒协作推进的倒计时，暂停时忽略 tick"""

    def __init__(self, duration: int, time_remaining: Optional[int] = None, suspended: bool = False):
        self.duration = int(duration)
        self.time_remaining = self.duration if time_remaining is None else int(time_remaining)
        self.suspended = suspended

    @property
    @abstractmethod
    def finished(self) -> bool:
        pass

    def suspend(self) -> None:
        self.suspended = True

    def resume(self) -> None:
        self.suspended = False

    @abstractmethod
    def tick(self, seconds: int = 1):
        pass


class RoundTimer(Countdown):
    """
    场景轮次计时器

    Attributes:
        rounds: 总轮数
        round_duration: 每轮秒数
        current_round: 当前轮次（1..rounds）
        status: 'running' | 'completed'
    """

    def __init__(
        self,
        rounds: int,
        round_duration: int,
        current_round: int = 1,
        time_remaining: Optional[int] = None,
        status: str = "running",
        suspended: bool = False,
    ):
        super().__init__(round_duration, time_remaining, suspended)
        self.rounds = int(rounds)
        self.current_round = int(current_round)
        self.status = status

    @property
    def round_duration(self) -> int:
        return self.duration

    @property
    def finished(self) -> bool:
        return self.status == "completed"

    def tick(self, seconds: int = 1) -> List[int]:
        """
        推进若干秒

        Returns:
            List[int]: 本次推进中新开启的轮次
        """
        opened = []
        if self.suspended:
            return opened
        for _ in range(int(seconds)):
            if self.finished:
                break
            self.time_remaining -= 1
            if self.time_remaining > 0:
                continue
            if self.current_round < self.rounds:
                self.current_round += 1
                self.time_remaining = self.duration
                opened.append(self.current_round)
            else:
                self.time_remaining = 0
                self.status = "completed"
        return opened

    def completion_percent(self) -> float:
        if self.finished:
            return 100.0
        return (self.current_round - 1) / self.rounds * 100

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rounds": self.rounds,
            "round_duration": self.duration,
            "current_round": self.current_round,
            "time_remaining": self.time_remaining,
            "status": self.status,
            "suspended": self.suspended,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RoundTimer":
        return cls(
            rounds=data["rounds"],
            round_duration=data["round_duration"],
            current_round=data.get("current_round", 1),
            time_remaining=data.get("time_remaining"),
            status=data.get("status", "running"),
            suspended=data.get("suspended", False),
        )

    def __str__(self) -> str:
        return f"RoundTimer(round={self.current_round}/{self.rounds}, remaining={self.time_remaining}, status={self.status})"


class StageCountdown(Countdown):
    """计时阶段（如休息阶段）的倒计时，归零即到期"""

    def __init__(self, duration: int, time_remaining: Optional[int] = None, expired: bool = False, suspended: bool = False):
        super().__init__(duration, time_remaining, suspended)
        self.expired = expired

    @property
    def finished(self) -> bool:
        return self.expired

    def tick(self, seconds: int = 1) -> bool:
        """推进若干秒，返回本次是否刚好到期"""
        if self.suspended or self.expired:
            return False
        self.time_remaining = max(0, self.time_remaining - int(seconds))
        if self.time_remaining == 0:
            self.expired = True
            return True
        return False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "duration": self.duration,
            "time_remaining": self.time_remaining,
            "expired": self.expired,
            "suspended": self.suspended,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StageCountdown":
        return cls(
            duration=data["duration"],
            time_remaining=data.get("time_remaining"),
            expired=data.get("expired", False),
            suspended=data.get("suspended", False),
        )


# --- 交易校验 ---

def _positive_integer(quantity: Any) -> Optional[int]:
    if isinstance(quantity, bool):
        return None
    try:
        value = float(quantity)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(value) or value <= 0 or not value.is_integer():
        return None
    return int(value)


def max_purchasable(price: float, funds: float) -> int:
    if price <= 0:
        return 0
    return max(0, math.floor(funds / price))


def validate_buy(quantity: Any, price: float, funds: float) -> int:
    """
    校验买入

    数量必须是正整数，且 quantity × price ≤ funds（即 quantity ≤ floor(funds / price)）。

    Returns:
        int: 校验通过的数量

    Raises:
        InsufficientFunds: 校验失败
    """
    count = _positive_integer(quantity)
    if count is None:
        raise InsufficientFunds(f"Quantity must be a positive integer, got {quantity!r}")
    if price <= 0:
        raise TradeRejected("Asset has no tradable price in this round")
    limit = max_purchasable(price, funds)
    if count * price > funds or count > limit:
        raise InsufficientFunds(
            f"Buying {count} at {price:.4f} costs {count * price:.4f}, available funds {funds:.4f} (max {limit})"
        )
    return count


def validate_sell(quantity: Any, holdings: float) -> int:
    """
    校验卖出，数量必须是不超过持仓的正整数

    Raises:
        InsufficientHoldings: 校验失败
    """
    count = _positive_integer(quantity)
    if count is None:
        raise InsufficientHoldings(f"Quantity must be a positive integer, got {quantity!r}")
    if count > holdings:
        raise InsufficientHoldings(f"Selling {count} but only {holdings:g} held")
    return count


def cash_asset(assets: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """钱包中第一个 fiat 资产视为参与者的现金"""
    for asset in assets:
        if asset.get("type") == "fiat":
            return asset
    return None


def balances_of(assets: List[Dict[str, Any]]) -> Dict[str, float]:
    return {asset["id"]: float(asset.get("amount", 0)) for asset in assets}


class MarketSimulation:
    """场景阶段的持久化操作：创建场景、开立运行期钱包、执行交易、记录价格"""

    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.Random()

    def create_scenario(self, db: Session, scenario_in: ScenarioCreate, wallet: WalletDocument) -> ScenarioDocument:
        """
        创建场景并一次性生成价格序列
        """
        document = ScenarioDocument(
            id=scenario_in.id or uuid.uuid4().hex,
            name=scenario_in.name,
            description=scenario_in.description,
            wallet_id=wallet.id,
            rounds=scenario_in.rounds,
            round_duration=scenario_in.round_duration,
            asset_prices=generate_asset_prices(wallet, scenario_in.rounds, self.rng),
            is_active=scenario_in.is_active,
        )
        payload = document.to_document()
        crud_scenario.create(db, obj_in={
            "id": document.id,
            "name": document.name,
            "description": document.description,
            "wallet_id": document.wallet_id,
            "rounds": document.rounds,
            "round_duration": document.round_duration,
            "asset_prices": payload["assetPrices"],
            "is_active": document.is_active,
        })
        logger.info(f"MarketSimulation: 创建场景 {document.id}，{document.rounds} 轮，{len(document.asset_prices)} 个资产")
        return document

    def load_prices(
        self, db: Session, scenario: ScenarioDocument, wallet: WalletDocument, commit: bool = True
    ) -> ScenarioDocument:
        """读取场景价格，缺失时生成并保存，已存在时原样返回"""
        scenario, generated = ensure_asset_prices(scenario, wallet, self.rng)
        if generated:
            record = crud_scenario.get(db, scenario.id)
            if record is not None:
                crud_scenario.update(db, db_obj=record, obj_in={
                    "asset_prices": scenario.to_document()["assetPrices"],
                }, commit=commit)
                logger.info(f"MarketSimulation: 为场景 {scenario.id} 补齐价格序列")
        return scenario

    def open_run_wallet(
        self,
        db: Session,
        *,
        experiment_id: str,
        user_id: str,
        stage_id: str,
        scenario: ScenarioDocument,
        wallet: WalletDocument,
        attempt: int = 1,
        commit: bool = True,
    ) -> ParticipantWallet:
        """
        获取或创建参与者在该场景阶段的钱包副本
        """
        existing = crud_participant_wallet.get_run_wallet(
            db, experiment_id=experiment_id, user_id=user_id, stage_id=stage_id, attempt=attempt
        )
        if existing is not None:
            return existing
        assets = []
        for asset in wallet.assets:
            data = asset.model_dump(mode="json")
            if data.get("initial_amount") is None:
                data["initial_amount"] = data["amount"]
            assets.append(data)
        return crud_participant_wallet.create(db, obj_in={
            "experiment_id": experiment_id,
            "user_id": user_id,
            "stage_id": stage_id,
            "attempt": attempt,
            "scenario_id": scenario.id,
            "assets": assets,
        }, commit=commit)

    def log_round_prices(
        self,
        db: Session,
        *,
        experiment_id: str,
        user_id: str,
        scenario: ScenarioDocument,
        round_number: int,
        commit: bool = True,
    ) -> None:
        for asset_price in scenario.asset_prices:
            if round_number > len(asset_price.prices):
                continue
            price = asset_price.prices[round_number - 1]
            previous = asset_price.prices[round_number - 2] if round_number > 1 else None
            change = None
            if previous:
                change = (price - previous) / previous * 100
            crud_price_log.create(db, obj_in={
                "experiment_id": experiment_id,
                "user_id": user_id,
                "asset_id": asset_price.asset_id,
                "symbol": asset_price.symbol,
                "round_number": round_number,
                "price": price,
                "previous_price": previous,
                "percent_change": change,
            }, commit=False)
        if commit:
            db.commit()

    def execute_trade(
        self,
        db: Session,
        *,
        experiment_id: str,
        user_id: str,
        stage_id: str,
        scenario: ScenarioDocument,
        timer: RoundTimer,
        asset_id: str,
        trade_type: str,
        quantity: Any,
        attempt: int = 1,
    ) -> TradeResult:
        """
        校验并执行一笔交易

        Raises:
            ScenarioNotActive: 场景已结束或暂停，或钱包不存在
            InsufficientFunds / InsufficientHoldings: 校验失败
            TradeRejected: 资产无法交易

        Returns:
            TradeResult: 交易记录与更新后的余额
        """
        if timer.finished or timer.suspended:
            raise ScenarioNotActive("Scenario is not accepting trades")

        run_wallet = crud_participant_wallet.get_run_wallet(
            db, experiment_id=experiment_id, user_id=user_id, stage_id=stage_id, attempt=attempt
        )
        if run_wallet is None:
            raise ScenarioNotActive("No wallet is open for this scenario")

        prices = scenario.prices_for(asset_id)
        if not prices:
            raise TradeRejected(f"Asset {asset_id!r} is not tradable in this scenario")
        round_number = timer.current_round
        price = prices[round_number - 1]

        assets = copy.deepcopy(list(run_wallet.assets or []))
        target = next((asset for asset in assets if asset.get("id") == asset_id), None)
        cash = cash_asset(assets)
        if target is None:
            raise TradeRejected(f"Asset {asset_id!r} is not in the wallet")
        if cash is None:
            raise TradeRejected("Wallet has no cash asset")

        funds = float(cash.get("amount", 0))
        holdings = float(target.get("amount", 0))
        if trade_type == "buy":
            count = validate_buy(quantity, price, funds)
            total = count * price
            cash["amount"] = funds - total
            target["amount"] = holdings + count
        elif trade_type == "sell":
            count = validate_sell(quantity, holdings)
            total = count * price
            cash["amount"] = funds + total
            target["amount"] = holdings - count
        else:
            raise TradeRejected(f"Unknown trade type {trade_type!r}")

        try:
            crud_participant_wallet.update(db, db_obj=run_wallet, obj_in={"assets": assets}, commit=False)
            record = crud_transaction.create(db, obj_in={
                "experiment_id": experiment_id,
                "user_id": user_id,
                "stage_id": stage_id,
                "asset_id": asset_id,
                "symbol": target.get("symbol", ""),
                "type": trade_type,
                "quantity": count,
                "price": price,
                "total_value": total,
                "round_number": round_number,
            }, commit=False)
            db.commit()
        except Exception:
            db.rollback()
            raise
        db.refresh(record)

        logger.info(
            f"MarketSimulation: 参与者 {user_id} 第 {round_number} 轮 {trade_type} {count} x {record.symbol} @ {price:.4f}"
        )
        return TradeResult(
            accepted=True,
            transaction=TransactionDocument.model_validate(record),
            balances=balances_of(assets),
            round_number=round_number,
        )
