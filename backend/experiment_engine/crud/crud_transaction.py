from typing import List, Optional
from sqlalchemy.orm import Session
from experiment_engine.crud.base import CRUDBase, SortDirection
from experiment_engine.models.transaction import Transaction
from experiment_engine.models.price_log import PriceLog
from experiment_engine.schemas.transaction import TransactionDocument, PriceLogDocument


class CRUDTransaction(CRUDBase[Transaction, TransactionDocument, TransactionDocument]):
    def get_by_experiment(
        self,
        db: Session,
        *,
        experiment_id: str,
        user_id: Optional[str] = None,
        round_number: Optional[int] = None,
    ) -> List[Transaction]:
        """
        查询实验的交易记录，可按参与者与轮次筛选，按时间升序排列
        """
        filter_conditions = {"experiment_id": experiment_id}
        if user_id is not None:
            filter_conditions["user_id"] = user_id
        if round_number is not None:
            filter_conditions["round_number"] = round_number
        return self.get_multi(
            db,
            filter_conditions=filter_conditions,
            sort_by=[("timestamp", SortDirection.ASC), ("id", SortDirection.ASC)],
            limit=None,
        )


class CRUDPriceLog(CRUDBase[PriceLog, PriceLogDocument, PriceLogDocument]):
    def get_by_experiment(
        self, db: Session, *, experiment_id: str, user_id: Optional[str] = None
    ) -> List[PriceLog]:
        filter_conditions = {"experiment_id": experiment_id}
        if user_id is not None:
            filter_conditions["user_id"] = user_id
        return self.get_multi(
            db,
            filter_conditions=filter_conditions,
            sort_by=[("round_number", SortDirection.ASC), ("id", SortDirection.ASC)],
            limit=None,
        )


# 实例化并暴露给 服务层 使用
transaction = CRUDTransaction(Transaction)
price_log = CRUDPriceLog(PriceLog)
