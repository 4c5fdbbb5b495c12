from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from experiment_engine.api.errors import to_http_exception
from experiment_engine.config.dependency_injection import get_db, get_experiment_runner
from experiment_engine.core.errors import ExperimentEngineError
from experiment_engine.crud.crud_transaction import price_log, transaction
from experiment_engine.schemas.response import StandardResponse
from experiment_engine.schemas.transaction import (
    PriceLogDocument,
    TradeRequest,
    TradeResult,
    TransactionDocument,
)
from experiment_engine.services.experiment_runner import ExperimentRunner

router = APIRouter()


@router.post(
    "/{experiment_id}/participants/{user_id}",
    response_model=StandardResponse[TradeResult],
)
def execute_trade(
    experiment_id: str,
    user_id: str,
    trade_request: TradeRequest,
    db: Session = Depends(get_db),
    runner: ExperimentRunner = Depends(get_experiment_runner),
):
    """
    执行一笔买卖

    被拒绝的交易返回 accepted=false 与错误原因，余额和交易记录都不变。
    """
    try:
        result = runner.trade(db, experiment_id, user_id, trade_request)
        return StandardResponse(data=result)
    except ExperimentEngineError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")


@router.get(
    "/{experiment_id}",
    response_model=StandardResponse[List[TransactionDocument]],
)
def list_transactions(
    experiment_id: str,
    round_number: Optional[int] = Query(None, alias="round"),
    user_id: Optional[str] = None,
    db: Session = Depends(get_db),
):
    try:
        records = transaction.get_by_experiment(
            db, experiment_id=experiment_id, user_id=user_id, round_number=round_number
        )
        return StandardResponse(data=[TransactionDocument.model_validate(record) for record in records])
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")


@router.get(
    "/{experiment_id}/price-logs",
    response_model=StandardResponse[List[PriceLogDocument]],
)
def list_price_logs(
    experiment_id: str,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db),
):
    try:
        records = price_log.get_by_experiment(db, experiment_id=experiment_id, user_id=user_id)
        return StandardResponse(data=[PriceLogDocument.model_validate(record) for record in records])
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")
