from typing import List
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from experiment_engine.config.dependency_injection import get_db, get_experiment_runner
from experiment_engine.crud.crud_scenario import scenario as crud_scenario
from experiment_engine.crud.crud_scenario import wallet as crud_wallet
from experiment_engine.schemas.response import StandardResponse
from experiment_engine.schemas.scenario import AssetPrice, ScenarioCreate, ScenarioDocument
from experiment_engine.services.experiment_runner import ExperimentRunner

router = APIRouter()


@router.post("", response_model=StandardResponse[ScenarioDocument])
def create_scenario(
    scenario_in: ScenarioCreate,
    db: Session = Depends(get_db),
    runner: ExperimentRunner = Depends(get_experiment_runner),
):
    """创建场景，价格序列在创建时一次性生成"""
    wallet_doc = crud_wallet.get_document(db, scenario_in.wallet_id)
    if wallet_doc is None:
        raise HTTPException(status_code=404, detail=f"Wallet '{scenario_in.wallet_id}' not found.")
    if scenario_in.id and crud_scenario.get(db, scenario_in.id) is not None:
        raise HTTPException(status_code=409, detail=f"Scenario '{scenario_in.id}' already exists.")
    try:
        document = runner.market.create_scenario(db, scenario_in, wallet_doc)
        return StandardResponse(data=document)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")


@router.get("/{scenario_id}/prices", response_model=StandardResponse[List[AssetPrice]])
def get_scenario_prices(scenario_id: str, db: Session = Depends(get_db)):
    document = crud_scenario.get_document(db, scenario_id)
    if document is None:
        raise HTTPException(status_code=404, detail=f"Scenario '{scenario_id}' not found.")
    return StandardResponse(data=document.asset_prices)
