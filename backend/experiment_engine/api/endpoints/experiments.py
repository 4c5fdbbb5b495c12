from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from experiment_engine.api.errors import to_http_exception
from experiment_engine.config.dependency_injection import get_db, get_experiment_runner
from experiment_engine.core.errors import ExperimentEngineError
from experiment_engine.crud.crud_experiment import experiment as crud_experiment
from experiment_engine.schemas.experiment import ActivationResult, ExperimentDocument
from experiment_engine.schemas.response import StandardResponse
from experiment_engine.services.experiment_runner import ExperimentRunner

router = APIRouter()


@router.post("", response_model=StandardResponse[ExperimentDocument])
def create_experiment(document: ExperimentDocument, db: Session = Depends(get_db)):
    """保存实验文档（草稿），阶段图在激活时才校验"""
    if crud_experiment.get(db, document.id) is not None:
        raise HTTPException(status_code=409, detail=f"Experiment '{document.id}' already exists.")
    try:
        crud_experiment.create_from_document(db, document=document.model_copy(update={"status": "draft"}))
        return StandardResponse(data=crud_experiment.get_document(db, document.id))
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")


@router.get("/{experiment_id}", response_model=StandardResponse[ExperimentDocument])
def get_experiment(experiment_id: str, db: Session = Depends(get_db)):
    document = crud_experiment.get_document(db, experiment_id)
    if document is None:
        raise HTTPException(status_code=404, detail=f"Experiment '{experiment_id}' not found.")
    return StandardResponse(data=document)


@router.post("/{experiment_id}/activate", response_model=StandardResponse[ActivationResult])
def activate_experiment(
    experiment_id: str,
    db: Session = Depends(get_db),
    runner: ExperimentRunner = Depends(get_experiment_runner),
):
    """
    校验实验图并激活实验

    硬性问题返回 422 与完整的问题列表；无法到达出口的循环只作为 warnings 返回。
    """
    try:
        result = runner.activate(db, experiment_id)
        return StandardResponse(data=result)
    except ExperimentEngineError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")
