from typing import List
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from experiment_engine.config.dependency_injection import get_db, get_experiment_runner
from experiment_engine.schemas.response import StandardResponse
from experiment_engine.schemas.progress import ProgressDocument
from experiment_engine.services.experiment_runner import ExperimentRunner
router = APIRouter()

@router.get(
    "/participants/{user_id}/experiments/{experiment_id}",
    response_model=StandardResponse[ProgressDocument],
)
def get_participant_progress(
    user_id: str,
    experiment_id: str,
    db: Session = Depends(get_db),
    runner: ExperimentRunner = Depends(get_experiment_runner),
):
    try:
        # 没有记录时返回默认的 not_started 文档
        progress_doc = runner.tracker.get(db, user_id, experiment_id)
        return StandardResponse(data=progress_doc)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")


@router.get(
    "/participants/{user_id}/experiments/{experiment_id}/attempts",
    response_model=StandardResponse[List[ProgressDocument]],
)
def get_participant_attempts(
    user_id: str,
    experiment_id: str,
    db: Session = Depends(get_db),
    runner: ExperimentRunner = Depends(get_experiment_runner),
):
    """列出参与者在实验上的全部尝试，重置前的旧尝试也会保留"""
    try:
        attempts = runner.tracker.attempts(db, user_id, experiment_id)
        return StandardResponse(data=attempts)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")
