from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from experiment_engine.api.errors import to_http_exception
from experiment_engine.config.dependency_injection import get_db, get_experiment_runner
from experiment_engine.core.errors import ExperimentEngineError
from experiment_engine.schemas.response import StandardResponse
from experiment_engine.schemas.run import RunView, StageActionRequest, TickRequest, TransitionResult
from experiment_engine.schemas.survey import SurveySubmission
from experiment_engine.services.experiment_runner import ExperimentRunner

router = APIRouter()


@router.post(
    "/{experiment_id}/participants/{user_id}/start",
    response_model=StandardResponse[TransitionResult],
)
def start_run(
    experiment_id: str,
    user_id: str,
    db: Session = Depends(get_db),
    runner: ExperimentRunner = Depends(get_experiment_runner),
):
    """
    开始或恢复参与者的实验运行

    实验图非法时返回 422，detail 中列出全部问题。
    """
    try:
        result = runner.start(db, experiment_id, user_id)
        return StandardResponse(data=result)
    except ExperimentEngineError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")


@router.get(
    "/{experiment_id}/participants/{user_id}",
    response_model=StandardResponse[RunView],
)
def get_run(
    experiment_id: str,
    user_id: str,
    db: Session = Depends(get_db),
    runner: ExperimentRunner = Depends(get_experiment_runner),
):
    try:
        view = runner.view(db, experiment_id, user_id)
        return StandardResponse(data=view)
    except ExperimentEngineError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")


@router.post(
    "/{experiment_id}/participants/{user_id}/survey",
    response_model=StandardResponse[TransitionResult],
)
def submit_survey(
    experiment_id: str,
    user_id: str,
    submission: SurveySubmission,
    db: Session = Depends(get_db),
    runner: ExperimentRunner = Depends(get_experiment_runner),
):
    """
    提交问卷答案

    校验失败或请求过期时仍返回 200，结果的 outcome 为 rejected / stale。
    """
    try:
        result = runner.submit_survey(
            db, experiment_id, user_id, submission.stage_id, submission.responses
        )
        return StandardResponse(data=result)
    except ExperimentEngineError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")


@router.post(
    "/{experiment_id}/participants/{user_id}/acknowledge",
    response_model=StandardResponse[TransitionResult],
)
def acknowledge_stage(
    experiment_id: str,
    user_id: str,
    action: StageActionRequest,
    db: Session = Depends(get_db),
    runner: ExperimentRunner = Depends(get_experiment_runner),
):
    try:
        result = runner.acknowledge(db, experiment_id, user_id, action.stage_id)
        return StandardResponse(data=result)
    except ExperimentEngineError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")


@router.post(
    "/{experiment_id}/participants/{user_id}/tick",
    response_model=StandardResponse[TransitionResult],
)
def tick_run(
    experiment_id: str,
    user_id: str,
    tick: TickRequest,
    db: Session = Depends(get_db),
    runner: ExperimentRunner = Depends(get_experiment_runner),
):
    """推进当前阶段的计时器，由参与者界面每秒调用"""
    try:
        result = runner.tick(db, experiment_id, user_id, tick.seconds)
        return StandardResponse(data=result)
    except ExperimentEngineError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")


@router.post(
    "/{experiment_id}/participants/{user_id}/suspend",
    response_model=StandardResponse[RunView],
)
def suspend_run(
    experiment_id: str,
    user_id: str,
    db: Session = Depends(get_db),
    runner: ExperimentRunner = Depends(get_experiment_runner),
):
    try:
        view = runner.suspend(db, experiment_id, user_id)
        return StandardResponse(data=view)
    except ExperimentEngineError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")


@router.post(
    "/{experiment_id}/participants/{user_id}/reset",
    response_model=StandardResponse[RunView],
)
def reset_run(
    experiment_id: str,
    user_id: str,
    db: Session = Depends(get_db),
    runner: ExperimentRunner = Depends(get_experiment_runner),
):
    try:
        view = runner.reset(db, experiment_id, user_id)
        return StandardResponse(data=view)
    except ExperimentEngineError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")
