from fastapi import HTTPException

from experiment_engine.core.errors import ExperimentEngineError, GraphInvalid


def to_http_exception(error: ExperimentEngineError) -> HTTPException:
    """
    把引擎错误转换为 HTTP 错误

    - GraphInvalid -> 422，detail 中带完整的问题列表
    - 找不到实验/阶段 -> 404
    - 其他引擎错误 -> 400
    """
    if isinstance(error, GraphInvalid):
        return HTTPException(status_code=422, detail=error.to_dict())
    if isinstance(error, LookupError):
        return HTTPException(status_code=404, detail=error.to_dict())
    return HTTPException(status_code=400, detail=error.to_dict())
