import redis

from experiment_engine.core.config import settings
from experiment_engine.db.database import get_db
from experiment_engine.services.experiment_runner import ExperimentRunner
from experiment_engine.services.progress_tracker import ProgressTracker
from experiment_engine.services.run_state_store import RunStateStore


_redis_client_instance = None

def get_redis_client() -> redis.Redis:
    """
    获取 Redis 客户端单例实例
    """
    global _redis_client_instance
    if _redis_client_instance is None:
        # 运行状态以 JSON 字符串保存，直接解码为 str
        _redis_client_instance = redis.from_url(
            settings.REDIS_URL,
            decode_responses=True
        )
    return _redis_client_instance

def get_run_state_store(redis_client: redis.Redis) -> RunStateStore:
    """
    获取 RunStateStore 实例
    """
    return RunStateStore(redis_client=redis_client, ttl_seconds=settings.RUN_STATE_TTL_SECONDS)


def create_experiment_runner(redis_client: redis.Redis) -> ExperimentRunner:
    """
    创建实验运行器实例，注入所有依赖
    """
    return ExperimentRunner(
        state_store=get_run_state_store(redis_client=redis_client),
        tracker=ProgressTracker(),
    )


# 创建单例实例
_experiment_runner_instance = None

def get_experiment_runner() -> ExperimentRunner:
    """
    获取实验运行器实例（单例模式）

    进度追踪器的按参与者加锁依赖于整个进程共享同一个运行器。
    """
    global _experiment_runner_instance
    if _experiment_runner_instance is None:
        _experiment_runner_instance = create_experiment_runner(redis_client=get_redis_client())
    return _experiment_runner_instance
