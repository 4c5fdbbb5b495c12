import json
import logging
from typing import Any, Dict, Optional

import redis

logger = logging.getLogger(__name__)


class RunStateStore:
    """
    参与者运行期的临时状态（场景轮次计时器、阶段倒计时）保存在 Redis 中

    每个 (实验, 参与者) 一个键，值为 JSON 字符串：
    { "stage_id": ..., "scenario": {...} | null, "countdown": {...} | null }
    离开阶段时整个键被丢弃；长时间不活动的运行由 TTL 自动清理。
    """

    KEY_PREFIX = "run_state"

    def __init__(self, redis_client: redis.Redis, ttl_seconds: int):
        self.redis_client = redis_client
        self.ttl_seconds = ttl_seconds

    def _key(self, experiment_id: str, user_id: str) -> str:
        return f"{self.KEY_PREFIX}:{experiment_id}:{user_id}"

    def load(self, experiment_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        """
        读取运行状态

        Returns:
            Optional[Dict]: 不存在时返回None
        """
        raw = self.redis_client.get(self._key(experiment_id, user_id))
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        return json.loads(raw)

    def save(self, experiment_id: str, user_id: str, state: Dict[str, Any]) -> None:
        self.redis_client.set(
            self._key(experiment_id, user_id),
            json.dumps(state),
            ex=self.ttl_seconds,
        )

    def discard(self, experiment_id: str, user_id: str) -> None:
        self.redis_client.delete(self._key(experiment_id, user_id))
        logger.debug(f"RunStateStore: 丢弃实验 {experiment_id} 参与者 {user_id} 的运行状态")
