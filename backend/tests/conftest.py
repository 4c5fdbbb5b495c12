"""
测试公共夹具

- 内存 SQLite（StaticPool，同一连接在整个测试中共享）
- 基于字典的 Redis 替身
- 可手动推进的时钟
"""
import os
import random
import sys
from datetime import datetime, timedelta, UTC
from typing import Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# 将 backend 目录添加到 sys.path 中
backend_path = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
sys.path.insert(0, backend_path)

from fastapi.testclient import TestClient

from experiment_engine.config.dependency_injection import get_db, get_experiment_runner
from experiment_engine.crud import experiment as experiment_crud
from experiment_engine.crud import scenario as scenario_crud
from experiment_engine.crud import survey as survey_crud
from experiment_engine.crud import wallet as wallet_crud
from experiment_engine.db.init_db import init_db
from experiment_engine.schemas.experiment import ExperimentDocument
from experiment_engine.services.experiment_runner import ExperimentRunner
from experiment_engine.services.progress_tracker import ProgressTracker
from experiment_engine.services.run_state_store import RunStateStore


class FakeRedis:
    """只实现 RunStateStore 用到的 get / set / delete"""

    def __init__(self):
        self.store = {}
        self.expirations = {}

    def get(self, key):
        return self.store.get(key)

    def set(self, key, value, ex=None):
        self.store[key] = value
        self.expirations[key] = ex
        return True

    def delete(self, *keys):
        removed = 0
        for key in keys:
            if key in self.store:
                del self.store[key]
                self.expirations.pop(key, None)
                removed += 1
        return removed


class FakeClock:
    def __init__(self, start: datetime = None):
        self.current = start or datetime(2024, 1, 1, 9, 0, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


@pytest.fixture(scope="function")
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function")
def db(session_factory) -> Generator[Session, None, None]:
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def state_store(fake_redis) -> RunStateStore:
    return RunStateStore(redis_client=fake_redis, ttl_seconds=3600)


@pytest.fixture
def tracker(clock) -> ProgressTracker:
    return ProgressTracker(clock=clock)


@pytest.fixture
def runner(state_store, tracker) -> ExperimentRunner:
    return ExperimentRunner(state_store=state_store, tracker=tracker, rng=random.Random(42))


# --- 测试数据 ---

@pytest.fixture
def make_experiment(db):
    """保存一个实验文档（dict，camelCase 或 snake_case 均可）"""
    def _make(document: dict):
        parsed = ExperimentDocument.model_validate(document)
        experiment_crud.create_from_document(db, document=parsed)
        return parsed
    return _make


@pytest.fixture
def make_survey(db):
    def _make(survey_id: str, questions: list, title: str = ""):
        return survey_crud.create(db, obj_in={"id": survey_id, "title": title, "questions": questions})
    return _make


@pytest.fixture
def make_wallet(db):
    def _make(wallet_id: str = "wallet-1", cash: float = 1000, assets: list = None):
        if assets is None:
            assets = [{"id": "acme", "type": "share", "name": "Acme", "symbol": "ACM", "amount": 50}]
        assets = [{"id": "cash", "type": "fiat", "name": "Cash", "symbol": "USD", "amount": cash}] + assets
        return wallet_crud.create(db, obj_in={"id": wallet_id, "name": "Wallet", "assets": assets})
    return _make


@pytest.fixture
def make_scenario(db):
    """保存场景；asset_prices 为 None 时留空，由进入场景阶段时生成"""
    def _make(scenario_id: str = "scenario-1", wallet_id: str = "wallet-1", rounds: int = 3,
              round_duration: int = 10, asset_prices: list = None):
        return scenario_crud.create(db, obj_in={
            "id": scenario_id,
            "name": "Market",
            "description": "",
            "wallet_id": wallet_id,
            "rounds": rounds,
            "round_duration": round_duration,
            "asset_prices": asset_prices or [],
            "is_active": True,
        })
    return _make


def survey_stage(stage_id: str, questions: list, order: int = 0, **extra) -> dict:
    return {"id": stage_id, "type": "survey", "title": stage_id, "order": order, "questions": questions, **extra}


def instructions_stage(stage_id: str, order: int = 0, **extra) -> dict:
    return {"id": stage_id, "type": "instructions", "title": stage_id, "order": order, "content": "Read me", **extra}


@pytest.fixture
def branching_experiment(make_experiment):
    """
    A(问卷 q1) -> 回答 yes 跳到 C，否则回到 A；B 只能通过顺序推进到达
    """
    return make_experiment({
        "id": "exp-branch",
        "name": "Branching",
        "status": "active",
        "startStageId": "A",
        "stages": [
            survey_stage("A", [{"id": "q1", "type": "multipleChoice", "options": ["yes", "no"]}], order=0),
            instructions_stage("B", order=1),
            instructions_stage("C", order=2, terminal=True),
        ],
        "branches": [{
            "fromStageId": "A",
            "conditions": [{
                "type": "response",
                "sourceStageId": "A",
                "questionId": "q1",
                "operator": "equals",
                "expectedResponse": "yes",
                "targetStageId": "C",
            }],
            "defaultTargetStageId": "A",
        }],
    })


@pytest.fixture
def client(session_factory, runner) -> Generator[TestClient, None, None]:
    """创建测试客户端，数据库与运行器替换为测试实例（不触发 lifespan）"""
    from experiment_engine.main import app

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_experiment_runner] = lambda: runner
    yield TestClient(app)
    app.dependency_overrides.clear()
