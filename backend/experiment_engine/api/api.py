from fastapi import APIRouter
from experiment_engine.api.endpoints import progress, runs, transactions, scenarios, experiments

api_router = APIRouter()
api_router.include_router(progress.router, prefix="/progress", tags=["progress"])
api_router.include_router(runs.router, prefix="/runs", tags=["runs"])
api_router.include_router(transactions.router, prefix="/transactions", tags=["transactions"])
api_router.include_router(scenarios.router, prefix="/scenarios", tags=["scenarios"])
api_router.include_router(experiments.router, prefix="/experiments", tags=["experiments"])
