# backend/experiment_engine/services/__init__.py
from .stage_graph import StageGraph
from .progress_tracker import ProgressTracker
from .market_simulation import MarketSimulation, RoundTimer, StageCountdown
from .run_state_store import RunStateStore
from .experiment_runner import ExperimentRunner
