"""
实验运行器（Experiment Runner）

API 层使用的组合根，把阶段图、分支求值、进度追踪和市场模拟串成参与者的一次实验运行。

每个参与者动作都遵循同一个跳转流程：

1. 检查动作针对的是参与者当前所在的阶段，否则视为过期请求（stale）直接丢弃
2. 标记当前阶段完成
3. 用最新的答案、完成度和停留时间构造参与者上下文并求值分支
4. 没有分支时按展示顺序推进（除非当前阶段是终止阶段）
5. 访问次数超过上限的目标回落到分支默认目标，默认目标也超限则结束实验
6. 进入下一个阶段或完成实验，整个过程在一次数据库提交中生效

单次动作的业务错误（过期请求、问卷校验失败、交易被拒绝）不会抛出，
而是以 TransitionResult / TradeResult 的形式返回。
"""
import copy
import logging
import random
from typing import Any, Dict, List, Mapping, Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from experiment_engine.core.config import settings
from experiment_engine.core.errors import (
    ActionNotAllowed,
    ExperimentNotFound,
    GraphInvalid,
    InvalidSurveyResponse,
    ScenarioNotActive,
    StaleTransition,
    TradeRejected,
)
from experiment_engine.crud.crud_experiment import experiment as crud_experiment
from experiment_engine.crud.crud_experiment import survey as crud_survey
from experiment_engine.crud.crud_progress import progress as crud_progress
from experiment_engine.crud.crud_scenario import participant_wallet as crud_participant_wallet
from experiment_engine.crud.crud_scenario import scenario as crud_scenario
from experiment_engine.crud.crud_scenario import wallet as crud_wallet
from experiment_engine.crud.crud_survey_response import survey_response as crud_survey_response
from experiment_engine.models.participant_progress import ParticipantProgress
from experiment_engine.schemas.experiment import ActivationResult
from experiment_engine.schemas.run import (
    CountdownView,
    RunView,
    ScenarioRunView,
    TransitionResult,
)
from experiment_engine.schemas.scenario import ScenarioDocument
from experiment_engine.schemas.stage import (
    Question,
    BreakStage,
    ScenarioStage,
    Stage,
    SurveyStage,
)
from experiment_engine.schemas.survey import SurveyResponseCreate
from experiment_engine.schemas.transaction import TradeRequest, TradeResult
from experiment_engine.services.branch_evaluator import ParticipantContext, evaluate
from experiment_engine.services.market_simulation import (
    MarketSimulation,
    RoundTimer,
    StageCountdown,
    balances_of,
)
from experiment_engine.services.progress_tracker import ProgressTracker
from experiment_engine.services.run_state_store import RunStateStore
from experiment_engine.services.stage_graph import StageGraph, validation_problems

logger = logging.getLogger(__name__)


def _is_blank(answer: Any) -> bool:
    if answer is None:
        return True
    if isinstance(answer, str):
        return answer.strip() == ""
    if isinstance(answer, (list, tuple, dict)):
        return len(answer) == 0
    return False


def _as_number(answer: Any) -> Optional[float]:
    if isinstance(answer, bool):
        return None
    if isinstance(answer, (int, float)):
        return float(answer)
    if isinstance(answer, str):
        try:
            return float(answer.strip())
        except ValueError:
            return None
    return None


def validate_answers(questions: List[Question], responses: Mapping[str, Any]) -> List[str]:
    """
    按问题定义校验问卷答案

    Args:
        questions: 问卷阶段解析后的问题列表
        responses: { question_id: answer }

    Returns:
        List[str]: 全部校验错误，为空表示通过
    """
    errors = []
    declared = {question.id: question for question in questions}
    for question_id in responses:
        if question_id not in declared:
            errors.append(f"{question_id}: unknown question")

    for question in questions:
        answer = responses.get(question.id)
        if _is_blank(answer):
            if question.required:
                errors.append(f"{question.id}: an answer is required")
            continue

        if question.type in ("text", "textarea"):
            if not isinstance(answer, str):
                errors.append(f"{question.id}: expected text")
        elif question.type == "multipleChoice":
            if question.options and answer not in question.options:
                errors.append(f"{question.id}: {answer!r} is not one of the options")
        elif question.type == "checkboxes":
            if not isinstance(answer, list):
                errors.append(f"{question.id}: expected a list of options")
            elif question.options:
                invalid = [item for item in answer if item not in question.options]
                if invalid:
                    errors.append(f"{question.id}: {invalid!r} are not options")
        elif question.type == "scale":
            value = _as_number(answer)
            if value is None or not question.min_value <= value <= question.max_value:
                errors.append(
                    f"{question.id}: expected a number between {question.min_value:g} and {question.max_value:g}"
                )
        elif question.type == "rating":
            value = _as_number(answer)
            if value is None or not value.is_integer() or not 1 <= value <= question.max_rating:
                errors.append(f"{question.id}: expected a rating between 1 and {question.max_rating}")
    return errors


def survey_completion(questions: List[Question], answers: Optional[Mapping[str, Any]]) -> float:
    """问卷完成度：必答题（没有必答题时为全部问题）中已作答的百分比"""
    if answers is None:
        return 0.0
    counted = [question for question in questions if question.required] or questions
    if not counted:
        return 100.0
    answered = sum(1 for question in counted if not _is_blank(answers.get(question.id)))
    return answered / len(counted) * 100


class ExperimentRunner:
    def __init__(
        self,
        state_store: RunStateStore,
        tracker: Optional[ProgressTracker] = None,
        market: Optional[MarketSimulation] = None,
        rng: Optional[random.Random] = None,
        max_stage_visits: Optional[int] = None,
        sequential_fallback: Optional[bool] = None,
    ):
        self.state_store = state_store
        self.tracker = tracker or ProgressTracker()
        self.rng = rng or random.Random()
        self.market = market or MarketSimulation(rng=self.rng)
        self.max_stage_visits = max_stage_visits or settings.MAX_STAGE_VISITS
        self.sequential_fallback = (
            settings.ENABLE_SEQUENTIAL_FALLBACK if sequential_fallback is None else sequential_fallback
        )

    # --- 阶段图 ---

    def load_graph(self, db: Session, experiment_id: str) -> StageGraph:
        """
        从数据库加载实验、问卷与场景并构造阶段图

        Raises:
            ExperimentNotFound: 实验不存在
            GraphInvalid: 实验图非法
        """
        try:
            document = crud_experiment.get_document(db, experiment_id)
        except ValidationError as e:
            raise GraphInvalid(validation_problems(e)) from e
        if document is None:
            raise ExperimentNotFound(experiment_id)

        survey_ids = [stage.survey_id for stage in document.stages if isinstance(stage, SurveyStage)]
        surveys = crud_survey.get_documents(db, survey_ids)

        scenario_ids = set()
        for stage in document.stages:
            if not isinstance(stage, ScenarioStage):
                continue
            # 场景和它的钱包模板都存在才算可运行
            scenario = crud_scenario.get_document(db, stage.scenario_id)
            if scenario is not None and crud_wallet.get(db, scenario.wallet_id) is not None:
                scenario_ids.add(scenario.id)

        return StageGraph(document, surveys=surveys, scenario_ids=scenario_ids)

    def activate(self, db: Session, experiment_id: str) -> ActivationResult:
        """校验实验图并把实验状态置为 active，软循环只作为警告返回"""
        graph = self.load_graph(db, experiment_id)
        crud_experiment.set_status(db, experiment_id=experiment_id, status="active")
        logger.info(f"ExperimentRunner: 实验 {experiment_id} 已激活，{len(graph.warnings)} 条警告")
        return ActivationResult(experiment_id=experiment_id, status="active", warnings=graph.warnings)

    # --- 视图 ---

    def _load_state(self, db: Session, experiment_id: str, user_id: str, stage_id: Optional[str]) -> Optional[Dict[str, Any]]:
        """
        读取当前阶段的计时器状态

        优先读 Redis；键过期或 Redis 重启后从进度记录里的持久副本恢复，并重新写回 Redis。
        """
        state = self.state_store.load(experiment_id, user_id)
        if state is None:
            record = crud_progress.get_current(db, user_id=user_id, experiment_id=experiment_id)
            if record is not None and record.run_state:
                state = copy.deepcopy(record.run_state)
                self.state_store.save(experiment_id, user_id, state)
                logger.info(f"ExperimentRunner: 从数据库恢复参与者 {user_id} 在阶段 {state.get('stage_id')} 的计时器")
        if state is None or state.get("stage_id") != stage_id:
            return None
        return state

    def _save_state(self, db: Session, experiment_id: str, user_id: str, state: Dict[str, Any], commit: bool = True) -> None:
        """计时器状态同时写入 Redis 和进度记录，后者保证恢复时不会重新计时"""
        self.state_store.save(experiment_id, user_id, state)
        record = crud_progress.get_current(db, user_id=user_id, experiment_id=experiment_id)
        if record is not None:
            crud_progress.update(db, db_obj=record, obj_in={"run_state": copy.deepcopy(state)}, commit=commit)

    def _discard_state(self, db: Session, experiment_id: str, user_id: str) -> None:
        self.state_store.discard(experiment_id, user_id)
        record = crud_progress.get_current(db, user_id=user_id, experiment_id=experiment_id)
        if record is not None and record.run_state is not None:
            crud_progress.update(db, db_obj=record, obj_in={"run_state": None}, commit=False)

    def _balances(self, db: Session, experiment_id: str, user_id: str, stage_id: str, attempt: int) -> Dict[str, float]:
        run_wallet = crud_participant_wallet.get_run_wallet(
            db, experiment_id=experiment_id, user_id=user_id, stage_id=stage_id, attempt=attempt
        )
        if run_wallet is None:
            return {}
        return balances_of(list(run_wallet.assets or []))

    def _view(self, db: Session, graph: StageGraph, experiment_id: str, user_id: str) -> RunView:
        progress = self.tracker.get(db, user_id, experiment_id)
        view = RunView(progress=progress)
        if progress.status != "in_progress" or progress.current_stage_id is None:
            return view

        stage = graph.stage_by_id(progress.current_stage_id)
        view.current_stage = stage
        state = self._load_state(db, experiment_id, user_id, stage.id)

        if isinstance(stage, ScenarioStage):
            view.balances = self._balances(db, experiment_id, user_id, stage.id, progress.attempt)
            if state is not None and state.get("scenario") is not None:
                timer = RoundTimer.from_dict(state["scenario"])
                scenario = crud_scenario.get_document(db, stage.scenario_id)
                prices = {}
                if scenario is not None:
                    prices = {
                        asset_price.asset_id: asset_price.prices[timer.current_round - 1]
                        for asset_price in scenario.asset_prices
                        if timer.current_round <= len(asset_price.prices)
                    }
                view.scenario = ScenarioRunView(
                    stage_id=stage.id,
                    scenario_id=stage.scenario_id,
                    rounds=timer.rounds,
                    round_duration=timer.round_duration,
                    current_round=timer.current_round,
                    time_remaining=timer.time_remaining,
                    status=timer.status,
                    suspended=timer.suspended,
                    current_prices=prices,
                )
        if state is not None and state.get("countdown") is not None:
            countdown = StageCountdown.from_dict(state["countdown"])
            view.countdown = CountdownView(
                stage_id=stage.id,
                duration=countdown.duration,
                time_remaining=countdown.time_remaining,
                expired=countdown.expired,
                suspended=countdown.suspended,
            )
        return view

    def view(self, db: Session, experiment_id: str, user_id: str) -> RunView:
        graph = self.load_graph(db, experiment_id)
        return self._view(db, graph, experiment_id, user_id)

    def _result(self, db: Session, graph: StageGraph, experiment_id: str, user_id: str, outcome: str, **kwargs) -> TransitionResult:
        return TransitionResult(outcome=outcome, view=self._view(db, graph, experiment_id, user_id), **kwargs)

    # --- 阶段的临时状态 ---

    def _start_stage_state(
        self,
        db: Session,
        experiment_id: str,
        user_id: str,
        stage: Stage,
        attempt: int = 1,
        log_prices: bool = True,
    ) -> None:
        """
        为刚进入的阶段建立临时状态

        场景阶段：开立参与者钱包、确保价格序列存在、启动轮次计时器并记录第1轮价格。
        其他设置了 duration_seconds 的阶段：启动阶段倒计时。
        """
        state = None
        if isinstance(stage, ScenarioStage):
            scenario = crud_scenario.get_document(db, stage.scenario_id)
            wallet = crud_wallet.get_document(db, scenario.wallet_id)
            scenario = self.market.load_prices(db, scenario, wallet, commit=False)
            self.market.open_run_wallet(
                db,
                experiment_id=experiment_id,
                user_id=user_id,
                stage_id=stage.id,
                scenario=scenario,
                wallet=wallet,
                attempt=attempt,
                commit=False,
            )
            timer = RoundTimer(rounds=scenario.rounds, round_duration=scenario.round_duration)
            if log_prices:
                self.market.log_round_prices(
                    db,
                    experiment_id=experiment_id,
                    user_id=user_id,
                    scenario=scenario,
                    round_number=1,
                    commit=False,
                )
            state = {"stage_id": stage.id, "scenario": timer.to_dict(), "countdown": None}
        elif stage.duration_seconds > 0:
            countdown = StageCountdown(duration=stage.duration_seconds)
            state = {"stage_id": stage.id, "scenario": None, "countdown": countdown.to_dict()}

        if state is None:
            self._discard_state(db, experiment_id, user_id)
        else:
            self._save_state(db, experiment_id, user_id, state, commit=False)

    def _enter(
        self,
        db: Session,
        graph: StageGraph,
        experiment_id: str,
        user_id: str,
        stage_id: str,
        revisit: bool = False,
    ) -> ParticipantProgress:
        record, changed = self.tracker.enter_stage(
            db, user_id, experiment_id, stage_id, commit=False, revisit=revisit
        )
        if changed:
            self._start_stage_state(db, experiment_id, user_id, graph.stage_by_id(stage_id), attempt=record.attempt)
        return record

    # --- 跳转 ---

    def _build_context(
        self,
        db: Session,
        graph: StageGraph,
        record: ParticipantProgress,
        experiment_id: str,
        user_id: str,
        timer: Optional[RoundTimer] = None,
    ) -> ParticipantContext:
        responses = crud_survey_response.get_answers_by_stage(
            db, experiment_id=experiment_id, user_id=user_id, attempt=record.attempt
        )
        completed = set(record.completed_stages or [])

        completion = {}
        for stage in graph.ordered_stages():
            if isinstance(stage, SurveyStage):
                completion[stage.id] = survey_completion(graph.questions_for(stage.id), responses.get(stage.id))
            elif isinstance(stage, ScenarioStage) and timer is not None and stage.id == record.current_stage_id:
                completion[stage.id] = timer.completion_percent()
            else:
                completion[stage.id] = 100.0 if stage.id in completed else 0.0

        elapsed = dict(record.stage_elapsed or {})
        if record.current_stage_id is not None:
            elapsed[record.current_stage_id] = self.tracker.current_visit_seconds(record)

        return ParticipantContext(responses=responses, completion=completion, elapsed=elapsed, rng=self.rng)

    def _check_current(self, record: ParticipantProgress, stage_id: str) -> None:
        if record.status != "in_progress" or record.current_stage_id != stage_id:
            raise StaleTransition(stage_id, record.current_stage_id)

    def _bound_visits(self, graph: StageGraph, record: ParticipantProgress, from_stage_id: str, target: Optional[str]) -> Optional[str]:
        if target is None:
            return None
        visits = record.stage_visits or {}
        if visits.get(target, 0) < self.max_stage_visits:
            return target
        branch = graph.branch_from(from_stage_id)
        fallback = branch.default_target_stage_id if branch is not None else None
        if fallback is not None and fallback != target and visits.get(fallback, 0) < self.max_stage_visits:
            logger.warning(
                f"ExperimentRunner: 阶段 {target} 已访问 {visits.get(target)} 次，回落到默认目标 {fallback}"
            )
            return fallback
        logger.warning(f"ExperimentRunner: 阶段 {target} 访问次数已达上限，结束实验")
        return None

    def _advance(
        self,
        db: Session,
        graph: StageGraph,
        experiment_id: str,
        user_id: str,
        from_stage_id: str,
        timer: Optional[RoundTimer] = None,
        opened_rounds: Optional[List[int]] = None,
    ) -> TransitionResult:
        """完成当前阶段并跳转到下一个阶段（或完成实验），在一次提交中生效"""
        record, _ = self.tracker.complete_stage(db, user_id, experiment_id, from_stage_id, commit=False)
        context = self._build_context(db, graph, record, experiment_id, user_id, timer=timer)
        decision = evaluate(graph, from_stage_id, context)

        target = decision.target_stage_id
        if target is None and self.sequential_fallback and not graph.is_exit(from_stage_id):
            target = graph.sequential_next(from_stage_id)
        target = self._bound_visits(graph, record, from_stage_id, target)

        self._discard_state(db, experiment_id, user_id)
        if target is None:
            self.tracker.finalize(db, user_id, experiment_id, commit=False)
            db.commit()
            logger.info(f"ExperimentRunner: 参与者 {user_id} 在阶段 {from_stage_id} 之后完成实验 {experiment_id}")
            return self._result(
                db, graph, experiment_id, user_id, "completed",
                previous_stage_id=from_stage_id,
                matched_condition=decision.matched_index,
                opened_rounds=opened_rounds or [],
            )

        self._enter(db, graph, experiment_id, user_id, target, revisit=target == from_stage_id)
        db.commit()
        logger.info(
            f"ExperimentRunner: 参与者 {user_id} 从 {from_stage_id} 跳转到 {target}（{decision.reason or 'sequential'}）"
        )
        return self._result(
            db, graph, experiment_id, user_id, "advanced",
            previous_stage_id=from_stage_id,
            next_stage_id=target,
            matched_condition=decision.matched_index,
            opened_rounds=opened_rounds or [],
        )

    def _stale(self, db: Session, graph: StageGraph, experiment_id: str, user_id: str, error: StaleTransition) -> TransitionResult:
        db.rollback()
        logger.info(f"ExperimentRunner: 丢弃过期请求，{error.message}")
        return self._result(db, graph, experiment_id, user_id, "stale", error=error.to_dict())

    def _rejected(self, db: Session, graph: StageGraph, experiment_id: str, user_id: str, error) -> TransitionResult:
        db.rollback()
        logger.info(f"ExperimentRunner: 参与者 {user_id} 的请求被拒绝，{error.message}")
        return self._result(db, graph, experiment_id, user_id, "rejected", error=error.to_dict())

    # --- 参与者动作 ---

    def start(self, db: Session, experiment_id: str, user_id: str) -> TransitionResult:
        """
        开始或恢复实验

        - not_started: 进入起始阶段
        - in_progress: 恢复当前阶段，暂停的计时器从剩余时间继续
        - completed: 直接返回完成视图
        """
        graph = self.load_graph(db, experiment_id)
        with self.tracker.lock(user_id, experiment_id):
            record = self.tracker.get_or_create(db, user_id, experiment_id)
            if record.status == "completed":
                return self._result(db, graph, experiment_id, user_id, "completed")

            if record.current_stage_id is None:
                self._enter(db, graph, experiment_id, user_id, graph.start_stage_id)
                db.commit()
                logger.info(f"ExperimentRunner: 参与者 {user_id} 开始实验 {experiment_id}")
                return self._result(
                    db, graph, experiment_id, user_id, "entered", next_stage_id=graph.start_stage_id
                )

            stage = graph.stage_by_id(record.current_stage_id)
            state = self._load_state(db, experiment_id, user_id, stage.id)
            if state is None:
                # 没有任何计时器状态（阶段不计时或从未保存），按新一次进入建立，但不重复记录价格
                self._start_stage_state(db, experiment_id, user_id, stage, attempt=record.attempt, log_prices=False)
                db.commit()
            else:
                for key, factory in (("scenario", RoundTimer), ("countdown", StageCountdown)):
                    if state.get(key) is not None:
                        timer = factory.from_dict(state[key])
                        timer.resume()
                        state[key] = timer.to_dict()
                self._save_state(db, experiment_id, user_id, state)
            return self._result(db, graph, experiment_id, user_id, "entered", next_stage_id=stage.id)

    def submit_survey(
        self, db: Session, experiment_id: str, user_id: str, stage_id: str, responses: Mapping[str, Any]
    ) -> TransitionResult:
        """校验并保存问卷答案，然后跳转"""
        graph = self.load_graph(db, experiment_id)
        with self.tracker.lock(user_id, experiment_id):
            record = self.tracker.get_or_create(db, user_id, experiment_id)
            try:
                self._check_current(record, stage_id)
                stage = graph.stage_by_id(stage_id)
                if not isinstance(stage, SurveyStage):
                    raise ActionNotAllowed(f"Stage {stage_id!r} is not a survey")
                errors = validate_answers(graph.questions_for(stage_id), responses)
                if errors:
                    raise InvalidSurveyResponse(errors)
            except StaleTransition as e:
                return self._stale(db, graph, experiment_id, user_id, e)
            except (ActionNotAllowed, InvalidSurveyResponse) as e:
                return self._rejected(db, graph, experiment_id, user_id, e)

            crud_survey_response.upsert(db, obj_in=SurveyResponseCreate(
                experiment_id=experiment_id,
                stage_id=stage_id,
                user_id=user_id,
                attempt=record.attempt,
                responses=dict(responses),
            ), commit=False)
            return self._advance(db, graph, experiment_id, user_id, stage_id)

    def acknowledge(self, db: Session, experiment_id: str, user_id: str, stage_id: str) -> TransitionResult:
        """
        参与者确认离开当前阶段（说明阶段阅读完毕、休息倒计时结束、场景结束后继续）

        设置了时长的休息阶段在倒计时结束前不能确认离开。
        """
        graph = self.load_graph(db, experiment_id)
        with self.tracker.lock(user_id, experiment_id):
            record = self.tracker.get_or_create(db, user_id, experiment_id)
            timer = None
            try:
                self._check_current(record, stage_id)
                stage = graph.stage_by_id(stage_id)
                if isinstance(stage, SurveyStage):
                    raise ActionNotAllowed(f"Survey stage {stage_id!r} must be submitted")
                if isinstance(stage, BreakStage):
                    state = self._load_state(db, experiment_id, user_id, stage_id)
                    if state is not None and state.get("countdown") is not None:
                        if not StageCountdown.from_dict(state["countdown"]).expired:
                            raise ActionNotAllowed(f"Break stage {stage_id!r} has not finished")
                if isinstance(stage, ScenarioStage):
                    state = self._load_state(db, experiment_id, user_id, stage_id)
                    if state is None or state.get("scenario") is None:
                        raise ActionNotAllowed(f"Scenario stage {stage_id!r} is not running")
                    timer = RoundTimer.from_dict(state["scenario"])
                    if not timer.finished:
                        raise ActionNotAllowed(f"Scenario stage {stage_id!r} is still running")
            except StaleTransition as e:
                return self._stale(db, graph, experiment_id, user_id, e)
            except ActionNotAllowed as e:
                return self._rejected(db, graph, experiment_id, user_id, e)
            return self._advance(db, graph, experiment_id, user_id, stage_id, timer=timer)

    def tick(self, db: Session, experiment_id: str, user_id: str, seconds: int = 1) -> TransitionResult:
        """
        推进当前阶段的计时器

        场景最后一轮结束、或阶段倒计时归零时自动跳转。
        """
        graph = self.load_graph(db, experiment_id)
        with self.tracker.lock(user_id, experiment_id):
            record = self.tracker.get_or_create(db, user_id, experiment_id)
            if record.status != "in_progress":
                return self._result(db, graph, experiment_id, user_id, "unchanged")
            stage_id = record.current_stage_id
            state = self._load_state(db, experiment_id, user_id, stage_id)
            if state is None:
                return self._result(db, graph, experiment_id, user_id, "unchanged")

            if state.get("scenario") is not None:
                timer = RoundTimer.from_dict(state["scenario"])
                opened = timer.tick(seconds)
                if opened:
                    scenario = crud_scenario.get_document(db, graph.stage_by_id(stage_id).scenario_id)
                    for round_number in opened:
                        self.market.log_round_prices(
                            db,
                            experiment_id=experiment_id,
                            user_id=user_id,
                            scenario=scenario,
                            round_number=round_number,
                            commit=False,
                        )
                state["scenario"] = timer.to_dict()
                self._save_state(db, experiment_id, user_id, state)
                if timer.finished:
                    return self._advance(
                        db, graph, experiment_id, user_id, stage_id, timer=timer, opened_rounds=opened
                    )
                return self._result(db, graph, experiment_id, user_id, "unchanged", opened_rounds=opened)

            countdown = StageCountdown.from_dict(state["countdown"])
            expired = countdown.tick(seconds)
            state["countdown"] = countdown.to_dict()
            self._save_state(db, experiment_id, user_id, state)
            if expired:
                return self._advance(db, graph, experiment_id, user_id, stage_id)
            return self._result(db, graph, experiment_id, user_id, "unchanged")

    def trade(self, db: Session, experiment_id: str, user_id: str, trade_request: TradeRequest) -> TradeResult:
        """在参与者当前的、正在运行的场景阶段中执行一笔交易"""
        graph = self.load_graph(db, experiment_id)
        with self.tracker.lock(user_id, experiment_id):
            record = self.tracker.get_or_create(db, user_id, experiment_id)
            stage_id = trade_request.stage_id
            round_number = None
            try:
                if record.status != "in_progress" or record.current_stage_id != stage_id:
                    raise ScenarioNotActive(f"Participant is not on scenario stage {stage_id!r}")
                stage = graph.stage_by_id(stage_id)
                if not isinstance(stage, ScenarioStage):
                    raise ScenarioNotActive(f"Stage {stage_id!r} is not a scenario")
                state = self._load_state(db, experiment_id, user_id, stage_id)
                if state is None or state.get("scenario") is None:
                    raise ScenarioNotActive(f"Scenario stage {stage_id!r} is not running")
                timer = RoundTimer.from_dict(state["scenario"])
                round_number = timer.current_round
                scenario: ScenarioDocument = crud_scenario.get_document(db, stage.scenario_id)
                return self.market.execute_trade(
                    db,
                    experiment_id=experiment_id,
                    user_id=user_id,
                    stage_id=stage_id,
                    scenario=scenario,
                    timer=timer,
                    asset_id=trade_request.asset_id,
                    trade_type=trade_request.type,
                    quantity=trade_request.quantity,
                    attempt=record.attempt,
                )
            except TradeRejected as e:
                logger.info(f"ExperimentRunner: 参与者 {user_id} 的交易被拒绝，{e.code}: {e.message}")
                return TradeResult(
                    accepted=False,
                    error=e.to_dict(),
                    balances=self._balances(db, experiment_id, user_id, stage_id, record.attempt),
                    round_number=round_number,
                )

    def suspend(self, db: Session, experiment_id: str, user_id: str) -> RunView:
        """参与者离开页面：暂停计时器，恢复时从剩余时间继续"""
        graph = self.load_graph(db, experiment_id)
        with self.tracker.lock(user_id, experiment_id):
            record = crud_progress.get_current(db, user_id=user_id, experiment_id=experiment_id)
            stage_id = record.current_stage_id if record is not None else None
            state = self._load_state(db, experiment_id, user_id, stage_id)
            if state is not None:
                for key, factory in (("scenario", RoundTimer), ("countdown", StageCountdown)):
                    if state.get(key) is not None:
                        timer = factory.from_dict(state[key])
                        timer.suspend()
                        state[key] = timer.to_dict()
                self._save_state(db, experiment_id, user_id, state)
            return self._view(db, graph, experiment_id, user_id)

    def reset(self, db: Session, experiment_id: str, user_id: str) -> RunView:
        """重置进度并丢弃临时状态，交易与问卷记录保留"""
        graph = self.load_graph(db, experiment_id)
        with self.tracker.lock(user_id, experiment_id):
            self.state_store.discard(experiment_id, user_id)
            self.tracker.reset(db, user_id, experiment_id)
            return self._view(db, graph, experiment_id, user_id)
