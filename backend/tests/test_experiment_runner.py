"""
实验运行器测试

覆盖完整的参与者流程：开始、问卷分支、过期请求、计时阶段、场景交易、暂停恢复与重置。
"""
import pytest

from conftest import instructions_stage, survey_stage
from experiment_engine.core.errors import ExperimentNotFound, GraphInvalid
from experiment_engine.crud import experiment as experiment_crud
from experiment_engine.crud import price_log as price_log_crud
from experiment_engine.crud import progress as progress_crud
from experiment_engine.crud import survey_response as survey_response_crud
from experiment_engine.crud import transaction as transaction_crud
from experiment_engine.schemas.transaction import TradeRequest
from experiment_engine.schemas.stage import Question
from experiment_engine.services.experiment_runner import ExperimentRunner, survey_completion, validate_answers

USER = "participant_1"


class TestSurveyValidation:
    QUESTIONS = [
        Question(id="name", type="text"),
        Question(id="choice", type="multipleChoice", options=["a", "b"]),
        Question(id="boxes", type="checkboxes", options=["x", "y"], required=False),
        Question(id="scale", type="scale", min_value=1, max_value=7),
        Question(id="stars", type="rating", max_rating=5),
    ]

    def test_valid_answers(self):
        answers = {"name": "Ann", "choice": "a", "boxes": ["x"], "scale": 7, "stars": "4"}
        assert validate_answers(self.QUESTIONS, answers) == []

    def test_reports_every_problem(self):
        errors = validate_answers(self.QUESTIONS, {
            "name": "",
            "choice": "c",
            "boxes": ["z"],
            "scale": 8,
            "stars": 4.5,
            "extra": 1,
        })
        assert len(errors) == 6
        assert "extra: unknown question" in errors
        assert "name: an answer is required" in errors

    def test_completion_counts_required_questions(self):
        assert survey_completion(self.QUESTIONS, None) == 0
        assert survey_completion(self.QUESTIONS, {"name": "Ann", "choice": "a"}) == 50
        assert survey_completion([Question(id="opt", type="text", required=False)], {}) == 0
        assert survey_completion([], {}) == 100


class TestRunnerFlow:
    def test_start_enters_start_stage(self, db, runner, branching_experiment):
        result = runner.start(db, "exp-branch", USER)
        assert result.outcome == "entered"
        assert result.view.progress.status == "in_progress"
        assert result.view.progress.current_stage_id == "A"
        assert result.view.current_stage.id == "A"

    def test_start_is_idempotent(self, db, runner, branching_experiment):
        runner.start(db, "exp-branch", USER)
        result = runner.start(db, "exp-branch", USER)
        assert result.view.progress.current_stage_id == "A"
        assert result.view.progress.stage_visits == {"A": 1}

    def test_yes_answer_branches_to_c_and_completes(self, db, runner, branching_experiment):
        """测试回答 yes 跳转到 C，C 是终止阶段，确认后实验完成"""
        runner.start(db, "exp-branch", USER)

        result = runner.submit_survey(db, "exp-branch", USER, "A", {"q1": "yes"})
        assert result.outcome == "advanced"
        assert result.next_stage_id == "C"
        assert result.matched_condition == 0
        assert result.view.progress.completed_stages == ["A"]

        result = runner.acknowledge(db, "exp-branch", USER, "C")
        assert result.outcome == "completed"
        assert result.view.progress.status == "completed"
        assert result.view.progress.completed_stages == ["A", "C"]

    def test_no_answer_loops_back_to_a(self, db, runner, branching_experiment):
        runner.start(db, "exp-branch", USER)
        result = runner.submit_survey(db, "exp-branch", USER, "A", {"q1": "no"})
        assert result.outcome == "advanced"
        assert result.next_stage_id == "A"
        assert result.view.progress.stage_visits == {"A": 2}

        # 重新作答覆盖旧答案，每个 (实验, 阶段, 参与者) 只保留一行
        result = runner.submit_survey(db, "exp-branch", USER, "A", {"q1": "yes"})
        assert result.next_stage_id == "C"
        assert len(survey_response_crud.get_multi(db, filter_conditions={"experiment_id": "exp-branch"})) == 1
        answers = survey_response_crud.get_answers_by_stage(db, experiment_id="exp-branch", user_id=USER)
        assert answers == {"A": {"q1": "yes"}}

    def test_stale_action_is_discarded(self, db, runner, branching_experiment):
        """测试针对非当前阶段的动作被丢弃，进度不变"""
        runner.start(db, "exp-branch", USER)
        runner.submit_survey(db, "exp-branch", USER, "A", {"q1": "yes"})
        before = runner.view(db, "exp-branch", USER).progress

        result = runner.submit_survey(db, "exp-branch", USER, "A", {"q1": "no"})
        assert result.outcome == "stale"
        assert result.error["code"] == "stale_transition"
        assert result.view.progress == before
        assert survey_response_crud.get_answers_by_stage(
            db, experiment_id="exp-branch", user_id=USER
        ) == {"A": {"q1": "yes"}}

    def test_invalid_survey_is_rejected(self, db, runner, branching_experiment):
        runner.start(db, "exp-branch", USER)
        result = runner.submit_survey(db, "exp-branch", USER, "A", {"q1": "maybe"})
        assert result.outcome == "rejected"
        assert result.error["code"] == "invalid_survey_response"
        assert result.view.progress.current_stage_id == "A"
        assert survey_response_crud.get_multi(db) == []

    def test_acknowledge_not_allowed_on_survey(self, db, runner, branching_experiment):
        runner.start(db, "exp-branch", USER)
        result = runner.acknowledge(db, "exp-branch", USER, "A")
        assert result.outcome == "rejected"
        assert result.error["code"] == "action_not_allowed"

    def test_revisits_are_bounded(self, db, state_store, tracker, branching_experiment):
        """测试访问次数达到上限后回落到默认目标，默认目标也超限时结束实验"""
        runner = ExperimentRunner(state_store=state_store, tracker=tracker, max_stage_visits=3)
        runner.start(db, "exp-branch", USER)
        outcomes = [runner.submit_survey(db, "exp-branch", USER, "A", {"q1": "no"}).outcome for _ in range(3)]
        assert outcomes == ["advanced", "advanced", "completed"]
        assert runner.view(db, "exp-branch", USER).progress.stage_visits == {"A": 3}

    def test_unknown_experiment(self, db, runner):
        with pytest.raises(ExperimentNotFound):
            runner.start(db, "missing", USER)

    def test_invalid_graph_aborts_start(self, db, runner, make_experiment):
        make_experiment({
            "id": "broken",
            "stages": [instructions_stage("A")],
            "branches": [{"fromStageId": "A", "conditions": [], "defaultTargetStageId": "nowhere"}],
        })
        with pytest.raises(GraphInvalid):
            runner.start(db, "broken", USER)
        assert progress_crud.get_multi(db) == []

    def test_activate(self, db, runner, branching_experiment):
        result = runner.activate(db, "exp-branch")
        assert result.status == "active"
        assert experiment_crud.get(db, "exp-branch").status == "active"


class TestAttemptIsolation:
    @pytest.fixture
    def completion_experiment(self, make_experiment):
        """
        A(说明) -> X(问卷) -> T(结束)；A 的分支：X 完成度达到 100 时直接跳到 T，否则进入 X
        """
        return make_experiment({
            "id": "exp-attempts",
            "stages": [
                instructions_stage("A", order=0),
                survey_stage("X", [{"id": "q", "type": "text"}], order=1),
                instructions_stage("T", order=2, terminal=True),
            ],
            "branches": [{
                "fromStageId": "A",
                "conditions": [{"type": "completion", "sourceStageId": "X", "threshold": 100, "targetStageId": "T"}],
                "defaultTargetStageId": "X",
            }],
        })

    def test_answers_from_previous_attempt_do_not_steer_branches(self, db, runner, completion_experiment):
        """测试重置后旧尝试的问卷答案不参与新尝试的分支判断"""
        runner.start(db, "exp-attempts", USER)
        assert runner.acknowledge(db, "exp-attempts", USER, "A").next_stage_id == "X"
        assert runner.submit_survey(db, "exp-attempts", USER, "X", {"q": "first"}).next_stage_id == "T"

        runner.reset(db, "exp-attempts", USER)
        runner.start(db, "exp-attempts", USER)
        result = runner.acknowledge(db, "exp-attempts", USER, "A")
        assert result.next_stage_id == "X"

    def test_each_attempt_keeps_its_own_answers(self, db, runner, completion_experiment):
        runner.start(db, "exp-attempts", USER)
        runner.acknowledge(db, "exp-attempts", USER, "A")
        runner.submit_survey(db, "exp-attempts", USER, "X", {"q": "first"})

        runner.reset(db, "exp-attempts", USER)
        runner.start(db, "exp-attempts", USER)
        runner.acknowledge(db, "exp-attempts", USER, "A")
        runner.submit_survey(db, "exp-attempts", USER, "X", {"q": "second"})

        assert len(survey_response_crud.get_multi(db, filter_conditions={"experiment_id": "exp-attempts"})) == 2
        assert survey_response_crud.get_answers_by_stage(
            db, experiment_id="exp-attempts", user_id=USER, attempt=1
        ) == {"X": {"q": "first"}}
        assert survey_response_crud.get_answers_by_stage(
            db, experiment_id="exp-attempts", user_id=USER, attempt=2
        ) == {"X": {"q": "second"}}


class TestSequentialFlow:
    @pytest.fixture
    def linear_experiment(self, make_experiment):
        return make_experiment({
            "id": "exp-linear",
            "stages": [
                instructions_stage("intro", order=0),
                {"id": "pause", "type": "break", "order": 1, "durationSeconds": 5},
                survey_stage("final", [{"id": "q", "type": "text"}], order=2),
            ],
        })

    def test_sequential_fallback_and_break_countdown(self, db, runner, linear_experiment):
        """测试没有分支时按顺序推进，休息阶段倒计时归零后自动跳转"""
        runner.start(db, "exp-linear", USER)
        result = runner.acknowledge(db, "exp-linear", USER, "intro")
        assert result.next_stage_id == "pause"
        assert result.view.countdown.time_remaining == 5

        result = runner.tick(db, "exp-linear", USER, 4)
        assert result.outcome == "unchanged"
        assert result.view.countdown.time_remaining == 1

        result = runner.tick(db, "exp-linear", USER, 1)
        assert result.outcome == "advanced"
        assert result.next_stage_id == "final"
        assert result.view.countdown is None

        result = runner.submit_survey(db, "exp-linear", USER, "final", {"q": "done"})
        assert result.outcome == "completed"

    def test_suspended_countdown_resumes(self, db, runner, linear_experiment):
        runner.start(db, "exp-linear", USER)
        runner.acknowledge(db, "exp-linear", USER, "intro")
        runner.tick(db, "exp-linear", USER, 2)

        view = runner.suspend(db, "exp-linear", USER)
        assert view.countdown.suspended is True
        assert runner.tick(db, "exp-linear", USER, 10).outcome == "unchanged"

        result = runner.start(db, "exp-linear", USER)
        assert result.view.countdown.suspended is False
        assert result.view.countdown.time_remaining == 3

    def test_break_cannot_be_left_before_countdown_ends(self, db, runner, make_experiment):
        """测试设置了时长的休息阶段在倒计时结束前拒绝确认，结束后自动跳转"""
        make_experiment({
            "id": "exp-break",
            "stages": [
                instructions_stage("intro", order=0),
                {"id": "pause", "type": "break", "order": 1, "durationSeconds": 60},
                instructions_stage("after", order=2, terminal=True),
            ],
        })
        runner.start(db, "exp-break", USER)
        runner.acknowledge(db, "exp-break", USER, "intro")

        result = runner.acknowledge(db, "exp-break", USER, "pause")
        assert result.outcome == "rejected"
        assert result.error["code"] == "action_not_allowed"
        assert result.view.progress.current_stage_id == "pause"
        assert result.view.countdown.time_remaining == 60

        result = runner.tick(db, "exp-break", USER, 60)
        assert result.outcome == "advanced"
        assert result.next_stage_id == "after"

    def test_untimed_break_can_be_acknowledged(self, db, runner, make_experiment):
        make_experiment({
            "id": "exp-rest",
            "stages": [
                {"id": "pause", "type": "break", "order": 0, "durationSeconds": 0},
                instructions_stage("after", order=1, terminal=True),
            ],
        })
        runner.start(db, "exp-rest", USER)
        result = runner.acknowledge(db, "exp-rest", USER, "pause")
        assert result.outcome == "advanced"
        assert result.next_stage_id == "after"

    def test_countdown_survives_lost_redis_state(self, db, runner, fake_redis, linear_experiment):
        """测试 Redis 中的倒计时丢失后从数据库副本继续，而不是重新计时"""
        runner.start(db, "exp-linear", USER)
        runner.acknowledge(db, "exp-linear", USER, "intro")
        runner.tick(db, "exp-linear", USER, 2)
        fake_redis.store.clear()

        assert runner.view(db, "exp-linear", USER).countdown.time_remaining == 3
        result = runner.tick(db, "exp-linear", USER, 3)
        assert result.outcome == "advanced"
        assert result.next_stage_id == "final"

    def test_time_condition_uses_elapsed_seconds(self, db, runner, clock, make_experiment):
        make_experiment({
            "id": "exp-time",
            "stages": [
                instructions_stage("read", order=0),
                instructions_stage("slow", order=1, terminal=True),
                instructions_stage("fast", order=2, terminal=True),
            ],
            "branches": [{
                "fromStageId": "read",
                "conditions": [{"type": "time", "sourceStageId": "read", "threshold": 60, "targetStageId": "slow"}],
                "defaultTargetStageId": "fast",
            }],
        })
        runner.start(db, "exp-time", USER)
        clock.advance(90)
        result = runner.acknowledge(db, "exp-time", USER, "read")
        assert result.next_stage_id == "slow"

    def test_completion_condition_on_survey(self, db, runner, make_experiment):
        make_experiment({
            "id": "exp-completion",
            "stages": [
                survey_stage("s", [{"id": "q1", "type": "text"}, {"id": "q2", "type": "text", "required": False}]),
                instructions_stage("done", order=1, terminal=True),
                instructions_stage("other", order=2, terminal=True),
            ],
            "branches": [{
                "fromStageId": "s",
                "conditions": [{"type": "completion", "sourceStageId": "s", "threshold": 100, "targetStageId": "done"}],
                "defaultTargetStageId": "other",
            }],
        })
        runner.start(db, "exp-completion", USER)
        result = runner.submit_survey(db, "exp-completion", USER, "s", {"q1": "answer"})
        assert result.next_stage_id == "done"

    def test_reset_starts_a_new_attempt(self, db, runner, fake_redis, linear_experiment):
        runner.start(db, "exp-linear", USER)
        runner.acknowledge(db, "exp-linear", USER, "intro")

        view = runner.reset(db, "exp-linear", USER)
        assert view.progress.status == "not_started"
        assert view.progress.attempt == 2
        assert fake_redis.store == {}
        assert len(progress_crud.get_attempts(db, user_id=USER, experiment_id="exp-linear")) == 2

        result = runner.start(db, "exp-linear", USER)
        assert result.view.progress.current_stage_id == "intro"


class TestScenarioFlow:
    @pytest.fixture
    def scenario_experiment(self, make_experiment, make_wallet, make_scenario):
        make_wallet()
        make_scenario(rounds=3, round_duration=10)
        return make_experiment({
            "id": "exp-market",
            "stages": [
                {"id": "market", "type": "scenario", "scenarioId": "scenario-1", "order": 0},
                instructions_stage("debrief", order=1),
            ],
        })

    def test_entering_scenario_opens_wallet_and_logs_first_round(self, db, runner, scenario_experiment):
        result = runner.start(db, "exp-market", USER)
        scenario = result.view.scenario
        assert scenario.current_round == 1
        assert scenario.time_remaining == 10
        assert scenario.status == "running"
        assert scenario.current_prices == {"acme": 50.0}
        assert result.view.balances == {"cash": 1000.0, "acme": 50.0}

        logs = price_log_crud.get_by_experiment(db, experiment_id="exp-market")
        assert [(log.asset_id, log.round_number) for log in logs] == [("acme", 1)]

    def test_trade_and_rejection(self, db, runner, scenario_experiment):
        runner.start(db, "exp-market", USER)

        result = runner.trade(db, "exp-market", USER, TradeRequest(stage_id="market", asset_id="acme", type="buy", quantity=4))
        assert result.accepted is True
        assert result.balances == {"cash": 800.0, "acme": 54.0}

        result = runner.trade(db, "exp-market", USER, TradeRequest(stage_id="market", asset_id="acme", type="buy", quantity=17))
        assert result.accepted is False
        assert result.error["code"] == "insufficient_funds"
        assert result.balances == {"cash": 800.0, "acme": 54.0}
        assert len(transaction_crud.get_by_experiment(db, experiment_id="exp-market")) == 1

    def test_trade_on_other_stage_is_rejected(self, db, runner, scenario_experiment):
        runner.start(db, "exp-market", USER)
        result = runner.trade(db, "exp-market", USER, TradeRequest(stage_id="debrief", asset_id="acme", type="buy", quantity=1))
        assert result.accepted is False
        assert result.error["code"] == "scenario_not_active"

    def test_scenario_completion_advances(self, db, runner, scenario_experiment):
        """测试 3 轮 × 10 秒的场景在 31 秒后完成并自动跳转"""
        runner.start(db, "exp-market", USER)
        result = runner.tick(db, "exp-market", USER, 15)
        assert result.outcome == "unchanged"
        assert result.opened_rounds == [2]
        assert result.view.scenario.current_round == 2

        result = runner.tick(db, "exp-market", USER, 16)
        assert result.outcome == "advanced"
        assert result.opened_rounds == [3]
        assert result.next_stage_id == "debrief"
        assert result.view.scenario is None

        rounds = [log.round_number for log in price_log_crud.get_by_experiment(db, experiment_id="exp-market")]
        assert rounds == [1, 2, 3]

        # 离开场景后钱包和交易记录仍然保留
        trade = runner.trade(db, "exp-market", USER, TradeRequest(stage_id="market", asset_id="acme", type="buy", quantity=1))
        assert trade.accepted is False

    def test_suspended_scenario_ignores_ticks(self, db, runner, scenario_experiment):
        runner.start(db, "exp-market", USER)
        runner.tick(db, "exp-market", USER, 3)
        runner.suspend(db, "exp-market", USER)

        result = runner.tick(db, "exp-market", USER, 50)
        assert result.view.scenario.time_remaining == 7
        assert result.view.scenario.suspended is True

        trade = runner.trade(db, "exp-market", USER, TradeRequest(stage_id="market", asset_id="acme", type="buy", quantity=1))
        assert trade.error["code"] == "scenario_not_active"

        result = runner.start(db, "exp-market", USER)
        assert result.view.scenario.suspended is False
        assert result.view.scenario.time_remaining == 7

    def test_scenario_resumes_after_redis_state_is_lost(self, db, runner, fake_redis, scenario_experiment):
        """测试 Redis 中的场景计时器丢失后按数据库副本恢复到原来的轮次，不重新从第 1 轮开始"""
        runner.start(db, "exp-market", USER)
        runner.tick(db, "exp-market", USER, 25)
        fake_redis.store.clear()

        result = runner.start(db, "exp-market", USER)
        assert result.view.scenario.current_round == 3
        assert result.view.scenario.time_remaining == 5
        assert fake_redis.store

        rounds = [log.round_number for log in price_log_crud.get_by_experiment(db, experiment_id="exp-market")]
        assert rounds == [1, 2, 3]

    def test_acknowledge_running_scenario_is_rejected(self, db, runner, scenario_experiment):
        runner.start(db, "exp-market", USER)
        result = runner.acknowledge(db, "exp-market", USER, "market")
        assert result.outcome == "rejected"

    def test_missing_scenario_is_graph_invalid(self, db, runner, make_experiment):
        make_experiment({"id": "exp-x", "stages": [{"id": "m", "type": "scenario", "scenarioId": "ghost"}]})
        with pytest.raises(GraphInvalid):
            runner.start(db, "exp-x", USER)
