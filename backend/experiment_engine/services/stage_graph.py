"""
阶段图（Stage Graph）

把实验文档中的阶段和分支整理成按 id 寻址的只读结构，并在构造时完成全部校验：

- 阶段 id 唯一，起始阶段存在
- 分支及条件引用的阶段全部存在，每个阶段最多一条出边分支
- 场景阶段引用的场景存在，问卷阶段至少能解析出一个问题
- 无法到达任何出口的循环只作为"软警告"记录，不会拒绝

任何硬性问题都会汇总进一个 GraphInvalid 异常一次性抛出。
"""
import logging
from collections import deque
from typing import Any, Collection, Dict, Iterator, List, Mapping, Optional, Set, Union

from pydantic import ValidationError

from experiment_engine.core.errors import GraphInvalid, StageNotFound
from experiment_engine.schemas.branch import (
    Branch,
    CompletionCondition,
    ResponseCondition,
    TimeCondition,
)
from experiment_engine.schemas.experiment import ExperimentDocument, SurveyDocument
from experiment_engine.schemas.stage import Question, ScenarioStage, Stage, SurveyStage

logger = logging.getLogger(__name__)


def validation_problems(error: ValidationError) -> List[str]:
    """把 pydantic 的校验错误整理成可读的问题列表"""
    return [f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in error.errors()]


class OrderedStages:
    """按 order 排序的阶段序列，可重复迭代，每次迭代都重新生成"""

    def __init__(self, stages: List[Stage]):
        self._stages = stages

    def __iter__(self) -> Iterator[Stage]:
        indexed = sorted(enumerate(self._stages), key=lambda item: (item[1].order, item[0]))
        for _, stage in indexed:
            yield stage

    def __len__(self) -> int:
        return len(self._stages)


class StageGraph:
    def __init__(
        self,
        experiment: ExperimentDocument,
        surveys: Optional[Mapping[str, SurveyDocument]] = None,
        scenario_ids: Optional[Collection[str]] = None,
    ):
        """
        构造并校验阶段图

        Args:
            experiment: 已解析的实验文档
            surveys: 可被问卷阶段引用的共享问卷 { survey_id: SurveyDocument }
            scenario_ids: 已存在的场景ID集合；为 None 时跳过场景存在性检查

        Raises:
            GraphInvalid: 图结构存在硬性问题
        """
        self.experiment_id = experiment.id
        self._stages: Dict[str, Stage] = {}
        self._branches: Dict[str, Branch] = {}
        self._questions: Dict[str, List[Question]] = {}
        self._authoring: List[Stage] = list(experiment.stages)
        self.warnings: List[str] = []

        problems: List[str] = []
        surveys = surveys or {}

        for stage in experiment.stages:
            if stage.id in self._stages:
                problems.append(f"duplicate stage id {stage.id!r}")
                continue
            self._stages[stage.id] = stage

        if not self._stages:
            problems.append("experiment has no stages")

        if experiment.start_stage_id is not None:
            if experiment.start_stage_id not in self._stages:
                problems.append(f"start stage {experiment.start_stage_id!r} does not exist")
            self.start_stage_id = experiment.start_stage_id
        else:
            first = next(iter(OrderedStages(self._authoring)), None)
            self.start_stage_id = first.id if first is not None else None

        for stage in self._stages.values():
            if isinstance(stage, ScenarioStage):
                if scenario_ids is not None and stage.scenario_id not in scenario_ids:
                    problems.append(
                        f"stage {stage.id!r} references missing scenario {stage.scenario_id!r}"
                    )
            elif isinstance(stage, SurveyStage):
                questions = list(stage.questions)
                if not questions and stage.survey_id is not None:
                    survey = surveys.get(stage.survey_id)
                    if survey is None:
                        problems.append(
                            f"stage {stage.id!r} references missing survey {stage.survey_id!r}"
                        )
                    else:
                        questions = list(survey.questions)
                if not questions and (stage.survey_id is None or stage.survey_id in surveys):
                    problems.append(f"survey stage {stage.id!r} has no questions")
                self._questions[stage.id] = questions

        for index, branch in enumerate(experiment.branches):
            problems.extend(self._check_branch(index, branch))
            if branch.from_stage_id in self._branches:
                problems.append(f"more than one branch from stage {branch.from_stage_id!r}")
            else:
                self._branches[branch.from_stage_id] = branch

        if problems:
            raise GraphInvalid(problems)

        self.warnings = self._find_soft_cycles()
        for warning in self.warnings:
            logger.warning(f"StageGraph[{self.experiment_id}]: {warning}")

    @classmethod
    def from_documents(
        cls,
        experiment: Union[ExperimentDocument, Mapping[str, Any]],
        surveys: Optional[Mapping[str, Union[SurveyDocument, Mapping[str, Any]]]] = None,
        scenario_ids: Optional[Collection[str]] = None,
    ) -> "StageGraph":
        """从原始文档（dict）构造阶段图，schema 校验失败同样以 GraphInvalid 报告"""
        try:
            if not isinstance(experiment, ExperimentDocument):
                experiment = ExperimentDocument.model_validate(experiment)
            parsed_surveys = {}
            for survey_id, survey in (surveys or {}).items():
                if not isinstance(survey, SurveyDocument):
                    survey = SurveyDocument.model_validate(survey)
                parsed_surveys[survey_id] = survey
        except ValidationError as e:
            raise GraphInvalid(validation_problems(e)) from e
        return cls(experiment, surveys=parsed_surveys, scenario_ids=scenario_ids)

    def _check_branch(self, index: int, branch: Branch) -> List[str]:
        problems = []
        where = f"branch[{index}]"
        if branch.from_stage_id not in self._stages:
            problems.append(f"{where}: from stage {branch.from_stage_id!r} does not exist")
        if branch.default_target_stage_id not in self._stages:
            problems.append(
                f"{where}: default target {branch.default_target_stage_id!r} does not exist"
            )
        for position, condition in enumerate(branch.conditions):
            label = f"{where}.conditions[{position}] ({condition.type})"
            if condition.target_stage_id not in self._stages:
                problems.append(f"{label}: target {condition.target_stage_id!r} does not exist")
            if isinstance(condition, (ResponseCondition, CompletionCondition, TimeCondition)):
                if not condition.source_stage_id:
                    problems.append(f"{label}: source stage is required")
                elif condition.source_stage_id not in self._stages:
                    problems.append(
                        f"{label}: source stage {condition.source_stage_id!r} does not exist"
                    )
            if isinstance(condition, ResponseCondition) and not condition.question_id:
                problems.append(f"{label}: question id is required")
            if isinstance(condition, TimeCondition):
                if condition.threshold is None or condition.threshold <= 0:
                    problems.append(f"{label}: threshold must be a positive number of seconds")
        return problems

    # --- 查询 ---

    def stage_by_id(self, stage_id: str) -> Stage:
        try:
            return self._stages[stage_id]
        except KeyError:
            raise StageNotFound(stage_id) from None

    def branch_from(self, stage_id: str) -> Optional[Branch]:
        return self._branches.get(stage_id)

    def ordered_stages(self) -> OrderedStages:
        return OrderedStages(self._authoring)

    def questions_for(self, stage_id: str) -> List[Question]:
        """返回问卷阶段解析后的问题列表，非问卷阶段返回空列表"""
        return list(self._questions.get(stage_id, []))

    def sequential_next(self, stage_id: str) -> Optional[str]:
        """按展示顺序排在 stage_id 之后的阶段，用作没有分支时的兼容性顺序推进"""
        found = False
        for stage in self.ordered_stages():
            if found:
                return stage.id
            if stage.id == stage_id:
                found = True
        return None

    def is_exit(self, stage_id: str) -> bool:
        """没有出边分支，且被标记为终止或已经是最后一个阶段"""
        if stage_id in self._branches:
            return False
        stage = self._stages[stage_id]
        return stage.terminal or self.sequential_next(stage_id) is None

    def successors(self, stage_id: str) -> List[str]:
        branch = self._branches.get(stage_id)
        if branch is None:
            if self.is_exit(stage_id):
                return []
            return [self.sequential_next(stage_id)]
        targets = [condition.target_stage_id for condition in branch.conditions]
        targets.append(branch.default_target_stage_id)
        # 保持顺序去重
        return list(dict.fromkeys(targets))

    # --- 软循环检测 ---

    def _find_soft_cycles(self) -> List[str]:
        if self.start_stage_id is None:
            return []

        reachable: Set[str] = set()
        queue = deque([self.start_stage_id])
        while queue:
            current = queue.popleft()
            if current in reachable:
                continue
            reachable.add(current)
            queue.extend(self.successors(current))

        predecessors: Dict[str, Set[str]] = {stage_id: set() for stage_id in self._stages}
        for stage_id in self._stages:
            for target in self.successors(stage_id):
                predecessors[target].add(stage_id)

        can_exit: Set[str] = set()
        queue = deque(stage_id for stage_id in self._stages if self.is_exit(stage_id))
        while queue:
            current = queue.popleft()
            if current in can_exit:
                continue
            can_exit.add(current)
            queue.extend(predecessors[current])

        trapped = [stage.id for stage in self.ordered_stages() if stage.id in reachable and stage.id not in can_exit]
        if not trapped:
            return []
        return [f"stages {trapped} can loop without ever reaching an exit"]
