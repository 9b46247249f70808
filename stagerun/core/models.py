"""核心数据模型

所有核心数据类集中定义，执行器、钩子、报告、CLI/Web 统一从此处导入。

阶段树（Pipeline / Stage 及其 body）加载后不可变：frozen dataclass + tuple。
执行期产物（ExecutionResult / ActionResult / ExecutionContext）为可变对象，
仅由产生它的执行线程写入。
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from stagerun.core.exceptions import CredentialNotFoundError

# =========================================================================
# 状态
# =========================================================================


class StageStatus(str, Enum):
    """阶段执行状态"""
    SUCCESS = "success"
    UNSTABLE = "unstable"
    FAILURE = "failure"
    SKIPPED = "skipped"
    ABORTED = "aborted"


# 聚合时的严重程度，skipped 与 success 等价
_SEVERITY = {
    StageStatus.SKIPPED: 0,
    StageStatus.SUCCESS: 0,
    StageStatus.UNSTABLE: 1,
    StageStatus.ABORTED: 2,
    StageStatus.FAILURE: 3,
}


def combine_statuses(statuses: Iterable[StageStatus]) -> StageStatus:
    """组合子阶段状态：failure > aborted > unstable > success（skipped 视为 success）"""
    worst = StageStatus.SUCCESS
    for s in statuses:
        if _SEVERITY[s] > _SEVERITY[worst]:
            worst = s
    return worst


def summarize_statuses(records: list[dict]) -> dict[str, int]:
    """统计阶段状态分布"""
    counts = {"total": len(records)}
    for s in StageStatus:
        counts[s.value] = sum(1 for r in records if r.get("status") == s.value)
    return counts


# =========================================================================
# 阶段树
# =========================================================================


class WorkspacePolicy(str, Enum):
    """工作目录挂载策略"""
    REUSE = "reuse"
    FRESH = "fresh"


@dataclass(frozen=True)
class AgentSpec:
    """执行环境描述 - runtime_image 为空表示在本机进程中执行"""

    runtime_image: str = ""
    workspace_policy: str = WorkspacePolicy.FRESH
    extra_args: tuple[str, ...] = ()

    @property
    def provider(self) -> str:
        return "docker" if self.runtime_image else "local"


@dataclass(frozen=True)
class EnvOverlay:
    """阶段级环境覆盖层

    variables: 普通变量 name -> value（可引用上层变量 ${NAME}）
    secrets:   机密变量 name -> 凭据 ID，在覆盖时从 RunContext 解析
    """

    variables: Mapping[str, str] = field(default_factory=dict)
    secrets: Mapping[str, str] = field(default_factory=dict)

    def __bool__(self) -> bool:
        return bool(self.variables or self.secrets)


@dataclass(frozen=True)
class Action:
    """单个外部动作（shell 命令）"""

    command: str
    working_dir: str = ""          # 相对于执行上下文工作目录
    timeout: int | None = None     # 秒，None 使用全局默认
    name: str = ""

    @property
    def label(self) -> str:
        return self.name or self.command.split("\n", 1)[0][:60]


class HookKind(str, Enum):
    """后置钩子类型"""
    JUNIT = "junit"
    HTML = "html"
    ARCHIVE = "archive"
    SHELL = "sh"


HOOK_TRIGGER_ALWAYS = "always"


@dataclass(frozen=True)
class PostHook:
    """后置钩子 - 无论阶段结果如何都会被调用

    target 含义随 kind 变化：junit/archive 为工作目录内的 glob，
    html 为报告目录，sh 为命令。on 为触发条件（always 或具体状态值）。
    """

    kind: str
    target: str
    name: str = ""
    required: bool = False
    on: tuple[str, ...] = (HOOK_TRIGGER_ALWAYS,)
    index: str = "index.html"

    @property
    def report_name(self) -> str:
        return self.name or self.kind

    def applies_to(self, status: StageStatus) -> bool:
        return HOOK_TRIGGER_ALWAYS in self.on or status.value in self.on


@dataclass(frozen=True)
class Sequential:
    children: tuple[Stage, ...] = ()
    kind = "sequential"


@dataclass(frozen=True)
class Parallel:
    children: tuple[Stage, ...] = ()
    fail_fast: bool = False
    kind = "parallel"


@dataclass(frozen=True)
class Leaf:
    actions: tuple[Action, ...] = ()
    kind = "leaf"

    @property
    def children(self) -> tuple[Stage, ...]:
        return ()


StageBody = Sequential | Parallel | Leaf


@dataclass(frozen=True)
class Stage:
    """流水线阶段节点"""

    id: str
    body: StageBody
    agent: AgentSpec | None = None
    env: EnvOverlay = field(default_factory=EnvOverlay)
    condition: str = ""
    post_hooks: tuple[PostHook, ...] = ()

    @property
    def kind(self) -> str:
        return self.body.kind

    @property
    def children(self) -> tuple[Stage, ...]:
        return self.body.children

    def walk(self) -> Iterator[Stage]:
        """先序遍历整棵子树（含自身）"""
        yield self
        for child in self.children:
            yield from child.walk()


@dataclass(frozen=True)
class Pipeline:
    """流水线定义 - 根阶段 + 名称，加载后只读"""

    name: str
    root: Stage

    def stages(self) -> list[Stage]:
        return list(self.root.walk())

    def find(self, stage_id: str) -> Stage | None:
        for s in self.root.walk():
            if s.id == stage_id:
                return s
        return None

    def parent_map(self) -> dict[str, str]:
        """stage_id -> 父阶段 id（根为空字符串）"""
        parents = {self.root.id: ""}
        for s in self.root.walk():
            for c in s.children:
                parents[c.id] = s.id
        return parents


# =========================================================================
# 运行上下文
# =========================================================================


@dataclass(frozen=True)
class RunContext:
    """单次流水线运行的只读元数据

    凭据以 ID 绑定，仅在环境覆盖时解析为值，且不出现在 repr 中。
    """

    branch: str
    workspace_root: str
    credentials: Mapping[str, str] = field(default_factory=dict, repr=False)
    run_id: str = ""

    @classmethod
    def create(
        cls, branch: str, workspace_root: str,
        credentials: Mapping[str, str] | None = None,
    ) -> RunContext:
        return cls(
            branch=branch,
            workspace_root=workspace_root,
            credentials=dict(credentials or {}),
            run_id=str(uuid.uuid4())[:8],
        )

    def resolve_credential(self, credential_id: str) -> str:
        if credential_id not in self.credentials:
            raise CredentialNotFoundError(f"凭据未绑定: {credential_id}")
        return self.credentials[credential_id]


class ContextStatus(str, Enum):
    """执行上下文状态"""
    ACTIVE = "active"
    RELEASED = "released"
    FAILED = "failed"


@dataclass
class ExecutionContext:
    """已申请的执行上下文 - acquire 后获得，release 后失效

    shared=True 表示与父上下文共享工作目录（reuse 策略），
    owns_handle=False 表示同时复用了父上下文的容器句柄。
    """

    context_id: str
    workspace: str
    spec: AgentSpec
    shared: bool = False
    parent_id: str = ""
    handle: str = ""
    owns_handle: bool = True
    status: str = ContextStatus.ACTIVE
    owner: str = ""

    @property
    def provider(self) -> str:
        return self.spec.provider

    @property
    def active(self) -> bool:
        return self.status == ContextStatus.ACTIVE


# =========================================================================
# 执行结果
# =========================================================================


@dataclass
class ActionResult:
    """单个动作的执行结果（输出已脱敏）"""

    command: str
    exit_code: int | None
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0
    timed_out: bool = False
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.cancelled


class ReportKind(str, Enum):
    """报告类型"""
    JUNIT_XML = "junit"
    HTML_BUNDLE = "html"


@dataclass
class Report:
    """阶段产出的报告"""

    kind: str
    source_path: str
    stage_id: str = ""
    name: str = ""
    published_as: str = ""


@dataclass
class ReportSummary:
    """测试结果计数"""

    total: int = 0
    passed: int = 0
    failed: int = 0
    skipped: int = 0

    def merge(self, other: ReportSummary) -> ReportSummary:
        return ReportSummary(
            total=self.total + other.total,
            passed=self.passed + other.passed,
            failed=self.failed + other.failed,
            skipped=self.skipped + other.skipped,
        )

    @property
    def has_failures(self) -> bool:
        return self.failed > 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class ExecutionResult:
    """阶段执行结果"""

    stage_id: str
    status: StageStatus
    kind: str = "leaf"
    exit_code: int | None = None
    duration_ms: int = 0
    artifacts: list[str] = field(default_factory=list)
    message: str = ""
    actions: list[ActionResult] = field(default_factory=list)
    children: list[ExecutionResult] = field(default_factory=list)
    reports: list[Report] = field(default_factory=list)
    hooks: list[dict[str, Any]] = field(default_factory=list)

    def escalate(self, status: StageStatus, reason: str = "") -> None:
        """仅当新状态更严重时覆盖（钩子不会把 failure 改回其他状态）"""
        if _SEVERITY[status] > _SEVERITY[self.status] and self.status != StageStatus.SKIPPED:
            self.status = status
            if reason:
                self.message = f"{self.message}; {reason}" if self.message else reason

    def find(self, stage_id: str) -> ExecutionResult | None:
        if self.stage_id == stage_id:
            return self
        for c in self.children:
            found = c.find(stage_id)
            if found is not None:
                return found
        return None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["children"] = [c.to_dict() for c in self.children]
        return data
