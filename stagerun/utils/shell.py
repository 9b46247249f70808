"""Shell 命令执行工具 - 统一子进程调用

通过 CommandExecutor 协议抽象子进程执行（spawn），方便测试替换和跨平台适配。
默认实现支持超时与协作式取消：取消时先 terminate，宽限期后 kill。
"""

from __future__ import annotations

import logging
import subprocess
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from stagerun.core.exceptions import ExecutionError

if TYPE_CHECKING:
    from stagerun.core.cancel import CancelToken

logger = logging.getLogger(__name__)

SHELL = ("/bin/sh", "-c")


# =========================================================================
# 命令执行结果
# =========================================================================

@dataclass
class CommandResult:
    """命令执行结果（与 subprocess 解耦）"""

    returncode: int | None
    stdout: str
    stderr: str
    duration_ms: int = 0
    timed_out: bool = False
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return self.returncode == 0 and not self.timed_out and not self.cancelled


# =========================================================================
# 命令执行器协议
# =========================================================================

class CommandExecutor(Protocol):
    """命令执行器协议 - 抽象子进程调用

    字符串命令交给 /bin/sh 解释，列表命令直接 exec。
    测试时可注入 mock 实现，无需 patch subprocess。
    """

    def execute(
        self,
        cmd: str | list[str],
        *,
        cwd: str = ".",
        env: dict[str, str] | None = None,
        timeout: float | None = None,
        cancel: CancelToken | None = None,
    ) -> CommandResult:
        """执行命令并返回结果"""
        ...


# =========================================================================
# 默认实现: 本地进程执行器
# =========================================================================

class LocalExecutor:
    """本地子进程执行器（默认实现）"""

    def __init__(self, poll_interval: float = 0.1, grace_period: float = 5.0) -> None:
        self.poll_interval = poll_interval
        self.grace_period = grace_period

    def execute(
        self,
        cmd: str | list[str],
        *,
        cwd: str = ".",
        env: dict[str, str] | None = None,
        timeout: float | None = None,
        cancel: CancelToken | None = None,
    ) -> CommandResult:
        args = [*SHELL, cmd] if isinstance(cmd, str) else cmd
        start = time.monotonic()
        deadline = start + timeout if timeout else None
        proc = subprocess.Popen(
            args, stdout=subprocess.PIPE, stderr=subprocess.PIPE,
            text=True, encoding="utf-8", errors="replace", cwd=cwd, env=env,
        )
        timed_out = cancelled = False
        while True:
            try:
                stdout, stderr = proc.communicate(timeout=self.poll_interval)
                break
            except subprocess.TimeoutExpired:
                if deadline is not None and time.monotonic() >= deadline:
                    timed_out = True
                elif cancel is not None and cancel.cancelled:
                    cancelled = True
                else:
                    continue
            stdout, stderr = self._stop(proc)
            break
        return CommandResult(
            returncode=proc.returncode,
            stdout=stdout or "",
            stderr=stderr or "",
            duration_ms=int((time.monotonic() - start) * 1000),
            timed_out=timed_out,
            cancelled=cancelled,
        )

    def _stop(self, proc: subprocess.Popen[str]) -> tuple[str, str]:
        """先 SIGTERM，宽限期内未退出再 SIGKILL"""
        logger.warning("终止子进程: pid=%d", proc.pid)
        proc.terminate()
        try:
            return proc.communicate(timeout=self.grace_period)
        except subprocess.TimeoutExpired:
            logger.warning("子进程未响应 SIGTERM，强制结束: pid=%d", proc.pid)
            proc.kill()
            return proc.communicate()


# =========================================================================
# 全局默认执行器（可替换）
# =========================================================================

_default_executor: CommandExecutor = LocalExecutor()


def get_executor() -> CommandExecutor:
    """获取全局默认命令执行器"""
    return _default_executor


def set_executor(executor: CommandExecutor) -> None:
    """替换全局默认命令执行器（用于测试或远程执行场景）"""
    global _default_executor  # noqa: PLW0603
    _default_executor = executor


def run_cmd(
    cmd: list[str], *, cwd: str = ".",
    env: dict[str, str] | None = None,
    timeout: float | None = None,
    label: str = "cmd",
    executor: CommandExecutor | None = None,
) -> CommandResult:
    """执行辅助命令（容器申请/回收等），失败抛 ExecutionError"""
    logger.info("  %s: %s (cwd=%s)", label, " ".join(cmd), cwd)
    try:
        r = (executor or get_executor()).execute(cmd, cwd=cwd, env=env, timeout=timeout)
    except OSError as e:
        raise ExecutionError(f"{label}失败: {e}") from e
    if not r.success:
        reason = "超时" if r.timed_out else f"rc={r.returncode}"
        raise ExecutionError(f"{label}失败 ({reason}): {r.stderr[:500]}")
    return r
