"""协作式取消信号

CancelToken 组成一棵树：父令牌取消时所有子令牌都视为已取消，
子令牌取消不影响父令牌。流水线级中止取消根令牌，
fail_fast 的并行节点只取消为其子分支创建的组令牌。
"""

from __future__ import annotations

import threading

from stagerun.core.exceptions import CancellationError


class CancelToken:
    """线程安全的取消令牌"""

    def __init__(self, parent: CancelToken | None = None) -> None:
        self._parent = parent
        self._event = threading.Event()
        self._reason = ""

    def cancel(self, reason: str = "") -> None:
        if not self._event.is_set():
            self._reason = reason or "已取消"
            self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.cancelled

    @property
    def reason(self) -> str:
        if self._event.is_set():
            return self._reason
        if self._parent is not None:
            return self._parent.reason
        return ""

    def child(self) -> CancelToken:
        return CancelToken(parent=self)

    def wait(self, timeout: float | None = None) -> bool:
        """阻塞直到本令牌或任一祖先被取消，返回是否已取消"""
        if self._parent is None:
            return self._event.wait(timeout)
        # 祖先链上没有共享事件，按小步轮询
        step = 0.05
        remaining = timeout
        while not self.cancelled:
            if remaining is not None:
                if remaining <= 0:
                    return False
                remaining -= step
            self._event.wait(step)
        return True

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise CancellationError(self.reason)
