"""分层环境作用域

每个阶段从父作用域派生出新的作用域（copy-on-overlay），
子阶段永远看不到也改不了祖先或兄弟阶段的变量，
因此一个分支绑定的机密不会泄漏到并行的另一个分支。
"""

from __future__ import annotations

from collections.abc import Mapping
from string import Template
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from stagerun.core.models import EnvOverlay, RunContext


REDACTED = "****"


class EnvironmentScope:
    """不可变的变量 + 机密映射"""

    def __init__(
        self,
        variables: Mapping[str, str] | None = None,
        secrets: Mapping[str, str] | None = None,
    ) -> None:
        self._variables = {k: str(v) for k, v in (variables or {}).items()}
        self._secrets = {k: str(v) for k, v in (secrets or {}).items()}

    @classmethod
    def root(cls, run_context: RunContext) -> EnvironmentScope:
        """运行级根作用域：注入 RUN_ID / BRANCH_NAME"""
        return cls({"RUN_ID": run_context.run_id, "BRANCH_NAME": run_context.branch})

    def overlay(self, overlay: EnvOverlay, run_context: RunContext) -> EnvironmentScope:
        """派生子作用域

        普通变量支持 ${NAME} 引用父作用域的普通变量（不展开机密）；
        同名时后声明的一方遮蔽父作用域中的另一类条目。

        Raises:
            CredentialNotFoundError: 机密引用了未绑定的凭据
        """
        if not overlay:
            return self
        variables = dict(self._variables)
        secrets = dict(self._secrets)
        for name, value in overlay.variables.items():
            variables[name] = Template(str(value)).safe_substitute(self._variables)
            secrets.pop(name, None)
        for name, credential_id in overlay.secrets.items():
            secrets[name] = run_context.resolve_credential(credential_id)
            variables.pop(name, None)
        return EnvironmentScope(variables, secrets)

    def get(self, name: str, default: str | None = None) -> str | None:
        if name in self._secrets:
            return self._secrets[name]
        return self._variables.get(name, default)

    def __contains__(self, name: object) -> bool:
        return name in self._variables or name in self._secrets

    def names(self) -> list[str]:
        return sorted({*self._variables, *self._secrets})

    def is_secret(self, name: str) -> bool:
        return name in self._secrets

    def as_env(self, base: Mapping[str, str] | None = None) -> dict[str, str]:
        """生成子进程环境变量（base 通常为宿主进程环境）"""
        return {**(base or {}), **self._variables, **self._secrets}

    def secret_values(self) -> list[str]:
        # 长的优先替换，避免短机密是长机密子串时替换不完整
        return sorted({v for v in self._secrets.values() if v}, key=len, reverse=True)

    def redact(self, text: str) -> str:
        """把文本中出现的机密值替换为 ****"""
        if not text:
            return text
        for value in self.secret_values():
            text = text.replace(value, REDACTED)
        return text

    def to_dict(self) -> dict[str, str]:
        """可安全记录的视图（机密值已打码）"""
        data = dict(self._variables)
        data.update({k: REDACTED for k in self._secrets})
        return data

    def __repr__(self) -> str:
        return f"EnvironmentScope({self.to_dict()!r})"
