"""阶段门控表达式

语法（递归下降）:
    expr    := term (("or" | "||") term)*
    term    := factor (("and" | "&&") factor)*
    factor  := ("not" | "!") factor | "(" expr ")" | "true" | "false" | compare
    compare := FIELD ("==" | "!=") STRING

FIELD 目前只有 branch（运行的源码分支），STRING 为单/双引号字面量。
求值是纯函数：只读 RunContext，不产生副作用。
格式错误一律抛 ConditionEvaluationError，调用方按失败处理（fail closed）。
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from stagerun.core.exceptions import ConditionEvaluationError

if TYPE_CHECKING:
    from stagerun.core.models import RunContext

_TOKEN_RE = re.compile(
    r"""\s*(?:
        (?P<string>"[^"]*"|'[^']*')
      | (?P<op>==|!=|&&|\|\||\(|\)|!)
      | (?P<word>[A-Za-z_][A-Za-z0-9_]*)
    )""",
    re.VERBOSE,
)

_FIELDS: dict[str, Callable[[RunContext], str]] = {
    "branch": lambda ctx: ctx.branch,
}

_KEYWORDS = {"and": "&&", "or": "||", "not": "!"}


@dataclass(frozen=True)
class _Token:
    kind: str   # string | op | word
    value: str


def _tokenize(text: str) -> list[_Token]:
    tokens: list[_Token] = []
    pos = 0
    text = text.rstrip()
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if m is None or m.end() == pos:
            raise ConditionEvaluationError(f"无法识别的字符 (位置 {pos}): {text!r}")
        pos = m.end()
        if m.group("string") is not None:
            tokens.append(_Token("string", m.group("string")[1:-1]))
        elif m.group("op") is not None:
            tokens.append(_Token("op", m.group("op")))
        else:
            word = m.group("word")
            if word in _KEYWORDS:
                tokens.append(_Token("op", _KEYWORDS[word]))
            else:
                tokens.append(_Token("word", word))
    return tokens


# 解析结果是一个闭包，求值时只需传入 RunContext
Predicate = Callable[["RunContext"], bool]


class _Parser:
    def __init__(self, text: str) -> None:
        self.text = text
        self.tokens = _tokenize(text)
        self.pos = 0

    def _peek(self) -> _Token | None:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _take(self) -> _Token:
        tok = self._peek()
        if tok is None:
            raise ConditionEvaluationError(f"表达式意外结束: {self.text!r}")
        self.pos += 1
        return tok

    def _accept(self, op: str) -> bool:
        tok = self._peek()
        if tok is not None and tok.kind == "op" and tok.value == op:
            self.pos += 1
            return True
        return False

    def parse(self) -> Predicate:
        if not self.tokens:
            raise ConditionEvaluationError("空表达式")
        pred = self._expr()
        if self._peek() is not None:
            raise ConditionEvaluationError(
                f"多余的内容 '{self._peek().value}': {self.text!r}"  # type: ignore[union-attr]
            )
        return pred

    def _expr(self) -> Predicate:
        left = self._term()
        while self._accept("||"):
            right = self._term()
            left = (lambda a, b: lambda ctx: a(ctx) or b(ctx))(left, right)
        return left

    def _term(self) -> Predicate:
        left = self._factor()
        while self._accept("&&"):
            right = self._factor()
            left = (lambda a, b: lambda ctx: a(ctx) and b(ctx))(left, right)
        return left

    def _factor(self) -> Predicate:
        if self._accept("!"):
            inner = self._factor()
            return lambda ctx: not inner(ctx)
        if self._accept("("):
            inner = self._expr()
            if not self._accept(")"):
                raise ConditionEvaluationError(f"缺少右括号: {self.text!r}")
            return inner
        tok = self._take()
        if tok.kind != "word":
            raise ConditionEvaluationError(f"意外的符号 '{tok.value}': {self.text!r}")
        if tok.value in ("true", "false"):
            constant = tok.value == "true"
            return lambda ctx: constant
        return self._compare(tok.value)

    def _compare(self, field_name: str) -> Predicate:
        getter = _FIELDS.get(field_name)
        if getter is None:
            raise ConditionEvaluationError(
                f"未知字段 '{field_name}'（可用: {sorted(_FIELDS)}）"
            )
        op = self._take()
        if op.kind != "op" or op.value not in ("==", "!="):
            raise ConditionEvaluationError(f"'{field_name}' 后需要 == 或 !=: {self.text!r}")
        literal = self._take()
        if literal.kind != "string":
            raise ConditionEvaluationError(f"比较右侧必须是带引号的字面量: {self.text!r}")
        expected = literal.value
        if op.value == "==":
            return lambda ctx: getter(ctx) == expected
        return lambda ctx: getter(ctx) != expected


def parse(condition: str) -> Predicate:
    """解析表达式，格式错误抛 ConditionEvaluationError"""
    return _Parser(condition).parse()


def evaluate(condition: str, run_context: RunContext) -> bool:
    """对 RunContext 求值门控表达式，空表达式恒为 True"""
    if not condition or not condition.strip():
        return True
    return bool(parse(condition)(run_context))


class ConditionEvaluator:
    """门控求值器（供执行器注入，便于替换为其他谓词实现）"""

    def evaluate(self, condition: str, run_context: RunContext) -> bool:
        return evaluate(condition, run_context)
