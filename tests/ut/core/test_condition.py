"""门控表达式求值测试"""

from __future__ import annotations

import pytest

from stagerun.core.condition import ConditionEvaluator, evaluate, parse
from stagerun.core.exceptions import ConditionEvaluationError
from stagerun.core.models import RunContext


def _ctx(branch: str) -> RunContext:
    return RunContext(branch=branch, workspace_root="/tmp/ws")


class TestEvaluate:
    @pytest.mark.parametrize(("expr", "branch", "expected"), [
        ('branch == "main"', "main", True),
        ('branch == "main"', "dev", False),
        ("branch != 'main'", "dev", True),
        ('branch == "main" || branch == "release"', "release", True),
        ('branch == "main" or branch == "release"', "dev", False),
        ('not branch == "main"', "dev", True),
        ('!(branch == "main")', "main", False),
        ('branch != "main" and branch != "dev"', "feature-x", True),
        ("true", "any", True),
        ("false", "any", False),
        ('(branch == "a" or branch == "b") and not branch == "b"', "a", True),
    ])
    def test_expressions(self, expr: str, branch: str, expected: bool) -> None:
        assert evaluate(expr, _ctx(branch)) is expected

    def test_and_binds_tighter_than_or(self) -> None:
        # a or (b and c)
        expr = 'branch == "x" or branch == "y" and false'
        assert evaluate(expr, _ctx("x")) is True
        assert evaluate(expr, _ctx("y")) is False

    @pytest.mark.parametrize("expr", ["", "   "])
    def test_empty_condition_is_true(self, expr: str) -> None:
        assert evaluate(expr, _ctx("dev")) is True

    def test_pure(self) -> None:
        """同一表达式对不同上下文求值互不影响"""
        pred = parse('branch == "main"')
        assert pred(_ctx("main")) is True
        assert pred(_ctx("dev")) is False
        assert pred(_ctx("main")) is True


class TestMalformed:
    @pytest.mark.parametrize("expr", [
        'branch = "main"',
        'branch == main',
        'tag == "v1"',
        '(branch == "main"',
        'branch == "main")',
        'branch == "main" and',
        "&& true",
        'branch == "main" # comment',
    ])
    def test_raises(self, expr: str) -> None:
        with pytest.raises(ConditionEvaluationError):
            evaluate(expr, _ctx("main"))

    def test_unknown_field_lists_available(self) -> None:
        with pytest.raises(ConditionEvaluationError, match="branch"):
            parse('env == "prod"')


class TestConditionEvaluator:
    def test_delegates(self) -> None:
        ev = ConditionEvaluator()
        assert ev.evaluate('branch == "main"', _ctx("main")) is True
        assert ev.evaluate('branch == "main"', _ctx("dev")) is False
