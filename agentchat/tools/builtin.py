"""Tools shipped with the service, enabled through ``tools.builtin``."""

from __future__ import annotations

import ast
import operator
from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from agentchat.errors import ToolExecutionError
from agentchat.tools.base import Tool
from agentchat.tools.registry import ToolRegistry


class CurrentTimeTool(Tool):
    name = "get_current_time"
    description = "Returns the current date and time, optionally in an IANA timezone."
    parameters = {
        "type": "object",
        "properties": {
            "timezone": {
                "type": "string",
                "description": "IANA timezone name, e.g. 'Europe/Berlin'. Defaults to UTC.",
            },
        },
    }

    async def execute(self, **kwargs) -> dict:
        tz_name = kwargs.get("timezone") or "UTC"
        try:
            tz = timezone.utc if tz_name == "UTC" else ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ToolExecutionError(f"Unknown timezone: {tz_name}") from exc
        now = datetime.now(tz)
        return {"timezone": tz_name, "iso": now.isoformat(), "weekday": now.strftime("%A")}


_BINARY_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}
_UNARY_OPS = {ast.UAdd: operator.pos, ast.USub: operator.neg}
_MAX_EXPONENT = 1000
_MAX_EXPRESSION_LENGTH = 1000
# Integer results are capped at this many bits (about 1200 decimal digits).
_MAX_RESULT_BITS = 4096


def _check_result_size(op: ast.operator, left: float | int, right: float | int) -> None:
    """Reject integer products and powers whose result would exceed the cap."""
    if not (isinstance(left, int) and isinstance(right, int)):
        return
    if isinstance(op, ast.Pow):
        if right > 0 and left.bit_length() * right > _MAX_RESULT_BITS:
            raise ToolExecutionError("Result too large")
    elif isinstance(op, ast.Mult):
        if left.bit_length() + right.bit_length() > _MAX_RESULT_BITS:
            raise ToolExecutionError("Result too large")


def evaluate_expression(expression: str) -> float | int:
    """
    Evaluate a plain arithmetic expression without ``eval``.

    Only numeric literals, the binary operators ``+ - * / // % **`` and unary
    ``+``/``-`` are accepted.  Integer powers and products are size-checked
    before they are computed; float overflow is reported the same way.
    """
    if len(expression) > _MAX_EXPRESSION_LENGTH:
        raise ToolExecutionError("Expression too long")
    try:
        tree = ast.parse(expression, mode="eval")
    except SyntaxError as exc:
        raise ToolExecutionError(f"Invalid expression: {expression}") from exc

    def _eval(node: ast.AST) -> float | int:
        if isinstance(node, ast.Expression):
            return _eval(node.body)
        if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)) and not isinstance(node.value, bool):
            return node.value
        if isinstance(node, ast.BinOp) and type(node.op) in _BINARY_OPS:
            left, right = _eval(node.left), _eval(node.right)
            if isinstance(node.op, ast.Pow) and abs(right) > _MAX_EXPONENT:
                raise ToolExecutionError("Exponent too large")
            _check_result_size(node.op, left, right)
            return _BINARY_OPS[type(node.op)](left, right)
        if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPS:
            return _UNARY_OPS[type(node.op)](_eval(node.operand))
        raise ToolExecutionError(f"Unsupported expression element: {type(node).__name__}")

    try:
        return _eval(tree)
    except ZeroDivisionError as exc:
        raise ToolExecutionError("Division by zero") from exc
    except OverflowError as exc:
        raise ToolExecutionError("Result too large") from exc


class CalculatorTool(Tool):
    name = "calculate"
    description = "Evaluates an arithmetic expression using + - * / // % ** and parentheses."
    parameters = {
        "type": "object",
        "properties": {
            "expression": {"type": "string", "description": "Expression to evaluate"},
        },
        "required": ["expression"],
    }

    async def execute(self, **kwargs) -> dict:
        expression = kwargs["expression"]
        return {"expression": expression, "value": evaluate_expression(expression)}


BUILTIN_TOOLS: dict[str, type[Tool]] = {
    "get_current_time": CurrentTimeTool,
    "calculate": CalculatorTool,
}


def build_registry(
    builtin: list[str],
    disabled: list[str] | None = None,
    *,
    plugins_enabled: bool = False,
    timeout: float | None = 30.0,
) -> ToolRegistry:
    """Assemble the registry from configured builtin names and plugins."""
    registry = ToolRegistry(timeout=timeout)
    for name in builtin:
        cls = BUILTIN_TOOLS.get(name)
        if cls is None:
            raise ValueError(f"Unknown builtin tool: {name}")
        registry.register(cls())
    registry.load_plugins(enabled=plugins_enabled)
    for name in disabled or []:
        registry.unregister(name)
    return registry
