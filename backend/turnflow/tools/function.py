from __future__ import annotations

import inspect
import json
import logging
from collections.abc import Callable
from typing import Any, Optional

from turnflow.core.errors import ToolExecutionError
from turnflow.domain.types import ToolSpecification
from turnflow.tools.base import ToolProvider

logger = logging.getLogger(__name__)


class FunctionToolProvider(ToolProvider):
    """In-process Python callables exposed as tools.

    Arguments arrive as a JSON object and are passed as keyword arguments.
    Non-string return values are JSON-encoded. An exception raised by the
    function is reported back to the model as the tool result.
    """

    name = "functions"

    def __init__(self) -> None:
        self._specs: dict[str, ToolSpecification] = {}

    def add(
        self,
        func: Callable[..., Any],
        name: Optional[str] = None,
        description: Optional[str] = None,
        parameters: Optional[dict[str, Any]] = None,
    ) -> "FunctionToolProvider":
        tool_name = name or func.__name__
        self._specs[tool_name] = ToolSpecification(
            name=tool_name,
            description=description if description is not None else inspect.getdoc(func) or "",
            parameters=parameters or {"type": "object", "properties": {}},
            executor=_FunctionExecutor(tool_name, func),
        )
        return self

    def tool(
        self,
        name: Optional[str] = None,
        description: Optional[str] = None,
        parameters: Optional[dict[str, Any]] = None,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Decorator form of ``add``."""

        def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
            self.add(func, name=name, description=description, parameters=parameters)
            return func

        return decorator

    async def describe(self) -> list[ToolSpecification]:
        return list(self._specs.values())


class _FunctionExecutor:
    def __init__(self, name: str, func: Callable[..., Any]) -> None:
        self._name = name
        self._func = func

    async def execute(self, arguments: str) -> str:
        try:
            kwargs = json.loads(arguments) if arguments.strip() else {}
        except ValueError as exc:
            raise ToolExecutionError(
                "TOOL_ARGUMENTS_INVALID", f"Arguments for {self._name} are not valid JSON."
            ) from exc
        if not isinstance(kwargs, dict):
            raise ToolExecutionError(
                "TOOL_ARGUMENTS_INVALID", f"Arguments for {self._name} must be a JSON object."
            )
        try:
            result = self._func(**kwargs)
            if inspect.isawaitable(result):
                result = await result
        except Exception as exc:  # noqa: BLE001
            logger.warning("Tool %s failed: %s", self._name, exc)
            return f"Error: {exc}"
        if isinstance(result, str):
            return result
        return json.dumps(result, ensure_ascii=False, default=str)
