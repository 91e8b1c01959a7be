"""
Tool contract shared by the builtin tools and entry-point plugins.

A tool declares ``name``, ``description`` and a JSON Schema ``parameters``
object as class attributes and implements ``execute``.  Arguments are
checked against the schema before every call; undeclared keys are rejected
unless the schema opts in with ``additionalProperties``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

import jsonschema


def object_schema(parameters: dict | None) -> dict:
    """Return *parameters* as a closed object schema, without mutating it."""
    schema = dict(parameters or {})
    schema.setdefault("type", "object")
    schema.setdefault("properties", {})
    schema.setdefault("additionalProperties", False)
    return schema


class Tool(ABC):
    name: str
    description: str
    parameters: dict

    @abstractmethod
    async def execute(self, **kwargs) -> Any: ...

    def check_arguments(self, arguments: dict) -> str | None:
        """First schema violation in *arguments*, or ``None`` when they fit."""
        try:
            jsonschema.validate(instance=arguments, schema=object_schema(self.parameters))
        except jsonschema.ValidationError as exc:
            return exc.message
        except jsonschema.SchemaError as exc:
            return f"tool schema is invalid: {exc.message}"
        return None

    def to_openai_schema(self) -> dict:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": object_schema(self.parameters),
            },
        }
