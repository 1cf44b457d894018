# prompt_renderer.py
"""Utilities for rendering LLM prompts using Jinja2 templates."""

import json
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, StrictUndefined
from pydantic import BaseModel

PROMPTS_PATH = Path(__file__).parent / "prompts"
_env = Environment(
    loader=FileSystemLoader(PROMPTS_PATH),
    autoescape=False,
    undefined=StrictUndefined,
)


def _model_json_default(value: Any) -> Any:
    """Serialize pydantic models with the camelCase keys the API expects."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", by_alias=True, exclude_none=True)
    raise TypeError(
        f"Object of type {value.__class__.__name__} is not JSON serializable"
    )


def _tojson(value: Any, indent: int | None = None) -> str:
    """Plain JSON filter for prompts; no HTML escaping."""
    return json.dumps(
        value, default=_model_json_default, ensure_ascii=False, indent=indent
    )


_env.filters["tojson"] = _tojson


def render_prompt(template_name: str, context: dict[str, Any]) -> str:
    """Render a Jinja2 template from the prompts directory."""
    template = _env.get_template(template_name)
    return template.render(**context).strip()
