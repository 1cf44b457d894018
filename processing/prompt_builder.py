# processing/prompt_builder.py
"""Render persona + chunk pairs into chat-completion requests.

Each analysis mode owns a ``PromptTemplate``: the Jinja2 system and user
templates, the sampling parameters and the pydantic schema its response is
validated against. Controllers only ask for a mode, so templates can be
swapped through ``PromptBuilder.register_template`` without touching them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import structlog
from config import settings
from prompt_renderer import render_prompt
from pydantic import BaseModel

from models import (
    AnalyticalReview,
    Archetype,
    LayerCorrelation,
    RawReaction,
    ReaderAnalysis,
    SamplingParams,
)

logger = structlog.get_logger(__name__)


class AnalysisMode(str, Enum):
    STANDARD = "standard"
    RAW_REACTION = "raw_reaction"
    BUSINESS_INSIGHT = "business_insight"
    LAYER_CORRELATION = "layer_correlation"


@dataclass(frozen=True)
class PromptTemplate:
    mode: AnalysisMode
    system_template: str
    user_template: str
    response_model: type[BaseModel]
    temperature: float
    max_tokens: int
    required_context: tuple[str, ...] = ()


@dataclass(frozen=True)
class PromptRequest:
    """A fully rendered request, ready for the completion client."""

    mode: AnalysisMode
    system_prompt: str
    user_prompt: str
    sampling: SamplingParams
    response_model: type[BaseModel]
    validation_context: dict[str, Any] = field(default_factory=dict)


def default_templates() -> dict[AnalysisMode, PromptTemplate]:
    return {
        AnalysisMode.STANDARD: PromptTemplate(
            mode=AnalysisMode.STANDARD,
            system_template="analysis/system_standard.j2",
            user_template="analysis/standard.j2",
            response_model=ReaderAnalysis,
            temperature=settings.TEMPERATURE_STANDARD,
            max_tokens=settings.MAX_TOKENS_STANDARD,
        ),
        AnalysisMode.RAW_REACTION: PromptTemplate(
            mode=AnalysisMode.RAW_REACTION,
            system_template="analysis/system_two_layer.j2",
            user_template="analysis/raw_reaction.j2",
            response_model=RawReaction,
            temperature=settings.TEMPERATURE_RAW_REACTION,
            max_tokens=settings.MAX_TOKENS_TWO_LAYER,
        ),
        AnalysisMode.BUSINESS_INSIGHT: PromptTemplate(
            mode=AnalysisMode.BUSINESS_INSIGHT,
            system_template="analysis/system_two_layer.j2",
            user_template="analysis/business_insight.j2",
            response_model=AnalyticalReview,
            temperature=settings.TEMPERATURE_BUSINESS_INSIGHT,
            max_tokens=settings.MAX_TOKENS_TWO_LAYER,
            required_context=("raw_reaction",),
        ),
        AnalysisMode.LAYER_CORRELATION: PromptTemplate(
            mode=AnalysisMode.LAYER_CORRELATION,
            system_template="analysis/system_two_layer.j2",
            user_template="analysis/layer_correlation.j2",
            response_model=LayerCorrelation,
            temperature=settings.TEMPERATURE_LAYER_CORRELATION,
            max_tokens=settings.MAX_TOKENS_TWO_LAYER,
            required_context=("raw_reaction", "analytical_review"),
        ),
    }


class PromptBuilder:
    """Deterministic renderer for every analysis mode."""

    def __init__(
        self,
        templates: dict[AnalysisMode, PromptTemplate] | None = None,
        rating_scale: int | None = None,
        feedback_word_limit: int | None = None,
    ) -> None:
        self._templates = dict(templates or default_templates())
        self.rating_scale = rating_scale or settings.RATING_SCALE
        self.feedback_word_limit = feedback_word_limit or settings.FEEDBACK_WORD_LIMIT
        if self.rating_scale not in (5, 10):
            raise ValueError("rating_scale must be 5 or 10")

    def register_template(self, template: PromptTemplate) -> None:
        """Replace the template used for ``template.mode``."""
        self._templates[template.mode] = template
        logger.debug("Prompt template registered", mode=template.mode.value)

    def template_for(self, mode: AnalysisMode) -> PromptTemplate:
        try:
            return self._templates[mode]
        except KeyError:
            raise ValueError(f"No prompt template registered for mode '{mode}'") from None

    def build(
        self,
        archetype: Archetype,
        chunk_content: str,
        chunk_index: int,
        mode: AnalysisMode = AnalysisMode.STANDARD,
        **extra: Any,
    ) -> PromptRequest:
        template = self.template_for(mode)
        missing = [name for name in template.required_context if extra.get(name) is None]
        if missing:
            raise ValueError(
                f"Mode '{mode.value}' requires prior output: {', '.join(missing)}"
            )

        context: dict[str, Any] = {
            "archetype": archetype,
            "chunk_content": chunk_content,
            "chunk_index": chunk_index,
            "chunk_number": chunk_index + 1,
            "rating_scale": self.rating_scale,
            "example_rating": "7.3" if self.rating_scale == 10 else "3.6",
            "feedback_word_limit": self.feedback_word_limit,
            **extra,
        }
        return PromptRequest(
            mode=mode,
            system_prompt=render_prompt(template.system_template, context),
            user_prompt=render_prompt(template.user_template, context),
            sampling=SamplingParams(
                temperature=template.temperature, max_tokens=template.max_tokens
            ),
            response_model=template.response_model,
            validation_context={"rating_scale": self.rating_scale},
        )
