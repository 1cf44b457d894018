# models/analysis_models.py
"""Pydantic models shared by the chunker, prompt builder, client and controllers."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    computed_field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel


class PanelBaseModel(BaseModel):
    """Base model accepting both snake_case names and camelCase aliases."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> dict[str, Any]:
        """Dump with camelCase keys, the shape the dashboards consume."""
        return self.model_dump(mode="json", by_alias=True)


class ChunkType(str, Enum):
    CHAPTER = "chapter"
    SECTION = "section"
    PARAGRAPH = "paragraph"
    AUTOMATIC = "automatic"


class Chunk(PanelBaseModel):
    """A bounded contiguous slice of the manuscript."""

    model_config = ConfigDict(frozen=True)

    content: str
    chunk_type: ChunkType
    title: str | None = None
    index: int = Field(ge=0)
    word_count: int = Field(gt=0)


class ChunkingOptions(PanelBaseModel):
    max_words_per_chunk: int = Field(default=400, ge=1)
    min_words_per_chunk: int = Field(default=150, ge=1)
    preserve_structure: bool = True

    @model_validator(mode="after")
    def check_bounds(self) -> ChunkingOptions:
        if self.min_words_per_chunk > self.max_words_per_chunk:
            raise ValueError(
                "min_words_per_chunk cannot exceed max_words_per_chunk"
            )
        return self


class Archetype(PanelBaseModel):
    """A reader persona. Read-only as far as the analysis core is concerned."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""
    demographics: str = ""
    reading_preferences: str = ""
    personality_traits: list[str] = Field(default_factory=list)
    motivations: list[str] = Field(default_factory=list)
    pain_points: list[str] = Field(default_factory=list)


class Credentials(PanelBaseModel):
    """API key and model identifier handed in by the credentials store."""

    api_key: str = Field(repr=False)
    model: str
    api_base: str | None = None


class SamplingParams(PanelBaseModel):
    temperature: float = Field(default=0.3, ge=0.0, le=2.0)
    max_tokens: int = Field(default=800, gt=0)


class ReviewSentiment(str, Enum):
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"


class Ratings(PanelBaseModel):
    engagement: float
    style: float
    clarity: float
    pacing: float
    relevance: float

    def values(self) -> list[float]:
        return [
            self.engagement,
            self.style,
            self.clarity,
            self.pacing,
            self.relevance,
        ]


class _ReaderAnalysisFields(PanelBaseModel):
    ratings: Ratings
    overall_rating: float
    feedback: str
    buying_probability: float = Field(ge=0.0, le=1.0)
    recommendation_likelihood: float = Field(ge=0.0, le=1.0)
    expected_review_sentiment: ReviewSentiment
    marketing_insights: list[str] = Field(default_factory=list)

    @field_validator("expected_review_sentiment", mode="before")
    @classmethod
    def normalize_sentiment(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value


class ReaderAnalysis(_ReaderAnalysisFields):
    """Validated payload of the standard persona rating template.

    The rating scale is read from the validation context
    (``{"rating_scale": 5}``) and defaults to 10.
    """

    marketing_insights: list[str] = Field(min_length=2, max_length=3)

    @field_validator("feedback")
    @classmethod
    def feedback_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("feedback must not be empty")
        return value.strip()

    @field_validator("marketing_insights", mode="before")
    @classmethod
    def drop_blank_insights(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [str(item).strip() for item in value if str(item).strip()]
        return value

    @model_validator(mode="after")
    def check_rating_scale(self, info: ValidationInfo) -> ReaderAnalysis:
        scale = 10
        if info.context and "rating_scale" in info.context:
            scale = int(info.context["rating_scale"])
        for name, value in zip(
            ("engagement", "style", "clarity", "pacing", "relevance", "overall"),
            [*self.ratings.values(), self.overall_rating],
        ):
            if not 1.0 <= value <= scale:
                raise ValueError(f"{name} rating {value} is outside 1-{scale}")
        return self


class AnalysisResult(_ReaderAnalysisFields):
    """One persona's verdict on one chunk."""

    archetype_id: str
    chunk_index: int = Field(ge=0)

    @classmethod
    def from_analysis(
        cls, archetype_id: str, chunk_index: int, analysis: ReaderAnalysis
    ) -> AnalysisResult:
        return cls(
            archetype_id=archetype_id,
            chunk_index=chunk_index,
            **analysis.model_dump(),
        )


class EmotionalNote(PanelBaseModel):
    emotion: str
    intensity: float = Field(ge=1.0, le=10.0)
    reflection: str
    key_moment: str = ""
    personal_connection: str = ""


class RawReaction(PanelBaseModel):
    """Stream-of-thought reactions noted while reading a chunk."""

    notes: list[EmotionalNote] = Field(min_length=1)


class LiteraryElements(PanelBaseModel):
    character_development: float
    plot_progression: float
    style_quality: float
    theme_exploration: float


class TechnicalAspects(PanelBaseModel):
    pacing: float
    dialogue: float
    description: float
    structure: float


class MarketViability(PanelBaseModel):
    genre_conventions: float
    target_audience_appeal: float
    uniqueness: float
    commercial_potential: float


class AnalyticalReview(PanelBaseModel):
    """Structured business insight derived from a raw reaction."""

    literary_elements: LiteraryElements
    technical_aspects: TechnicalAspects
    market_viability: MarketViability
    detailed_analysis: str
    improvement_suggestions: list[str] = Field(default_factory=list)

    def literary_mean(self) -> float:
        values = self.literary_elements.model_dump().values()
        return sum(values) / len(values)

    def technical_mean(self) -> float:
        values = self.technical_aspects.model_dump().values()
        return sum(values) / len(values)


class LayerCorrelation(PanelBaseModel):
    emotional_highs: list[float] = Field(default_factory=list)
    analytical_strengths: list[float] = Field(default_factory=list)
    discrepancies: list[str] = Field(default_factory=list)
    synthesis: str


class TwoLayerResult(AnalysisResult):
    emotional_notes: list[EmotionalNote]
    analytical_review: AnalyticalReview
    layer_correlation: LayerCorrelation


class TaskFailure(PanelBaseModel):
    """A task that produced no result, kept for the progress/log stream."""

    archetype_id: str
    archetype_name: str
    chunk_index: int
    error_type: str
    message: str


class TokenCounts(PanelBaseModel):
    prompt: int = 0
    completion: int = 0


class AnalysisProgress(PanelBaseModel):
    """Point-in-time snapshot of a run. Never an incremental delta."""

    current_step: int = 0
    total_steps: int = 0
    current_archetype: str = ""
    current_chunk: int = 0
    total_chunks: int = 0
    status: str = ""
    state: str = "idle"
    results: list[AnalysisResult] = Field(default_factory=list)
    failures: list[TaskFailure] = Field(default_factory=list)
    api_calls: int = 0
    token_usage: TokenCounts = Field(default_factory=TokenCounts)
    chunking_summary: str | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def percent(self) -> float:
        if self.total_steps <= 0:
            return 100.0
        return min(100.0, self.current_step / self.total_steps * 100.0)


class ArchetypeSummary(PanelBaseModel):
    """Aggregate verdict of one archetype across every chunk it rated.

    Averages are ``None`` when the archetype produced no results. The
    ``final_*`` fields come from the last chunk in document order.
    """

    archetype_id: str
    archetype_name: str
    analyzed_chunks: int = 0
    avg_overall: float | None = None
    avg_buying_probability: float | None = None
    avg_recommendation_likelihood: float | None = None
    final_rating: float | None = None
    final_buying_probability: float | None = None
    final_recommendation_likelihood: float | None = None
    review_sentiment: ReviewSentiment | None = None
    positive_reviews: int = 0
    neutral_reviews: int = 0
    negative_reviews: int = 0


class InsightCount(PanelBaseModel):
    insight: str
    count: int


class PanelSummary(PanelBaseModel):
    total_archetypes: int
    total_analyzed_chunks: int
    overall_rating: float | None = None
    overall_buying_probability: float | None = None
    archetypes: list[ArchetypeSummary] = Field(default_factory=list)
    top_insights: list[InsightCount] = Field(default_factory=list)
