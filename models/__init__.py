"""Central package for Reader Panel data models."""

from .analysis_models import (
    AnalysisProgress,
    AnalysisResult,
    AnalyticalReview,
    Archetype,
    ArchetypeSummary,
    Chunk,
    ChunkingOptions,
    ChunkType,
    Credentials,
    EmotionalNote,
    InsightCount,
    LayerCorrelation,
    LiteraryElements,
    MarketViability,
    PanelBaseModel,
    PanelSummary,
    Ratings,
    RawReaction,
    ReaderAnalysis,
    ReviewSentiment,
    SamplingParams,
    TaskFailure,
    TechnicalAspects,
    TokenCounts,
    TwoLayerResult,
)
from .job_models import BackgroundJob, JobStatus

__all__ = [
    "PanelBaseModel",
    "ChunkType",
    "Chunk",
    "ChunkingOptions",
    "Archetype",
    "Credentials",
    "SamplingParams",
    "ReviewSentiment",
    "Ratings",
    "ReaderAnalysis",
    "AnalysisResult",
    "EmotionalNote",
    "RawReaction",
    "LiteraryElements",
    "TechnicalAspects",
    "MarketViability",
    "AnalyticalReview",
    "LayerCorrelation",
    "TwoLayerResult",
    "TaskFailure",
    "TokenCounts",
    "AnalysisProgress",
    "ArchetypeSummary",
    "InsightCount",
    "PanelSummary",
    "BackgroundJob",
    "JobStatus",
]
