# tests/conftest.py
import asyncio
import json
import os
import re
import sys

# Ensure repository root is on PYTHONPATH for tests
repo_root = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
if repo_root not in sys.path:
    sys.path.insert(0, repo_root)

# Placeholder secrets and quiet defaults for tests
os.environ.setdefault("OPENAI_API_KEY", "test-key")
os.environ.setdefault("ENABLE_RICH_PROGRESS", "false")

import pytest  # noqa: E402
from core.llm_interface import CompletionResponse  # noqa: E402
from core.usage import TokenUsage  # noqa: E402
from parsing import validate_payload  # noqa: E402

from models import Archetype, Credentials  # noqa: E402

_PERSONA = re.compile(r"PERSONA: (.+)")
_EXCERPT = re.compile(r"excerpt #(\d+)")


def standard_payload(overall: float = 7.0) -> dict:
    return {
        "ratings": {
            "engagement": 7.5,
            "style": 6.0,
            "clarity": 8.0,
            "pacing": 6.5,
            "relevance": 7.0,
        },
        "overallRating": overall,
        "feedback": "Vivid setting, slow middle.",
        "buyingProbability": 0.6,
        "recommendationLikelihood": 0.55,
        "expectedReviewSentiment": "Positive",
        "marketingInsights": ["Lead with the setting", "Target book clubs"],
    }


def describe_request(request) -> tuple[str, int]:
    """Return (persona name, 1-based chunk number) rendered into a request."""
    persona = _PERSONA.search(request.user_prompt)
    excerpt = _EXCERPT.search(request.user_prompt)
    return (
        persona.group(1).strip() if persona else "",
        int(excerpt.group(1)) if excerpt else 0,
    )


class FakeCompletionClient:
    """Stands in for ``CompletionClient`` at the ``complete_request`` seam.

    ``responder(request)`` returns a payload dict or raises.
    """

    def __init__(self, responder=None, delay: float = 0.0) -> None:
        self.responder = responder or (lambda _request: standard_payload())
        self.delay = delay
        self.requests: list = []
        self.closed = False

    async def complete_request(self, request, credentials, model_id=None):
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        data = self.responder(request)
        parsed = validate_payload(data, request.response_model, request.validation_context)
        return CompletionResponse(
            parsed=parsed,
            raw_text=json.dumps(data),
            model=credentials.model,
            usage=TokenUsage(prompt_tokens=10, completion_tokens=5, total_tokens=15),
        )

    async def aclose(self) -> None:
        self.closed = True


def make_text(paragraphs: int, words_per_paragraph: int = 100) -> str:
    return "\n\n".join(
        " ".join(f"word{p}_{w}" for w in range(words_per_paragraph))
        for p in range(paragraphs)
    )


@pytest.fixture
def archetypes() -> list[Archetype]:
    return [
        Archetype(
            id="a1",
            name="Alice",
            description="Avid thriller reader",
            demographics="30-45",
            reading_preferences="Fast plots",
            personality_traits=["Curious"],
            motivations=["Suspense"],
            pain_points=["Slow starts"],
        ),
        Archetype(id="b2", name="Bob", description="Literary fiction fan"),
    ]


@pytest.fixture
def credentials() -> Credentials:
    return Credentials(api_key="sk-test", model="test-model")
