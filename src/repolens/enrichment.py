"""Qualitative enrichment of a surface analysis.

The primary path asks the inference collaborator one prompt per insight facet.
When no collaborator is configured, or it fails in any way (timeout, malformed
output, unreachable), a fixed fallback with the same shape is used instead.
Enrichment never fails a run.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

from .config import ENRICHMENT_TIMEOUT
from .errors import EnrichmentFailure
from .model import ModelError
from .prompts import FACET_PROMPTS, SYSTEM_PROMPT

if TYPE_CHECKING:
    from .analyzer import RepoAnalysis

logger = logging.getLogger(__name__)

SOURCE_MODEL = "model"
SOURCE_FALLBACK = "fallback"

TEXT_FACETS = ("architecture", "quality")
LIST_FACETS = ("performance", "security", "devops")
FACETS = TEXT_FACETS + LIST_FACETS


class InsightsModel(Protocol):
    def generate_json(
        self, prompt: str, system: str = "", timeout: float | None = None
    ) -> dict[str, Any]: ...


@dataclass
class Insights:
    architecture: str = ""
    quality: str = ""
    performance: list[str] = field(default_factory=list)
    security: list[str] = field(default_factory=list)
    devops: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @property
    def suggestion_count(self) -> int:
        return len(self.performance) + len(self.security) + len(self.devops)


def fallback_insights() -> Insights:
    """The deterministic insights used whenever the model path is unavailable."""
    return Insights(
        architecture="Monolithic application structure",
        quality="Good code organization, needs more tests",
        performance=[
            "Add caching layer",
            "Optimize database queries",
            "Implement CDN for static assets",
        ],
        security=[
            "Update dependencies",
            "Add input validation",
            "Implement rate limiting",
        ],
        devops=[
            "Add Docker support",
            "Create CI/CD pipeline",
            "Implement monitoring",
        ],
    )


def _text_answer(answer: dict[str, Any], facet: str) -> str:
    value = answer.get(facet)
    if not isinstance(value, str) or not value.strip():
        raise EnrichmentFailure(
            "Model returned an unusable answer", f"{facet}: expected non-empty string, got {value!r}"
        )
    return value.strip()


def _list_answer(answer: dict[str, Any], facet: str) -> list[str]:
    value = answer.get(facet)
    if not isinstance(value, list):
        raise EnrichmentFailure(
            "Model returned an unusable answer", f"{facet}: expected list, got {type(value).__name__}"
        )
    items = [str(v).strip() for v in value if isinstance(v, (str, int, float)) and str(v).strip()]
    if not items:
        raise EnrichmentFailure("Model returned an unusable answer", f"{facet}: empty list")
    return items


class EnrichmentAdapter:
    """Turns a RepoAnalysis into Insights, with a guaranteed fallback."""

    def __init__(self, model: InsightsModel | None = None, timeout: float = ENRICHMENT_TIMEOUT):
        self.model = model
        self.timeout = timeout

    def generate(self, analysis: "RepoAnalysis", deadline: float | None = None) -> Insights:
        """Run every facet prompt against the model. Raises EnrichmentFailure."""
        return Insights(**self.ask(analysis, FACETS, deadline))

    def ask(
        self,
        analysis: "RepoAnalysis",
        facets: tuple[str, ...] | list[str],
        deadline: float | None = None,
    ) -> dict[str, Any]:
        """Validated answers for ``facets``, one model request each.

        ``deadline`` is a ``time.monotonic()`` value. No request starts after
        it has passed, and each request's timeout is capped at the time left.
        """
        if self.model is None:
            raise EnrichmentFailure("No inference endpoint configured")

        context = analysis.summary_for_prompt()
        answers: dict[str, Any] = {}
        for facet in facets:
            remaining = None
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise EnrichmentFailure(
                        "Enrichment deadline passed", f"{len(answers)} of {len(facets)} facets answered"
                    )
            try:
                answer = self.model.generate_json(
                    FACET_PROMPTS[facet](context), system=SYSTEM_PROMPT, timeout=remaining
                )
            except ModelError as e:
                raise EnrichmentFailure("Inference request failed", str(e)) from e

            if facet in TEXT_FACETS:
                answers[facet] = _text_answer(answer, facet)
            else:
                answers[facet] = _list_answer(answer, facet)
        return answers

    async def enrich(self, analysis: "RepoAnalysis") -> tuple[Insights, str]:
        """Return ``(insights, source)`` where source is ``model`` or ``fallback``.

        The whole model path shares one deadline. It never raises.
        """
        answers, source = await self.suggest(analysis, FACETS)
        return Insights(**answers), source

    async def suggest(
        self, analysis: "RepoAnalysis", facets: tuple[str, ...] | list[str]
    ) -> tuple[dict[str, Any], str]:
        """Answers for ``facets`` only, under the same deadline and fallback as ``enrich``."""
        fallback = fallback_insights()
        fallback_answers = {facet: getattr(fallback, facet) for facet in facets}
        if self.model is None:
            logger.info("Enrichment disabled, using fallback insights")
            return fallback_answers, SOURCE_FALLBACK

        deadline = time.monotonic() + self.timeout
        try:
            answers = await asyncio.wait_for(
                asyncio.to_thread(self.ask, analysis, facets, deadline), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            logger.warning(f"Enrichment timed out after {self.timeout}s, using fallback insights")
            return fallback_answers, SOURCE_FALLBACK
        except EnrichmentFailure as e:
            logger.warning(f"{e.message}, using fallback insights: {e.diagnostic}")
            return fallback_answers, SOURCE_FALLBACK
        except Exception as e:
            logger.warning(f"Enrichment failed unexpectedly, using fallback insights: {e}", exc_info=True)
            return fallback_answers, SOURCE_FALLBACK

        return answers, SOURCE_MODEL
