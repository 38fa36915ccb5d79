"""Prompt templates for repository enrichment.

One fixed template per insight facet. Each asks for a single JSON object
with a known key so the answer can be validated mechanically.
"""

from __future__ import annotations

SYSTEM_PROMPT = """You are a senior DevOps engineer analyzing code repositories.
You only see surface metrics: file inventory, languages, manifests, dependencies and line counts.
Be specific and concrete, refer to the provided data, and avoid generic filler.
Always answer with a single JSON object and nothing else."""


def architecture_prompt(context: str) -> str:
    """Prompt for the one-paragraph architecture assessment."""
    return f"""Assess the architecture of this repository.

REPOSITORY ANALYSIS:
{context}

Answer with JSON: {{"architecture": "<2-3 sentences: overall structure and architectural style>"}}"""


def quality_prompt(context: str) -> str:
    """Prompt for the code quality assessment."""
    return f"""Assess the code quality signals of this repository.

REPOSITORY ANALYSIS:
{context}

Consider organization, file sizes, configuration hygiene and test presence.
Answer with JSON: {{"quality": "<2-3 sentences>"}}"""


def performance_prompt(context: str) -> str:
    return f"""List performance recommendations for this repository.

REPOSITORY ANALYSIS:
{context}

Answer with JSON: {{"performance": ["<recommendation>", ...]}} with 3 to 5 short items."""


def security_prompt(context: str) -> str:
    return f"""List security considerations for this repository.

REPOSITORY ANALYSIS:
{context}

Look at dependencies, configuration files and exposed surfaces.
Answer with JSON: {{"security": ["<consideration>", ...]}} with 3 to 5 short items."""


def devops_prompt(context: str) -> str:
    return f"""List DevOps best practices this repository should adopt.

REPOSITORY ANALYSIS:
{context}

Consider containerization, CI/CD, configuration and observability.
Answer with JSON: {{"devops": ["<practice>", ...]}} with 3 to 5 short items."""


FACET_PROMPTS = {
    "architecture": architecture_prompt,
    "quality": quality_prompt,
    "performance": performance_prompt,
    "security": security_prompt,
    "devops": devops_prompt,
}
