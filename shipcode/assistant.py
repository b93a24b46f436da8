"""Generative-AI enrichment for project forms (Gemini).

Suggestions are optional: every failure degrades to "unavailable" and never
blocks a data store operation.
"""

import asyncio
import json
from dataclasses import dataclass
from typing import Any

import google.generativeai as genai
import structlog

from shipcode.models import Project

logger = structlog.get_logger()

DEFAULT_MODEL = "gemini-2.0-flash"

UNAVAILABLE_MESSAGE = "AI assistant unavailable. Configure gemini.api_key to enable it."
ERROR_MESSAGE = "I hit an error while processing your request. Please try again."

ASSISTANT_PROMPT = """You are an expert project management assistant for a digital agency operating system called "ShipCode OS".
Your tone is calm, professional, technical and reliable, like an experienced mentor.
Keep answers concise and actionable. Use Markdown for formatting."""

SUGGESTION_PROMPT = """Act as a Senior Solutions Architect and CTO of a software agency.
Analyze the following project and suggest an ideal technology stack, a budget estimate and a realistic delivery timeline.

Client: {client_name}
Project: {project_name}
Briefing: {description}

Respond in JSON with the keys:
- "architecture": recommended stack, architecture patterns and infrastructure, as Markdown bullet points
- "estimatedBudget": suggested project value (number only)
- "estimatedTimeline": estimated delivery time (e.g. "3 months")
- "reasoning": short technical justification"""


@dataclass
class Suggestion:
    architecture: str
    estimated_budget: float
    estimated_timeline: str
    reasoning: str


def project_context(project: Project) -> str:
    return (
        "Current project context:\n"
        f"Name: {project.name}\n"
        f"Client: {project.client_name}\n"
        f"Status: {project.status.value}\n"
        f"Description: {project.description}\n"
        f"Team size: {len(project.team_ids)}\n"
        f"Financials: {len(project.financial_items)} items recorded.\n"
        f"Tasks: {len(project.tasks)} tasks in total.\n"
        f"Contract status: {project.contract.status.value if project.contract else 'No contract'}."
    )


class Assistant:
    """Thin client over a Gemini model."""

    def __init__(self, api_key: str | None, model: str = DEFAULT_MODEL) -> None:
        self.api_key = api_key
        self.model_name = model
        self._model: Any = None
        if api_key:
            genai.configure(api_key=api_key)
            self._model = genai.GenerativeModel(model)
            logger.debug("Assistant initialized", model=model)

    @property
    def available(self) -> bool:
        return self._model is not None

    async def _generate(self, prompt: str, **kwargs: Any) -> str:
        response = await asyncio.to_thread(self._model.generate_content, prompt, **kwargs)
        return str(getattr(response, "text", "") or "")

    async def ask(self, query: str, project: Project | None = None) -> str:
        """Answer a free-form project management question."""
        if not self.available:
            return UNAVAILABLE_MESSAGE
        prompt = ASSISTANT_PROMPT
        if project is not None:
            prompt += "\n\n" + project_context(project)
        try:
            text = await self._generate(f"{prompt}\n\nUser query: {query}")
        except Exception as e:
            logger.warning("Assistant request failed", error=str(e))
            return ERROR_MESSAGE
        return text or "I could not generate an answer right now."

    async def suggest(self, project_name: str, client_name: str, description: str) -> Suggestion | None:
        """Suggest architecture, budget and timeline; None when unavailable."""
        if not self.available:
            logger.info("Suggestion skipped; assistant unavailable")
            return None
        prompt = SUGGESTION_PROMPT.format(project_name=project_name, client_name=client_name, description=description)
        try:
            text = await self._generate(
                prompt, generation_config=genai.GenerationConfig(response_mime_type="application/json")
            )
            data = json.loads(text or "{}")
            return Suggestion(
                architecture=str(data.get("architecture", "")),
                estimated_budget=float(data.get("estimatedBudget") or 0),
                estimated_timeline=str(data.get("estimatedTimeline", "")),
                reasoning=str(data.get("reasoning", "")),
            )
        except Exception as e:
            logger.warning("Suggestion failed", project_name=project_name, error=str(e))
            return None
