"""
pivot/ai/freestyle.py

Freestyle collaborator: asks a local LLM (Ollama) for one mutation idea when
the signature library has nothing confident to say.

The contract is narrow: the engine sends a bounded JSON brief and
expects back exactly ``{strategy, mutation_family, payload_template,
rationale}`` with a ``{{payload}}`` placeholder in the template. Anything
else is a collaborator failure; the engine turns it into a structured
abandonment instead of guessing.
"""

from __future__ import annotations

import json
import logging
from typing import Iterable, List, Optional, Protocol

import httpx
from pydantic import ValidationError

from ..base.config import FreestyleConfig, get_config
from ..base.errors import ErrorCode, FreestyleCollaboratorError
from ..contracts.enums import MutationFamily, ObstacleClassification
from ..contracts.models import AttemptRecord, FreestyleBrief, FreestyleSuggestion, ObstacleEvent

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are an offensive security engineer helping an automated tester get past a blocked request. "
    "You receive a JSON brief describing the obstacle and the mutations already tried. "
    "Propose ONE new mutation that was not tried yet. "
    "Return ONLY a JSON object with exactly these keys: "
    "'strategy' (short snake_case name), "
    "'mutation_family' (one of: encoding, structural, timing, protocol), "
    "'payload_template' (string that MUST contain the literal placeholder {{payload}}), "
    "'rationale' (one or two sentences)."
)


def build_brief(
    event: ObstacleEvent,
    classification: ObstacleClassification,
    history: Iterable[AttemptRecord],
    families: Iterable[MutationFamily],
    config: Optional[FreestyleConfig] = None,
) -> FreestyleBrief:
    cfg = config or FreestyleConfig()
    strategies: List[str] = [record.strategy for record in history if record.strategy]
    window = strategies[-cfg.history_window:] if cfg.history_window > 0 else []
    return FreestyleBrief(
        obstacle_classification=classification,
        phase=event.phase,
        terminal_output_excerpt=event.terminal_output[: cfg.excerpt_chars],
        attempted_mutations=window,
        available_families=list(families),
    )


def parse_suggestion(raw: str) -> FreestyleSuggestion:
    """Validate the model's reply; raise FreestyleCollaboratorError on any other shape."""
    text = raw.strip()
    if text.startswith("```"):
        lines = text.splitlines()
        if len(lines) >= 3:
            text = "\n".join(lines[1:-1])
    try:
        return FreestyleSuggestion.model_validate_json(text)
    except ValidationError as e:
        raise FreestyleCollaboratorError(
            ErrorCode.FREESTYLE_INVALID_RESPONSE,
            "Collaborator reply does not match the suggestion contract",
            details={"errors": e.errors(include_url=False, include_context=False), "reply": raw[:500]},
        ) from e


class FreestyleCollaborator(Protocol):
    async def suggest(self, brief: FreestyleBrief) -> FreestyleSuggestion: ...


class OllamaFreestyleClient:
    """Freestyle collaborator backed by Ollama's /api/generate endpoint."""

    def __init__(self, config: Optional[FreestyleConfig] = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or get_config().freestyle
        self.base_url = self.config.ollama_url.rstrip("/")
        self.model = self.config.model
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=self.config.request_timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def suggest(self, brief: FreestyleBrief) -> FreestyleSuggestion:
        body = {
            "model": self.model,
            "system": SYSTEM_PROMPT,
            "prompt": json.dumps(brief.model_dump(mode="json"), indent=2),
            "stream": False,
            "format": "json",
        }
        try:
            resp = await self.client.post(f"{self.base_url}/api/generate", json=body)
        except httpx.HTTPError as e:
            raise FreestyleCollaboratorError(
                ErrorCode.FREESTYLE_UNAVAILABLE,
                f"Ollama request failed: {type(e).__name__}: {e}",
                details={"base_url": self.base_url},
            ) from e

        if resp.status_code != 200:
            raise FreestyleCollaboratorError(
                ErrorCode.FREESTYLE_UNAVAILABLE,
                f"Ollama returned HTTP {resp.status_code}",
                details={"base_url": self.base_url, "body": resp.text[:500]},
            )

        try:
            reply = resp.json().get("response")
        except (ValueError, AttributeError) as e:
            raise FreestyleCollaboratorError(
                ErrorCode.FREESTYLE_INVALID_RESPONSE, "Ollama returned a non-JSON envelope"
            ) from e
        if not isinstance(reply, str) or not reply.strip():
            raise FreestyleCollaboratorError(ErrorCode.FREESTYLE_INVALID_RESPONSE, "Empty collaborator reply")

        suggestion = parse_suggestion(reply)
        logger.info(f"[Freestyle] Suggestion {suggestion.strategy} ({suggestion.mutation_family.value})")
        return suggestion


__all__ = [
    "FreestyleCollaborator",
    "OllamaFreestyleClient",
    "SYSTEM_PROMPT",
    "build_brief",
    "parse_suggestion",
]
