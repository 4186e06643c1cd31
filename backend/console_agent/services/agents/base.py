"""
Base agent class for the model-backed sub-agents.

Provides a shared model call helper so every agent uses
consistent error handling, skill injection and JSON parsing.
Agents never touch the database; they turn typed input into
typed output through the injected ``ModelClient``.
"""

import json
import logging
from typing import Dict, Any, List, Optional, Sequence, Tuple

from console_agent.schemas import TokenUsage
from console_agent.services.llm import ModelClient, ModelError
from console_agent.services.skills import SkillRegistry, is_loaded_skill

logger = logging.getLogger(__name__)


class GenerationError(RuntimeError):
    """Raised when a sub-agent cannot produce valid output."""


class BaseAgent:
    """
    Abstract base for all specialised agents.

    Subclasses must set ``name`` and ``system_prompt``, and
    implement ``run()``.

    Attributes:
        name (str): Human-readable agent identifier.
        system_prompt (str): System-level instructions sent
            to the model for this agent.
        temperature (float): Sampling temperature (0 – 2).
        skills (tuple[str]): Skill manuals appended to the
            system prompt when available.
    """

    name: str = "base"
    system_prompt: str = ""
    temperature: float = 0.7
    skills: Sequence[str] = ()

    def __init__(
        self,
        model: ModelClient,
        registry: Optional[SkillRegistry] = None,
    ) -> None:
        self.model = model
        self.registry = registry

    # ----- prompt helpers --------------------------------------------

    def _build_system_prompt(self) -> str:
        """System prompt with every available required skill appended."""
        parts = [self.system_prompt]
        if self.registry is not None:
            for skill_name in self.skills:
                content = self.registry.get_skill(skill_name)
                if is_loaded_skill(content):
                    parts.append(content)
                else:
                    logger.warning(
                        "[%s] skill '%s' not available",
                        self.name,
                        skill_name,
                    )
        return "\n\n".join(p for p in parts if p)

    # ----- model helper ----------------------------------------------

    def _call_llm(
        self,
        messages: List[Dict[str, Any]],
        temperature: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Send *messages* to the model, return parsed JSON."""
        result, _ = self._call_llm_with_usage(messages, temperature)
        return result

    def _call_llm_with_usage(
        self,
        messages: List[Dict[str, Any]],
        temperature: Optional[float] = None,
    ) -> Tuple[Dict[str, Any], Optional[TokenUsage]]:
        """
        Send *messages* to the model, return parsed JSON and usage.

        Nothing per call is stored on the agent; one instance
        serves concurrent turns.

        Parameters:
            messages (list[dict]): Full message list including
                system prompt.
            temperature (float, optional): Override the default
                temperature for this call.

        Returns:
            tuple[dict, TokenUsage | None]: Parsed JSON object
            from the model and the call's token usage.

        Raises:
            GenerationError: The model failed or did not reply
                with a JSON object.
        """
        temp = (
            temperature if temperature is not None
            else self.temperature
        )

        try:
            response = self.model.generate(
                messages,
                json_mode=True,
                temperature=temp,
            )
        except ModelError as exc:
            logger.error("[%s] LLM call failed: %s", self.name, exc)
            raise GenerationError(str(exc)) from exc

        content = response.text or ""
        try:
            result = json.loads(content)
        except json.JSONDecodeError as exc:
            logger.warning(
                "[%s] LLM returned non-JSON: %s",
                self.name,
                content[:200],
            )
            raise GenerationError(
                f"{self.name} returned invalid JSON"
            ) from exc

        if not isinstance(result, dict):
            raise GenerationError(
                f"{self.name} returned JSON that is not an object"
            )
        return result, response.usage

    # ----- public interface (override in subclass) --------------------

    def run(self, *args: Any, **kwargs: Any) -> Any:
        """Execute the agent's task."""
        raise NotImplementedError
