"""
Completion service for job handlers.

Handlers depend on the ``CompletionService`` protocol; the production
implementation talks to Claude through langchain-anthropic and turns
provider failures into retryable / non-retryable job errors.
"""

import json
from typing import Any, Dict, Optional, Protocol

import anthropic
from langchain_anthropic import ChatAnthropic
from langchain_core.messages import HumanMessage, SystemMessage

from journalq.config import AppConfig, config as default_config
from journalq.jobs.errors import NonRetryableJobError, RetryableJobError
from journalq.utils.logging import get_logger

logger = get_logger("completion")


class CompletionService(Protocol):
    async def complete_json(self, prompt: str, system: Optional[str] = None) -> Dict[str, Any]:
        """Send a prompt and return the reply parsed as a JSON object."""
        ...


def parse_json_reply(text: str) -> Dict[str, Any]:
    """Extract a JSON object from a model reply, tolerating code fences."""
    text = text.strip()

    # Handle markdown code blocks
    if "```json" in text:
        text = text.split("```json")[1].split("```")[0].strip()
    elif "```" in text:
        text = text.split("```")[1].split("```")[0].strip()

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        # Sampling is not deterministic; another attempt may parse
        raise RetryableJobError(f"Completion reply was not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise RetryableJobError("Completion reply was not a JSON object")
    return data


def _content_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    # Content blocks: [{"type": "text", "text": ...}, ...]
    parts = []
    for block in content or []:
        if isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
        elif isinstance(block, str):
            parts.append(block)
    return "".join(parts)


class AnthropicCompletionService:
    """
    Claude-backed completions.

    Uses Haiku by default: handler prompts are short, structured and
    latency-sensitive.
    """

    def __init__(
        self,
        settings: Optional[AppConfig] = None,
        llm: Optional[Any] = None,
        temperature: float = 0.3,
        max_tokens: int = 800
    ):
        self.settings = settings or default_config
        self.model_name = self.settings.COMPLETION_MODEL

        if llm is None:
            if not self.settings.completion_configured:
                raise ValueError(
                    "ANTHROPIC_API_KEY is not configured. "
                    "Set it in your .env file or environment variables."
                )
            llm = ChatAnthropic(
                model=self.model_name,
                temperature=temperature,
                max_tokens=max_tokens,
                anthropic_api_key=self.settings.ANTHROPIC_API_KEY,
                timeout=self.settings.COMPLETION_TIMEOUT,
                max_retries=0,  # the job queue owns retries
            )
        self.llm = llm

    async def complete_json(self, prompt: str, system: Optional[str] = None) -> Dict[str, Any]:
        messages = []
        if system:
            messages.append(SystemMessage(content=system))
        messages.append(HumanMessage(content=prompt))

        try:
            response = await self.llm.ainvoke(messages)
        except (anthropic.APITimeoutError, anthropic.APIConnectionError) as e:
            raise RetryableJobError(f"Completion request failed: {e}") from e
        except anthropic.RateLimitError as e:
            raise RetryableJobError(f"Completion rate limited: {e}") from e
        except anthropic.APIStatusError as e:
            if e.status_code >= 500:
                raise RetryableJobError(f"Completion provider error ({e.status_code}): {e}") from e
            raise NonRetryableJobError(f"Completion rejected ({e.status_code}): {e}") from e

        text = _content_text(response.content)
        logger.debug("Completion received", model=self.model_name, chars=len(text))
        return parse_json_reply(text)
