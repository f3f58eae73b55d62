"""
LLM Client - short single-turn answers for the response router
Supports: Anthropic, OpenAI, Groq, Mistral, Ollama
"""

import os
import time
import asyncio
import logging
import aiohttp
from typing import Dict, List, Optional

from .errors import LLMError

logger = logging.getLogger(__name__)


# OpenAI-compatible chat endpoints: provider -> (endpoint, api key env var, default model)
OPENAI_COMPATIBLE = {
    "openai": ("https://api.openai.com/v1/chat/completions", "OPENAI_API_KEY", "gpt-4o-mini"),
    "groq": ("https://api.groq.com/openai/v1/chat/completions", "GROQ_API_KEY", "llama-3.1-8b-instant"),
    "mistral": ("https://api.mistral.ai/v1/chat/completions", "MISTRAL_API_KEY", "mistral-small-latest"),
}

DEFAULT_SYSTEM_PROMPT = (
    "You are btw, a voice assistant running on the user's Linux desktop. "
    "Answer the user's question concisely in one or two sentences. "
    "Avoid markdown; output plain text only."
)


class LLMClient:
    """
    LLM interface with provider abstraction
    Supports: anthropic, openai, groq, mistral, ollama
    """

    def __init__(
        self,
        provider: str = "mistral",
        model: Optional[str] = None,
        endpoint: Optional[str] = None,
        timeout: float = 30.0,
        temperature: float = 0.2,
    ):
        self.provider = provider
        self.timeout = timeout
        self.temperature = temperature

        if provider == "anthropic":
            try:
                from anthropic import AsyncAnthropic
            except ImportError:
                raise LLMError("anthropic package not installed. Install via: pip install anthropic")

            api_key = os.getenv("ANTHROPIC_API_KEY")
            if not api_key:
                raise LLMError("ANTHROPIC_API_KEY not set")
            self.client = AsyncAnthropic(api_key=api_key)
            self.model = model or "claude-3-5-haiku-latest"

        elif provider in OPENAI_COMPATIBLE:
            default_endpoint, key_var, default_model = OPENAI_COMPATIBLE[provider]
            api_key = os.getenv(key_var)
            if not api_key:
                raise LLMError(f"{key_var} not set")
            self.api_key = api_key
            self.model = model or default_model
            self.endpoint = endpoint or default_endpoint

        elif provider == "ollama":
            # Ollama runs locally, no API key needed
            self.model = model or "llama3.2"
            self.endpoint = endpoint or "http://localhost:11434/api/chat"

        else:
            raise LLMError(
                f"Unsupported provider: {provider}. Use: anthropic, openai, groq, mistral, or ollama"
            )

    async def query_async(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        max_tokens: int = 512,
    ) -> str:
        """
        Send a single prompt and return the stripped answer text.

        Raises LLMError on transport failure, non-200 status, timeout or an
        empty answer.
        """
        if system_prompt is None:
            system_prompt = DEFAULT_SYSTEM_PROMPT

        start_time = time.time()
        try:
            if self.provider == "anthropic":
                text = await self._query_anthropic(prompt, system_prompt, max_tokens)
            elif self.provider == "ollama":
                text = await self._query_ollama(prompt, system_prompt)
            else:
                text = await self._query_openai(prompt, system_prompt, max_tokens)
        except LLMError:
            raise
        except asyncio.TimeoutError:
            raise LLMError(f"{self.model} timeout ({self.timeout:.0f}s)")
        except aiohttp.ClientConnectorError as e:
            raise LLMError(f"Cannot connect to {self.provider} ({self.model}): {e}")
        except Exception as e:
            raise LLMError(f"{self.provider} API error ({self.model}): {e}") from e

        elapsed = time.time() - start_time
        logger.info(f"[{self.provider}] Response time: {elapsed:.2f}s (model: {self.model})")

        text = (text or "").strip()
        if not text:
            raise LLMError(f"{self.provider} returned an empty answer")
        return text

    async def answer_short(self, prompt: str) -> str:
        """Concise plain-text answer with the default voice-assistant prompt."""
        return await self.query_async(prompt, system_prompt=DEFAULT_SYSTEM_PROMPT)

    def _messages(self, prompt: str, system_prompt: str) -> List[Dict]:
        return [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": prompt},
        ]

    async def _query_anthropic(self, prompt: str, system_prompt: str, max_tokens: int) -> str:
        """Query Anthropic API"""
        response = await asyncio.wait_for(
            self.client.messages.create(
                model=self.model,
                max_tokens=max_tokens,
                system=system_prompt,
                temperature=self.temperature,
                messages=[{"role": "user", "content": prompt}],
            ),
            self.timeout,
        )
        return response.content[0].text

    async def _query_openai(self, prompt: str, system_prompt: str, max_tokens: int) -> str:
        """Query an OpenAI-compatible chat completions API (OpenAI, Groq, Mistral)"""
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json"
        }
        payload = {
            "model": self.model,
            "messages": self._messages(prompt, system_prompt),
            "max_tokens": max_tokens,
            "temperature": self.temperature,
        }

        async with aiohttp.ClientSession() as session:
            async with session.post(
                self.endpoint,
                headers=headers,
                json=payload,
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            ) as response:
                if response.status != 200:
                    error_text = await response.text()
                    raise LLMError(f"{self.provider} API error {response.status}: {error_text[:200]}")

                data = await response.json()
                try:
                    return data["choices"][0]["message"]["content"]
                except (KeyError, IndexError, TypeError):
                    raise LLMError(f"{self.provider} returned an unexpected payload")

    async def _query_ollama(self, prompt: str, system_prompt: str) -> str:
        """Query Ollama local API"""
        payload = {
            "model": self.model,
            "messages": self._messages(prompt, system_prompt),
            "stream": False,
            "options": {"temperature": self.temperature},
        }

        async with aiohttp.ClientSession() as session:
            async with session.post(
                self.endpoint,
                json=payload,
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            ) as response:
                if response.status != 200:
                    error_text = await response.text()
                    raise LLMError(
                        f"Ollama API error {response.status}: {error_text[:200]}. "
                        "Is Ollama running? (ollama serve)"
                    )

                data = await response.json()
                return data.get("message", {}).get("content", "")


def create_llm(llm_cfg: Dict) -> LLMClient:
    """Build the client from the [llm] config section"""
    return LLMClient(
        provider=llm_cfg.get("provider", "mistral"),
        model=llm_cfg.get("model") or None,
        endpoint=llm_cfg.get("endpoint") or None,
        timeout=float(llm_cfg.get("timeout_seconds", 30.0)),
        temperature=float(llm_cfg.get("temperature", 0.2)),
    )
