import logging
from typing import Tuple

import httpx
from openai import AsyncOpenAI

from docqa_agent.data.run_structures import TokenUsage


def mask_key(api_key: str) -> str:
    if not api_key:
        return "Not set"
    return f"{api_key[:8]}...{api_key[-4:]}" if len(api_key) > 12 else "***"


class LLMAPI:
    def __init__(self, llm_config) -> None:
        self.llm_config = llm_config
        self.api_type = self.llm_config.get("api", "openai")
        self.model = self.llm_config.get("model")
        self.temperature = self.llm_config.get("temperature", 0.0)
        self.client = None
        self._client = None  # httpx client

    async def initialize(self):
        if self.api_type == "openai":
            self.api_key = self.llm_config.get("api_key")
            if not self.api_key:
                raise ValueError("API key is empty. OpenAI client not initialized.")
            self.base_url = self.llm_config.get("base_url")
            http_client = await self._get_client()
            if self.base_url:
                self.client = AsyncOpenAI(api_key=self.api_key, base_url=self.base_url, http_client=http_client)
            else:
                self.client = AsyncOpenAI(api_key=self.api_key, http_client=http_client)
            logging.info(
                f"AsyncOpenAI client initialized with API key: {mask_key(self.api_key)}, "
                f"Model: {self.model} and base URL: {self.base_url}"
            )
        else:
            raise ValueError("Invalid API type or missing credentials. LLM client not initialized.")

        return self

    async def _get_client(self):
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=60.0)
        return self._client

    async def get_llm_response(self, system_prompt, prompt) -> str:
        content, _ = await self.get_llm_response_with_usage(system_prompt, prompt)
        return content

    async def get_llm_response_with_usage(self, system_prompt, prompt) -> Tuple[str, TokenUsage]:
        if self.client is None:
            await self.initialize()

        try:
            messages = self._create_messages(system_prompt, prompt)
            return await self._call_openai(messages)
        except Exception as e:
            logging.error(f"LLMAPI.get_llm_response encountered error: {e}")
            raise

    def _create_messages(self, system_prompt, prompt):
        return [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": [{"type": "text", "text": prompt}]},
        ]

    async def _call_openai(self, messages) -> Tuple[str, TokenUsage]:
        try:
            completion = await self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                timeout=60,
                temperature=self.temperature,
            )
        except Exception as e:
            logging.error(f"Error while calling OpenAI API: {e}")
            raise ValueError(f"{str(e)}")

        usage = TokenUsage()
        if completion.usage is not None:
            usage = TokenUsage(
                prompt_tokens=completion.usage.prompt_tokens or 0,
                completion_tokens=completion.usage.completion_tokens or 0,
                total_tokens=completion.usage.total_tokens or 0,
            )
        content = self._clean_response(completion.choices[0].message.content)
        return content, usage

    def _clean_response(self, response):
        """Remove JSON code block markers from the response if present."""
        if response and isinstance(response, str):
            response = response.strip()
            if response.startswith("```json") and response.endswith("```"):
                logging.debug("Cleaning response: Removing ```json``` markers")
                return response[7:-3].strip()
            elif response.startswith("```") and response.endswith("```"):
                logging.debug("Cleaning response: Removing ``` markers")
                return response[3:-3].strip()
        return response

    async def close(self):
        if self._client:
            await self._client.aclose()
            self._client = None
