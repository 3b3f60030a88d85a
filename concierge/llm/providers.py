"""
Provider Implementations.

Concrete backends behind the capability interface:
- OpenAI (GPT chat, embeddings, vision) via the openai SDK
- Gemini (Google) via httpx REST
- Bedrock (Nova chat/vision, Titan embeddings) via boto3
"""

import asyncio
import base64
import json
import logging
import time
from typing import Any, Optional

import boto3
import httpx
from botocore.exceptions import NoCredentialsError
from openai import AsyncOpenAI

from .base import BaseProvider, Capability, LLMResponse, ProviderConfig

logger = logging.getLogger(__name__)


async def _fetch_image(client: httpx.AsyncClient, url: str) -> tuple[bytes, str]:
    """Download an image, returning (bytes, mime type)."""
    response = await client.get(url)
    response.raise_for_status()
    mime = response.headers.get("content-type", "image/jpeg").split(";")[0].strip()
    return response.content, mime


class OpenAIProvider(BaseProvider):
    """
    OpenAI GPT provider.

    Paid; serves chat, embeddings and image analysis.
    """

    capabilities = frozenset({Capability.CHAT, Capability.EMBEDDINGS, Capability.IMAGE_ANALYSIS})

    def __init__(self, config: ProviderConfig):
        super().__init__(config)
        self._client: AsyncOpenAI | None = None

        if not config.api_key:
            logger.info("OpenAI: No API key - provider disabled")
            return

        self.config.model = config.model or "gpt-4o-mini"
        self.config.embed_model = config.embed_model or "text-embedding-3-small"
        self._client = AsyncOpenAI(
            api_key=config.api_key,
            base_url=config.base_url,
            timeout=config.timeout,
        )
        self.available = True
        logger.info(f"OpenAI: Connected via SDK ({self.config.model})")

    async def _chat(self, messages: list[dict], options: Optional[dict[str, Any]]) -> LLMResponse:
        start = time.time()
        response = await self._client.chat.completions.create(
            model=self.config.model,
            messages=messages,
            temperature=self._option(options, "temperature", self.config.temperature),
            max_tokens=self._option(options, "max_tokens", self.config.max_tokens),
        )
        return LLMResponse(
            text=response.choices[0].message.content or "",
            provider=self.name,
            model=self.config.model,
            usage={
                "prompt_tokens": response.usage.prompt_tokens if response.usage else 0,
                "completion_tokens": response.usage.completion_tokens if response.usage else 0,
            },
            latency_ms=int((time.time() - start) * 1000),
        )

    async def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        options: Optional[dict[str, Any]] = None,
    ) -> LLMResponse:
        self._require(Capability.CHAT)
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        return await self._chat(messages, options)

    async def embed(self, text: str) -> list[float]:
        self._require(Capability.EMBEDDINGS)
        response = await self._client.embeddings.create(model=self.config.embed_model, input=text)
        return list(response.data[0].embedding)

    async def analyze_image(
        self,
        prompt: str,
        image_url: str,
        options: Optional[dict[str, Any]] = None,
    ) -> LLMResponse:
        self._require(Capability.IMAGE_ANALYSIS)
        messages = [{
            "role": "user",
            "content": [
                {"type": "text", "text": prompt},
                {"type": "image_url", "image_url": {"url": image_url}},
            ],
        }]
        return await self._chat(messages, options)

    async def close(self) -> None:
        if self._client:
            await self._client.close()


class GeminiProvider(BaseProvider):
    """
    Google Gemini provider over REST.

    Free tier; serves chat and image analysis.
    """

    BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"

    capabilities = frozenset({Capability.CHAT, Capability.IMAGE_ANALYSIS})

    def __init__(self, config: ProviderConfig):
        super().__init__(config)
        self._http_client: httpx.AsyncClient | None = None

        if not config.api_key:
            logger.info("Gemini: No API key - provider disabled")
            return

        self.config.model = config.model or "gemini-2.0-flash"
        self._http_client = httpx.AsyncClient(timeout=config.timeout)
        self.available = True
        logger.info(f"Gemini: Connected via REST ({self.config.model})")

    async def _generate_content(
        self,
        parts: list[dict],
        system_prompt: Optional[str],
        options: Optional[dict[str, Any]],
    ) -> LLMResponse:
        start = time.time()
        url = f"{self.config.base_url or self.BASE_URL}/{self.config.model}:generateContent"
        payload: dict[str, Any] = {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": {
                "temperature": self._option(options, "temperature", self.config.temperature),
                "maxOutputTokens": self._option(options, "max_tokens", self.config.max_tokens),
            },
        }
        if system_prompt:
            payload["systemInstruction"] = {"parts": [{"text": system_prompt}]}

        headers = {
            "Content-Type": "application/json",
            "x-goog-api-key": self.config.api_key,
        }
        response = await self._http_client.post(url, json=payload, headers=headers)
        response.raise_for_status()
        result = response.json()

        text = ""
        candidates = result.get("candidates", [])
        if candidates:
            content_parts = candidates[0].get("content", {}).get("parts", [])
            text = "".join(p.get("text", "") for p in content_parts)

        usage = result.get("usageMetadata", {})
        return LLMResponse(
            text=text,
            provider=self.name,
            model=self.config.model,
            usage={
                "prompt_tokens": usage.get("promptTokenCount", 0),
                "completion_tokens": usage.get("candidatesTokenCount", 0),
            },
            latency_ms=int((time.time() - start) * 1000),
        )

    async def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        options: Optional[dict[str, Any]] = None,
    ) -> LLMResponse:
        self._require(Capability.CHAT)
        return await self._generate_content([{"text": prompt}], system_prompt, options)

    async def analyze_image(
        self,
        prompt: str,
        image_url: str,
        options: Optional[dict[str, Any]] = None,
    ) -> LLMResponse:
        self._require(Capability.IMAGE_ANALYSIS)
        data, mime = await _fetch_image(self._http_client, image_url)
        parts = [
            {"text": prompt},
            {"inline_data": {"mime_type": mime, "data": base64.b64encode(data).decode()}},
        ]
        return await self._generate_content(parts, None, options)

    async def close(self) -> None:
        if self._http_client:
            await self._http_client.aclose()


class BedrockProvider(BaseProvider):
    """
    AWS Bedrock provider: Nova for chat and vision, Titan for embeddings.

    boto3 is synchronous, so calls run in the default executor.
    Uses boto3's default credential chain (env vars, profile, IAM role, SSO).
    """

    capabilities = frozenset({Capability.CHAT, Capability.EMBEDDINGS, Capability.IMAGE_ANALYSIS})

    EMBED_DIMENSIONS = 1024

    def __init__(self, config: ProviderConfig):
        super().__init__(config)
        self._client = None
        self._http_client: httpx.AsyncClient | None = None

        if not config.region:
            logger.info("Bedrock: No AWS region - provider disabled")
            return

        self.config.model = config.model or "us.amazon.nova-lite-v1:0"
        self.config.embed_model = config.embed_model or "amazon.titan-embed-text-v2:0"
        try:
            if boto3.Session().get_credentials() is None:
                logger.info("Bedrock: No AWS credentials found - provider disabled")
                return
            self._client = boto3.client("bedrock-runtime", region_name=config.region)
        except NoCredentialsError:
            logger.info("Bedrock: AWS credentials not found - provider disabled")
            return
        self._http_client = httpx.AsyncClient(timeout=config.timeout)
        self.available = True
        logger.info(f"Bedrock: Connected ({self.config.model}, {self.config.embed_model})")

    async def _run(self, func, **kwargs) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: func(**kwargs))

    async def _converse(
        self,
        content: list[dict],
        system_prompt: Optional[str],
        options: Optional[dict[str, Any]],
    ) -> LLMResponse:
        start = time.time()
        kwargs: dict[str, Any] = {
            "modelId": self.config.model,
            "messages": [{"role": "user", "content": content}],
            "inferenceConfig": {
                "temperature": self._option(options, "temperature", self.config.temperature),
                "maxTokens": self._option(options, "max_tokens", self.config.max_tokens),
            },
        }
        if system_prompt:
            kwargs["system"] = [{"text": system_prompt}]

        response = await self._run(self._client.converse, **kwargs)
        blocks = response["output"]["message"]["content"]
        usage = response.get("usage", {})
        return LLMResponse(
            text="".join(b.get("text", "") for b in blocks),
            provider=self.name,
            model=self.config.model,
            usage={
                "prompt_tokens": usage.get("inputTokens", 0),
                "completion_tokens": usage.get("outputTokens", 0),
            },
            latency_ms=int((time.time() - start) * 1000),
        )

    async def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        options: Optional[dict[str, Any]] = None,
    ) -> LLMResponse:
        self._require(Capability.CHAT)
        return await self._converse([{"text": prompt}], system_prompt, options)

    async def embed(self, text: str) -> list[float]:
        self._require(Capability.EMBEDDINGS)
        response = await self._run(
            self._client.invoke_model,
            modelId=self.config.embed_model,
            body=json.dumps({
                "inputText": text,
                "dimensions": self.EMBED_DIMENSIONS,
                "normalize": True,
            }),
        )
        return json.loads(response["body"].read())["embedding"]

    async def analyze_image(
        self,
        prompt: str,
        image_url: str,
        options: Optional[dict[str, Any]] = None,
    ) -> LLMResponse:
        self._require(Capability.IMAGE_ANALYSIS)
        data, mime = await _fetch_image(self._http_client, image_url)
        image_format = mime.rsplit("/", 1)[-1].replace("jpg", "jpeg")
        content = [
            {"image": {"format": image_format, "source": {"bytes": data}}},
            {"text": prompt},
        ]
        return await self._converse(content, None, options)

    async def close(self) -> None:
        if self._http_client:
            await self._http_client.aclose()
