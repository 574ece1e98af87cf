"""Generative content provider contract and its usage ledger.

Providers are request/response collaborators; every call made through
``MeteredProvider`` is appended to the ``api_usage`` table.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from . import config
from .db import DatabaseManager
from .errors import UpstreamError, ValidationError

log = logging.getLogger(__name__)


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0
    images_generated: int = 0


@dataclass
class GenerationResult:
    text: Optional[str] = None
    media_url: Optional[str] = None
    usage: Usage = field(default_factory=Usage)
    model: Optional[str] = None


class GenerativeProvider(ABC):
    name: str

    @abstractmethod
    async def generate(self, kind: str, prompt: str, options: Optional[Dict[str, Any]] = None) -> GenerationResult:
        ...

    async def close(self) -> None:
        return None


class GeminiProvider(GenerativeProvider):
    name = "gemini"

    def __init__(
        self,
        api_key: str = config.GEMINI_API_KEY,
        model: str = config.GEMINI_MODEL,
        *,
        base_url: str = config.GEMINI_API_URL,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.model = model
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    async def generate(self, kind: str, prompt: str, options: Optional[Dict[str, Any]] = None) -> GenerationResult:
        if kind != "text":
            raise ValidationError(f"{self.name} provider only generates text")
        if not self.api_key:
            raise UpstreamError("Generative provider is not configured")
        opts = options or {}
        body: Dict[str, Any] = {"contents": [{"parts": [{"text": prompt}]}]}
        if opts.get("temperature") is not None or opts.get("max_tokens") is not None:
            body["generationConfig"] = {
                k: v
                for k, v in (("temperature", opts.get("temperature")), ("maxOutputTokens", opts.get("max_tokens")))
                if v is not None
            }
        model = opts.get("model") or self.model
        try:
            resp = await self._client.post(f"/models/{model}:generateContent", params={"key": self.api_key}, json=body)
        except httpx.HTTPError as exc:
            raise UpstreamError(f"Generative provider unreachable: {exc.__class__.__name__}") from exc
        if resp.status_code >= 400:
            raise UpstreamError(f"Generative provider error {resp.status_code}")
        data = resp.json() or {}
        parts = (((data.get("candidates") or [{}])[0].get("content") or {}).get("parts")) or []
        text = "".join(p.get("text", "") for p in parts if isinstance(p, dict)) or None
        meta = data.get("usageMetadata") or {}
        return GenerationResult(
            text=text,
            model=model,
            usage=Usage(
                input_tokens=int(meta.get("promptTokenCount") or 0),
                output_tokens=int(meta.get("candidatesTokenCount") or 0),
            ),
        )

    async def close(self) -> None:
        await self._client.aclose()


class UsageLedger:
    def __init__(self, db: DatabaseManager):
        self.db = db

    async def record(
        self,
        *,
        service: str,
        operation: str,
        usage: Usage,
        model: Optional[str] = None,
        agent_id: Optional[str] = None,
    ) -> None:
        await self.db.insert_usage(
            service=service,
            operation=operation,
            model=model,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            images_generated=usage.images_generated,
            agent_id=agent_id,
        )

    async def totals(self, since: Optional[str] = None) -> List[dict]:
        return await self.db.usage_totals(since=since)


class MeteredProvider(GenerativeProvider):
    def __init__(self, provider: GenerativeProvider, ledger: UsageLedger):
        self.provider = provider
        self.ledger = ledger
        self.name = provider.name

    async def generate(
        self,
        kind: str,
        prompt: str,
        options: Optional[Dict[str, Any]] = None,
        *,
        operation: str = "generate",
        agent_id: Optional[str] = None,
    ) -> GenerationResult:
        result = await self.provider.generate(kind, prompt, options)
        await self.ledger.record(
            service=self.provider.name,
            operation=operation,
            usage=result.usage,
            model=result.model,
            agent_id=agent_id,
        )
        return result

    async def close(self) -> None:
        await self.provider.close()
