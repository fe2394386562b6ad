# utils/llm_clients/embedding_client.py

"""
OpenAI-compatible embeddings over httpx.

Provider configs (provider × model) are tried in order; the first one that answers
wins. This is a fallback chain, not a retry loop: each config is called once.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Any
import httpx

logger = logging.getLogger(__name__)

OPENAI_BASE_URL = "https://api.openai.com/v1"
OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
OPENAI_DEFAULT_MODEL = "text-embedding-3-small"

OPENROUTER_FALLBACK_MODELS = [
    "baai/bge-m3",
    "baai/bge-large-en-v1.5",
    "intfloat/e5-large-v2",
    "thenlper/gte-large",
    "sentence-transformers/all-mpnet-base-v2",
    "qwen/qwen3-embedding-8b",
    "qwen/qwen3-embedding-4b",
]


class EmbeddingProviderError(Exception):
    """Every configured provider/model failed"""


@dataclass
class EmbeddingProviderConfig:
    name: str
    base_url: str
    api_key: str
    model: str


def _unique_non_empty(values: List[Optional[str]]) -> List[str]:
    seen: List[str] = []
    for value in values:
        cleaned = (value or "").strip()
        if cleaned and cleaned not in seen:
            seen.append(cleaned)
    return seen


def build_provider_configs(
    provider_mode: str = "auto",
    openai_api_key: str = "",
    openai_base_url: str = OPENAI_BASE_URL,
    openai_model: str = "",
    openrouter_api_key: str = "",
    openrouter_base_url: str = OPENROUTER_BASE_URL,
    openrouter_model: str = "",
    shared_model: str = "",
) -> List[EmbeddingProviderConfig]:
    """
    Expand provider settings into the ordered list of configs to try.

    `openrouter` mode tries OpenRouter first; `auto` and `openai` try OpenAI first.
    Providers without an API key are skipped.
    """
    mode = (provider_mode or "auto").strip().lower()
    order = ["openrouter", "openai"] if mode == "openrouter" else ["openai", "openrouter"]

    configs: List[EmbeddingProviderConfig] = []
    for provider in order:
        if provider == "openai":
            if not openai_api_key.strip():
                continue
            for model in _unique_non_empty([openai_model, shared_model, OPENAI_DEFAULT_MODEL]):
                configs.append(EmbeddingProviderConfig("openai", openai_base_url or OPENAI_BASE_URL, openai_api_key.strip(), model))
        else:
            if not openrouter_api_key.strip():
                continue
            for model in _unique_non_empty([openrouter_model, shared_model, *OPENROUTER_FALLBACK_MODELS]):
                configs.append(EmbeddingProviderConfig("openrouter", openrouter_base_url or OPENROUTER_BASE_URL, openrouter_api_key.strip(), model))
    return configs


def _extract_error_message(payload: Any) -> str:
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
        if isinstance(error, str):
            return error
    if isinstance(payload, str) and payload:
        return payload
    return "Unknown embedding API error"


class OpenAICompatibleEmbeddingClient:
    """Embedding provider: `embed(texts) -> vectors`, one HTTP call per config attempt"""

    def __init__(self, configs: List[EmbeddingProviderConfig],
                 http_client: Optional[httpx.AsyncClient] = None,
                 timeout: float = 60.0):
        self.configs = configs
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    async def embed(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        if not self.configs:
            raise EmbeddingProviderError("OPENAI_API_KEY or OPENROUTER_API_KEY is not set")

        errors: List[str] = []
        for config in self.configs:
            try:
                return await self._request_embeddings(config, texts)
            except (httpx.HTTPError, EmbeddingProviderError, ValueError) as e:
                logger.warning(f"⚠️ Embedding call failed [{config.name}:{config.model}]: {e}")
                errors.append(f"[{config.name}:{config.model}] {e}")

        raise EmbeddingProviderError(f"Embedding API error: {' | '.join(errors)}")

    async def _request_embeddings(self, config: EmbeddingProviderConfig, texts: List[str]) -> List[List[float]]:
        response = await self._client.post(
            f"{config.base_url.rstrip('/')}/embeddings",
            headers={
                "Authorization": f"Bearer {config.api_key}",
                "Content-Type": "application/json",
            },
            json={
                "model": config.model,
                "input": [t.replace("\n", " ").strip() for t in texts],
            },
        )

        try:
            payload = response.json()
        except ValueError:
            payload = response.text

        if response.status_code >= 400:
            raise EmbeddingProviderError(f"{response.status_code} {_extract_error_message(payload)}")
        if isinstance(payload, dict) and payload.get("error"):
            raise EmbeddingProviderError(_extract_error_message(payload))

        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, list) or len(data) != len(texts):
            raise EmbeddingProviderError("Unexpected embedding response shape")

        # Providers may return items out of order; `index` is authoritative when present
        if all(isinstance(item, dict) and "index" in item for item in data):
            data = sorted(data, key=lambda item: item["index"])
        return [list(item.get("embedding") or []) for item in data]

    async def aclose(self):
        if self._owns_client:
            await self._client.aclose()
