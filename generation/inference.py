"""Embedding and text-generation backends."""

from __future__ import annotations

import logging
from typing import Protocol, runtime_checkable

import httpx
import openai

from core.config import Settings, settings
from core.errors import GenerationError, GenerationFailure

logger = logging.getLogger(__name__)


@runtime_checkable
class InferenceService(Protocol):
    """What the pipeline needs from a model backend."""

    model_name: str

    def embed(self, text: str) -> list[float]: ...

    def generate(self, prompt: str, timeout: float | None = None) -> str: ...


class HttpInferenceClient:
    """JSON-over-HTTP inference service.

    POST /embed    {"text": ...}   -> {"vector": [...]}
    POST /generate {"prompt": ...} -> {"response": "..."} or {"error": "..."}
    """

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        model_name: str = "internal-llm",
        http_client: httpx.Client | None = None,
    ):
        self.base_url = (base_url or settings.inference_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.inference_timeout
        self.model_name = model_name
        self._client = http_client or httpx.Client(timeout=self.timeout)

    def close(self) -> None:
        self._client.close()

    def embed(self, text: str) -> list[float]:
        data = self._post("/embed", {"text": text}, self.timeout)
        vector = data.get("vector")
        if not vector:
            raise GenerationError(
                "Inference service returned no embedding",
                kind=GenerationFailure.EMPTY_RESPONSE,
                model=self.model_name,
            )
        return [float(v) for v in vector]

    def generate(self, prompt: str, timeout: float | None = None) -> str:
        data = self._post("/generate", {"prompt": prompt}, timeout or self.timeout)
        if data.get("error"):
            raise GenerationError(
                f"Inference service error: {data['error']}",
                kind=GenerationFailure.BACKEND_ERROR,
                model=self.model_name,
            )
        text = data.get("response") or ""
        if not text.strip():
            raise GenerationError(
                "Inference service returned an empty response",
                kind=GenerationFailure.EMPTY_RESPONSE,
                model=self.model_name,
            )
        return text

    def _post(self, path: str, payload: dict, timeout: float) -> dict:
        url = f"{self.base_url}{path}"
        try:
            response = self._client.post(url, json=payload, timeout=timeout)
        except httpx.TimeoutException as e:
            raise GenerationError(
                f"Request to {url} timed out after {timeout}s",
                kind=GenerationFailure.TIMEOUT,
                model=self.model_name,
            ) from e
        except httpx.RequestError as e:
            raise GenerationError(
                f"Request to {url} failed: {e}",
                kind=GenerationFailure.BACKEND_ERROR,
                model=self.model_name,
            ) from e

        try:
            data = response.json()
        except ValueError:
            data = {}
        if response.status_code >= 400:
            raise GenerationError(
                f"Inference service returned HTTP {response.status_code}: "
                f"{data.get('error') or response.text[:200]}",
                kind=GenerationFailure.BACKEND_ERROR,
                model=self.model_name,
                details={"status": response.status_code},
            )
        return data


class OpenAIInferenceClient:
    """OpenAI-compatible binding (embeddings + chat completions)."""

    def __init__(
        self,
        openai_client: openai.OpenAI | None = None,
        embedding_model: str | None = None,
        llm_model: str | None = None,
        dimensions: int | None = None,
        timeout: float | None = None,
    ):
        if openai_client is None:
            openai_client = openai.OpenAI(
                api_key=settings.openai_api_key,
                base_url=settings.openai_base_url,
            )
        self._client = openai_client
        self.embedding_model = embedding_model or settings.embedding_model
        self.model_name = llm_model or settings.llm_model
        self.dimensions = dimensions or settings.embedding_dimensions
        self.timeout = timeout if timeout is not None else settings.inference_timeout

    def embed(self, text: str) -> list[float]:
        try:
            response = self._client.embeddings.create(
                model=self.embedding_model,
                input=[text],
                dimensions=self.dimensions,
            )
        except openai.APITimeoutError as e:
            raise GenerationError(
                "Embedding request timed out",
                kind=GenerationFailure.TIMEOUT,
                model=self.embedding_model,
            ) from e
        except openai.OpenAIError as e:
            raise GenerationError(
                f"Embedding request failed: {e}",
                kind=GenerationFailure.BACKEND_ERROR,
                model=self.embedding_model,
            ) from e

        if not response.data:
            raise GenerationError(
                "Embedding response was empty",
                kind=GenerationFailure.EMPTY_RESPONSE,
                model=self.embedding_model,
            )
        return list(response.data[0].embedding)

    def generate(self, prompt: str, timeout: float | None = None) -> str:
        try:
            response = self._client.chat.completions.create(
                model=self.model_name,
                messages=[{"role": "user", "content": prompt}],
                temperature=0.3,
                timeout=timeout or self.timeout,
            )
        except openai.APITimeoutError as e:
            raise GenerationError(
                "Generation request timed out",
                kind=GenerationFailure.TIMEOUT,
                model=self.model_name,
            ) from e
        except openai.OpenAIError as e:
            raise GenerationError(
                f"Generation request failed: {e}",
                kind=GenerationFailure.BACKEND_ERROR,
                model=self.model_name,
            ) from e

        text = response.choices[0].message.content if response.choices else None
        if not text or not text.strip():
            raise GenerationError(
                "Model returned an empty completion",
                kind=GenerationFailure.EMPTY_RESPONSE,
                model=self.model_name,
            )
        return text


def create_inference_service(config: Settings | None = None) -> InferenceService:
    """Pick the inference binding named by `inference_provider`."""
    config = config or settings
    provider = config.inference_provider.lower()

    if provider == "http":
        return HttpInferenceClient(
            base_url=config.inference_url, timeout=config.inference_timeout
        )
    if provider == "openai":
        return OpenAIInferenceClient(
            openai_client=openai.OpenAI(api_key=config.openai_api_key, base_url=config.openai_base_url),
            embedding_model=config.embedding_model,
            llm_model=config.llm_model,
            dimensions=config.embedding_dimensions,
            timeout=config.inference_timeout,
        )
    raise ValueError(f"Unknown inference provider: {config.inference_provider}")
