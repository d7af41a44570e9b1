from __future__ import annotations

import asyncio
import time
from typing import Any, Protocol

from loguru import logger

from rfpflow.config import settings
from rfpflow.services import logger as log_service


class EmbeddingService(Protocol):
    async def embed_text(self, text: str) -> list[float]: ...
    async def embed_texts(self, texts: list[str]) -> list[list[float]]: ...


class OpenAIEmbeddingService:
    """Embeddings through the OpenAI-compatible embeddings endpoint."""

    def __init__(
        self,
        client: Any | None = None,
        model: str | None = None,
        max_input_chars: int | None = None,
    ):
        self._client = client
        self.model = model or settings.embedding_model
        self.max_input_chars = int(max_input_chars or settings.embedding_max_input_chars)

    def _get_client(self) -> Any:
        if self._client is None:
            from openai import AsyncOpenAI

            kwargs: dict[str, Any] = {"api_key": settings.openai_api_key}
            if settings.openai_base_url.strip():
                kwargs["base_url"] = settings.openai_base_url.strip()
            self._client = AsyncOpenAI(**kwargs)
        return self._client

    async def embed_texts(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        inputs = [text[: self.max_input_chars] for text in texts]
        t0 = time.monotonic()
        try:
            response = await self._get_client().embeddings.create(model=self.model, input=inputs)
        except Exception as exc:
            log_service.log_llm_call(
                model=self.model,
                caller="embeddings",
                duration_ms=int((time.monotonic() - t0) * 1000),
                status="error",
                error=str(exc),
            )
            raise
        usage = getattr(response, "usage", None)
        log_service.log_llm_call(
            model=self.model,
            caller="embeddings",
            input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            duration_ms=int((time.monotonic() - t0) * 1000),
        )
        ordered = sorted(response.data, key=lambda item: getattr(item, "index", 0))
        return [list(map(float, item.embedding)) for item in ordered]

    async def embed_text(self, text: str) -> list[float]:
        vectors = await self.embed_texts([text])
        return vectors[0]


class LocalEmbeddingService:
    """sentence-transformers model run in a worker thread."""

    def __init__(self, model_name: str | None = None, batch_size: int | None = None):
        self.model_name = model_name or settings.local_embed_model
        self.batch_size = batch_size or int(settings.local_embed_batch_size)
        self._model: Any | None = None
        self._lock = asyncio.Lock()

    async def embed_texts(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        async with self._lock:
            if self._model is None:
                await asyncio.to_thread(self._load_model)
        return await asyncio.to_thread(self._embed_sync, texts)

    async def embed_text(self, text: str) -> list[float]:
        vectors = await self.embed_texts([text])
        return vectors[0]

    def _load_model(self) -> None:
        from sentence_transformers import SentenceTransformer

        logger.info(f"Loading local embedding model {self.model_name}")
        self._model = SentenceTransformer(self.model_name)

    def _embed_sync(self, texts: list[str]) -> list[list[float]]:
        vectors = self._model.encode(
            texts,
            batch_size=self.batch_size,
            normalize_embeddings=True,
            show_progress_bar=False,
        )
        return [list(map(float, row)) for row in vectors]


_service: EmbeddingService | None = None


def get_embedding_service() -> EmbeddingService:
    global _service
    if _service is None:
        backend = settings.embedding_backend.lower().strip()
        if backend == "openai":
            _service = OpenAIEmbeddingService()
        elif backend == "local":
            _service = LocalEmbeddingService()
        else:
            raise ValueError(f"Unsupported EMBEDDING_BACKEND: {settings.embedding_backend}")
    return _service
