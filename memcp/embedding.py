"""
Embedding Provider — text to 384-dim normalized vectors.

Wraps a sentence-transformers model (all-MiniLM-L6-v2 by default, mean
pooling) behind an async contract:

    await provider.embed(text)          -> np.ndarray (dim,)
    await provider.embed_batch(texts)   -> [np.ndarray (dim,), ...]

Initialization is lazy: the model is loaded on the first embedding request or
when ``warm_up()`` is called, so the MCP handshake is never blocked. All
callers that arrive before the model is ready await the same in-flight load
(single-flight); a failed load is remembered and re-raised to every later
caller as ``ModelUnavailable``.

Model loading and encoding run in worker threads (``asyncio.to_thread``) so
the event loop keeps serving requests.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, List, Optional, Sequence

import numpy as np

from memcp.errors import ModelUnavailable

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "sentence-transformers/all-MiniLM-L6-v2"
EMBEDDING_DIM = 384


def _l2_normalize(vectors: np.ndarray) -> np.ndarray:
    """Row-wise L2 normalization. Zero rows are left as zeros."""
    norms = np.linalg.norm(vectors, axis=1, keepdims=True)
    norms[norms == 0.0] = 1.0
    return (vectors / norms).astype(np.float32)


class EmbeddingProvider:
    """
    Lazily-loaded, single-flight embedding model.

    Args:
        model_name: sentence-transformers model id or local path.
        dimension: Expected output dimensionality; a model producing anything
            else is reported as unavailable.
        device: Torch device for the default loader ("cpu", "cuda", ...).
        cache_dir: Directory for downloaded model weights.
        batch_size: Encode batch size passed to the model.
        loader: Zero-argument callable returning an object with an
            ``encode(texts, **kwargs)`` method. Defaults to loading a
            ``SentenceTransformer``.
    """

    def __init__(
        self,
        model_name: str = DEFAULT_MODEL,
        dimension: int = EMBEDDING_DIM,
        *,
        device: str = "cpu",
        cache_dir: Optional[str] = None,
        batch_size: int = 32,
        loader: Optional[Callable[[], Any]] = None,
    ):
        self.model_name = model_name
        self.dimension = dimension
        self.device = device
        self.cache_dir = cache_dir
        self.batch_size = batch_size
        self._loader = loader or self._load_sentence_transformer
        self._init_task: Optional[asyncio.Task] = None
        self._model: Any = None

    # -- Initialization ----------------------------------------------------

    @property
    def is_ready(self) -> bool:
        """True once the model has loaded successfully."""
        return self._model is not None

    def warm_up(self) -> None:
        """Start loading the model in the background.

        Must be called from within a running event loop. Safe to call more
        than once; later calls are no-ops.
        """
        self._ensure_init_task()

    def _ensure_init_task(self) -> asyncio.Task:
        # No await between the check and the assignment: single-flight.
        if self._init_task is None:
            loop = asyncio.get_running_loop()
            self._init_task = loop.create_task(self._init())
            self._init_task.add_done_callback(self._log_init_outcome)
        return self._init_task

    async def _init(self) -> Any:
        logger.info(
            "Loading embedding model %s (first run may take a moment)",
            self.model_name,
        )
        try:
            model = await asyncio.to_thread(self._loader)
        except Exception as exc:
            raise ModelUnavailable(
                f"Could not load embedding model {self.model_name!r}: {exc}"
            ) from exc

        get_dim = getattr(model, "get_sentence_embedding_dimension", None)
        if callable(get_dim):
            dim = get_dim()
            if dim is not None and dim != self.dimension:
                raise ModelUnavailable(
                    f"Embedding model {self.model_name!r} produces {dim}-dim "
                    f"vectors, expected {self.dimension}"
                )

        self._model = model
        logger.info("Embedding model ready: %s (%d-dim)", self.model_name, self.dimension)
        return model

    def _log_init_outcome(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Embedding model initialization failed: %s", exc)

    def _load_sentence_transformer(self) -> Any:
        """Default loader: a CPU (or configured device) SentenceTransformer."""
        from sentence_transformers import SentenceTransformer

        return SentenceTransformer(
            self.model_name,
            device=self.device,
            cache_folder=self.cache_dir,
        )

    async def _ensure_ready(self) -> Any:
        if self._model is not None:
            return self._model
        # Shield: a cancelled caller must not cancel the shared load.
        return await asyncio.shield(self._ensure_init_task())

    # -- Encoding ----------------------------------------------------------

    def _encode(self, model: Any, texts: List[str]) -> np.ndarray:
        raw = model.encode(
            texts,
            batch_size=self.batch_size,
            convert_to_numpy=True,
            show_progress_bar=False,
        )
        vectors = np.asarray(raw, dtype=np.float32)
        if vectors.ndim == 1:
            vectors = vectors.reshape(1, -1)
        if vectors.shape != (len(texts), self.dimension):
            raise ModelUnavailable(
                f"Embedding model returned shape {vectors.shape}, "
                f"expected ({len(texts)}, {self.dimension})"
            )
        return _l2_normalize(vectors)

    async def embed_batch(self, texts: Sequence[str]) -> List[np.ndarray]:
        """Embed several strings in one batched forward pass.

        Results are positionally aligned with ``texts``.

        Raises:
            ModelUnavailable: If the model cannot be loaded or fails to run.
        """
        texts = list(texts)
        if not texts:
            return []
        model = await self._ensure_ready()
        try:
            vectors = await asyncio.to_thread(self._encode, model, texts)
        except ModelUnavailable:
            raise
        except Exception as exc:
            raise ModelUnavailable(f"Embedding failed: {exc}") from exc
        logger.debug("Embedded %d text(s)", len(texts))
        return [vectors[i] for i in range(len(texts))]

    async def embed(self, text: str) -> np.ndarray:
        """Embed a single string as a mean-pooled, L2-normalized vector."""
        return (await self.embed_batch([text]))[0]
