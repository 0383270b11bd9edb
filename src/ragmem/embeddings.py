"""
RagMem Embeddings -- ONNX-based embedding generation and tokenization.

Provides:
- EmbeddingService.embed(text) -> 384-dim normalized vector
- EmbeddingService.embed_batch(texts) -> list of vectors aligned with the inputs
- EmbeddingService.tokenize(text) -> character spans of the model's tokens
- A readiness gate for the background model load
- LRU cache for repeated single-text embeddings
- Hash-based fallback when no ML model available

Uses bge-small-en-v1.5 via ONNX Runtime (~90MB RAM).
Falls back to all-MiniLM-L6-v2 if bge model not downloaded, or SentenceTransformers (PyTorch) if ONNX unavailable.
"""

import asyncio
import contextlib
import hashlib
import importlib.util
import io
import logging
import math
import os
import random
import re
import threading
import time
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from ragmem.errors import NotReadyError

logger = logging.getLogger("ragmem.embeddings")

EMBEDDING_DIM = 384

_MODEL_NAME = "bge-small-en-v1.5"
_MODEL_VERSION = "v1.5"
_ONNX_DEFAULT_DIR = "~/.cache/ragmem/models/bge-small-en-v1.5-onnx"
_ONNX_FALLBACK_DIR = "~/.cache/ragmem/models/all-MiniLM-L6-v2-onnx"
_ST_MODEL = "BAAI/bge-small-en-v1.5"

_CACHE_MAX = 512
_MAX_LOAD_ATTEMPTS = 3
_CIRCUIT_BREAKER_COOLDOWN_S = 300  # 5 minutes
_ONNX_BATCH_SIZE = 32

_WORD_RE = re.compile(r"\S+")

Span = Tuple[int, int]


def hash_embedding(text: str, dimension: int = EMBEDDING_DIM) -> List[float]:
    """Fallback: deterministic pseudo-embedding from text hash."""
    hash_digest = hashlib.md5(text.encode()).digest()
    seed = int.from_bytes(hash_digest[:4], byteorder="big")

    rng = random.Random(seed)
    vector = [rng.gauss(0, 1) for _ in range(dimension)]

    magnitude = math.sqrt(sum(x * x for x in vector))
    if magnitude == 0:
        return [1.0 / math.sqrt(dimension)] * dimension
    return [x / magnitude for x in vector]


def word_spans(text: str) -> List[Span]:
    """Whitespace-delimited token spans, used when no model tokenizer is loaded."""
    return [(m.start(), m.end()) for m in _WORD_RE.finditer(text)]


def _onnx_encode(tokenizer, session, texts: List[str]):
    """Encode texts using ONNX Runtime. Returns normalized embeddings."""
    import numpy as np

    batch = tokenizer.encode_batch(texts)
    ids = np.array([b.ids for b in batch], dtype=np.int64)
    mask = np.array([b.attention_mask for b in batch], dtype=np.int64)
    feed = {"input_ids": ids, "attention_mask": mask}
    input_names = {i.name for i in session.get_inputs()}
    if "token_type_ids" in input_names:
        feed["token_type_ids"] = np.zeros_like(ids)
    outputs = session.run(None, feed)
    embeddings = outputs[1] if len(outputs) > 1 else outputs[0]
    if embeddings.ndim == 3:
        mask_expanded = mask[:, :, np.newaxis].astype(np.float32)
        sum_emb = np.sum(embeddings * mask_expanded, axis=1)
        sum_mask = np.clip(np.sum(mask_expanded, axis=1), a_min=1e-9, a_max=None)
        embeddings = sum_emb / sum_mask
    norms = np.linalg.norm(embeddings, axis=1, keepdims=True)
    return embeddings / np.clip(norms, a_min=1e-9, a_max=None)


class EmbeddingService:
    """Owns the embedding model, its tokenizer and the worker pool.

    One instance per ServiceContext. The model is loaded lazily (first call)
    or eagerly in the background via ``start_background_load``; callers that
    must not race the load wait on ``wait_ready``.
    """

    def __init__(
        self,
        skip_model: Optional[bool] = None,
        onnx_model_dir: Optional[str] = None,
        max_workers: int = 2,
    ):
        self._skip_model = skip_model
        self._onnx_dir_override = onnx_model_dir
        self._lock = threading.RLock()
        self._ready = threading.Event()
        self._model: Any = None
        self._backend: Optional[str] = None  # "onnx" or "sentence-transformers"
        self._counter_tokenizer: Any = None
        self._model_name = _MODEL_NAME
        self._model_version = _MODEL_VERSION
        self._attempts = 0
        self._first_failure = 0.0
        self._cache: "OrderedDict[str, List[float]]" = OrderedDict()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="embedding")
        self._loader: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Model loading
    # ------------------------------------------------------------------

    @property
    def skip_model(self) -> bool:
        if self._skip_model is not None:
            return self._skip_model
        return os.environ.get("RAGMEM_SKIP_EMBEDDINGS") == "1"

    @staticmethod
    def has_onnx_runtime() -> bool:
        return importlib.util.find_spec("onnxruntime") is not None

    @staticmethod
    def has_sentence_transformers() -> bool:
        return importlib.util.find_spec("sentence_transformers") is not None

    def _onnx_model_dir(self) -> Optional[Path]:
        """Checks in order: env/explicit override, bge-small-en-v1.5, all-MiniLM-L6-v2."""
        candidates = []
        if self._onnx_dir_override:
            candidates.append((Path(self._onnx_dir_override).expanduser(), _MODEL_NAME, _MODEL_VERSION))
        candidates.append((Path(_ONNX_DEFAULT_DIR).expanduser(), _MODEL_NAME, _MODEL_VERSION))
        candidates.append((Path(_ONNX_FALLBACK_DIR).expanduser(), "all-MiniLM-L6-v2", "v2"))
        for model_dir, name, version in candidates:
            if (model_dir / "model.onnx").exists() and (model_dir / "tokenizer.json").exists():
                self._model_name = name
                self._model_version = version
                return model_dir
        return None

    def _load_model(self) -> Any:
        """Lazy-load the embedding model.

        Priority: ONNX Runtime (~90MB) > SentenceTransformer (~1GB PyTorch)
        """
        with self._lock:
            if self._model is not None:
                return self._model
            if self.skip_model:
                return None

            if self._attempts >= _MAX_LOAD_ATTEMPTS:
                if self._first_failure and time.monotonic() - self._first_failure >= _CIRCUIT_BREAKER_COOLDOWN_S:
                    logger.info("Circuit breaker cooldown expired, retrying model load")
                    self._attempts = 0
                    self._first_failure = 0.0
                else:
                    return None
            self._attempts += 1
            if self._attempts == 1:
                self._first_failure = time.monotonic()

            os.environ.setdefault("TQDM_DISABLE", "1")

            onnx_dir = self._onnx_model_dir() if self.has_onnx_runtime() else None
            if onnx_dir is not None:
                try:
                    import onnxruntime as ort
                    from tokenizers import Tokenizer

                    tokenizer = Tokenizer.from_file(str(onnx_dir / "tokenizer.json"))
                    tokenizer.enable_padding(pad_id=0, pad_token="[PAD]")
                    tokenizer.enable_truncation(max_length=512)
                    sess_opts = ort.SessionOptions()
                    sess_opts.log_severity_level = 4
                    sess_opts.enable_cpu_mem_arena = False
                    with contextlib.redirect_stderr(io.StringIO()):
                        session = ort.InferenceSession(
                            str(onnx_dir / "model.onnx"),
                            sess_options=sess_opts,
                            providers=["CPUExecutionProvider"],
                        )
                    # Separate instance for counting: no padding, no truncation.
                    self._counter_tokenizer = Tokenizer.from_file(str(onnx_dir / "tokenizer.json"))
                    self._model = (tokenizer, session)
                    self._backend = "onnx"
                    self._attempts = 0
                    self._first_failure = 0.0
                    logger.info("Loaded ONNX embedding model from %s", onnx_dir)
                    return self._model
                except Exception as e:
                    logger.warning("Failed to load ONNX model (attempt %d): %s", self._attempts, e)

            if self.has_sentence_transformers():
                try:
                    from sentence_transformers import SentenceTransformer

                    self._model = SentenceTransformer(_ST_MODEL)
                    self._backend = "sentence-transformers"
                    self._counter_tokenizer = self._model.tokenizer
                    self._model_name = _MODEL_NAME
                    self._model_version = _MODEL_VERSION
                    self._attempts = 0
                    self._first_failure = 0.0
                    logger.info("Loaded sentence-transformers model (PyTorch fallback)")
                    return self._model
                except Exception as e:
                    logger.warning("Failed to load sentence-transformers: %s", e)
                    self._model = None

            logger.warning(
                "No embedding model loaded after attempt %d/%d; using hash embeddings. "
                "ONNX available: %s, SentenceTransformers available: %s",
                self._attempts,
                _MAX_LOAD_ATTEMPTS,
                self.has_onnx_runtime(),
                self.has_sentence_transformers(),
            )
            return None

    def preload(self) -> bool:
        """Load the model now. Always opens the readiness gate, even on failure."""
        try:
            model = self._load_model()
            if model is not None:
                self.embed("warmup")
            return model is not None
        except Exception as e:
            logger.warning("Embedding preload failed: %s", e)
            return False
        finally:
            self._ready.set()

    def start_background_load(self) -> None:
        """Second startup phase: load the heavy model off the request path."""
        if self._loader is not None:
            return
        if self.skip_model:
            self._ready.set()
            return
        self._loader = threading.Thread(target=self.preload, name="embedding-preload", daemon=True)
        self._loader.start()

    @property
    def ready(self) -> bool:
        return self._ready.is_set()

    def mark_ready(self) -> None:
        self._ready.set()

    def wait_ready(self, timeout: Optional[float] = None) -> None:
        """Block until the model load finished; NotReadyError after ``timeout`` seconds."""
        if not self._ready.wait(timeout):
            raise NotReadyError(f"Embedding model is still loading (waited {timeout}s)")

    @property
    def active_backend(self) -> Optional[str]:
        """The loaded backend, or None when using the hash fallback."""
        return self._backend

    # ------------------------------------------------------------------
    # Embedding
    # ------------------------------------------------------------------

    def embed(self, text: str) -> List[float]:
        """Generate semantic embedding from text. Returns 384-dim normalized vector."""
        cache_key = hashlib.md5(text.encode()).hexdigest()
        with self._lock:
            cached = self._cache.get(cache_key)
            if cached is not None:
                self._cache.move_to_end(cache_key)
                return cached

        result = self.embed_batch([text])[0]

        with self._lock:
            self._cache[cache_key] = result
            while len(self._cache) > _CACHE_MAX:
                self._cache.popitem(last=False)
        return result

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Generate embeddings for multiple texts. Output index i belongs to texts[i]."""
        if not texts:
            return []

        model = self._load_model()
        if model is not None:
            try:
                if self._backend == "onnx":
                    tokenizer, session = model
                    results: List[List[float]] = []
                    for i in range(0, len(texts), _ONNX_BATCH_SIZE):
                        results.extend(_onnx_encode(tokenizer, session, texts[i : i + _ONNX_BATCH_SIZE]).tolist())
                    return results
                embeddings = model.encode(texts, normalize_embeddings=True, batch_size=_ONNX_BATCH_SIZE)
                return [e.tolist() for e in embeddings]
            except Exception as e:
                logger.warning("Batch embedding failed, falling back to hash embeddings: %s", e)

        return [hash_embedding(t) for t in texts]

    # ------------------------------------------------------------------
    # Tokenization
    # ------------------------------------------------------------------

    def tokenize(self, text: str) -> List[Span]:
        """Character spans (start, end) of each token in ``text``, in order."""
        self._load_model()
        counter = self._counter_tokenizer
        if counter is None:
            return word_spans(text)
        if self._backend == "onnx":
            encoding = counter.encode(text, add_special_tokens=False)
            return [tuple(o) for o in encoding.offsets]
        encoded = counter(text, add_special_tokens=False, return_offsets_mapping=True)
        return [tuple(o) for o in encoded["offset_mapping"]]

    def token_count(self, text: str) -> int:
        return len(self.tokenize(text))

    # ------------------------------------------------------------------
    # Worker pool
    # ------------------------------------------------------------------

    async def run(self, fn: Callable[..., Any], *args: Any) -> Any:
        """Run blocking work (embedding, store calls) on the worker pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, fn, *args)

    def info(self) -> Dict[str, Any]:
        return {
            "backend": self._backend or ("hash-fallback" if self.ready else "loading"),
            "model": self._model_name,
            "model_version": self._model_version,
            "model_loaded": self._model is not None,
            "dimension": EMBEDDING_DIM,
            "cache_size": len(self._cache),
            "ready": self.ready,
        }

    def close(self) -> None:
        self._executor.shutdown(wait=False)
