from __future__ import annotations

import threading
from pathlib import Path
from typing import Protocol, cast

import numpy as np
import onnxruntime as ort
from numpy.typing import NDArray
from transformers import AutoTokenizer, BatchEncoding, PreTrainedTokenizerBase

from discovery.constants import (
    DEFAULT_EMBEDDING_BATCH_SIZE,
    EMBEDDING_MAX_TOKENS,
    EMBEDDING_MIN_CLIP,
    EMBEDDING_MODEL_DIR,
)
from discovery.errors import EmbeddingError


class Embedder(Protocol):
    """Maps texts to fixed-length float32 vectors."""

    def embed(self, text: str) -> NDArray[np.float32]: ...

    def embed_batch(self, texts: list[str]) -> NDArray[np.float32]: ...


class OnnxEmbedder:
    """Sentence embeddings from an exported transformer model.

    Token embeddings are mean pooled over the attention mask and L2
    normalized. Safe to share between tasks.
    """

    def __init__(
        self, model_dir: str = EMBEDDING_MODEL_DIR, max_tokens: int = EMBEDDING_MAX_TOKENS
    ) -> None:
        self.model_dir: str = model_dir
        self.max_tokens = max_tokens
        if not Path(f"{model_dir}/model.onnx").exists():
            raise EmbeddingError(f"Model not found in {model_dir}")

        try:
            self.tokenizer: PreTrainedTokenizerBase = AutoTokenizer.from_pretrained(
                model_dir
            )
            self.session: ort.InferenceSession = ort.InferenceSession(
                f"{model_dir}/model.onnx", providers=["CPUExecutionProvider"]
            )
        except Exception as e:
            raise EmbeddingError(f"Failed to load model from {model_dir}: {e}") from e
        self._input_names = {node.name for node in self.session.get_inputs()}
        self._lock = threading.Lock()

    def embed(self, text: str) -> NDArray[np.float32]:
        return self.embed_batch([text])[0]

    def embed_batch(
        self, texts: list[str], batch_size: int = DEFAULT_EMBEDDING_BATCH_SIZE
    ) -> NDArray[np.float32]:
        all_embeddings: list[NDArray[np.float32]] = []
        for i in range(0, len(texts), batch_size):
            batch = texts[i : i + batch_size]
            try:
                with self._lock:
                    inputs: BatchEncoding = self.tokenizer(
                        batch,
                        padding=True,
                        truncation=True,
                        max_length=self.max_tokens,
                        return_tensors="np",
                    )
                    attention_mask = cast(
                        NDArray[np.int64],
                        inputs["attention_mask"].astype(np.int64, copy=True),
                    )
                    ort_inputs = {
                        k: v.astype(np.int64)
                        for k, v in inputs.items()
                        if k in self._input_names
                    }
                    outputs = self.session.run(None, ort_inputs)
            except Exception as e:
                raise EmbeddingError(f"Inference failed: {e}") from e
            last_hidden_state = cast(NDArray[np.float32], outputs[0])

            mask = np.expand_dims(attention_mask, -1).astype(np.float32)
            summed = np.sum(last_hidden_state * mask, axis=1)
            counts = np.clip(mask.sum(axis=1), a_min=EMBEDDING_MIN_CLIP, a_max=None)
            pooled = summed / counts
            norm = np.linalg.norm(pooled, axis=1, keepdims=True)
            all_embeddings.append(
                (pooled / np.clip(norm, a_min=EMBEDDING_MIN_CLIP, a_max=None)).astype(
                    np.float32
                )
            )

        if not all_embeddings:
            return np.array([], dtype=np.float32)
        return np.vstack(all_embeddings)
