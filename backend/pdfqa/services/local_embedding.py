"""In-process embedding backend using Sentence Transformers."""
import asyncio
import os
import threading
from typing import List, Optional, Union

from sentence_transformers import SentenceTransformer

from pdfqa.services.embedding_service import DEFAULT_MODEL
from pdfqa.utils.logger import logger


def _get_model_path(model_name: str) -> Optional[str]:
    """Get local model path if available."""
    local_model_path = os.getenv("EMBEDDING_MODEL_PATH")
    if local_model_path and os.path.isdir(local_model_path):
        return local_model_path
    return None


class SentenceTransformerBackend:
    """Feature extraction with a locally loaded model, same payload shape as the hosted API."""

    def __init__(self, model_name: str = DEFAULT_MODEL, device: str = "cpu"):
        """
        Initialize the backend; the model is loaded lazily on first use.

        Args:
            model_name: Sentence Transformers model name
            device: Torch device
        """
        self.model_name = model_name
        self.device = device
        self._model: Optional[SentenceTransformer] = None
        self._lock = threading.Lock()

    def _load_model(self) -> SentenceTransformer:
        with self._lock:
            if self._model is None:
                source = _get_model_path(self.model_name) or self.model_name
                logger.info(f"Loading embedding model: {source}")
                self._model = SentenceTransformer(source, device=self.device)
        return self._model

    def _encode(self, inputs: Union[str, List[str]]):
        model = self._load_model()
        vectors = model.encode(inputs, convert_to_numpy=True, show_progress_bar=False)
        return vectors.tolist()

    async def feature_extraction(self, inputs: Union[str, List[str]]):
        """Encode in a worker thread; a single string yields a flat vector."""
        return await asyncio.to_thread(self._encode, inputs)
