"""SentenceTransformer Embedder with Resource Cleanup

Backs the user-state embedding used for pattern matching. The model is loaded
lazily once per process and released on shutdown.
"""

import os
import gc
import logging
import numpy as np

logger = logging.getLogger(__name__)

DEFAULT_MODEL = 'all-MiniLM-L6-v2'

# Global model instance and device tracking
_model = None
_model_name = None
_model_device = None


def cleanup_model() -> None:
    """Release the SentenceTransformer model and any GPU cache."""
    global _model, _model_name, _model_device
    if _model is None:
        return
    try:
        logger.info("Cleaning up SentenceTransformer model resources...")
        if _model_device in ['cuda', 'mps']:
            import torch
            if _model_device == 'cuda' and torch.cuda.is_available():
                torch.cuda.empty_cache()
            elif _model_device == 'mps' and hasattr(torch.backends, 'mps') and torch.backends.mps.is_available():
                torch.mps.empty_cache()
        gc.collect()
    except Exception as e:
        logger.warning(f"Error during model cleanup: {e}")
    finally:
        _model = None
        _model_name = None
        _model_device = None


def _initialize_model(model_name: str = DEFAULT_MODEL) -> bool:
    """Load the model once per process.

    Returns:
        bool: True if the model is ready
    """
    global _model, _model_name, _model_device

    if _model is not None and _model_name == model_name:
        return True

    try:
        os.environ.setdefault('TOKENIZERS_PARALLELISM', 'false')

        from sentence_transformers import SentenceTransformer
        import torch

        logger.info(f"Loading SentenceTransformer model: {model_name}")
        if torch.cuda.is_available():
            _model_device = 'cuda'
        elif hasattr(torch.backends, 'mps') and torch.backends.mps.is_available():
            _model_device = 'mps'
        else:
            _model_device = 'cpu'
        _model = SentenceTransformer(model_name, device=_model_device)
        _model_name = model_name
        logger.info(f"SentenceTransformer model loaded successfully on {_model_device}")
        return True

    except Exception as e:
        logger.error(f"Failed to initialize SentenceTransformer model: {e}")
        _model = None
        _model_name = None
        _model_device = None
        return False


class SentenceTransformerEmbedder:
    """SentenceTransformer-based embedder with resource management."""

    def __init__(self, model_name: str = DEFAULT_MODEL):
        self.model_name = model_name
        if not _initialize_model(model_name):
            raise RuntimeError(f"Failed to initialize SentenceTransformer model: {model_name}")

    def embed(self, text: str) -> np.ndarray:
        embeddings = _model.encode([text], convert_to_numpy=True, show_progress_bar=False)
        return np.asarray(embeddings[0], dtype=float)
