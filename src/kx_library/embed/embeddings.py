"""
Embedding generation using Vertex AI gemini-embedding-001.

Query embeddings must come from the same model and dimensionality as the
stored chunk embeddings (768 dimensions by default).
"""

import logging
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Sequence

from google.api_core.exceptions import InternalServerError, ResourceExhausted

from ..exceptions import CollaboratorUnavailable, InvalidInput

logger = logging.getLogger(__name__)

# Retry configuration
MAX_RETRIES = 3
INITIAL_BACKOFF = 1  # seconds
MAX_BACKOFF = 32  # seconds


class EmbeddingProvider(ABC):
    """Text to vector."""

    @abstractmethod
    def embed(self, text: str) -> List[float]:
        """Embed a single text."""

    def embed_batch(self, texts: Sequence[str], concurrency: int = 4) -> List[List[float]]:
        """Embed texts concurrently; results keep input order."""
        if concurrency <= 0:
            raise InvalidInput(f"concurrency must be positive, got {concurrency}")
        if not texts:
            return []
        with ThreadPoolExecutor(max_workers=min(concurrency, len(texts))) as executor:
            return list(executor.map(self.embed, texts))


class VertexEmbeddingProvider(EmbeddingProvider):
    """
    Vertex AI TextEmbeddingModel with retries on quota and server errors.

    Args:
        model_name: Vertex AI embedding model (default: gemini-embedding-001)
        dimensionality: Output dimensionality (default: 768)
        project: GCP project, passed to aiplatform.init
        region: GCP region, passed to aiplatform.init
    """

    def __init__(
        self,
        model_name: str = "gemini-embedding-001",
        dimensionality: int = 768,
        project: Optional[str] = None,
        region: Optional[str] = None
    ):
        self.model_name = model_name
        self.dimensionality = dimensionality
        self.project = project
        self.region = region
        self._model = None

    def _get_model(self):
        if self._model is None:
            from google.cloud import aiplatform
            from vertexai.language_models import TextEmbeddingModel

            logger.info(f"Initializing Vertex AI in project={self.project}, region={self.region}")
            aiplatform.init(project=self.project, location=self.region)

            logger.info(f"Loading {self.model_name} model...")
            self._model = TextEmbeddingModel.from_pretrained(self.model_name)
            logger.info("Embedding model loaded successfully")

        return self._model

    def embed(self, text: str) -> List[float]:
        """
        Generate an embedding for one text.

        Raises:
            CollaboratorUnavailable: If the model is unreachable after retries
        """
        try:
            model = self._get_model()
        except Exception as e:
            raise CollaboratorUnavailable("embedding", "failed to load embedding model", cause=e) from e

        backoff = INITIAL_BACKOFF
        for attempt in range(MAX_RETRIES):
            try:
                embeddings = model.get_embeddings([text], output_dimensionality=self.dimensionality)
                vector = list(embeddings[0].values)
                logger.debug(f"Generated embedding with {len(vector)} dimensions")
                return vector

            except (ResourceExhausted, InternalServerError) as e:
                if attempt < MAX_RETRIES - 1:
                    logger.warning(
                        f"{type(e).__name__} (attempt {attempt + 1}/{MAX_RETRIES}), "
                        f"retrying after {backoff}s"
                    )
                    time.sleep(backoff)
                    backoff = min(backoff * 2, MAX_BACKOFF)
                else:
                    logger.error(f"Embedding failed after {MAX_RETRIES} attempts: {e}")
                    raise CollaboratorUnavailable(
                        "embedding", f"failed after {MAX_RETRIES} attempts", cause=e
                    ) from e

            except Exception as e:
                logger.error(f"Unexpected error generating embedding: {e}")
                raise CollaboratorUnavailable("embedding", "embedding generation failed", cause=e) from e

        raise CollaboratorUnavailable("embedding", "failed to generate embedding after maximum retries")
