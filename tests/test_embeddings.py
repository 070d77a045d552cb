"""
Tests for embedding providers.

The Vertex AI model is mocked; no network calls are made.
"""

import os
import sys
import unittest
from unittest.mock import MagicMock, patch

from google.api_core.exceptions import InternalServerError, ResourceExhausted

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from kx_library.embed.embeddings import EmbeddingProvider, VertexEmbeddingProvider
from kx_library.exceptions import CollaboratorUnavailable, InvalidInput


def embedding_response(values):
    embedding = MagicMock()
    embedding.values = values
    return [embedding]


class LengthEmbedder(EmbeddingProvider):
    """Embeds a text as [len(text)]."""

    def embed(self, text):
        return [float(len(text))]


class TestEmbedBatch(unittest.TestCase):
    def test_keeps_input_order(self):
        texts = ['a', 'abcd', 'ab', 'abcdefg', 'abc']
        self.assertEqual(
            LengthEmbedder().embed_batch(texts, concurrency=3),
            [[1.0], [4.0], [2.0], [7.0], [3.0]]
        )

    def test_empty_input(self):
        self.assertEqual(LengthEmbedder().embed_batch([]), [])

    def test_invalid_concurrency(self):
        with self.assertRaises(InvalidInput):
            LengthEmbedder().embed_batch(['a'], concurrency=0)


class TestVertexEmbeddingProvider(unittest.TestCase):
    """Test VertexEmbeddingProvider with a mocked model."""

    def setUp(self):
        self.model = MagicMock()
        self.provider = VertexEmbeddingProvider(dimensionality=4, project='test-project', region='europe-west4')
        self.provider._model = self.model

    def test_embed(self):
        self.model.get_embeddings.return_value = embedding_response([0.1, 0.2, 0.3, 0.4])

        self.assertEqual(self.provider.embed('deep work'), [0.1, 0.2, 0.3, 0.4])
        self.model.get_embeddings.assert_called_once_with(['deep work'], output_dimensionality=4)

    @patch('kx_library.embed.embeddings.time.sleep')
    def test_retries_on_quota(self, mock_sleep):
        self.model.get_embeddings.side_effect = [
            ResourceExhausted('quota'),
            InternalServerError('backend'),
            embedding_response([1.0]),
        ]

        self.assertEqual(self.provider.embed('text'), [1.0])
        self.assertEqual(self.model.get_embeddings.call_count, 3)
        self.assertEqual([c.args[0] for c in mock_sleep.call_args_list], [1, 2])

    @patch('kx_library.embed.embeddings.time.sleep')
    def test_gives_up_after_retries(self, mock_sleep):
        self.model.get_embeddings.side_effect = ResourceExhausted('quota')

        with self.assertRaises(CollaboratorUnavailable) as context:
            self.provider.embed('text')

        self.assertEqual(context.exception.collaborator, 'embedding')
        self.assertIsInstance(context.exception.cause, ResourceExhausted)
        self.assertEqual(self.model.get_embeddings.call_count, 3)

    def test_unexpected_error_not_retried(self):
        self.model.get_embeddings.side_effect = RuntimeError('bad request')

        with self.assertRaises(CollaboratorUnavailable):
            self.provider.embed('text')
        self.assertEqual(self.model.get_embeddings.call_count, 1)

    def test_model_load_failure(self):
        provider = VertexEmbeddingProvider()
        with patch.object(provider, '_get_model', side_effect=RuntimeError('no credentials')):
            with self.assertRaises(CollaboratorUnavailable):
                provider.embed('text')

    @patch('vertexai.language_models.TextEmbeddingModel.from_pretrained')
    @patch('google.cloud.aiplatform.init')
    def test_model_loaded_once(self, mock_init, mock_from_pretrained):
        mock_from_pretrained.return_value.get_embeddings.return_value = embedding_response([0.5])
        provider = VertexEmbeddingProvider(project='p', region='r')

        provider.embed('one')
        provider.embed('two')

        mock_init.assert_called_once_with(project='p', location='r')
        mock_from_pretrained.assert_called_once_with('gemini-embedding-001')


if __name__ == '__main__':
    unittest.main()
