"""
Batch clustering job.

Usage:
    python3 -m kx_library.clustering [--dry-run] [--documents ID ...]
                                     [--config PATH] [--concepts PATH]

Environment Variables:
    GCP_PROJECT: Google Cloud project ID
    GCP_REGION: Google Cloud region (default: europe-west4)
    FIRESTORE_COLLECTION: Chunk collection name (default: kb_items)
    KX_LIBRARY_CONFIG: Path to a YAML settings file
    LLM_MODEL / LLM_PROVIDER: Model used for cluster summaries
"""

import argparse
import logging
import sys
from typing import List, Optional

import yaml

from ..config import load_settings
from ..embed.embeddings import VertexEmbeddingProvider
from ..exceptions import InvalidInput
from ..llm import get_client
from ..schema import Concept
from ..storage.firestore_store import FirestoreVectorStore
from .pipeline import ClusteringPipeline
from .summarizer import ClusterSummarizer, LLMSummaryProvider

logger = logging.getLogger(__name__)


def load_concepts(path: str) -> List[Concept]:
    """Read a YAML list of concepts (id, pref_label, alt_labels, definition, embedding)."""
    with open(path, 'r', encoding='utf-8') as f:
        data = yaml.safe_load(f) or []
    if not isinstance(data, list):
        raise InvalidInput(f"Concept file {path} must contain a list")

    concepts = []
    for entry in data:
        if not isinstance(entry, dict) or 'id' not in entry or 'pref_label' not in entry:
            raise InvalidInput(f"Concept entries need 'id' and 'pref_label': {entry}")
        concepts.append(Concept(
            id=str(entry['id']),
            pref_label=entry['pref_label'],
            alt_labels=list(entry.get('alt_labels') or []),
            embedding=entry.get('embedding'),
            definition=entry.get('definition')
        ))
    return concepts


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point for the clustering job."""
    parser = argparse.ArgumentParser(
        description='Cluster knowledge base chunks and write cluster summaries'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Run without writing to Firestore (for testing)'
    )
    parser.add_argument(
        '--documents',
        nargs='+',
        metavar='ID',
        help='Only cluster chunks of these documents'
    )
    parser.add_argument(
        '--config',
        metavar='PATH',
        help='YAML settings file (default: $KX_LIBRARY_CONFIG)'
    )
    parser.add_argument(
        '--concepts',
        metavar='PATH',
        help='YAML taxonomy concepts to map clusters onto'
    )
    args = parser.parse_args(argv)

    settings = load_settings(args.config)
    concepts = load_concepts(args.concepts) if args.concepts else []

    store = FirestoreVectorStore(
        project=settings.gcp_project,
        chunks_collection=settings.chunks_collection,
        clusters_collection=settings.clusters_collection,
        memberships_collection=settings.memberships_collection
    )
    summarizer = ClusterSummarizer(provider=LLMSummaryProvider(get_client()))
    embedder = VertexEmbeddingProvider(
        model_name=settings.embedding_model,
        dimensionality=settings.embedding_dimensionality,
        project=settings.gcp_project,
        region=settings.gcp_region
    ) if concepts else None

    pipeline = ClusteringPipeline(
        store,
        summarizer,
        concepts=concepts,
        settings=settings,
        embedder=embedder
    )

    try:
        run = pipeline.run(document_ids=args.documents, dry_run=args.dry_run)
        logger.info(f"\nClustering complete: {run.metrics}")
    except Exception as e:
        logger.error(f"Clustering failed: {e}", exc_info=True)
        sys.exit(1)


if __name__ == '__main__':
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    main()
