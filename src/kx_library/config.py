"""
Configuration for kx-library.

Defaults live on the Settings dataclass. An optional YAML file overrides them,
and environment variables override both.

Environment Variables:
    KX_LIBRARY_CONFIG: Path to a YAML settings file
    GCP_PROJECT: Google Cloud project ID
    GCP_REGION: Google Cloud region (default: europe-west4)
    FIRESTORE_COLLECTION: Chunk collection name (default: kb_items)
    KX_CLUSTERS_COLLECTION: Cluster summary collection name (default: clusters)
"""

import os
import logging
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, Optional, Tuple

import yaml

from .exceptions import InvalidInput

logger = logging.getLogger(__name__)


@dataclass
class Settings:
    """Settings for the batch clustering job and query-time search."""

    # GCP / Firestore
    gcp_project: str = 'kx-library'
    gcp_region: str = 'europe-west4'
    chunks_collection: str = 'kb_items'
    clusters_collection: str = 'clusters'
    memberships_collection: str = 'cluster_memberships'

    # Embeddings
    embedding_model: str = 'gemini-embedding-001'
    embedding_dimensionality: int = 768

    # Clustering
    max_clusters: int = 10
    max_iterations: int = 100
    batch_size: int = 100
    mini_batch_threshold: int = 10_000
    selection_sample_size: int = 2_000
    soft_clustering: bool = True
    temperature: float = 0.5
    min_probability: float = 0.01
    concept_threshold: float = 0.8
    hierarchy_levels: int = 2
    random_state: Optional[int] = 42

    # Search
    search_limit: int = 10
    hybrid_boost: float = 1.2
    max_expand_chars: int = 4000


# Environment variable -> Settings field
_ENV_OVERRIDES = {
    'GCP_PROJECT': 'gcp_project',
    'GCP_REGION': 'gcp_region',
    'FIRESTORE_COLLECTION': 'chunks_collection',
    'KX_CLUSTERS_COLLECTION': 'clusters_collection',
}


def _read_yaml(path: str) -> Dict[str, Any]:
    with open(path, 'r', encoding='utf-8') as handle:
        try:
            data = yaml.safe_load(handle) or {}
        except yaml.YAMLError as e:
            raise InvalidInput(f"Invalid YAML in settings file {path}: {e}") from e

    if not isinstance(data, dict):
        raise InvalidInput(f"Settings file {path} must contain a mapping, got {type(data).__name__}")
    return data


def load_settings(path: Optional[str] = None) -> Settings:
    """
    Build Settings from defaults, an optional YAML file and the environment.

    Args:
        path: YAML file path (falls back to KX_LIBRARY_CONFIG)

    Returns:
        Resolved Settings

    Raises:
        InvalidInput: If the YAML file is malformed or names unknown settings
    """
    settings = Settings()
    known = {f.name for f in fields(Settings)}

    path = path or os.environ.get('KX_LIBRARY_CONFIG')
    if path:
        overrides = _read_yaml(path)
        unknown = sorted(set(overrides) - known)
        if unknown:
            raise InvalidInput(f"Unknown settings in {path}: {', '.join(unknown)}")
        settings = replace(settings, **overrides)
        logger.info(f"Loaded settings overrides from {path}: {sorted(overrides)}")

    env_overrides = {
        field_name: os.environ[env_name]
        for env_name, field_name in _ENV_OVERRIDES.items()
        if os.environ.get(env_name)
    }
    if env_overrides:
        settings = replace(settings, **env_overrides)

    return settings


def get_gcp_config() -> Tuple[str, str]:
    """
    Get GCP project and region from environment.

    Returns:
        Tuple of (project_id, region)
    """
    project = os.environ.get('GCP_PROJECT', 'kx-library')
    region = os.environ.get('GCP_REGION', 'europe-west4')
    return project, region
