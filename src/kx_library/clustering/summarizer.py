"""
Cluster summaries.

An LLM writes an abstractive summary (summary, key topics, representative
quote) from the member chunks. When the provider fails for any reason the
cluster still gets an extractive summary built from first sentences, so one
bad cluster never fails a clustering run.
"""

import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence, Union

from ..exceptions import SummarizationFailed
from ..llm.base import BaseLLMClient, GenerationConfig
from ..schema import ChunkRecord, ClusterSummary

logger = logging.getLogger(__name__)

MAX_PROMPT_CHARS = 6000
MIN_SENTENCE_LENGTH = 10
MAX_EXTRACTIVE_SENTENCES = 3

EMPTY_CLUSTER_TEXT = "Empty cluster with no documents."
SHORT_FRAGMENTS_TEXT = "Cluster contains very short text fragments."

_SENTENCE_END = re.compile(r'[.!?]')

SUMMARY_PROMPT = """Analyze these document chunks from a knowledge library cluster and create an abstractive summary.

{content}

Return a JSON object with:
- "summary": A cohesive 2-4 sentence summary that captures the main themes and insights
- "keyTopics": 3-6 key topics or concepts covered across these chunks
- "representativeQuote": (optional) The most representative or impactful quote from the chunks

Focus on synthesizing ideas across chunks, not just listing them.
Return ONLY the JSON object, no markdown formatting."""


ChunkLike = Union[ChunkRecord, str]


def _content(chunk: ChunkLike) -> str:
    return chunk if isinstance(chunk, str) else chunk.content


class SummaryProvider(ABC):
    """Abstractive summary source."""

    @abstractmethod
    def summarize(self, texts: Sequence[str]) -> Dict[str, Any]:
        """
        Summarize chunk texts.

        Returns:
            Dict with 'text' and optionally 'key_topics' and
            'representative_quote'
        """


class LLMSummaryProvider(SummaryProvider):
    """Summaries from a Gemini or Claude client."""

    def __init__(self, client: BaseLLMClient, config: Optional[GenerationConfig] = None):
        self.client = client
        self.config = config or GenerationConfig(temperature=0.3, max_output_tokens=1024)

    def summarize(self, texts: Sequence[str]) -> Dict[str, Any]:
        combined = "\n\n".join(f"[Chunk {i + 1}]\n{text}" for i, text in enumerate(texts))
        prompt = SUMMARY_PROMPT.format(content=combined[:MAX_PROMPT_CHARS])

        data = self.client.generate_json(prompt, self.config)

        summary = data.get('summary')
        if not isinstance(summary, str) or not summary.strip():
            raise ValueError("LLM response has no 'summary' field")

        key_topics = data.get('keyTopics')
        if key_topics is not None and not isinstance(key_topics, list):
            key_topics = None

        return {
            'text': summary.strip(),
            'key_topics': [str(t) for t in key_topics] if key_topics else None,
            'representative_quote': data.get('representativeQuote') or None,
        }


def extractive_summary(texts: Sequence[str]) -> str:
    """First sentence of each text, keeping up to 3 longer than 10 chars."""
    sentences = []
    for text in texts:
        first_sentence = _SENTENCE_END.split(text, maxsplit=1)[0].strip()
        if len(first_sentence) > MIN_SENTENCE_LENGTH:
            sentences.append(first_sentence)
        if len(sentences) == MAX_EXTRACTIVE_SENTENCES:
            break

    if not sentences:
        return SHORT_FRAGMENTS_TEXT
    return f"This cluster covers: {'. '.join(sentences)}."


class ClusterSummarizer:
    """
    Summarize clusters with a provider and an extractive fallback.

    Args:
        provider: Abstractive summary source; None means extractive only
        max_chunks: Only the first max_chunks chunks are summarized (default: all)
    """

    def __init__(self, provider: Optional[SummaryProvider] = None, max_chunks: Optional[int] = None):
        self.provider = provider
        self.max_chunks = max_chunks

    def summarize(self, cluster_id: int, chunks: Sequence[ChunkLike], level: int = 0) -> ClusterSummary:
        if not chunks:
            return ClusterSummary(cluster_id=cluster_id, text=EMPTY_CLUSTER_TEXT, member_count=0, level=level)

        limit = self.max_chunks if self.max_chunks is not None else len(chunks)
        texts: List[str] = [_content(c) for c in chunks[:limit]]

        if self.provider is not None:
            try:
                result = self.provider.summarize(texts)
                return ClusterSummary(
                    cluster_id=cluster_id,
                    text=result['text'],
                    member_count=len(chunks),
                    key_topics=result.get('key_topics'),
                    representative_quote=result.get('representative_quote'),
                    level=level
                )
            except Exception as e:
                failure = SummarizationFailed(cluster_id, "abstractive summary failed", cause=e)
                logger.warning(f"{failure}; using extractive summary")

        return ClusterSummary(
            cluster_id=cluster_id,
            text=extractive_summary(texts),
            member_count=len(chunks),
            level=level,
            fallback=self.provider is not None
        )
