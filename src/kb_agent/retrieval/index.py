"""In-memory term-frequency knowledge index."""

from __future__ import annotations

import math
import re
import threading
from collections import Counter
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from types import MappingProxyType

import structlog

from kb_agent.types import Chunk, Document, ScoredChunk

logger = structlog.get_logger(__name__)

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def tokenize(text: str) -> list[str]:
    """Lower-case, split on non-alphanumeric runs, drop empty tokens."""
    return [token for token in _NON_ALNUM.split(text.lower()) if token]


@dataclass(slots=True, frozen=True)
class _IndexSnapshot:
    docs: Mapping[str, Document] = field(default_factory=dict)
    chunks_by_doc: Mapping[str, tuple[Chunk, ...]] = field(default_factory=dict)
    chunks_by_id: Mapping[str, Chunk] = field(default_factory=dict)
    postings: Mapping[str, Mapping[str, int]] = field(default_factory=dict)
    df: Mapping[str, int] = field(default_factory=dict)
    total_chunks: int = 0


class KnowledgeIndex:
    """Keyword index over document chunks with TF x IDF scoring.

    Score of a chunk for a query is::

        sum(tf(term, chunk) * ln((1 + total_chunks) / df.get(term, 1)))

    over every query term, where `df` counts chunks containing the term.

    Concurrency model: all mutable state lives in one immutable snapshot.
    Writers serialize on a lock, build the next snapshot from copies, and
    publish it with a single reference assignment. Readers grab the current
    reference without locking, so a search never sees postings and document
    frequencies from different versions.
    """

    def __init__(self) -> None:
        self._snapshot = _IndexSnapshot()
        self._write_lock = threading.Lock()

    def add(self, doc: Document, chunks: Sequence[Chunk]) -> str:
        """Index a document and its chunks, replacing any previous version."""

        with self._write_lock:
            current = self._snapshot
            docs = dict(current.docs)
            chunks_by_doc = dict(current.chunks_by_doc)
            chunks_by_id = dict(current.chunks_by_id)
            postings = dict(current.postings)
            df = dict(current.df)
            total_chunks = current.total_chunks

            previous = chunks_by_doc.pop(doc.id, ())
            for old in previous:
                chunks_by_id.pop(old.chunk_id, None)
                old_tf = postings.pop(old.chunk_id, None)
                if old_tf is None:
                    continue
                total_chunks -= 1
                for term in old_tf:
                    remaining = df[term] - 1
                    if remaining:
                        df[term] = remaining
                    else:
                        del df[term]

            for chunk in chunks:
                if chunk.chunk_id in postings:
                    raise ValueError(f"Duplicate chunk id: {chunk.chunk_id}")
                tf = Counter(tokenize(chunk.text))
                postings[chunk.chunk_id] = MappingProxyType(dict(tf))
                chunks_by_id[chunk.chunk_id] = chunk
                for term in tf:
                    df[term] = df.get(term, 0) + 1
                total_chunks += 1

            docs[doc.id] = doc
            chunks_by_doc[doc.id] = tuple(chunks)
            self._snapshot = _IndexSnapshot(
                docs=docs,
                chunks_by_doc=chunks_by_doc,
                chunks_by_id=chunks_by_id,
                postings=postings,
                df=df,
                total_chunks=total_chunks,
            )

        logger.debug(
            "document_indexed",
            doc_id=doc.id,
            chunks=len(chunks),
            replaced=bool(previous),
            total_chunks=total_chunks,
        )
        return doc.id

    def get(self, doc_id: str) -> Document | None:
        return self._snapshot.docs.get(doc_id)

    def chunks_for(self, doc_id: str) -> list[Chunk]:
        return list(self._snapshot.chunks_by_doc.get(doc_id, ()))

    def documents(self) -> list[Document]:
        snapshot = self._snapshot
        return [snapshot.docs[key] for key in sorted(snapshot.docs)]

    def search(self, query: str, top_k: int) -> list[Chunk]:
        return [hit.chunk for hit in self.search_scored(query, top_k)]

    def search_scored(self, query: str, top_k: int) -> list[ScoredChunk]:
        """Rank chunks against `query`; zero-score chunks are excluded."""

        if top_k <= 0:
            return []
        query_terms = tokenize(query)
        if not query_terms:
            return []

        snapshot = self._snapshot
        numerator = 1.0 + snapshot.total_chunks
        scored: list[ScoredChunk] = []
        for chunk_id, tf in snapshot.postings.items():
            score = 0.0
            for term in query_terms:
                frequency = tf.get(term, 0)
                if frequency == 0:
                    continue
                score += frequency * math.log(numerator / snapshot.df.get(term, 1))
            if score > 0:
                scored.append(ScoredChunk(chunk=snapshot.chunks_by_id[chunk_id], score=score))

        scored.sort(key=lambda hit: (-hit.score, hit.chunk.chunk_id))
        return scored[:top_k]

    def document_frequency(self, term: str) -> int:
        return self._snapshot.df.get(term, 0)

    @property
    def total_chunks(self) -> int:
        return self._snapshot.total_chunks

    def clear(self) -> None:
        with self._write_lock:
            self._snapshot = _IndexSnapshot()
        logger.info("index_cleared")

    def size(self) -> int:
        return len(self._snapshot.docs)
