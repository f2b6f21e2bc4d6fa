from __future__ import annotations

"""ranklda_jax.utils.process
=================================

Corpus container shared by every kernel in the package.

1. **Corpus container** – flat ``(word_ids, doc_ids)`` token table plus the
   pairwise comparisons ``(docX, docY)`` that carry the ranking signal.
2. **Builders** – validate raw documents / bag-of-words rows and turn them
   into a :class:`Corpus`.
"""
from typing import Iterable, List, NamedTuple, Sequence, Tuple

import numpy as np
import jax.numpy as jnp

from .errors import DimensionMismatchError, MalformedInputError

__all__ = [
    "Corpus",
    "corpus_from_documents",
    "corpus_from_bows",
    "restrict_vocab",
    "split_by_ptrs",
]

################################################################################
# 1. Corpus container ###########################################################
################################################################################

class Corpus(NamedTuple):
    """Bag-of-words corpus with pairwise comparisons between documents."""

    word_ids:    jnp.ndarray           # shape (T,)   token -> vocab id
    doc_ids:     jnp.ndarray           # shape (T,)   token -> document id
    doc_ptrs:    jnp.ndarray           # shape (N + 1,)
    comparisons: jnp.ndarray           # shape (M, 2) (docX, docY)
    vocab_size:  int

    @property
    def num_tokens(self) -> int:  # noqa: D401
        """Total tokens T."""
        return int(self.word_ids.size)

    @property
    def num_docs(self) -> int:  # noqa: D401
        """Number of documents N."""
        return int(self.doc_ptrs.size - 1)

    @property
    def num_comparisons(self) -> int:  # noqa: D401
        """Number of comparisons M."""
        return int(self.comparisons.shape[0])

    @property
    def doc_lengths(self) -> jnp.ndarray:
        return jnp.diff(self.doc_ptrs)

    def documents(self) -> List[np.ndarray]:
        """Per-document word-id arrays (host copies)."""
        return split_by_ptrs(self.word_ids, self.doc_ptrs)

################################################################################
# 2. Builders ###################################################################
################################################################################

def split_by_ptrs(values, doc_ptrs) -> List[np.ndarray]:
    """Split a flat token array into per-document arrays."""
    values = np.asarray(values)
    ptrs = np.asarray(doc_ptrs)
    return [values[ptrs[d]:ptrs[d + 1]] for d in range(ptrs.size - 1)]


def _as_int_array(values, what: str) -> np.ndarray:
    arr = np.asarray(values)
    if arr.size == 0:
        return arr.astype(np.int32).reshape(arr.shape)
    if not np.issubdtype(arr.dtype, np.integer):
        raise MalformedInputError(f"{what} must contain integers, got dtype {arr.dtype}")
    if (arr < 0).any():
        raise MalformedInputError(f"{what} must be non-negative")
    return arr.astype(np.int32)


def _check_comparisons(comparisons, num_docs: int) -> np.ndarray:
    comps = np.asarray(comparisons, dtype=np.int64) if len(comparisons) else np.zeros((0, 2), dtype=np.int64)
    if comps.ndim != 2 or comps.shape[1] != 2:
        raise DimensionMismatchError(f"comparisons must have shape (M, 2), got {comps.shape}")
    comps = _as_int_array(comps, "comparisons")
    if comps.size and int(comps.max()) >= num_docs:
        raise MalformedInputError(
            f"comparison references document {int(comps.max())} but the corpus has {num_docs} documents"
        )
    return comps


def corpus_from_documents(
    documents: Sequence[Sequence[int]],
    comparisons: Sequence[Tuple[int, int]] = (),
    *,
    vocab_size: int | None = None,
) -> Corpus:
    """Build a :class:`Corpus` from per-document word-id sequences.

    ``vocab_size`` defaults to ``max word id + 1``.  Word ids outside
    ``[0, vocab_size)`` and comparisons pointing past the last document raise
    :class:`MalformedInputError`.
    """
    docs = [_as_int_array(doc, f"document {d}").ravel() for d, doc in enumerate(documents)]
    lengths = np.array([doc.size for doc in docs], dtype=np.int32)
    word_ids = np.concatenate(docs) if docs else np.zeros(0, dtype=np.int32)
    doc_ids = np.repeat(np.arange(len(docs), dtype=np.int32), lengths)

    max_id = int(word_ids.max()) if word_ids.size else -1
    if vocab_size is None:
        vocab_size = max_id + 1
    elif max_id >= vocab_size:
        raise MalformedInputError(f"word id {max_id} is outside the vocabulary of size {vocab_size}")

    comps = _check_comparisons(comparisons, len(docs))
    doc_ptrs = np.concatenate([[0], np.cumsum(lengths)]).astype(np.int32)

    return Corpus(
        jnp.asarray(word_ids, dtype=jnp.int32),
        jnp.asarray(doc_ids, dtype=jnp.int32),
        jnp.asarray(doc_ptrs, dtype=jnp.int32),
        jnp.asarray(comps, dtype=jnp.int32),
        int(vocab_size),
    )


def corpus_from_bows(
    bows: Iterable[Sequence[Tuple[int, int]]],
    comparisons: Sequence[Tuple[int, int]] = (),
    *,
    vocab_size: int | None = None,
) -> Corpus:
    """Expand sparse ``(word_id, count)`` rows into token sequences."""
    documents = []
    for d, bow in enumerate(bows):
        doc: List[int] = []
        for word, count in bow:
            if count < 0:
                raise MalformedInputError(f"document {d}: negative count {count} for word {word}")
            doc.extend([word] * count)
        documents.append(doc)
    return corpus_from_documents(documents, comparisons, vocab_size=vocab_size)


def restrict_vocab(corpus: Corpus, vocab_size: int) -> Corpus:
    """Drop tokens whose id is not known to a model of ``vocab_size`` words."""
    docs = [doc[doc < vocab_size] for doc in corpus.documents()]
    comps = [tuple(int(v) for v in row) for row in np.asarray(corpus.comparisons)]
    return corpus_from_documents(docs, comps, vocab_size=vocab_size)
