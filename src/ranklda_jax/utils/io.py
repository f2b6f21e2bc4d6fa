from __future__ import annotations

"""ranklda_jax.utils.io
=======================

Plain-text file formats read and written by the command line tools.

===================== ========================================================
file                  layout
===================== ========================================================
corpus                ``N M``; N lines of ``word:count`` pairs; M lines ``x y``
model                 ``K V``; beta; alpha; K rows of log_phi; nu; ``N``;
                      N lines of topic labels
LDA export            K rows of ``exp(log_phi)``
phi                   K rows of V probabilities (or log-probabilities)
held-out documents    one document of word ids per line
seed assignment       ``n w1:z1 ... wn:zn`` per document
inference output      ``N``; N lines of labels; scores; perplexity
===================== ========================================================

Floats are written with 17 significant digits, which reproduces every
``float64`` exactly on read.  Parse errors raise
:class:`MalformedInputError` naming the file and the line.
"""

import logging
from pathlib import Path
from typing import Dict, Iterator, List, Sequence, Tuple, Union

import numpy as np
import jax.numpy as jnp

from ranklda_jax.models.ranklda import RankLDAModel
from ranklda_jax.utils.errors import DimensionMismatchError, MalformedInputError
from ranklda_jax.utils.process import Corpus, corpus_from_bows

__all__ = [
    "read_corpus",
    "write_corpus",
    "read_model",
    "write_model",
    "write_lda",
    "read_phi",
    "read_documents",
    "read_assignments",
    "write_inference",
]

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

FLOAT_FMT = "%.17g"

################################################################################
# Line reader ##################################################################
################################################################################

class _Lines:
    """Numbered line cursor that reports parse errors with their location."""

    def __init__(self, path: PathLike):
        self.path = Path(path)
        with open(self.path) as fh:
            self._lines = fh.read().splitlines()
        self.lineno = 0

    def next(self, what: str) -> str:
        if self.lineno >= len(self._lines):
            raise MalformedInputError(f"{self.path}: unexpected end of file, expected {what}")
        line = self._lines[self.lineno]
        self.lineno += 1
        return line

    def error(self, msg: str) -> MalformedInputError:
        return MalformedInputError(f"{self.path}:{self.lineno}: {msg}")

    def ints(self, what: str) -> List[int]:
        return self.parse_ints(self.next(what), what)

    def parse_ints(self, line: str, what: str) -> List[int]:
        try:
            return [int(tok) for tok in line.split()]
        except ValueError:
            raise self.error(f"cannot parse {what} from {line!r}") from None

    def floats(self, what: str, count: int | None = None) -> np.ndarray:
        return self.parse_floats(self.next(what), what, count)

    def parse_floats(self, line: str, what: str, count: int | None = None) -> np.ndarray:
        try:
            values = np.array([float(tok) for tok in line.split()], dtype=np.float64)
        except ValueError:
            raise self.error(f"cannot parse {what} from {line!r}") from None
        if count is not None and values.size != count:
            raise self.error(f"expected {count} values for {what}, got {values.size}")
        return values

    def pairs(self, what: str, skip_count: bool = False) -> List[Tuple[int, int]]:
        toks = self.next(what).split()
        if skip_count:
            if not toks:
                raise self.error(f"missing pair count in {what}")
            try:
                n = int(toks[0])
            except ValueError:
                raise self.error(f"bad pair count {toks[0]!r}") from None
            toks = toks[1:]
            if len(toks) != n:
                raise self.error(f"expected {n} pairs, got {len(toks)}")
        result = []
        for tok in toks:
            a, sep, b = tok.partition(":")
            try:
                if not sep:
                    raise ValueError(tok)
                result.append((int(a), int(b)))
            except ValueError:
                raise self.error(f"bad pair {tok!r} in {what}") from None
        return result

    def header(self, what: str, size: int) -> List[int]:
        values = self.ints(what)
        if len(values) != size:
            raise self.error(f"expected {size} integers in {what}, got {len(values)}")
        return values

    def remaining(self) -> Iterator[str]:
        while self.lineno < len(self._lines):
            yield self.next("line")


def _fmt(values) -> str:
    return " ".join(FLOAT_FMT % v for v in np.asarray(values, dtype=np.float64).ravel())


def _ints(values) -> str:
    return " ".join(str(int(v)) for v in np.asarray(values).ravel())

################################################################################
# Corpus #######################################################################
################################################################################

def read_corpus(path: PathLike, *, vocab_size: int | None = None) -> Corpus:
    """Parse a corpus file.  ``V`` defaults to ``max word id + 1``."""
    lines = _Lines(path)
    n, m = lines.header("document and comparison counts", 2)
    if n < 0 or m < 0:
        raise lines.error("counts must be non-negative")

    bows = []
    for _ in range(n):
        bow = lines.pairs("document")
        if any(w < 0 or c < 0 for w, c in bow):
            raise lines.error("word ids and counts must be non-negative")
        bows.append(bow)

    comparisons = []
    for _ in range(m):
        row = lines.ints("comparison")
        if len(row) != 2:
            raise lines.error(f"comparison needs two document ids, got {len(row)}")
        comparisons.append(tuple(row))

    corpus = corpus_from_bows(bows, comparisons, vocab_size=vocab_size)
    logger.info("read %d documents, %d comparisons, %d tokens from %s",
                corpus.num_docs, corpus.num_comparisons, corpus.num_tokens, path)
    return corpus


def write_corpus(corpus: Corpus, path: PathLike) -> None:
    with open(path, "w") as fh:
        fh.write(f"{corpus.num_docs} {corpus.num_comparisons}\n")
        for doc in corpus.documents():
            words, counts = np.unique(doc, return_counts=True)
            fh.write(" ".join(f"{w}:{c}" for w, c in zip(words, counts)) + "\n")
        for x, y in np.asarray(corpus.comparisons):
            fh.write(f"{x} {y}\n")

################################################################################
# Model ########################################################################
################################################################################

def read_model(path: PathLike, *, sigma2: float = 1.0) -> RankLDAModel:
    """Parse a model file; ``sigma2`` is not stored and defaults to 1."""
    lines = _Lines(path)
    K, V = lines.header("K V", 2)
    if K < 1 or V < 1:
        raise lines.error(f"K and V must be positive, got {K} {V}")

    beta = lines.floats("beta", K)
    alpha = lines.floats("alpha", 1)[0]
    log_phi = np.stack([lines.floats(f"log_phi[{k}]", V) for k in range(K)])
    nu = lines.floats("nu", K)
    (N,) = lines.header("number of documents", 1)

    labels = []
    for _ in range(N):
        z = lines.ints("topic labels")
        if any(t < 0 or t >= K for t in z):
            raise lines.error(f"topic label outside [0, {K})")
        labels.append(np.asarray(z, dtype=np.int32))

    lengths = np.array([z.size for z in labels], dtype=np.int32)
    doc_ptrs = np.concatenate([[0], np.cumsum(lengths)]).astype(np.int32)
    z = np.concatenate(labels) if labels else np.zeros(0, dtype=np.int32)

    return RankLDAModel(
        K, V, float(alpha),
        jnp.asarray(beta), jnp.asarray(log_phi), jnp.asarray(nu),
        jnp.asarray(z, dtype=jnp.int32), jnp.asarray(doc_ptrs), sigma2,
    )


def write_model(model: RankLDAModel, path: PathLike) -> None:
    with open(path, "w") as fh:
        fh.write(f"{model.num_topics} {model.vocab_size}\n")
        fh.write(_fmt(model.beta) + "\n")
        fh.write(FLOAT_FMT % model.alpha + "\n")
        for row in np.asarray(model.log_phi):
            fh.write(_fmt(row) + "\n")
        fh.write(_fmt(model.nu) + "\n")
        fh.write(f"{model.num_docs}\n")
        for z in model.assignments():
            fh.write(_ints(z) + "\n")
    logger.debug("model written to %s", path)


def write_lda(model: RankLDAModel, path: PathLike) -> None:
    """Export the topic–word probabilities only."""
    with open(path, "w") as fh:
        for row in np.exp(np.asarray(model.log_phi)):
            fh.write(_fmt(row) + "\n")

################################################################################
# Evaluation inputs ############################################################
################################################################################

def read_phi(path: PathLike, *, is_log: bool = False) -> np.ndarray:
    """Read a ``(K, V)`` topic–word matrix.

    Log-space input is exponentiated and each row renormalised.
    """
    lines = _Lines(path)
    rows = [lines.parse_floats(line, "phi row") for line in lines.remaining() if line.strip()]
    if not rows:
        raise MalformedInputError(f"{path}: no topic rows")
    if len({r.size for r in rows}) != 1:
        raise DimensionMismatchError(f"{path}: topic rows have different lengths")
    phi = np.stack(rows)
    if is_log:
        phi = np.exp(phi)
        phi /= phi.sum(axis=1, keepdims=True)
    if (phi < 0).any():
        raise MalformedInputError(f"{path}: negative probabilities")
    return phi


def read_documents(path: PathLike, vocab_size: int) -> List[np.ndarray]:
    """Held-out documents, one per line; ids ``>= vocab_size`` are dropped."""
    lines = _Lines(path)
    docs = []
    for line in lines.remaining():
        doc = np.asarray(lines.parse_ints(line, "word ids"), dtype=np.int64)
        if (doc < 0).any():
            raise lines.error("negative word id")
        docs.append(doc[doc < vocab_size].astype(np.int32))
    return docs


def read_assignments(path: PathLike, num_docs: int) -> List[Dict[int, int]]:
    """Seed assignment file: per document a ``word -> topic`` map."""
    lines = _Lines(path)
    return [dict(lines.pairs("seed assignment", skip_count=True)) for _ in range(num_docs)]


def write_inference(
    path: PathLike,
    assignments: Sequence[np.ndarray],
    scores: Sequence[float],
    perplexity: float,
) -> None:
    with open(path, "w") as fh:
        fh.write(f"{len(assignments)}\n")
        for z in assignments:
            fh.write(_ints(z) + "\n")
        fh.write(_fmt(scores) + "\n")
        fh.write(FLOAT_FMT % perplexity + "\n")
