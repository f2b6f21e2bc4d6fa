from __future__ import annotations

"""ranklda_jax.utils.generator
=================================

Synthetic RankLDA corpora for unit tests and benchmarking.

1. documents are drawn from the standard LDA generative model;
2. comparisons pick two distinct documents at random and orient them with
   probability ``sigmoid(nu · (p_x - p_y))`` computed from the *sampled*
   topic fractions, so the true ``nu`` is what the ranking term recovers.
"""
from typing import NamedTuple, Sequence, Tuple, Union

import numpy as np
import jax
from jax import Array
import jax.numpy as jnp

from .process import Corpus, corpus_from_documents

__all__ = [
    "RankLDASynthetic",
    "generate_ranklda_corpus",
]

################################################################################
# Synthetic RankLDA generator ###################################################
################################################################################

class RankLDASynthetic(NamedTuple):
    """Return object for :func:`generate_ranklda_corpus`."""

    corpus: Corpus
    z:      Array  # (T,) topic assignment per token
    theta:  Array  # (N, K) document–topic dists
    phi:    Array  # (K, V) topic–word dists
    nu:     Array  # (K,) ranking weights

# -----------------------------------------------------------------------------
# Utility: Dirichlet draw that returns (next_key, sample)
# -----------------------------------------------------------------------------

def _draw_dirichlet(key: Array, alpha: Array, shape: Tuple[int, ...]) -> Tuple[Array, Array]:
    key, sub = jax.random.split(key)
    return key, jax.random.dirichlet(sub, alpha, shape=shape)


def generate_ranklda_corpus(
    key: Array,
    *,
    num_docs: int,
    num_topics: int,
    vocab_size: int,
    doc_length: Union[int, Sequence[int]],
    num_comparisons: int,
    beta: float = 0.1,
    alpha: float = 0.1,
    nu_scale: float = 5.0,
) -> RankLDASynthetic:
    """Draw documents from LDA and comparisons from the logistic ranking model.

    ``beta`` is the doc–topic concentration, ``alpha`` the topic–word one;
    the true ``nu`` is ``nu_scale`` times a standard normal draw.
    """
    if num_comparisons and num_docs < 2:
        raise ValueError("comparisons need at least two documents")

    # 1. phi ~ Dir_V(alpha)
    key, phi = _draw_dirichlet(key, jnp.full((vocab_size,), alpha), (num_topics,))

    # 2. theta ~ Dir_K(beta)
    key, theta = _draw_dirichlet(key, jnp.full((num_topics,), beta), (num_docs,))

    # 3. Document lengths
    if isinstance(doc_length, int):
        doc_lengths = np.full((num_docs,), doc_length, dtype=np.int32)
    else:
        doc_lengths = np.asarray(doc_length, dtype=np.int32)
        if doc_lengths.shape != (num_docs,):
            raise ValueError(f"doc_length must have {num_docs} entries, got {doc_lengths.shape}")

    # 4. Sample individual documents ----------------------------------------
    key, k_docs, k_nu, k_pairs, k_flip = jax.random.split(key, 5)
    doc_keys = jax.random.split(k_docs, num_docs)

    z_all, w_all = [], []
    for d in range(num_docs):
        sub1, sub2 = jax.random.split(doc_keys[d])
        z_dn = jax.random.categorical(sub1, jnp.log(theta[d]), shape=(int(doc_lengths[d]),))
        w_dn = jax.random.categorical(sub2, jnp.log(phi[z_dn]), axis=-1)
        z_all.append(np.asarray(z_dn, dtype=np.int32))
        w_all.append(np.asarray(w_dn, dtype=np.int32))

    # 5. Comparisons from the empirical topic fractions ---------------------
    nu = jax.random.normal(k_nu, (num_topics,)) * nu_scale
    frac = np.stack([np.bincount(z, minlength=num_topics) / max(z.size, 1) for z in z_all])
    scores = frac @ np.asarray(nu)

    first = jax.random.randint(k_pairs, (num_comparisons,), 0, num_docs)
    offset = jax.random.randint(jax.random.fold_in(k_pairs, 1), (num_comparisons,), 1, max(num_docs, 2))
    x = np.asarray(first)
    y = np.asarray((first + offset) % num_docs)

    p_x_wins = np.asarray(jax.nn.sigmoid(scores[x] - scores[y]))
    keep = np.asarray(jax.random.uniform(k_flip, (num_comparisons,))) < p_x_wins
    comparisons = [(int(a), int(b)) if k else (int(b), int(a)) for a, b, k in zip(x, y, keep)]

    corpus = corpus_from_documents(w_all, comparisons, vocab_size=vocab_size)
    z = jnp.asarray(np.concatenate(z_all) if z_all else np.zeros(0, dtype=np.int32))
    return RankLDASynthetic(corpus, z, theta, phi, nu)
