from __future__ import annotations

"""ranklda_jax.inference.sampler
================================

Topic assignment for **unseen** documents under a frozen RankLDA model.

Each document is processed independently with its own PRNG key:

* labels start uniformly at random;
* ``num_sa_iters`` annealed sweeps propose a uniform new topic per token
  and accept it with the Metropolis rule used in training;
* the temperature is multiplied by ``cooling_rate`` after every sweep.

Background statistics are read-only.  With the training corpus available
the sweep uses the *collapsed* topic–word and topic-total counts rebuilt
from the model's training labels; otherwise it falls back to the trained
``log_phi``.
"""

import logging
from dataclasses import dataclass, field
from functools import partial
from typing import List, NamedTuple, Optional, Sequence

import numpy as np
import jax
import jax.numpy as jnp
from jax import Array
from tqdm import tqdm

from ranklda_jax.models.index import metropolis_accept
from ranklda_jax.models.lda import bucket_length
from ranklda_jax.models.ranklda import RankLDAModel, document_scores
from ranklda_jax.utils.errors import MalformedInputError
from ranklda_jax.utils.process import Corpus

__all__ = [
    "InferSettings",
    "BackgroundCounts",
    "background_counts",
    "AnnealedSampler",
]

logger = logging.getLogger(__name__)

################################################################################
# Config dataclass #############################################################
################################################################################

@dataclass(slots=True)
class InferSettings:
    """Hyper-parameters of the per-document annealing run."""

    num_sa_iters: int = 1000     # sweeps per document
    init_temp: float = 1.0
    cooling_rate: float = 1.0    # applied once per sweep
    show_progress: bool = True

    def __post_init__(self):
        if self.num_sa_iters < 0:
            raise ValueError(f"num_sa_iters must be >= 0, got {self.num_sa_iters}")
        if self.init_temp <= 0:
            raise ValueError(f"init_temp must be > 0, got {self.init_temp}")
        if self.cooling_rate <= 0:
            raise ValueError(f"cooling_rate must be > 0, got {self.cooling_rate}")


class BackgroundCounts(NamedTuple):
    """Training counts the collapsed sweep conditions on."""

    n_kw: Array   # (K, V)
    n_k: Array    # (K,)


def background_counts(model: RankLDAModel, corpus: Corpus) -> BackgroundCounts:
    """Rebuild global topic–word counts from the model's training labels."""
    model.check_corpus(corpus)
    K, V = model.num_topics, model.vocab_size
    n_kw = jnp.zeros((K, V), dtype=jnp.int32).at[model.z, corpus.word_ids].add(1)
    return BackgroundCounts(n_kw, n_kw.sum(axis=1))

################################################################################
# Kernel #######################################################################
################################################################################

@partial(jax.jit, static_argnames=("num_topics", "num_sweeps", "collapsed"))
def _anneal_document(
    key: Array,
    local_w: Array,      # (L,) index into the document's distinct words
    length: Array,
    beta: Array,
    log_phi_w: Array,    # (K, U) log_phi of the distinct words
    bg_kw: Array,        # (K, U) background counts of the distinct words
    bg_k: Array,         # (K,)
    alpha: float,
    alpha_sum: float,
    init_temp: float,
    cooling_rate: float,
    *,
    num_topics: int,
    num_sweeps: int,
    collapsed: bool,
) -> Array:
    L, U = local_w.shape[0], log_phi_w.shape[1]
    mask = jnp.arange(L) < length
    k_init, k_sweeps = jax.random.split(key)

    z = jax.random.randint(k_init, (L,), 0, num_topics, dtype=jnp.int32)
    n_k = jnp.zeros((num_topics,), dtype=jnp.int32).at[z].add(mask.astype(jnp.int32))
    c_kw = jnp.zeros((num_topics, U), dtype=jnp.int32).at[z, local_w].add(mask.astype(jnp.int32))

    def _log_odds(n_k, c_kw, u, cur, new):
        diff = jnp.log(beta[cur] + n_k[cur] - 1) - jnp.log(beta[new] + n_k[new])
        if collapsed:
            diff += (
                jnp.log(alpha + bg_kw[cur, u] + c_kw[cur, u] - 1)
                - jnp.log(alpha + bg_kw[new, u] + c_kw[new, u])
                + jnp.log(bg_k[new] + n_k[new] + alpha_sum)
                - jnp.log(bg_k[cur] + n_k[cur] - 1 + alpha_sum)
            )
        else:
            diff += log_phi_w[cur, u] - log_phi_w[new, u]
        return diff

    def _sweep(it, carry):
        z, n_k, c_kw, temp = carry
        k_sweep = jax.random.fold_in(k_sweeps, it)

        def _update_token(i, inner):
            z, n_k, c_kw = inner
            k_new, k_acc = jax.random.split(jax.random.fold_in(k_sweep, i))
            cur, u = z[i], local_w[i]
            new = jax.random.randint(k_new, (), 0, num_topics, dtype=jnp.int32)
            accept = (new != cur) & metropolis_accept(
                _log_odds(n_k, c_kw, u, cur, new), temp, jax.random.uniform(k_acc)
            )
            step = accept.astype(jnp.int32)
            return (
                jnp.where(accept, z.at[i].set(new), z),
                n_k.at[cur].add(-step).at[new].add(step),
                c_kw.at[cur, u].add(-step).at[new, u].add(step),
            )

        z, n_k, c_kw = jax.lax.fori_loop(0, length, _update_token, (z, n_k, c_kw))
        return z, n_k, c_kw, temp * cooling_rate

    z, _, _, _ = jax.lax.fori_loop(
        0, num_sweeps, _sweep, (z, n_k, c_kw, jnp.asarray(init_temp, dtype=jnp.float64))
    )
    return z

################################################################################
# Sampler driver ###############################################################
################################################################################

@dataclass
class AnnealedSampler:
    """Infers labels and ranking scores for unseen documents.

    Parameters
    ----------
    model
        Trained :class:`RankLDAModel`; never modified.
    config
        :class:`InferSettings`.
    training_corpus
        The corpus the model was trained on.  When given, the sweep conditions
        on collapsed training counts; otherwise on ``log_phi``.
    """

    model: RankLDAModel
    config: InferSettings
    training_corpus: Optional[Corpus] = None

    _background: Optional[BackgroundCounts] = field(init=False, repr=False, default=None)

    def __post_init__(self):
        if self.training_corpus is not None:
            self._background = background_counts(self.model, self.training_corpus)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def infer_document(self, doc, *, key: Array) -> np.ndarray:
        """Topic label per token of one document."""
        doc = np.asarray(doc, dtype=np.int32)
        if doc.size == 0:
            return np.zeros(0, dtype=np.int32)
        if int(doc.max()) >= self.model.vocab_size:
            raise MalformedInputError(
                f"word id {int(doc.max())} is outside the model vocabulary of size {self.model.vocab_size}"
            )

        # tokens and distinct words are padded so similar documents share a compiled kernel
        uniq, local = np.unique(doc, return_inverse=True)
        local_w = np.zeros(bucket_length(doc.size), dtype=np.int32)
        local_w[:doc.size] = local
        cols = np.zeros(bucket_length(uniq.size), dtype=np.int32)
        cols[:uniq.size] = uniq

        K = self.model.num_topics
        if self._background is not None:
            bg_kw, bg_k = self._background.n_kw[:, cols], self._background.n_k
        else:
            bg_kw, bg_k = jnp.zeros((K, cols.size), dtype=jnp.int32), jnp.zeros((K,), dtype=jnp.int32)

        z = _anneal_document(
            key,
            jnp.asarray(local_w),
            jnp.asarray(doc.size),
            self.model.beta,
            self.model.log_phi[:, cols],
            bg_kw,
            bg_k,
            self.model.alpha,
            self.model.alpha * self.model.vocab_size,
            self.config.init_temp,
            self.config.cooling_rate,
            num_topics=K,
            num_sweeps=self.config.num_sa_iters,
            collapsed=self._background is not None,
        )
        return np.asarray(z[:doc.size])

    def infer(self, documents: Sequence, *, key: Array) -> List[np.ndarray]:
        """Labels for every document; document ``d`` uses ``split(key)[d]``."""
        keys = jax.random.split(key, max(len(documents), 1))
        iterator = enumerate(documents)
        if self.config.show_progress:
            iterator = tqdm(iterator, total=len(documents), desc="Infer")
        return [self.infer_document(doc, key=keys[d]) for d, doc in iterator]

    def scores(self, assignments: Sequence[np.ndarray]) -> np.ndarray:
        """Ranking score of each labelled document."""
        return document_scores(self.model.nu, assignments)
