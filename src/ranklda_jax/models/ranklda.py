from __future__ import annotations

"""ranklda_jax.models.ranklda
=============================

RankLDA couples the collapsed LDA story for documents with a pairwise
ranking signal: a comparison ``(x, y)`` is explained by

.. math::

    p(x \\succ y) = \\sigma\\big(\\nu^\\top (p_x - p_y)\\big),

where :math:`p_d` is document ``d``'s empirical topic-count fraction and
:math:`\\nu` is a learned weight vector with a Gaussian prior.

----------------------------------------------------------------------
Parameters
----------------------------------------------------------------------

============ ================ =============================================
field        shape            notes
============ ================ =============================================
``alpha``    scalar           pseudo-count of the topic–word term
``beta``     ``(K,)``         Dirichlet concentration of the doc–topic term
``log_phi``  ``(K, V)``       each row a log-distribution over words
``nu``       ``(K,)``         ranking weights
``sigma2``   scalar           prior variance of ``nu``
``z``        ``(T,)``         topic per training token (flat)
``doc_ptrs`` ``(N+1,)``       document boundaries inside ``z``
============ ================ =============================================

The module keeps the *pure* pieces of the model: construction, the
collapsed likelihoods, the objectives driven by the training engine and
the scoring helpers.  Mutable bookkeeping lives in
:mod:`ranklda_jax.models.index`.
"""

import dataclasses
from dataclasses import dataclass
from typing import List, Mapping, Sequence

import numpy as np
import jax
import jax.numpy as jnp
from jax import Array
from jax.scipy.special import digamma, gammaln, polygamma

from ranklda_jax.utils.errors import DimensionMismatchError
from ranklda_jax.utils.process import Corpus, split_by_ptrs

__all__ = [
    "InitSettings",
    "RankLDAModel",
    "random_model",
    "assigned_model",
    "topic_fractions",
    "rank_margins",
    "document_scores",
    "log_likelihood_topics",
    "log_likelihood",
    "nu_objective",
    "nu_gradient",
    "beta_objective",
    "beta_gradient",
    "beta_hessian_parts",
    "topic_word_log_dist",
    "log_joint_doc",
    "perplexity",
    "random_assignment_perplexity",
]

################################################################################
# Containers ###################################################################
################################################################################

@dataclass(slots=True)
class InitSettings:
    """Hyper-parameters of a freshly initialised model."""

    num_topics: int = 5
    alpha: float = 1e-6    # topic-word pseudo-count
    beta: float = 0.1      # symmetric doc-topic concentration
    sigma2: float = 1.0    # prior variance of nu

    def __post_init__(self):
        if self.num_topics < 1:
            raise ValueError(f"num_topics must be >= 1, got {self.num_topics}")
        if self.alpha <= 0:
            raise ValueError(f"alpha must be > 0, got {self.alpha}")
        if self.beta <= 0:
            raise ValueError(f"beta must be > 0, got {self.beta}")
        if self.sigma2 <= 0:
            raise ValueError(f"sigma2 must be > 0, got {self.sigma2}")


@dataclass(frozen=True, eq=False)
class RankLDAModel:
    """Trained (or initial) RankLDA parameters.  Immutable; use :meth:`replace`."""

    num_topics: int
    vocab_size: int
    alpha: float
    beta: Array
    log_phi: Array
    nu: Array
    z: Array
    doc_ptrs: Array
    sigma2: float = 1.0

    def __post_init__(self):
        K, V = self.num_topics, self.vocab_size
        if self.beta.shape != (K,):
            raise DimensionMismatchError(f"beta has shape {self.beta.shape}, expected ({K},)")
        if self.nu.shape != (K,):
            raise DimensionMismatchError(f"nu has shape {self.nu.shape}, expected ({K},)")
        if self.log_phi.shape != (K, V):
            raise DimensionMismatchError(f"log_phi has shape {self.log_phi.shape}, expected ({K}, {V})")
        if self.z.size != int(self.doc_ptrs[-1]):
            raise DimensionMismatchError(
                f"z holds {self.z.size} labels but doc_ptrs describe {int(self.doc_ptrs[-1])} tokens"
            )

    @property
    def num_docs(self) -> int:
        return int(self.doc_ptrs.size - 1)

    def replace(self, **changes) -> "RankLDAModel":
        return dataclasses.replace(self, **changes)

    def assignments(self) -> List[np.ndarray]:
        """Per-document topic labels."""
        return split_by_ptrs(self.z, self.doc_ptrs)

    def check_corpus(self, corpus: Corpus) -> None:
        """Raise unless ``corpus`` is the one ``z`` was sampled on."""
        if corpus.vocab_size > self.vocab_size:
            raise DimensionMismatchError(
                f"corpus vocabulary ({corpus.vocab_size}) exceeds the model's ({self.vocab_size})"
            )
        if corpus.num_docs != self.num_docs or not bool(jnp.all(corpus.doc_ptrs == self.doc_ptrs)):
            raise DimensionMismatchError("document lengths of the corpus do not match the model assignments")


def _initial_params(corpus: Corpus, settings: InitSettings, key: Array):
    K, V = settings.num_topics, corpus.vocab_size
    beta = jnp.full((K,), settings.beta)
    nu = jax.random.normal(key, (K,)) * jnp.sqrt(settings.sigma2)
    log_phi = jnp.full((K, V), -jnp.log(V))
    return beta, nu, log_phi


def random_model(corpus: Corpus, settings: InitSettings, *, key: Array) -> RankLDAModel:
    """Uniform random topic per token, uniform phi, ``nu`` drawn from its prior."""
    key, sub = jax.random.split(key)
    z = jax.random.randint(sub, (corpus.num_tokens,), 0, settings.num_topics, dtype=jnp.int32)
    beta, nu, log_phi = _initial_params(corpus, settings, key)
    return RankLDAModel(
        settings.num_topics, corpus.vocab_size, settings.alpha, beta, log_phi, nu,
        z, corpus.doc_ptrs, settings.sigma2,
    )


def assigned_model(
    corpus: Corpus,
    settings: InitSettings,
    assignments: Sequence[Mapping[int, int]],
    *,
    key: Array,
) -> RankLDAModel:
    """Seed ``z`` from per-document ``word -> topic`` maps (e.g. an LDA run).

    Words missing from a document's map get topic 0.
    """
    if len(assignments) != corpus.num_docs:
        raise DimensionMismatchError(
            f"{len(assignments)} seed rows for a corpus of {corpus.num_docs} documents"
        )
    z = np.concatenate(
        [np.array([assignments[d].get(int(w), 0) for w in doc], dtype=np.int32)
         for d, doc in enumerate(corpus.documents())]
        or [np.zeros(0, dtype=np.int32)]
    )
    if z.size and (z.min() < 0 or z.max() >= settings.num_topics):
        raise DimensionMismatchError(f"seed topics must lie in [0, {settings.num_topics})")
    beta, nu, log_phi = _initial_params(corpus, settings, key)
    return RankLDAModel(
        settings.num_topics, corpus.vocab_size, settings.alpha, beta, log_phi, nu,
        jnp.asarray(z), corpus.doc_ptrs, settings.sigma2,
    )

################################################################################
# Ranking scores ###############################################################
################################################################################

def topic_fractions(n_dk: Array, lengths: Array) -> Array:
    """Rows of ``n_dk`` divided by document length (zero rows for empty docs)."""
    lengths = jnp.maximum(lengths, 1)
    return n_dk / lengths[:, None]


def rank_margins(nu: Array, n_dk: Array, lengths: Array, comparisons: Array) -> Array:
    """``nu · (p_x - p_y)`` for every comparison, computed from scratch."""
    frac = topic_fractions(n_dk, lengths)
    return jnp.sum((frac[comparisons[:, 0]] - frac[comparisons[:, 1]]) * nu, axis=-1)


def document_scores(nu: Array, assignments: Sequence[np.ndarray]) -> np.ndarray:
    """Ranking score ``nu · (topic counts / length)`` of each labelled document."""
    nu = jnp.asarray(nu)
    K = nu.shape[0]
    scores = []
    for z in assignments:
        z = np.asarray(z)
        if z.size and int(z.max()) >= K:
            raise DimensionMismatchError(f"topic label {int(z.max())} does not fit {K} ranking weights")
        counts = np.bincount(z, minlength=K).astype(float)
        scores.append(float(jnp.sum(nu * (counts / max(z.size, 1)))))
    return np.asarray(scores)

################################################################################
# Collapsed likelihoods ########################################################
################################################################################

def _dirichlet_multinomial(counts_row: Array, alpha_vec: Array) -> Array:
    return (
        gammaln(alpha_vec.sum())
        - gammaln(alpha_vec.sum() + counts_row.sum())
        + gammaln(alpha_vec + counts_row).sum()
        - gammaln(alpha_vec).sum()
    )


@jax.jit
def log_likelihood_topics(n_dk: Array, n_kw: Array, beta: Array, alpha: float) -> Array:
    """Collapsed doc–topic plus topic–word log-probability of the assignments."""
    V = n_kw.shape[1]
    ll_docs = jax.vmap(_dirichlet_multinomial, in_axes=(0, None))(n_dk, beta).sum()
    ll_topics = jax.vmap(_dirichlet_multinomial, in_axes=(0, None))(n_kw, jnp.full((V,), alpha)).sum()
    return ll_docs + ll_topics


@jax.jit
def log_likelihood(
    n_dk: Array, n_kw: Array, lengths: Array, comparisons: Array,
    beta: Array, alpha: float, nu: Array, sigma2: float,
) -> Array:
    """Joint objective monitored by the training engine.

    Collapsed topic terms, the ranking log-likelihood of every comparison
    and the Gaussian prior on ``nu``.
    """
    margins = rank_margins(nu, n_dk, lengths, comparisons)
    return (
        log_likelihood_topics(n_dk, n_kw, beta, alpha)
        + jax.nn.log_sigmoid(margins).sum()
        - 0.5 * jnp.sum(nu ** 2) / sigma2
    )

################################################################################
# Sub-solver objectives ########################################################
################################################################################

@jax.jit
def nu_objective(nu: Array, diffs: Array, sigma2: float) -> Array:
    """Negated ranking log-posterior; ``diffs[m] = p_x - p_y``."""
    return -(jax.nn.log_sigmoid(jnp.sum(diffs * nu, axis=-1)).sum() - 0.5 * jnp.sum(nu ** 2) / sigma2)


@jax.jit
def nu_gradient(nu: Array, diffs: Array, sigma2: float) -> Array:
    weights = jax.nn.sigmoid(-jnp.sum(diffs * nu, axis=-1))
    return -(jnp.sum(diffs * weights[:, None], axis=0) - nu / sigma2)


@jax.jit
def beta_objective(beta: Array, n_dk: Array, lengths: Array) -> Array:
    """Negated Dirichlet-multinomial marginal of every document's topic counts."""
    D = n_dk.shape[0]
    total = beta.sum()
    res = (
        D * (gammaln(total) - gammaln(beta).sum())
        + gammaln(beta + n_dk).sum()
        - gammaln(lengths + total).sum()
    )
    return -res


@jax.jit
def beta_gradient(beta: Array, n_dk: Array, lengths: Array) -> Array:
    total = beta.sum()
    per_topic = (digamma(beta + n_dk) - digamma(beta)).sum(axis=0)
    shared = (digamma(lengths + total) - digamma(total)).sum()
    return -(per_topic - shared)


@jax.jit
def beta_hessian_parts(beta: Array, n_dk: Array, lengths: Array):
    """Hessian of :func:`beta_objective` as ``diag(h) + z * ones``."""
    total = beta.sum()
    h = (polygamma(1, beta) - polygamma(1, beta + n_dk)).sum(axis=0)
    z = (polygamma(1, lengths + total) - polygamma(1, total)).sum()
    return h, z

################################################################################
# Phi ##########################################################################
################################################################################

def topic_word_log_dist(z: Array, word_ids: Array, num_topics: int, vocab_size: int, alpha: float) -> Array:
    """Smoothed multinomial MLE of ``log_phi`` from the current labels."""
    counts = jnp.full((num_topics, vocab_size), alpha).at[z, word_ids].add(1.0)
    return jnp.log(counts) - jnp.log(counts.sum(axis=1, keepdims=True))

################################################################################
# Point-estimate perplexity ####################################################
################################################################################

def log_joint_doc(model: RankLDAModel, doc, z) -> float:
    """Dirichlet-multinomial of ``z``'s topic counts plus ``sum log_phi[z, w]``."""
    doc = jnp.asarray(doc, dtype=jnp.int32)
    z = jnp.asarray(z, dtype=jnp.int32)
    counts = jnp.zeros((model.num_topics,)).at[z].add(1.0)
    return float(_dirichlet_multinomial(counts, model.beta) + model.log_phi[z, doc].sum())


def perplexity(model: RankLDAModel, documents: Sequence, assignments: Sequence) -> float:
    """Average per-token log-probability of documents under given labels."""
    total, tokens = 0.0, 0
    for doc, z in zip(documents, assignments):
        total += log_joint_doc(model, doc, z)
        tokens += len(doc)
    return total / max(tokens, 1)


def random_assignment_perplexity(
    model: RankLDAModel, documents: Sequence, *, key: Array, num_samples: int = 10
) -> float:
    """Average per-token ``sum log_phi[z, w]`` over uniformly random labels."""
    total, tokens = 0.0, 0
    for doc in documents:
        doc = jnp.asarray(doc, dtype=jnp.int32)
        key, sub = jax.random.split(key)
        z = jax.random.randint(sub, (num_samples, doc.size), 0, model.num_topics)
        total += float(model.log_phi[z, doc[None, :]].sum()) / num_samples
        tokens += int(doc.size)
    return total / max(tokens, 1)
