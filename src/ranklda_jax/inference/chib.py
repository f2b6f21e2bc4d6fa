from __future__ import annotations

"""ranklda_jax.inference.chib
=============================

Held-out document likelihood under a vanilla LDA model with the
Chib-style estimator of Murray & Salakhutdinov (2009):

.. math::

    \\log p(w) \\approx \\log p(w \\mid z^*) + \\log p(z^*)
        - \\log \\frac{1}{S} \\sum_{s=1}^{S} T(z^{(s)} \\to z^*).

``z*`` is the state reached after ``burn_in`` forward Gibbs sweeps.  The
``S`` chain states are generated around a uniformly drawn pivot: the pivot
is a backward sweep from ``z*``, later states are forward sweeps of their
predecessor and earlier states backward sweeps of their successor.

``transition`` picks which kernel is scored per sample:

``"forward"``
    the forward sweep from ``z_s`` onto ``z*`` (consistent for ``p(w)``);
``"reverse"``
    the reverse-order replay from ``z*`` onto ``z_s``.

All values are natural logarithms.
"""

import logging
import math
from dataclasses import dataclass
from functools import partial
from typing import List, NamedTuple, Sequence

import numpy as np
import jax
import jax.numpy as jnp
from jax import Array
from jax.scipy.special import logsumexp
from tqdm import tqdm

from ranklda_jax.models.lda import LDAModel, document_table, gibbs_sweep, log_joint, log_transition
from ranklda_jax.utils.errors import MalformedInputError

__all__ = [
    "ChibSettings",
    "ChibResult",
    "ChibEstimator",
    "chib_log_likelihood",
]

logger = logging.getLogger(__name__)

################################################################################
# Config dataclass #############################################################
################################################################################

@dataclass(slots=True)
class ChibSettings:
    """Hyper-parameters of the estimator."""

    num_samples: int = 100       # chain states S around the pivot
    burn_in: int = 1000          # forward sweeps before z* is fixed
    transition: str = "forward"  # "forward" | "reverse"
    show_progress: bool = True

    def __post_init__(self):
        if self.num_samples < 1:
            raise ValueError(f"num_samples must be >= 1, got {self.num_samples}")
        if self.burn_in < 0:
            raise ValueError(f"burn_in must be >= 0, got {self.burn_in}")
        if self.transition not in ("forward", "reverse"):
            raise ValueError(f"transition must be 'forward' or 'reverse', got {self.transition!r}")


class ChibResult(NamedTuple):
    per_doc: np.ndarray   # (N,) log p(w_d)
    total: float

################################################################################
# Kernel #######################################################################
################################################################################

@partial(jax.jit, static_argnames=("num_topics", "num_samples", "burn_in", "forward_transition"))
def _chib_document(
    key: Array,
    phi_w: Array,
    length: Array,
    alpha: float,
    *,
    num_topics: int,
    num_samples: int,
    burn_in: int,
    forward_transition: bool,
) -> Array:
    L = phi_w.shape[0]
    mask = jnp.arange(L) < length
    k_init, k_burn, k_pivot, k_ref, k_chain = jax.random.split(key, 5)

    z = jax.random.randint(k_init, (L,), 0, num_topics, dtype=jnp.int32)
    counts = jnp.zeros((num_topics,), dtype=jnp.int32).at[z].add(mask.astype(jnp.int32))

    def _burn(it, carry):
        return gibbs_sweep(jax.random.fold_in(k_burn, it), phi_w, *carry, length, alpha)

    z_star, c_star = jax.lax.fori_loop(0, burn_in, _burn, (z, counts))

    def _log_t(sample):
        z_s, c_s = sample
        if forward_transition:
            return log_transition(phi_w, z_s, z_star, c_s, length, alpha)
        return log_transition(phi_w, z_star, z_s, c_star, length, alpha, reverse=True)

    pivot = jax.random.randint(k_pivot, (), 0, num_samples)
    first = gibbs_sweep(k_ref, phi_w, z_star, c_star, length, alpha, reverse=True)
    num_forward = num_samples - 1 - pivot

    def _chain_step(carry, t):
        fwd, bwd = carry
        k = jax.random.fold_in(k_chain, t)

        def _go_forward(_):
            nxt = gibbs_sweep(k, phi_w, *fwd, length, alpha)
            return (nxt, bwd), nxt

        def _go_backward(_):
            nxt = gibbs_sweep(k, phi_w, *bwd, length, alpha, reverse=True)
            return (fwd, nxt), nxt

        carry, sample = jax.lax.cond(t < num_forward, _go_forward, _go_backward, None)
        return carry, _log_t(sample)

    _, log_ts = jax.lax.scan(_chain_step, (first, first), jnp.arange(num_samples - 1))
    log_ts = jnp.concatenate([_log_t(first)[None], log_ts])

    return (
        log_joint(phi_w, z_star, c_star, length, alpha)
        + jnp.log(num_samples)
        - logsumexp(log_ts)
    )

################################################################################
# Driver #######################################################################
################################################################################

def chib_log_likelihood(model: LDAModel, doc, settings: ChibSettings, *, key: Array) -> float:
    """Estimate ``log p(doc)`` for one held-out document."""
    doc = np.asarray(doc, dtype=np.int32)
    bad = doc[(doc < 0) | (doc >= model.vocab_size)]
    if bad.size:
        raise MalformedInputError(
            f"word id {int(bad[0])} is outside the model vocabulary of size {model.vocab_size}"
        )
    phi_w, length = document_table(model.phi, doc)
    if length == 0:
        return 0.0
    value = _chib_document(
        key, phi_w, jnp.asarray(length), model.alpha,
        num_topics=model.num_topics,
        num_samples=settings.num_samples,
        burn_in=settings.burn_in,
        forward_transition=settings.transition == "forward",
    )
    return float(value)


@dataclass
class ChibEstimator:
    """Scores a held-out corpus document by document.

    Parameters
    ----------
    model
        Vanilla LDA model (``phi`` already smoothed if desired).
    config
        :class:`ChibSettings`.
    """

    model: LDAModel
    config: ChibSettings

    def evaluate(self, documents: Sequence, *, key: Array) -> ChibResult:
        """Return per-document estimates and their sum."""
        keys = jax.random.split(key, max(len(documents), 1))
        iterator = enumerate(documents)
        if self.config.show_progress:
            iterator = tqdm(iterator, total=len(documents), desc="Chib")

        values: List[float] = []
        for d, doc in iterator:
            value = chib_log_likelihood(self.model, doc, self.config, key=keys[d])
            logger.debug("chib(docs[%d]) = %f", d, value)
            values.append(value)

        total = float(np.sum(values)) if values else 0.0
        logger.info("chib(docs[0:%d]) = %.2f (%.2f bits)", len(values), total, total / math.log(2.0))
        return ChibResult(np.asarray(values), total)
