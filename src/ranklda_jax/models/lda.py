from __future__ import annotations

"""ranklda_jax.models.lda
=========================

Vanilla Latent Dirichlet Allocation with a *fixed* topic–word matrix, as
needed to score held-out documents.  Given ``phi`` the only latent
variables of a document are its token labels, and collapsing the
document's topic proportions gives the conditional

.. math::

    p(z_i = k \\mid z_{-i}, w) \\propto \\phi_{k, w_i}\\,(n_{-i,k} + \\alpha).

----------------------------------------------------------------------
Data structures
----------------------------------------------------------------------

``LDAModel``
    ``phi (K, V)`` row-stochastic topic–word matrix and the symmetric
    doc–topic concentration ``alpha``.

Document table
    Kernels work on one document at a time, laid out as ``phi_w (L, K)``
    with ``phi_w[i] = phi[:, w_i]``.  ``L`` is a padded bucket length and
    the true length is passed separately, so documents of similar size
    share one compiled kernel.

----------------------------------------------------------------------
Key API
----------------------------------------------------------------------

* :func:`gibbs_sweep` – one forward- or backward-ordered collapsed sweep.
* :func:`log_transition` – exact log-probability that one sweep maps one
  labelling onto another.
* :func:`log_joint` – ``log p(w | z) + log p(z)`` in closed form.
"""

from dataclasses import dataclass
from typing import Tuple

import numpy as np
import jax
import jax.numpy as jnp
from jax import Array
from jax.scipy.special import gammaln

__all__ = [
    "LDAModel",
    "bucket_length",
    "document_table",
    "gibbs_sweep",
    "log_transition",
    "log_joint",
]

################################################################################
# Containers ###################################################################
################################################################################

@dataclass(frozen=True, eq=False)
class LDAModel:
    """Fixed parameters of a vanilla LDA model."""

    phi: Array          # (K, V)
    alpha: float = 1.0  # symmetric Dir_K(alpha)

    @property
    def num_topics(self) -> int:
        return int(self.phi.shape[0])

    @property
    def vocab_size(self) -> int:
        return int(self.phi.shape[1])

    @classmethod
    def from_log_phi(cls, log_phi: Array, alpha: float = 1.0) -> "LDAModel":
        phi = jnp.exp(jnp.asarray(log_phi))
        return cls(phi / phi.sum(axis=1, keepdims=True), alpha)

    def smoothed(self, smoothing: float) -> "LDAModel":
        """Add ``smoothing`` to every entry and renormalise each topic."""
        phi = self.phi + smoothing
        return LDAModel(phi / phi.sum(axis=1, keepdims=True), self.alpha)


def bucket_length(n: int, minimum: int = 8) -> int:
    """Smallest power of two ``>= n`` (at least ``minimum``)."""
    size = minimum
    while size < n:
        size *= 2
    return size


def document_table(phi: Array, doc) -> Tuple[Array, int]:
    """``phi[:, doc].T`` padded to :func:`bucket_length` rows."""
    doc = np.asarray(doc, dtype=np.int32)
    padded = np.zeros(bucket_length(doc.size), dtype=np.int32)
    padded[:doc.size] = doc
    return jnp.asarray(phi)[:, padded].T, int(doc.size)

################################################################################
# Collapsed Gibbs kernels ######################################################
################################################################################

def _position(t, length, reverse: bool):
    return length - 1 - t if reverse else t


def gibbs_sweep(
    key: Array,
    phi_w: Array,
    z: Array,
    counts: Array,
    length: Array,
    alpha: float,
    *,
    reverse: bool = False,
) -> Tuple[Array, Array]:
    """Resample every token once, in document order or in reverse order."""

    def _update_token(t, carry):
        z, counts = carry
        i = _position(t, length, reverse)
        counts = counts.at[z[i]].add(-1)
        probs = phi_w[i] * (counts + alpha)
        k_new = jax.random.categorical(jax.random.fold_in(key, t), jnp.log(probs)).astype(z.dtype)
        return z.at[i].set(k_new), counts.at[k_new].add(1)

    return jax.lax.fori_loop(0, length, _update_token, (z, counts))


def log_transition(
    phi_w: Array,
    z_from: Array,
    z_to: Array,
    counts_from: Array,
    length: Array,
    alpha: float,
    *,
    reverse: bool = False,
) -> Array:
    """``log T(z_from -> z_to)`` for one sweep in the given order.

    Replays the sweep token by token: drop the outgoing label, score the
    normalised conditional of the incoming label, insert it.
    """

    def _replay_token(t, carry):
        counts, acc = carry
        i = _position(t, length, reverse)
        counts = counts.at[z_from[i]].add(-1)
        probs = phi_w[i] * (counts + alpha)
        acc = acc + jnp.log(probs[z_to[i]]) - jnp.log(probs.sum())
        return counts.at[z_to[i]].add(1), acc

    _, acc = jax.lax.fori_loop(0, length, _replay_token, (counts_from, jnp.zeros(())))
    return acc


def log_joint(phi_w: Array, z: Array, counts: Array, length: Array, alpha: float) -> Array:
    """``log p(w | z) + log p(z)`` with the topic proportions integrated out."""
    K = counts.shape[0]
    mask = jnp.arange(z.shape[0]) < length
    log_pwz = jnp.where(mask, jnp.log(phi_w[jnp.arange(z.shape[0]), z]), 0.0).sum()
    log_pz = (
        gammaln(K * alpha)
        - gammaln(K * alpha + length)
        + (gammaln(counts + alpha) - gammaln(alpha)).sum()
    )
    return log_pwz + log_pz
