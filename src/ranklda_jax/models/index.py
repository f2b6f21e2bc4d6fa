from __future__ import annotations

"""ranklda_jax.models.index
===========================

Sufficient statistics of a RankLDA working state and the annealed kernel
that mutates them.

``RankLDAState``
    =========== ============ ===========================================
    field       shape        notes
    =========== ============ ===========================================
    ``z``       ``(T,)``     topic per token
    ``n_dk``    ``(N, K)``   doc–topic counts
    ``n_kw``    ``(K, V)``   topic–word counts
    ``n_k``     ``(K,)``     topic totals
    ``margins`` ``(M,)``     cached ``nu · (p_x - p_y)`` per comparison
    =========== ============ ===========================================

``ComparisonIndex``
    Static, padded adjacency from each document to the comparisons that
    reference it.  ``scale`` is the signed length of the referenced side
    (``+len(x)`` / ``-len(y)``) so that moving one token of the document from
    topic ``cur`` to ``new`` shifts the margin by
    ``(nu[new] - nu[cur]) / scale``.  Self-comparisons never move and are
    left out of the adjacency.

Everything here is a pure function of its inputs so the sweep can be
``jit``-ed and driven by :mod:`ranklda_jax.inference.trainer`.
"""

from functools import partial
from typing import NamedTuple, Tuple

import numpy as np
import jax
import jax.numpy as jnp
from jax import Array

from ranklda_jax.models.ranklda import RankLDAModel, rank_margins
from ranklda_jax.utils.process import Corpus

__all__ = [
    "ComparisonIndex",
    "RankLDAState",
    "build_comparison_index",
    "build_state",
    "refresh_margins",
    "reassign_token",
    "metropolis_accept",
    "annealed_sweep",
]

################################################################################
# Containers ###################################################################
################################################################################

class ComparisonIndex(NamedTuple):
    """Per-document list of referencing comparisons (padded to ``S`` slots)."""

    comparisons: Array  # (M, 2)  comparisons covered by the cache
    lengths: Array      # (N,)    document lengths
    comp_ids: Array     # (N, S)  comparison id per slot
    scale: Array        # (N, S)  signed side length, 1.0 in padding
    mask: Array         # (N, S)  slot in use


class RankLDAState(NamedTuple):
    """Mutable bookkeeping owned by the training engine."""

    z: Array
    n_dk: Array
    n_kw: Array
    n_k: Array
    margins: Array


def build_comparison_index(corpus: Corpus, *, with_comparisons: bool = True) -> ComparisonIndex:
    """Host-side construction of the document → comparison adjacency.

    With ``with_comparisons=False`` the index is empty, which removes the
    ranking term from the sweep (used for burn-in).
    """
    N = corpus.num_docs
    lengths = np.asarray(corpus.doc_lengths)
    comps = np.asarray(corpus.comparisons) if with_comparisons else np.zeros((0, 2), dtype=np.int32)

    slots = [[] for _ in range(N)]
    for m, (x, y) in enumerate(comps):
        if x == y:
            continue
        slots[x].append((m, float(max(lengths[x], 1))))
        slots[y].append((m, -float(max(lengths[y], 1))))

    S = max((len(s) for s in slots), default=0)
    comp_ids = np.zeros((N, S), dtype=np.int32)
    scale = np.ones((N, S), dtype=np.float64)
    mask = np.zeros((N, S), dtype=bool)
    for d, entries in enumerate(slots):
        for s, (m, eta) in enumerate(entries):
            comp_ids[d, s], scale[d, s], mask[d, s] = m, eta, True

    return ComparisonIndex(
        jnp.asarray(comps, dtype=jnp.int32).reshape(-1, 2),
        jnp.asarray(lengths, dtype=jnp.int32),
        jnp.asarray(comp_ids),
        jnp.asarray(scale),
        jnp.asarray(mask),
    )


def build_state(model: RankLDAModel, corpus: Corpus, index: ComparisonIndex) -> RankLDAState:
    """Scan every token once and compute every cached margin from scratch."""
    K, V, D = model.num_topics, model.vocab_size, corpus.num_docs
    z = jnp.asarray(model.z, dtype=jnp.int32)

    n_dk = jnp.zeros((D, K), dtype=jnp.int32).at[corpus.doc_ids, z].add(1)
    n_kw = jnp.zeros((K, V), dtype=jnp.int32).at[z, corpus.word_ids].add(1)
    n_k  = jnp.zeros((K,), dtype=jnp.int32).at[z].add(1)

    margins = rank_margins(model.nu, n_dk, index.lengths, index.comparisons)
    return RankLDAState(z, n_dk, n_kw, n_k, margins)


def refresh_margins(state: RankLDAState, index: ComparisonIndex, nu: Array) -> RankLDAState:
    """Recompute the margin cache after ``nu`` changed."""
    return state._replace(margins=rank_margins(nu, state.n_dk, index.lengths, index.comparisons))

################################################################################
# Incremental update ###########################################################
################################################################################

def reassign_token(
    state: RankLDAState,
    index: ComparisonIndex,
    nu: Array,
    token: Array,
    doc: Array,
    word: Array,
    cur: Array,
    new: Array,
) -> RankLDAState:
    """Move one token from topic ``cur`` to ``new`` in O(1 + comparisons of doc)."""
    delta = jnp.where(index.mask[doc], (nu[new] - nu[cur]) / index.scale[doc], 0.0)
    return RankLDAState(
        z       = state.z.at[token].set(new),
        n_dk    = state.n_dk.at[doc, cur].add(-1).at[doc, new].add(1),
        n_kw    = state.n_kw.at[cur, word].add(-1).at[new, word].add(1),
        n_k     = state.n_k.at[cur].add(-1).at[new].add(1),
        margins = state.margins.at[index.comp_ids[doc]].add(delta),
    )

################################################################################
# Annealed kernel ##############################################################
################################################################################

def metropolis_accept(log_odds: Array, temperature: Array, u: Array) -> Array:
    """Accept when ``log_odds <= 0``, otherwise with probability ``exp(-log_odds / T)``."""
    return (log_odds <= 0.0) | (u < jnp.exp(-log_odds / temperature))


def _collapsed_log_odds(state, doc, word, cur, new, beta, alpha, alpha_sum):
    return (
        jnp.log(beta[cur] + state.n_dk[doc, cur] - 1) - jnp.log(beta[new] + state.n_dk[doc, new])
        + jnp.log(alpha + state.n_kw[cur, word] - 1) - jnp.log(alpha + state.n_kw[new, word])
        + jnp.log(state.n_k[new] + alpha_sum) - jnp.log(state.n_k[cur] - 1 + alpha_sum)
    )


def _ranking_log_odds(state, index, nu, doc, cur, new, keep):
    margins = state.margins[index.comp_ids[doc]]
    delta = (nu[new] - nu[cur]) / index.scale[doc]
    terms = jax.nn.log_sigmoid(margins) - jax.nn.log_sigmoid(margins + delta)
    return jnp.sum(jnp.where(index.mask[doc] & keep, terms, 0.0))


@partial(jax.jit, static_argnames=("num_topics",))
def annealed_sweep(
    state: RankLDAState,
    index: ComparisonIndex,
    word_ids: Array,
    doc_ids: Array,
    nu: Array,
    beta: Array,
    alpha: float,
    temperature: float,
    drop_rate: float,
    key: Array,
    *,
    num_topics: int,
) -> Tuple[RankLDAState, Array]:
    """One simulated-annealing pass over **all tokens** in corpus order.

    Returns the new state and the number of accepted moves.
    """
    alpha_sum = alpha * state.n_kw.shape[1]
    num_slots = index.mask.shape[1]

    def _update_token(carry, idx):
        st, k = carry
        k, k_new, k_drop, k_acc = jax.random.split(k, 4)
        doc, word, cur = doc_ids[idx], word_ids[idx], st.z[idx]
        new = jax.random.randint(k_new, (), 0, num_topics, dtype=jnp.int32)

        keep = jax.random.uniform(k_drop, (num_slots,)) >= drop_rate
        log_odds = (
            _collapsed_log_odds(st, doc, word, cur, new, beta, alpha, alpha_sum)
            + _ranking_log_odds(st, index, nu, doc, cur, new, keep)
        )
        accept = (new != cur) & metropolis_accept(log_odds, temperature, jax.random.uniform(k_acc))

        st = jax.lax.cond(
            accept,
            lambda s: reassign_token(s, index, nu, idx, doc, word, cur, new),
            lambda s: s,
            st,
        )
        return (st, k), accept

    (state, _), accepted = jax.lax.scan(_update_token, (state, key), jnp.arange(word_ids.shape[0]))
    return state, accepted.sum()
