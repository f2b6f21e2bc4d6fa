from __future__ import annotations

"""Sufficient statistics stay consistent with a full rebuild."""

import numpy as np
import jax
import jax.numpy as jnp

from ranklda_jax.models.index import (
    annealed_sweep,
    build_comparison_index,
    build_state,
    metropolis_accept,
    reassign_token,
)
from ranklda_jax.models.ranklda import InitSettings, random_model, rank_margins
from ranklda_jax.utils.process import corpus_from_documents


def _toy():
    docs = [[0, 1, 2, 2], [3, 3, 1], [4, 0], [], [2, 4, 4, 1, 0]]
    comps = [(0, 1), (1, 2), (4, 0), (2, 4), (0, 0), (3, 1)]
    corpus = corpus_from_documents(docs, comps)
    model = random_model(corpus, InitSettings(num_topics=3, alpha=0.1), key=jax.random.PRNGKey(3))
    return corpus, model


def _assert_same_state(a, b):
    np.testing.assert_array_equal(a.z, b.z)
    np.testing.assert_array_equal(a.n_dk, b.n_dk)
    np.testing.assert_array_equal(a.n_kw, b.n_kw)
    np.testing.assert_array_equal(a.n_k, b.n_k)
    np.testing.assert_allclose(a.margins, b.margins, rtol=0, atol=1e-12)


def test_index_layout():
    corpus, _ = _toy()
    index = build_comparison_index(corpus)

    # self-comparison (0, 0) is left out
    assert int(index.mask.sum()) == 2 * 5
    assert index.mask.shape[1] == 3   # document 1 is referenced three times

    plain = build_comparison_index(corpus, with_comparisons=False)
    assert plain.mask.shape == (corpus.num_docs, 0)
    assert plain.comparisons.shape == (0, 2)


def test_build_state_margins():
    corpus, model = _toy()
    index = build_comparison_index(corpus)
    state = build_state(model, corpus, index)

    lengths = np.maximum(np.asarray(corpus.doc_lengths), 1)
    frac = np.asarray(state.n_dk) / lengths[:, None]
    comps = np.asarray(corpus.comparisons)
    expected = (frac[comps[:, 0]] - frac[comps[:, 1]]) @ np.asarray(model.nu)

    np.testing.assert_allclose(state.margins, expected, atol=1e-12)
    assert int(state.n_k.sum()) == corpus.num_tokens
    assert float(state.margins[4]) == 0.0


def test_reassign_matches_rebuild():
    corpus, model = _toy()
    index = build_comparison_index(corpus)
    state = build_state(model, corpus, index)

    z = np.asarray(model.z).copy()
    moves = [(0, 2), (3, 0), (5, 1), (9, 2), (0, 1), (7, 0)]
    for token, new in moves:
        cur = int(state.z[token])
        state = reassign_token(
            state, index, model.nu, token,
            corpus.doc_ids[token], corpus.word_ids[token], jnp.int32(cur), jnp.int32(new),
        )
        z[token] = new

    rebuilt = build_state(model.replace(z=jnp.asarray(z)), corpus, index)
    _assert_same_state(state, rebuilt)


def test_sweep_matches_rebuild():
    corpus, model = _toy()
    index = build_comparison_index(corpus)
    state = build_state(model, corpus, index)

    for seed in range(3):
        state, accepted = annealed_sweep(
            state, index, corpus.word_ids, corpus.doc_ids,
            model.nu, model.beta, model.alpha, 50.0, 0.3, jax.random.PRNGKey(seed),
            num_topics=model.num_topics,
        )
        assert 0 <= int(accepted) <= corpus.num_tokens

    rebuilt = build_state(model.replace(z=state.z), corpus, index)
    _assert_same_state(state, rebuilt)
    np.testing.assert_allclose(
        state.margins,
        rank_margins(model.nu, state.n_dk, corpus.doc_lengths, corpus.comparisons),
        atol=1e-12,
    )


def test_hot_sweep_moves_tokens():
    corpus, model = _toy()
    index = build_comparison_index(corpus)
    state = build_state(model, corpus, index)

    new_state, accepted = annealed_sweep(
        state, index, corpus.word_ids, corpus.doc_ids,
        model.nu, model.beta, model.alpha, 1e12, 0.0, jax.random.PRNGKey(0),
        num_topics=model.num_topics,
    )
    changed = int((np.asarray(new_state.z) != np.asarray(state.z)).sum())
    assert int(accepted) == changed
    assert changed > 0


def test_metropolis_rule():
    # non-positive log-odds: always accepted
    assert bool(metropolis_accept(jnp.asarray(-2.0), 1.0, jnp.asarray(0.999)))
    assert bool(metropolis_accept(jnp.asarray(0.0), 1e-12, jnp.asarray(0.999)))
    # cold: uphill moves rejected
    assert not bool(metropolis_accept(jnp.asarray(1.0), 1e-12, jnp.asarray(0.5)))
    # hot: uphill moves accepted
    assert bool(metropolis_accept(jnp.asarray(1.0), 1e12, jnp.asarray(0.5)))


def test_margins_are_full_precision():
    corpus, model = _toy()
    state = build_state(model, corpus, build_comparison_index(corpus))

    lengths = np.maximum(np.asarray(corpus.doc_lengths), 1)
    frac = np.asarray(state.n_dk) / lengths[:, None]
    comps = np.asarray(corpus.comparisons)
    expected = ((frac[comps[:, 0]] - frac[comps[:, 1]]) * np.asarray(model.nu)).sum(axis=1)

    margins = rank_margins(model.nu, state.n_dk, corpus.doc_lengths, corpus.comparisons)
    np.testing.assert_allclose(margins, expected, rtol=0, atol=1e-15)
    np.testing.assert_allclose(state.margins, expected, rtol=0, atol=1e-15)
