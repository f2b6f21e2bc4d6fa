from __future__ import annotations

"""Chib-style held-out likelihood against exact enumeration."""

import itertools

import numpy as np
import jax
import jax.numpy as jnp
import pytest
from scipy.special import gammaln, logsumexp

from ranklda_jax.inference.chib import ChibEstimator, ChibSettings, chib_log_likelihood
from ranklda_jax.models.lda import LDAModel, document_table, gibbs_sweep, log_joint, log_transition
from ranklda_jax.utils.errors import MalformedInputError


PHI = np.array([
    [0.40, 0.30, 0.15, 0.10, 0.05],
    [0.05, 0.10, 0.20, 0.25, 0.40],
])


def _exact_log_evidence(phi, doc, alpha):
    K, L = phi.shape[0], len(doc)
    terms = []
    for z in itertools.product(range(K), repeat=L):
        counts = np.bincount(z, minlength=K)
        log_pz = gammaln(K * alpha) - gammaln(K * alpha + L) + (gammaln(counts + alpha) - gammaln(alpha)).sum()
        log_pwz = sum(np.log(phi[k, w]) for k, w in zip(z, doc))
        terms.append(log_pz + log_pwz)
    return logsumexp(terms)


def test_settings_validation():
    with pytest.raises(ValueError):
        ChibSettings(num_samples=0)
    with pytest.raises(ValueError):
        ChibSettings(transition="sideways")


def test_transition_probabilities_normalise():
    """Summing T(z -> z') over every z' of a 3-token document gives 1."""
    doc = [0, 4, 2]
    phi_w, length = document_table(jnp.asarray(PHI), doc)
    z_from = jnp.zeros(phi_w.shape[0], dtype=jnp.int32).at[1].set(1)
    counts = jnp.array([2, 1], dtype=jnp.int32)

    for reverse in (False, True):
        total = 0.0
        for z in itertools.product(range(2), repeat=3):
            z_to = jnp.zeros(phi_w.shape[0], dtype=jnp.int32).at[:3].set(jnp.asarray(z))
            total += float(jnp.exp(log_transition(phi_w, z_from, z_to, counts, length, 0.5, reverse=reverse)))
        assert total == pytest.approx(1.0, abs=1e-10)


def test_log_joint_matches_direct_formula():
    doc = [1, 1, 3]
    phi_w, length = document_table(jnp.asarray(PHI), doc)
    z = jnp.zeros(phi_w.shape[0], dtype=jnp.int32).at[2].set(1)
    counts = jnp.array([2, 1], dtype=jnp.int32)

    expected = (
        gammaln(2 * 0.7) - gammaln(2 * 0.7 + 3)
        + gammaln(2 + 0.7) + gammaln(1 + 0.7) - 2 * gammaln(0.7)
        + np.log(PHI[0, 1]) * 2 + np.log(PHI[1, 3])
    )
    assert float(log_joint(phi_w, z, counts, length, 0.7)) == pytest.approx(expected, rel=1e-10)


@pytest.mark.filterwarnings("error::FutureWarning")
def test_gibbs_sweep_keeps_counts():
    doc = [0, 1, 2, 3, 4, 0]
    phi_w, length = document_table(jnp.asarray(PHI), doc)
    z = jnp.zeros(phi_w.shape[0], dtype=jnp.int32)
    counts = jnp.array([6, 0], dtype=jnp.int32)

    for reverse in (False, True):
        z2, c2 = gibbs_sweep(jax.random.PRNGKey(0), phi_w, z, counts, length, 1.0, reverse=reverse)
        assert z2.dtype == z.dtype
        np.testing.assert_array_equal(c2, np.bincount(np.asarray(z2[:6]), minlength=2))
        np.testing.assert_array_equal(z2[6:], 0)


def test_forward_estimate_close_to_exact():
    model = LDAModel(jnp.asarray(PHI), alpha=1.0)
    doc = [0, 1, 4, 3, 2]
    exact = _exact_log_evidence(PHI, doc, 1.0)

    settings = ChibSettings(num_samples=200, burn_in=100, transition="forward", show_progress=False)
    estimates = [chib_log_likelihood(model, doc, settings, key=jax.random.PRNGKey(s)) for s in range(5)]

    assert np.mean(estimates) == pytest.approx(exact, abs=0.1)


def test_reverse_estimate_is_finite():
    model = LDAModel(jnp.asarray(PHI), alpha=1.0)
    settings = ChibSettings(num_samples=10, burn_in=10, transition="reverse", show_progress=False)
    value = chib_log_likelihood(model, [0, 1, 4], settings, key=jax.random.PRNGKey(0))
    assert np.isfinite(value)


def test_evaluate_sums_documents():
    model = LDAModel(jnp.asarray(PHI), alpha=1.0).smoothed(0.01)
    np.testing.assert_allclose(np.asarray(model.phi).sum(axis=1), 1.0)

    settings = ChibSettings(num_samples=10, burn_in=10, show_progress=False)
    result = ChibEstimator(model, settings).evaluate([[0, 1], [], [4, 4, 2]], key=jax.random.PRNGKey(0))

    assert result.per_doc.shape == (3,)
    assert result.per_doc[1] == 0.0
    assert result.total == pytest.approx(result.per_doc.sum())
    assert np.all(np.isfinite(result.per_doc))


def test_unknown_word_id_rejected():
    model = LDAModel(jnp.asarray(PHI), alpha=1.0)
    settings = ChibSettings(num_samples=5, burn_in=5, show_progress=False)

    with pytest.raises(MalformedInputError, match="999"):
        chib_log_likelihood(model, [0, 999], settings, key=jax.random.PRNGKey(0))
    with pytest.raises(MalformedInputError):
        ChibEstimator(model, settings).evaluate([[0, 1], [5]], key=jax.random.PRNGKey(0))


def test_from_log_phi():
    model = LDAModel.from_log_phi(np.log(PHI * 3.0))
    np.testing.assert_allclose(model.phi, PHI)
    assert (model.num_topics, model.vocab_size) == (2, 5)
