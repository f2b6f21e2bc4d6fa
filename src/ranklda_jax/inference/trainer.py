from __future__ import annotations

"""ranklda_jax.inference.trainer
================================

Annealed coordinate ascent for RankLDA.  Every outer iteration runs, in
order,

1. ``optimize_nu``   – ranking weights, concave MAP problem (L-BFGS);
2. ``optimize_z``    – one simulated-annealing sweep over every token;
3. ``optimize_phi``  – smoothed multinomial MLE of the topic–word matrix;
4. ``optimize_beta`` – Dirichlet concentrations by Newton-Raphson (optional),

then multiplies the temperature by ``global_cooling_rate``.  An optional
burn-in repeats steps 2–3 without the ranking term before the main loop,
and a last ``optimize_nu`` follows the final iteration.

The trainer owns the working state (:class:`RankLDAState`) and treats the
:class:`RankLDAModel` it was given as an immutable value, replacing it
whenever a parameter block changes.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import numpy as np
import jax
import jax.numpy as jnp
from jax import Array
from scipy.optimize import minimize
from tqdm import tqdm

from ranklda_jax.inference.optimize import NewtonRaphson, find_stationary_point
from ranklda_jax.models.index import (
    ComparisonIndex,
    RankLDAState,
    annealed_sweep,
    build_comparison_index,
    build_state,
    refresh_margins,
)
from ranklda_jax.models.ranklda import (
    RankLDAModel,
    beta_gradient,
    beta_hessian_parts,
    beta_objective,
    log_likelihood,
    log_likelihood_topics,
    nu_gradient,
    nu_objective,
    topic_fractions,
    topic_word_log_dist,
)
from ranklda_jax.utils.errors import NonConvergenceError
from ranklda_jax.utils.io import write_model
from ranklda_jax.utils.process import Corpus

__all__ = [
    "OptSettings",
    "RankLDATrainer",
]

logger = logging.getLogger(__name__)

################################################################################
# Config dataclass #############################################################
################################################################################

@dataclass(slots=True)
class OptSettings:
    """Hyper-parameters of a training run."""

    num_iters: int = 15                 # outer iterations
    num_sa_iters: int = 50              # accepted for compatibility, not used by the single sweep
    beta_opt: bool = False
    burn_in: int = 0                    # sweeps without the ranking term
    init_temp: float = 1.0
    local_cooling_rate: float = 1.0     # accepted for compatibility, not used by the single sweep
    global_cooling_rate: float = 1.0
    drop_rate: float = 0.0              # probability of skipping a comparison term
    nu_max_iter: int = 1000
    show_progress: bool = True

    def __post_init__(self):
        if self.num_iters < 0:
            raise ValueError(f"num_iters must be >= 0, got {self.num_iters}")
        if self.burn_in < 0:
            raise ValueError(f"burn_in must be >= 0, got {self.burn_in}")
        if self.init_temp <= 0:
            raise ValueError(f"init_temp must be > 0, got {self.init_temp}")
        if self.global_cooling_rate <= 0:
            raise ValueError(f"global_cooling_rate must be > 0, got {self.global_cooling_rate}")
        if not 0.0 <= self.drop_rate <= 1.0:
            raise ValueError(f"drop_rate must lie in [0, 1], got {self.drop_rate}")
        if self.nu_max_iter <= 0:
            raise ValueError(f"nu_max_iter must be > 0, got {self.nu_max_iter}")

################################################################################
# Trainer ######################################################################
################################################################################

@dataclass
class RankLDATrainer:
    """Drives the coordinate-ascent loop.

    Parameters
    ----------
    corpus
        Training documents and comparisons.
    model
        Initial model (e.g. :func:`random_model`); its ``z`` must match
        ``corpus``.
    config
        :class:`OptSettings`.
    key
        JAX PRNG key consumed by the annealed sweeps.
    model_dir
        If given, ``NN-model.txt`` is written after every iteration and the
        joint log-likelihood appended to ``likelihood.txt``.
    """

    corpus: Corpus
    model: RankLDAModel
    config: OptSettings
    key: Array
    model_dir: Optional[Path] = None

    history: List[dict] = field(init=False, default_factory=list)
    _index: ComparisonIndex = field(init=False, repr=False)
    _state: RankLDAState = field(init=False, repr=False)

    def __post_init__(self):
        self.model.check_corpus(self.corpus)
        if self.model_dir is not None:
            self.model_dir = Path(self.model_dir)
            self.model_dir.mkdir(parents=True, exist_ok=True)
        self._index = build_comparison_index(self.corpus)
        self._state = build_state(self.model, self.corpus, self._index)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def state(self) -> RankLDAState:
        return self._state

    def current_model(self) -> RankLDAModel:
        """The model with the working labels folded back in."""
        return self.model.replace(z=self._state.z)

    def run(self) -> RankLDAModel:
        """Execute burn-in and the outer loop; return the trained model."""
        if self.model_dir is not None:
            (self.model_dir / "likelihood.txt").write_text("")
        if self.config.burn_in > 0:
            self.burn_in(self.config.burn_in)

        iterator = range(self.config.num_iters)
        if self.config.show_progress:
            iterator = tqdm(iterator, desc="RankLDA")

        temperature = self.config.init_temp
        for it in iterator:
            logger.info("starting iteration %d (T = %g)", it, temperature)
            self.optimize_nu()
            accepted = self.optimize_z(temperature)
            self.optimize_phi()
            if self.config.beta_opt:
                self.optimize_beta()

            ll = self.log_likelihood()
            logger.info("likelihood = %f", ll)
            self.history.append(
                {"iteration": it, "temperature": temperature, "accepted": accepted, "log_likelihood": ll}
            )
            if self.model_dir is not None:
                self._snapshot(it, ll)
            temperature *= self.config.global_cooling_rate

        self.optimize_nu()
        return self.current_model()

    def burn_in(self, num_sweeps: int) -> None:
        """Sweeps at temperature 1 with the ranking term switched off."""
        plain_index = build_comparison_index(self.corpus, with_comparisons=False)
        plain = build_state(self.model, self.corpus, plain_index)
        logger.info("likelihood(topics) = %f", self._topic_likelihood(plain))
        for _ in range(num_sweeps):
            plain, _ = self._sweep(plain, plain_index, 1.0)
            self.model = self.model.replace(log_phi=self._phi_from(plain.z))
            logger.info("likelihood(topics) = %f", self._topic_likelihood(plain))

        self.model = self.model.replace(z=plain.z)
        self._state = build_state(self.model, self.corpus, self._index)

    def optimize_nu(self) -> None:
        """Maximise the ranking log-posterior in ``nu``; refresh the margin cache."""
        frac = topic_fractions(self._state.n_dk, self._index.lengths)
        comps = self._index.comparisons
        diffs = frac[comps[:, 0]] - frac[comps[:, 1]]
        sigma2 = self.model.sigma2

        def fun(x):
            x = jnp.asarray(x)
            return float(nu_objective(x, diffs, sigma2)), np.asarray(nu_gradient(x, diffs, sigma2))

        logger.debug("optimizing Obj(nu) = %g", fun(self.model.nu)[0])
        result = minimize(
            fun,
            np.asarray(self.model.nu),
            jac=True,
            method="L-BFGS-B",
            options={"maxiter": self.config.nu_max_iter},
        )
        if not result.success:
            logger.warning("nu optimisation did not converge: %s", result.message)

        nu = jnp.asarray(result.x)
        self.model = self.model.replace(nu=nu)
        self._state = refresh_margins(self._state, self._index, nu)
        logger.debug("           Obj(nu) = %g", float(result.fun))

    def optimize_z(self, temperature: float) -> int:
        """One annealed sweep over every token; returns the accepted move count."""
        self._state, accepted = self._sweep(self._state, self._index, temperature)
        logger.debug("optimizing Obj(z): %d moves accepted at T = %g", accepted, temperature)
        return accepted

    def optimize_phi(self) -> None:
        self.model = self.model.replace(log_phi=self._phi_from(self._state.z))

    def optimize_beta(self) -> None:
        """Fit the doc–topic concentrations with Newton-Raphson from ``1e-6``."""
        n_dk, lengths = self._state.n_dk, self._index.lengths
        problem = NewtonRaphson(
            func=lambda b: beta_objective(b, n_dk, lengths),
            grad=lambda b: beta_gradient(b, n_dk, lengths),
            special_hess=lambda b: beta_hessian_parts(b, n_dk, lengths),
        )
        x0 = jnp.full((self.model.num_topics,), 1e-6)
        logger.debug("optimizing Obj(beta) = %g", float(problem.func(x0)))
        result = find_stationary_point(problem, x0)
        if not bool(jnp.all(result.x > 0)):
            raise NonConvergenceError(f"beta left the positive orthant: {np.asarray(result.x)}")
        self.model = self.model.replace(beta=result.x)
        logger.debug("           Obj(beta) = %g after %d steps", result.fun, result.num_iters)

    def log_likelihood(self) -> float:
        """Joint diagnostic objective of the current state (never gates moves)."""
        st = self._state
        return float(
            log_likelihood(
                st.n_dk, st.n_kw, self._index.lengths, self.corpus.comparisons,
                self.model.beta, self.model.alpha, self.model.nu, self.model.sigma2,
            )
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _sweep(self, state: RankLDAState, index: ComparisonIndex, temperature: float):
        self.key, sub = jax.random.split(self.key)
        state, accepted = annealed_sweep(
            state, index, self.corpus.word_ids, self.corpus.doc_ids,
            self.model.nu, self.model.beta, self.model.alpha,
            temperature, self.config.drop_rate, sub,
            num_topics=self.model.num_topics,
        )
        return state, int(accepted)

    def _phi_from(self, z: Array) -> Array:
        return topic_word_log_dist(
            z, self.corpus.word_ids, self.model.num_topics, self.model.vocab_size, self.model.alpha
        )

    def _topic_likelihood(self, state: RankLDAState) -> float:
        return float(log_likelihood_topics(state.n_dk, state.n_kw, self.model.beta, self.model.alpha))

    def _snapshot(self, it: int, ll: float) -> None:
        write_model(self.current_model(), self.model_dir / f"{it:02d}-model.txt")
        with open(self.model_dir / "likelihood.txt", "a") as fh:
            fh.write(f"{ll}\n")
