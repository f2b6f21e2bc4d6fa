from __future__ import annotations

"""ranklda_jax.inference.optimize
=================================

Newton-Raphson for objectives whose Hessian is a diagonal plus a scalar
multiple of the all-ones matrix,

.. math::

    H = \\operatorname{diag}(h) + z\\,\\mathbf{1}\\mathbf{1}^\\top,

which is the structure of every Dirichlet-concentration likelihood.  The
Newton direction then has the Sherman-Morrison closed form

.. math::

    c = \\frac{\\sum_i g_i / h_i}{1/z + \\sum_i 1/h_i}, \\qquad
    x_i \\leftarrow x_i - \\frac{g_i - c}{h_i},

so each step costs O(K) instead of a K×K solve.
"""

import logging
import math
from typing import Callable, NamedTuple, Tuple

import jax.numpy as jnp
from jax import Array

from ranklda_jax.utils.errors import NonConvergenceError

__all__ = [
    "NewtonRaphson",
    "NewtonResult",
    "find_stationary_point",
]

logger = logging.getLogger(__name__)


class NewtonRaphson(NamedTuple):
    """Minimisation problem with a diagonal-plus-rank-one Hessian."""

    func: Callable[[Array], Array]
    grad: Callable[[Array], Array]
    special_hess: Callable[[Array], Tuple[Array, Array]]   # x -> (h, z)


class NewtonResult(NamedTuple):
    x: Array
    fun: float
    num_iters: int
    converged: bool


def find_stationary_point(
    problem: NewtonRaphson,
    x0: Array,
    *,
    tol: float = 1e-6,
    max_iter: int = 10_000,
) -> NewtonResult:
    """Iterate Newton steps until ``|f(x_t) - f(x_{t-1})| < tol`` or ``max_iter``.

    Raises
    ------
    NonConvergenceError
        If an iterate or the objective becomes non-finite.
    """
    x = jnp.asarray(x0, dtype=jnp.float64)
    prev = float(problem.func(x))

    for it in range(1, max_iter + 1):
        g = problem.grad(x)
        h, z = problem.special_hess(x)

        c = jnp.sum(g / h) / (1.0 / z + jnp.sum(1.0 / h))
        x = x - (g - c) / h

        cur = float(problem.func(x))
        if not (bool(jnp.all(jnp.isfinite(x))) and math.isfinite(cur)):
            raise NonConvergenceError(f"Newton-Raphson produced non-finite iterate at step {it}")
        if abs(prev - cur) < tol:
            return NewtonResult(x, cur, it, True)
        prev = cur

    logger.warning("Newton-Raphson stopped after %d iterations without converging", max_iter)
    return NewtonResult(x, prev, max_iter, False)
