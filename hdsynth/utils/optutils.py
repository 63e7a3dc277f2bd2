# optutils.py

import logging
import cvxpy as cp
import numpy as np
from typing import Literal, Dict, Any
from .opthelpers import OptHelpers

LOGGER = logging.getLogger(__name__)


class Opt2:
    @staticmethod
    def SCopt(
        y: np.ndarray,
        X: np.ndarray,
        *,
        constraint_type: Literal["unconstrained", "simplex", "affine", "nonneg"] = "simplex",
        solver: str = "CLARABEL",
        tol_abs: float = 1e-8,
        tol_rel: float = 1e-8,
        solve: bool = True,
    ) -> Dict[str, Any]:
        """
        Synthetic Control Optimization (SCopt).

        Minimizes ||y - X w||^2 subject to the structural weight constraints.
        The returned dict carries the problem, its constraints (so callers can
        read dual values), the weights and the fitted target.
        """
        J = X.shape[1]
        w = cp.Variable(J)

        objective = cp.Minimize(OptHelpers.squared_loss(y, X, w))
        constraints = OptHelpers.build_constraints(w, constraint_type=constraint_type)
        problem = cp.Problem(objective, constraints)

        if solve:
            solver_opts = OptHelpers.get_solver_opts(solver, tol_abs=tol_abs, tol_rel=tol_rel)
            problem.solve(solver=solver, verbose=False, **solver_opts)
            LOGGER.debug("SCopt finished with status %s and value %s", problem.status, problem.value)
            weights = w.value
            predictions = X @ weights if weights is not None else None
        else:
            weights = None
            predictions = None

        return {
            "problem": problem,
            "constraints": constraints,
            "weights": {"w": weights},
            "predictions": predictions,
        }

    @staticmethod
    def entropy_dual(
        Z0: np.ndarray,
        Z1: np.ndarray,
        *,
        eps: float,
        norm: Literal["l2", "linf"] = "l2",
        solver: str = "CLARABEL",
        solve: bool = True,
    ) -> Dict[str, Any]:
        """
        Dual of maximum entropy balancing with a norm-ball imbalance constraint.

        Solves min_lam log sum_j exp(Z0_j' lam) - Z1' lam + eps * ||lam||_*,
        whose minimizer yields weights w = softmax(Z0' lam) satisfying
        ||Z0 w - Z1|| <= eps. An unbounded dual means the primal balance
        constraint cannot be met.
        """
        lam = cp.Variable(Z0.shape[0])
        objective = cp.Minimize(
            OptHelpers.log_partition(Z0, lam)
            - Z1 @ lam
            + OptHelpers.dual_norm_penalty(lam, eps, norm)
        )
        problem = cp.Problem(objective)

        if solve:
            problem.solve(solver=solver, verbose=False)
            LOGGER.debug(
                "entropy_dual (eps=%s, norm=%s) finished with status %s",
                eps, norm, problem.status,
            )

        return {
            "problem": problem,
            "dual": lam.value if solve else None,
        }
