import cvxpy as cp
import numpy as np
from typing import Literal, List, Dict, Any


class OptHelpers:
    """
    Collection of helper functions for building objectives and constraints
    in synthetic control and balancing weight optimization problems.

    These helpers do not solve optimization problems themselves.
    They return CVXPY expressions or constraint lists to be assembled
    by a higher-level solver (e.g., Opt2.SCopt).
    """

    # =======================
    # Loss helpers
    # =======================

    @staticmethod
    def squared_loss(
        y: np.ndarray,
        X: np.ndarray,
        w: cp.Variable,
        scale: bool = False,
    ) -> cp.Expression:
        """
        Construct a squared-error loss term.

        Parameters
        ----------
        y : np.ndarray
            Target vector of shape (d,).
        X : np.ndarray
            Donor matrix of shape (d, J).
        w : cp.Variable
            Weight vector of shape (J,).
        scale : bool, default False
            If True, divide the loss by the number of features d.

        Returns
        -------
        cp.Expression
            A CVXPY expression representing the (scaled) squared loss.
        """
        loss = cp.sum_squares(y - X @ w)
        return loss / y.shape[0] if scale else loss

    @staticmethod
    def log_partition(Z0: np.ndarray, lam: cp.Variable) -> cp.Expression:
        """
        Log normalizer of the exponential tilting weights, log sum_j exp(Z0_j' lam).

        Parameters
        ----------
        Z0 : np.ndarray
            Control feature matrix of shape (d, J).
        lam : cp.Variable
            Dual balance coefficients of shape (d,).
        """
        return cp.log_sum_exp(Z0.T @ lam)

    # =======================
    # Penalty helpers
    # =======================

    @staticmethod
    def dual_norm_penalty(
        lam: cp.Variable,
        eps: float,
        norm: Literal["l2", "linf"] = "l2",
    ) -> cp.Expression:
        """
        Penalty eps * ||lam||_* where ||.||_* is the dual of the imbalance norm.

        An L-infinity bound on the imbalance becomes an L1 penalty on the dual
        coefficients; an L2 bound stays L2.
        """
        if norm == "linf":
            return eps * cp.norm1(lam)
        if norm == "l2":
            return eps * cp.norm(lam, 2)
        raise ValueError(f"Unknown imbalance norm: {norm}")

    # =======================
    # Constraint helpers
    # =======================

    @staticmethod
    def simplex_constraints(w: cp.Variable) -> List:
        """Constraints enforcing w >= 0 and sum(w) == 1."""
        return [w >= 0, cp.sum(w) == 1]

    @staticmethod
    def affine_constraints(w: cp.Variable) -> List:
        """Constraint enforcing sum(w) == 1."""
        return [cp.sum(w) == 1]

    @staticmethod
    def nonneg_constraints(w: cp.Variable) -> List:
        """Constraint enforcing w >= 0."""
        return [w >= 0]

    @staticmethod
    def build_constraints(
            w: cp.Variable,
            constraint_type: Literal["unconstrained", "simplex", "affine", "nonneg"] = "simplex",
    ) -> List:
        if constraint_type == "simplex":
            return OptHelpers.simplex_constraints(w)
        if constraint_type == "affine":
            return OptHelpers.affine_constraints(w)
        if constraint_type == "nonneg":
            return OptHelpers.nonneg_constraints(w)
        if constraint_type == "unconstrained":
            return []
        raise ValueError(f"Unknown constraint_type: {constraint_type}")

    # =======================
    # Solver helpers
    # =======================

    @staticmethod
    def get_solver_opts(solver: str, tol_abs: float = 1e-8, tol_rel: float = 1e-8) -> Dict[str, Any]:
        """
        Translate generic tolerances into the keyword names each solver expects.

        Solvers without a known mapping get no extra options.
        """
        solver = solver.upper()
        if solver == "CLARABEL":
            return {"tol_gap_abs": tol_abs, "tol_gap_rel": tol_rel}
        if solver == "ECOS":
            return {"abstol": tol_abs, "reltol": tol_rel}
        if solver == "OSQP":
            return {"eps_abs": tol_abs, "eps_rel": tol_rel}
        if solver == "SCS":
            return {"eps": max(tol_abs, tol_rel)}
        return {}
