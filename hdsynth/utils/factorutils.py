"""Interactive fixed effects (latent factor) model for panel outcomes.

Control outcomes are decomposed as

    Y_it = mu + alpha_i + xi_t + F_t' lambda_i + e_it

by alternating between the additive effects and a truncated SVD of what the
additive part leaves over. Treated units get their intercept and loadings from
a regression of their pre-period outcomes on the estimated factors, and the
number of factors is picked by leave-one-period-out prediction error on the
treated pre-period.
"""

import logging
import warnings
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

import numpy as np

from hdsynth.exceptions import HDSynthDataError, HDSynthEstimationError

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class FactorModelFit:
    """Estimates of the interactive fixed effects model.

    ``residuals``, ``fitted_co`` and ``Y_co`` are (T x N_co); ``Y_ct`` is the
    counterfactual of the treated units, (T x N_tr).
    """
    residuals: np.ndarray
    fitted_co: np.ndarray
    Y_co: np.ndarray
    Y_ct: np.ndarray
    factors: np.ndarray
    loadings_co: np.ndarray
    loadings_tr: np.ndarray
    alpha_co: np.ndarray
    alpha_tr: np.ndarray
    xi: np.ndarray
    mu: float
    rank: int
    n_iter: int
    converged: bool
    cv_mspe: Dict[int, float] = field(default_factory=dict)


def _additive_effects(panel: np.ndarray, force: str) -> Tuple[float, np.ndarray, np.ndarray]:
    """Grand mean, unit effects and time effects of a balanced (T x N) panel."""
    mu = float(panel.mean())
    alpha = panel.mean(axis=0) - mu if force in ("unit", "two-way") else np.zeros(panel.shape[1])
    xi = panel.mean(axis=1) - mu if force in ("time", "two-way") else np.zeros(panel.shape[0])
    return mu, alpha, xi


def _fit_controls(Y_co: np.ndarray, rank: int, force: str, tol: float, max_iter: int) -> Dict:
    """Alternate additive effects and rank-``rank`` factors on the control panel."""
    T, N = Y_co.shape
    low_rank = np.zeros_like(Y_co)
    fitted_old = None
    factors = np.zeros((T, 0))
    loadings = np.zeros((N, 0))
    converged = False

    for iteration in range(1, max_iter + 1):
        mu, alpha, xi = _additive_effects(Y_co - low_rank, force)
        additive = mu + alpha[np.newaxis, :] + xi[:, np.newaxis]

        if rank > 0:
            left, _, _ = np.linalg.svd(Y_co - additive, full_matrices=False)
            # Normalization F'F / T = I
            factors = left[:, :rank] * np.sqrt(T)
            loadings = (Y_co - additive).T @ factors / T
            low_rank = factors @ loadings.T

        fitted = additive + low_rank
        if fitted_old is not None:
            change = np.linalg.norm(fitted - fitted_old) / max(np.linalg.norm(fitted_old), 1e-12)
            if change < tol:
                converged = True
                break
        elif rank == 0:
            # The additive fit is exact in one pass.
            converged = True
            break
        fitted_old = fitted

    return {
        "mu": mu, "alpha": alpha, "xi": xi,
        "factors": factors, "loadings": loadings,
        "fitted": fitted, "n_iter": iteration, "converged": converged,
    }


def _treated_design(factors: np.ndarray, force: str) -> np.ndarray:
    if force in ("unit", "two-way"):
        return np.column_stack([np.ones(factors.shape[0]), factors])
    return factors


def _treated_counterfactual(Y_tr: np.ndarray, t0: int, fit: Dict, force: str) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Project the treated pre-period on the control factors and extrapolate."""
    T = Y_tr.shape[0]
    design = _treated_design(fit["factors"], force)
    base = fit["mu"] + fit["xi"][:, np.newaxis]
    target = Y_tr[:t0] - base[:t0]

    if design.shape[1] == 0:
        coefs = np.zeros((0, Y_tr.shape[1]))
    else:
        coefs, *_ = np.linalg.lstsq(design[:t0], target, rcond=None)

    Y_ct = base + (design @ coefs if design.shape[1] else np.zeros((T, Y_tr.shape[1])))
    has_intercept = force in ("unit", "two-way")
    alpha_tr = coefs[0] if has_intercept else np.zeros(Y_tr.shape[1])
    loadings_tr = (coefs[1:] if has_intercept else coefs).T
    return Y_ct, alpha_tr, loadings_tr


def _loo_mspe(Y_tr: np.ndarray, t0: int, fit: Dict, force: str) -> float:
    """Leave-one-pre-period-out prediction error of the treated units."""
    design = _treated_design(fit["factors"], force)[:t0]
    target = Y_tr[:t0] - (fit["mu"] + fit["xi"][:t0, np.newaxis])
    errors = np.zeros_like(target)

    for left_out in range(t0):
        keep = np.arange(t0) != left_out
        if design.shape[1] == 0:
            prediction = np.zeros(target.shape[1])
        else:
            coefs, *_ = np.linalg.lstsq(design[keep], target[keep], rcond=None)
            prediction = design[left_out] @ coefs
        errors[left_out] = target[left_out] - prediction

    return float(np.mean(errors ** 2))


def interactive_fixed_effects(
    Y: np.ndarray,
    D: np.ndarray,
    observed: Optional[np.ndarray] = None,
    r_max: int = 5,
    tol: float = 1e-3,
    max_iter: int = 1000,
    force: str = "two-way",
    cv: bool = True,
) -> FactorModelFit:
    """
    Fit the interactive fixed effects model and impute treated counterfactuals.

    Parameters
    ----------
    Y : np.ndarray
        Outcome matrix, periods as rows and units as columns. Shape (T, N).
    D : np.ndarray
        Treatment matrix of the same shape, 1 for treated unit-periods. Units
        with no treated period are controls. All treated units must start
        treatment in the same period.
    observed : np.ndarray, optional
        Observation mask of the same shape. Only fully observed panels are
        supported, so any zero entry is rejected.
    r_max : int, default 5
        Largest number of factors. It is capped so the treated pre-period
        regression stays identified.
    tol : float, default 1e-3
        Relative change in the fitted control panel at which iteration stops.
    max_iter : int, default 1000
        Iteration cap of the alternating fit.
    force : {"none", "unit", "time", "two-way"}
        Additive fixed effects.
    cv : bool, default True
        Choose the number of factors in 0..r_max by leave-one-period-out
        cross-validation. Otherwise use the capped ``r_max``.

    Returns
    -------
    FactorModelFit
    """
    Y = np.asarray(Y, dtype=float)
    D = np.asarray(D)
    if Y.ndim != 2 or Y.shape != D.shape:
        raise HDSynthDataError("Y and D must be 2D arrays of the same shape (periods x units).")
    if observed is not None and not np.all(np.asarray(observed) == 1):
        raise HDSynthDataError("The factor model requires a fully observed panel.")
    if np.isnan(Y).any():
        raise HDSynthDataError("Y contains missing values.")

    treated = D.any(axis=0)
    if not treated.any() or treated.all():
        raise HDSynthDataError("The factor model needs both treated and control units.")
    first_treated = np.argmax(D[:, treated] == 1, axis=0)
    if np.unique(first_treated).size != 1:
        raise HDSynthDataError("All treated units must start treatment in the same period.")
    t0 = int(first_treated[0])
    if t0 < 1:
        raise HDSynthDataError("The factor model needs at least one pre-treatment period.")

    Y_co, Y_tr = Y[:, ~treated], Y[:, treated]
    T, N_co = Y_co.shape
    n_params = 1 if force in ("unit", "two-way") else 0
    # Keep at least one pre-period beyond the treated regression's parameters.
    r_cap = max(0, min(r_max, t0 - n_params - 1, N_co - 1, T - 1))

    cv_mspe: Dict[int, float] = {}
    if cv and r_cap > 0 and t0 > 1:
        for r in range(r_cap + 1):
            fit_r = _fit_controls(Y_co, r, force, tol, max_iter)
            cv_mspe[r] = _loo_mspe(Y_tr, t0, fit_r, force)
            LOGGER.debug("Factor model CV: r=%d, MSPE=%.6g", r, cv_mspe[r])
        rank = min(cv_mspe, key=lambda r: (cv_mspe[r], r))
    else:
        rank = r_cap

    fit = _fit_controls(Y_co, rank, force, tol, max_iter)
    if not fit["converged"]:
        warnings.warn(
            f"Factor model did not converge within {max_iter} iterations (rank {rank}).",
            UserWarning,
        )
    if not np.all(np.isfinite(fit["fitted"])):
        raise HDSynthEstimationError("Factor model produced non-finite fitted values.")

    Y_ct, alpha_tr, loadings_tr = _treated_counterfactual(Y_tr, t0, fit, force)
    LOGGER.debug("Factor model fitted with rank %d in %d iterations", rank, fit["n_iter"])

    return FactorModelFit(
        residuals=Y_co - fit["fitted"],
        fitted_co=fit["fitted"],
        Y_co=Y_co,
        Y_ct=Y_ct,
        factors=fit["factors"],
        loadings_co=fit["loadings"],
        loadings_tr=loadings_tr,
        alpha_co=fit["alpha"],
        alpha_tr=alpha_tr,
        xi=fit["xi"],
        mu=fit["mu"],
        rank=rank,
        n_iter=fit["n_iter"],
        converged=fit["converged"],
        cv_mspe=cv_mspe,
    )
