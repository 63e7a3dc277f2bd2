import logging
import warnings
from dataclasses import dataclass
from typing import Any, Optional, Tuple

import cvxpy as cp
import numpy as np
from scipy.special import expit, softmax

from hdsynth.config_models import SynthWeightsConfig, EntropyWeightsConfig, coerce_options
from hdsynth.exceptions import HDSynthEstimationError
from hdsynth.utils.datautils import SynthFormat
from hdsynth.utils.optutils import Opt2

LOGGER = logging.getLogger(__name__)

_SOLVED = ("optimal", "optimal_inaccurate")


@dataclass(frozen=True)
class SynthFit:
    """
    Output of a weight fitter, extended by the composition functions.

    Attributes
    ----------
    weights : np.ndarray
        Weight per control unit, in control order. NaN when the fitter found
        no solution.
    dual : np.ndarray or None
        Dual values. For simplex weights the multiplier of the sum-to-one
        constraint; for entropy weights the balance coefficients lambda.
    primal_obj : float
        Primal objective at the solution (squared imbalance for simplex
        weights, negative entropy sum w log w for entropy weights).
    scaled_primal_obj : float
        Imbalance relative to the size of the target ``Z1``.
    feasible : bool
        Whether the solver succeeded and the imbalance is within tolerance.
    primal_group_obj, groups : optional
        Per-group diagnostics. Always None for the unstratified fitters here.
    pscores, eta : np.ndarray or None
        Entropy weights only: linear index ``Z0' lambda`` and its logistic
        transform.
    controls : tuple
        Identifiers of the control units the weights refer to.
    params : any
        Outcome model or screening parameters attached by the composition.
    y0hat_c, y0hat_t, resid, tauhat, treatout : np.ndarray or None
        Augmented fits only; see ``composeutils``.
    """
    weights: np.ndarray
    dual: Optional[np.ndarray]
    primal_obj: float
    scaled_primal_obj: float
    feasible: bool
    primal_group_obj: Optional[float] = None
    groups: Optional[Any] = None
    pscores: Optional[np.ndarray] = None
    eta: Optional[np.ndarray] = None
    controls: Tuple[Any, ...] = ()
    params: Optional[Any] = None
    y0hat_c: Optional[np.ndarray] = None
    y0hat_t: Optional[np.ndarray] = None
    resid: Optional[np.ndarray] = None
    tauhat: Optional[np.ndarray] = None
    treatout: Optional[np.ndarray] = None


def _relative(value: float, scale: float) -> float:
    return float(value / scale) if scale > 0 else np.nan


def fit_synth_weights(syn_format: SynthFormat, config: Any = None) -> SynthFit:
    """Fit simplex synthetic control weights to the balancing target.

    Minimizes ``||Z1 - Z0 w||^2`` over nonnegative weights summing to one.

    Raises
    ------
    HDSynthEstimationError
        If the solver errors or returns no solution.
    """
    config = coerce_options(SynthWeightsConfig, config, "opts_weights")
    Z0, Z1 = syn_format.synth_data.Z0, syn_format.synth_data.Z1

    try:
        result = Opt2.SCopt(
            Z1, Z0,
            constraint_type="simplex",
            solver=config.solver,
            tol_abs=config.tol_abs,
            tol_rel=config.tol_rel,
        )
    except cp.error.SolverError as e:
        raise HDSynthEstimationError(f"Synthetic control solver failed: {e}") from e

    problem = result["problem"]
    weights = result["weights"]["w"]
    if problem.status not in _SOLVED or weights is None:
        raise HDSynthEstimationError(
            f"Synthetic control weights could not be computed (solver status: {problem.status})."
        )
    if problem.status == "optimal_inaccurate":
        warnings.warn("Synthetic control solver returned an inaccurate solution.", UserWarning)

    # Clean solver noise so the weights stay on the simplex.
    weights = np.clip(np.asarray(weights, dtype=float), 0.0, None)
    weights = weights / weights.sum()

    primal_obj = float(np.sum((Z1 - Z0 @ weights) ** 2))
    sum_constraint = result["constraints"][-1]
    return SynthFit(
        weights=weights,
        dual=np.atleast_1d(np.asarray(sum_constraint.dual_value, dtype=float)),
        primal_obj=primal_obj,
        scaled_primal_obj=_relative(primal_obj, float(np.sum(Z1 ** 2))),
        feasible=True,
        controls=syn_format.control_units,
    )


def fit_entropy_weights(syn_format: SynthFormat, config: Any = None) -> SynthFit:
    """Fit maximum entropy balancing weights through the dual problem.

    The imbalance ``Z0 w - Z1`` is bounded by ``config.eps`` in the L2 norm,
    or in the L-infinity norm when ``config.norm == "linf"``. When the dual is
    unbounded (no weights can meet the bound) the fit comes back with NaN
    weights and ``feasible=False`` instead of raising, so it can serve as a
    feasibility oracle.
    """
    config = coerce_options(EntropyWeightsConfig, config, "opts_weights")
    Z0, Z1 = syn_format.synth_data.Z0, syn_format.synth_data.Z1
    n_controls = Z0.shape[1]

    try:
        result = Opt2.entropy_dual(Z0, Z1, eps=config.eps, norm=config.norm, solver=config.solver)
        status = result["problem"].status
        lam = result["dual"]
    except cp.error.SolverError as e:
        LOGGER.debug("Entropy dual solver failed at eps=%s: %s", config.eps, e)
        status, lam = "solver_error", None

    if status not in _SOLVED or lam is None:
        LOGGER.debug("Entropy balancing infeasible at eps=%s (status: %s)", config.eps, status)
        return SynthFit(
            weights=np.full(n_controls, np.nan),
            dual=None,
            primal_obj=np.nan,
            scaled_primal_obj=np.nan,
            feasible=False,
            controls=syn_format.control_units,
        )

    lam = np.asarray(lam, dtype=float)
    eta = Z0.T @ lam
    weights = softmax(eta)

    order = np.inf if config.norm == "linf" else 2
    imbalance = float(np.linalg.norm(Z0 @ weights - Z1, ord=order))
    slack = config.feas_tol * max(1.0, float(np.linalg.norm(Z1, ord=order)))
    feasible = bool(imbalance <= config.eps + slack)
    if not feasible:
        LOGGER.debug("Entropy weights miss the bound: imbalance %.6g > eps %.6g", imbalance, config.eps)

    positive = weights[weights > 0]
    return SynthFit(
        weights=weights,
        dual=lam,
        primal_obj=float(np.sum(positive * np.log(positive))),
        scaled_primal_obj=_relative(imbalance, float(np.linalg.norm(Z1, ord=order))),
        feasible=feasible,
        pscores=expit(eta),
        eta=eta,
        controls=syn_format.control_units,
    )
