import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict

import numpy as np
from sklearn.linear_model import ElasticNetCV

from hdsynth.config_models import (
    LassoScreenConfig,
    DoubleScreenConfig,
    EntropyWeightsConfig,
    coerce_options,
)
from hdsynth.exceptions import HDSynthConfigError, HDSynthDataError, HDSynthInfeasibleError
from hdsynth.utils.datautils import IPWFormat, SynthFormat
from hdsynth.utils.progutils import check_xy, regression_targets, n_cv_folds
from hdsynth.utils.weightutils import fit_entropy_weights

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScreenFit:
    """Covariates kept by a screen (units x selected) and the selection parameters."""
    selX: np.ndarray
    params: Dict[str, Any]


def bin_search(lo: float, hi: float, by: float, feas: Callable[[float], bool]) -> float:
    """
    Smallest point of the grid ``lo, lo + by, ...`` (up to ``hi``) where ``feas`` holds.

    ``feas`` is assumed monotone: once true it stays true for larger values.
    Each grid point is evaluated at most once.

    Returns
    -------
    float
        The smallest feasible grid point, or -1 if even the largest grid
        point is infeasible (or the grid is empty).
    """
    if by <= 0:
        raise HDSynthConfigError(f"Step size 'by' must be positive; got {by}.")
    if hi < lo:
        LOGGER.debug("Empty search grid: hi=%s < lo=%s", hi, lo)
        return -1

    n_steps = int(np.floor((hi - lo) / by + 1e-9))
    grid = lo + by * np.arange(n_steps + 1)
    seen: Dict[int, bool] = {}

    def check(index: int) -> bool:
        if index not in seen:
            seen[index] = bool(feas(float(grid[index])))
            LOGGER.debug("bin_search probe %.6g -> %s", grid[index], seen[index])
        return seen[index]

    if not check(n_steps):
        return -1

    left, right = 0, n_steps
    while left < right:
        mid = (left + right) // 2
        if check(mid):
            right = mid
        else:
            left = mid + 1
    return float(grid[left])


def lasso_screen(ipw_format: IPWFormat, syn_format: SynthFormat, config: Any = None) -> ScreenFit:
    """Keep the covariates an elastic net of the post-period outcomes uses.

    The regression has no intercept and is fitted on controls, per
    post-period or stacked. A covariate is selected when the sum of its
    absolute coefficients over all fitted models is positive.
    """
    config = coerce_options(LassoScreenConfig, config, "opts_screen")
    X, y, trt = check_xy(ipw_format.X, ipw_format.y, ipw_format.trt)

    coefficients = []
    for features, response in regression_targets(X, y, trt, config.avg):
        model = ElasticNetCV(
            l1_ratio=config.alpha,
            fit_intercept=False,
            cv=n_cv_folds(config.n_folds, response.shape[0]),
            max_iter=config.max_iter,
        )
        model.fit(features, response)
        coefficients.append(model.coef_)

    regweights = np.column_stack(coefficients)
    selected = (np.abs(regweights).sum(axis=1) > 0).astype(int)
    LOGGER.debug("LASSO screen kept %d of %d covariates", selected.sum(), selected.size)

    return ScreenFit(
        selX=X[:, selected == 1],
        params={"regparams": regweights, "selected": selected},
    )


def double_screen(ipw_format: IPWFormat, syn_format: SynthFormat, config: Any = None) -> ScreenFit:
    """LASSO screen plus the covariates an L-infinity entropy balance needs.

    The smallest imbalance tolerance in ``[mine, 2 * max(X)]`` (step ``by``)
    at which L-infinity entropy balancing of the synth-format target is
    feasible is found by ``bin_search``. Covariates with a nonzero dual
    coefficient at that tolerance are added to the LASSO selection.

    Raises
    ------
    HDSynthInfeasibleError
        If no tolerance in the searched range is feasible.
    """
    config = coerce_options(DoubleScreenConfig, config, "opts_screen")
    lasso_fit = lasso_screen(ipw_format, syn_format, config)
    X = ipw_format.X

    if syn_format.synth_data.Z0.shape[0] != X.shape[1]:
        raise HDSynthDataError(
            "The balancing target and X must describe the same covariates for the double screen."
        )

    entropy_config = EntropyWeightsConfig(norm="linf", eps=0.0, solver=config.solver)

    def feasible(ep: float) -> bool:
        return fit_entropy_weights(syn_format, entropy_config.model_copy(update={"eps": ep})).feasible

    hi = 2 * float(np.max(X))
    minep = bin_search(config.mine, hi, config.by, feasible)
    if minep < 0:
        raise HDSynthInfeasibleError(
            "Failed to find a synthetic control with good enough balance",
            lo=config.mine, hi=hi, by=config.by,
        )

    linf_fit = fit_entropy_weights(syn_format, entropy_config.model_copy(update={"eps": minep}))
    selected_p = (np.abs(linf_fit.dual) > config.dual_tol).astype(int)
    selected = ((selected_p + lasso_fit.params["selected"]) > 0).astype(int)
    LOGGER.debug("Double screen: eps=%s, kept %d of %d covariates", minep, selected.sum(), selected.size)

    return ScreenFit(
        selX=X[:, selected == 1],
        params={
            "regparams": lasso_fit.params["regparams"],
            "selparams": linf_fit.dual,
            "minep": minep,
            "selected": selected,
        },
    )
