import logging
from dataclasses import dataclass
from typing import Any, List, Tuple

import numpy as np
from sklearn.ensemble import RandomForestRegressor
from sklearn.linear_model import ElasticNetCV

from hdsynth.config_models import (
    RegressionModelConfig,
    RandomForestModelConfig,
    FactorModelConfig,
    coerce_options,
)
from hdsynth.exceptions import HDSynthDataError
from hdsynth.utils.factorutils import interactive_fixed_effects

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgFit:
    """Predicted control outcomes for every unit and the fitted model parameters.

    ``y0hat`` has one row per unit and one column per fitted model (each
    post-period, or a single column when post-periods are stacked).
    """
    y0hat: np.ndarray
    params: Any


def check_xy(X: np.ndarray, y: np.ndarray, trt: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Coerce and align the unit-by-feature inputs of an outcome model."""
    X = np.asarray(X, dtype=float)
    y = np.asarray(y, dtype=float)
    if y.ndim == 1:
        y = y.reshape(-1, 1)
    trt = np.asarray(trt).astype(int).ravel()
    if X.ndim != 2:
        raise HDSynthDataError("X must be a 2D array (units x features).")
    if not (X.shape[0] == y.shape[0] == trt.shape[0]):
        raise HDSynthDataError(
            f"Row mismatch: X has {X.shape[0]} rows, y has {y.shape[0]}, trt has {trt.shape[0]}."
        )
    if np.count_nonzero(trt == 0) < 2:
        raise HDSynthDataError("At least two control units are needed to fit an outcome model.")
    return X, y, trt


def regression_targets(X: np.ndarray, y: np.ndarray, trt: np.ndarray, avg: bool) -> List[Tuple[np.ndarray, np.ndarray]]:
    """Control-only (features, response) pairs, one per post-period or one stacked pair."""
    ctrl = trt == 0
    if avg:
        # Post-periods stacked period by period, with X repeated for each.
        return [(np.tile(X[ctrl], (y.shape[1], 1)), y[ctrl].T.ravel())]
    return [(X[ctrl], y[ctrl, t]) for t in range(y.shape[1])]


def n_cv_folds(requested: int, n_samples: int) -> int:
    return max(2, min(requested, n_samples))


def fit_prog_reg(X: np.ndarray, y: np.ndarray, trt: np.ndarray, config: Any = None) -> ProgFit:
    """Elastic net outcome model with a cross-validated penalty.

    A separate regression of each post-period outcome on ``X`` is fitted on
    the control units (or one regression on the stacked post-periods when
    ``avg`` is set). ElasticNetCV picks the penalty minimizing the CV error
    and refits at it. ``params`` is the (1 + p) x n_models coefficient
    matrix, intercept first.
    """
    config = coerce_options(RegressionModelConfig, config, "opts_prog")
    X, y, trt = check_xy(X, y, trt)

    coefficients = []
    for features, response in regression_targets(X, y, trt, config.avg):
        model = ElasticNetCV(
            l1_ratio=config.alpha,
            cv=n_cv_folds(config.n_folds, response.shape[0]),
            max_iter=config.max_iter,
        )
        model.fit(features, response)
        LOGGER.debug("Elastic net picked penalty %.6g", model.alpha_)
        coefficients.append(np.concatenate([[model.intercept_], model.coef_]))

    regweights = np.column_stack(coefficients)
    y0hat = np.column_stack([np.ones(X.shape[0]), X]) @ regweights
    return ProgFit(y0hat=y0hat, params=regweights)


def fit_prog_rf(X: np.ndarray, y: np.ndarray, trt: np.ndarray, config: Any = None) -> ProgFit:
    """Random forest outcome model.

    Same per-period or stacked structure as ``fit_prog_reg``. ``params``
    holds the impurity-based feature importances, one row per forest.
    """
    config = coerce_options(RandomForestModelConfig, config, "opts_prog")
    X, y, trt = check_xy(X, y, trt)

    predictions, importances = [], []
    for features, response in regression_targets(X, y, trt, config.avg):
        model = RandomForestRegressor(
            n_estimators=config.n_estimators,
            max_features=config.max_features,
            min_samples_leaf=config.min_samples_leaf,
            random_state=config.random_state,
            n_jobs=config.n_jobs,
        )
        model.fit(features, response)
        predictions.append(model.predict(X))
        importances.append(model.feature_importances_)

    return ProgFit(y0hat=np.column_stack(predictions), params=np.vstack(importances))


def fit_prog_gsynth(X: np.ndarray, y: np.ndarray, trt: np.ndarray, config: Any = None) -> ProgFit:
    """Interactive fixed effects outcome model.

    Pre- and post-periods are stacked into a (T x N) panel in which the
    treated units are marked from the first post-period on. Control units
    get ``residual + fitted`` over the post-periods; treated units get the
    model's counterfactual. ``params`` is the full ``FactorModelFit``,
    including the treated counterfactual ``Y_ct`` over all periods.
    """
    config = coerce_options(FactorModelConfig, config, "opts_prog")
    X, y, trt = check_xy(X, y, trt)

    t0 = X.shape[1]
    panel = np.hstack([X, y]).T
    D = np.zeros_like(panel)
    D[t0:, trt == 1] = 1
    observed = np.ones_like(panel)

    gsyn = interactive_fixed_effects(
        panel, D, observed,
        r_max=config.r_max,
        tol=config.tol,
        max_iter=config.max_iter,
        force=config.force,
        cv=config.cv,
    )

    y0hat = np.zeros_like(y)
    y0hat[trt == 0] = (gsyn.residuals[t0:] + gsyn.fitted_co[t0:]).T
    y0hat[trt == 1] = gsyn.Y_ct[t0:].T
    return ProgFit(y0hat=y0hat, params=gsyn)
