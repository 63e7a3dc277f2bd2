import numpy as np
import pytest

from hdsynth.exceptions import HDSynthConfigError, HDSynthDataError
from hdsynth.utils.factorutils import FactorModelFit
from hdsynth.utils.progutils import (
    ProgFit,
    check_xy,
    fit_prog_gsynth,
    fit_prog_reg,
    fit_prog_rf,
    n_cv_folds,
    regression_targets,
)
from conftest import N_CONTROLS, T_PRE, T_POST


# ======================
# Helpers
# ======================

def test_regression_targets_per_period(ipw_format):
    pairs = regression_targets(ipw_format.X, ipw_format.y, ipw_format.trt, avg=False)
    assert len(pairs) == T_POST
    features, response = pairs[0]
    assert features.shape == (N_CONTROLS, T_PRE)
    np.testing.assert_allclose(response, ipw_format.y[ipw_format.trt == 0, 0])


def test_regression_targets_stacked(ipw_format):
    pairs = regression_targets(ipw_format.X, ipw_format.y, ipw_format.trt, avg=True)
    assert len(pairs) == 1
    features, response = pairs[0]
    assert features.shape == (N_CONTROLS * T_POST, T_PRE)
    assert response.shape == (N_CONTROLS * T_POST,)
    # Stacked period by period.
    np.testing.assert_allclose(response[N_CONTROLS:2 * N_CONTROLS], ipw_format.y[ipw_format.trt == 0, 1])


def test_check_xy_needs_two_controls():
    X = np.ones((2, 3))
    y = np.ones((2, 1))
    with pytest.raises(HDSynthDataError, match="two control units"):
        check_xy(X, y, np.array([0, 1]))


def test_check_xy_reshapes_vector_outcome():
    X, y, trt = check_xy(np.ones((3, 2)), np.ones(3), [0, 0, 1])
    assert y.shape == (3, 1)


def test_n_cv_folds_bounds():
    assert n_cv_folds(5, 3) == 3
    assert n_cv_folds(5, 10) == 5
    assert n_cv_folds(5, 1) == 2


# ======================
# Outcome models
# ======================

def test_fit_prog_reg_per_period(ipw_format):
    fit = fit_prog_reg(ipw_format.X, ipw_format.y, ipw_format.trt)
    assert isinstance(fit, ProgFit)
    assert fit.y0hat.shape == (N_CONTROLS + 1, T_POST)
    assert fit.params.shape == (T_PRE + 1, T_POST)
    design = np.column_stack([np.ones(N_CONTROLS + 1), ipw_format.X])
    np.testing.assert_allclose(fit.y0hat, design @ fit.params)


def test_fit_prog_reg_stacked(ipw_format):
    fit = fit_prog_reg(ipw_format.X, ipw_format.y, ipw_format.trt, {"avg": True, "alpha": 0.5})
    assert fit.y0hat.shape == (N_CONTROLS + 1, 1)
    assert fit.params.shape == (T_PRE + 1, 1)


def test_fit_prog_reg_rejects_bad_options(ipw_format):
    with pytest.raises(HDSynthConfigError):
        fit_prog_reg(ipw_format.X, ipw_format.y, ipw_format.trt, {"alpha": 2.0})


def test_fit_prog_rf(ipw_format):
    fit = fit_prog_rf(
        ipw_format.X, ipw_format.y, ipw_format.trt,
        {"n_estimators": 25, "random_state": 0},
    )
    assert fit.y0hat.shape == (N_CONTROLS + 1, T_POST)
    assert fit.params.shape == (T_POST, T_PRE)
    assert np.all(fit.params >= 0)
    # Forest predictions are averages of control outcomes.
    y_ctrl = ipw_format.y[ipw_format.trt == 0]
    assert np.all(fit.y0hat >= y_ctrl.min(axis=0) - 1e-9)
    assert np.all(fit.y0hat <= y_ctrl.max(axis=0) + 1e-9)


def test_fit_prog_rf_reproducible(ipw_format):
    opts = {"n_estimators": 25, "random_state": 3}
    first = fit_prog_rf(ipw_format.X, ipw_format.y, ipw_format.trt, opts)
    second = fit_prog_rf(ipw_format.X, ipw_format.y, ipw_format.trt, opts)
    np.testing.assert_allclose(first.y0hat, second.y0hat)


def test_fit_prog_gsynth(ipw_format):
    fit = fit_prog_gsynth(ipw_format.X, ipw_format.y, ipw_format.trt, {"r_max": 2})
    ctrl, treated = ipw_format.trt == 0, ipw_format.trt == 1
    assert isinstance(fit.params, FactorModelFit)
    assert fit.y0hat.shape == (N_CONTROLS + 1, T_POST)
    # Controls get residual plus fitted value, i.e. their observed outcome.
    np.testing.assert_allclose(fit.y0hat[ctrl], ipw_format.y[ctrl])
    np.testing.assert_allclose(fit.y0hat[treated][0], fit.params.Y_ct[T_PRE:, 0])


def test_fit_prog_gsynth_rejects_regression_options(ipw_format):
    with pytest.raises(HDSynthConfigError):
        fit_prog_gsynth(ipw_format.X, ipw_format.y, ipw_format.trt, {"alpha": 0.5})
