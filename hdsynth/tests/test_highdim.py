import numpy as np
import pytest

from hdsynth import get_augsyn, get_gsynaug, get_progsyn, get_screensyn
from hdsynth.exceptions import HDSynthConfigError
from hdsynth.utils.imputeutils import POTENTIAL_OUTCOME_COL, SYNTHETIC_COL
from hdsynth.utils.progutils import fit_prog_reg
from conftest import N_CONTROLS, T_PRE, T_POST

T = T_PRE + T_POST
N_ROWS = N_CONTROLS * T + T + T

PROG_OPTS = {
    "EN": None,
    "RF": {"n_estimators": 25, "random_state": 0},
    "GSYN": {"r_max": 2},
}
# A radius wider than the outcome range keeps entropy balancing feasible for any target.
WEIGHT_OPTS = {"SC": None, "ENT": {"eps": 100.0}}


def _check_panel(imputed):
    out = imputed.outcomes
    assert out.shape[0] == N_ROWS
    synth = out.loc[out[SYNTHETIC_COL] == "Y"]
    assert synth.shape[0] == T
    assert (synth[POTENTIAL_OUTCOME_COL] == "Y(0)").all()
    assert np.all(np.isfinite(synth["outcome"]))
    assert imputed.weights.shape == (N_CONTROLS,)


def test_augsyn_end_to_end(panel, metadata, ipw_format):
    imputed = get_augsyn(panel, metadata, progfunc="EN", weightfunc="SC")

    _check_panel(imputed)
    assert imputed.weights.sum() == pytest.approx(1.0)
    assert np.all(imputed.weights >= 0)

    expected = fit_prog_reg(ipw_format.X, ipw_format.y, ipw_format.trt).y0hat
    treated = ipw_format.trt == 1
    assert imputed.outest.shape == (T_POST,)
    np.testing.assert_allclose(imputed.outest, (ipw_format.y[treated] - expected[treated]).mean(axis=0))

    # Pre-periods of the synthesized block carry the observed treated outcomes.
    series = imputed.synthetic_series()
    np.testing.assert_allclose(series.to_numpy()[:T_PRE], ipw_format.X[treated][0])


@pytest.mark.parametrize("progfunc", ["EN", "RF", "GSYN"])
@pytest.mark.parametrize("weightfunc", ["SC", "ENT"])
def test_progsyn_all_pairs(panel, metadata, progfunc, weightfunc):
    imputed = get_progsyn(
        panel, metadata, progfunc=progfunc, weightfunc=weightfunc,
        opts_prog=PROG_OPTS[progfunc], opts_weights=WEIGHT_OPTS[weightfunc],
    )
    _check_panel(imputed)
    assert imputed.weights.sum() == pytest.approx(1.0)
    assert imputed.params is not None


@pytest.mark.parametrize("progfunc", ["EN", "RF", "GSYN"])
@pytest.mark.parametrize("weightfunc", ["SC", "ENT"])
def test_augsyn_all_pairs(panel, metadata, progfunc, weightfunc):
    imputed = get_augsyn(
        panel, metadata, progfunc=progfunc, weightfunc=weightfunc,
        opts_prog=PROG_OPTS[progfunc], opts_weights=WEIGHT_OPTS[weightfunc],
    )
    _check_panel(imputed)
    assert imputed.outest.shape == (T_POST,)


@pytest.mark.parametrize("weightfunc", ["SC", "ENT"])
def test_screensyn_lasso(panel, metadata, weightfunc):
    imputed = get_screensyn(panel, metadata, screenfunc="LAS", weightfunc=weightfunc,
                            opts_weights=WEIGHT_OPTS[weightfunc])
    _check_panel(imputed)
    assert imputed.params["selected"].shape == (T_PRE,)


def test_screensyn_double(panel, metadata):
    imputed = get_screensyn(panel, metadata, screenfunc="2", weightfunc="SC")
    _check_panel(imputed)
    assert "minep" in imputed.params


@pytest.mark.parametrize("weightfunc", ["SC", "ENT"])
def test_gsynaug(panel, metadata, weightfunc):
    imputed = get_gsynaug(panel, metadata, weightfunc=weightfunc,
                          opts_gsyn={"r_max": 2}, opts_weights=WEIGHT_OPTS[weightfunc])
    _check_panel(imputed)
    assert imputed.tauhat_aug.shape == (T,)
    synthetic = imputed.synthetic_series().to_numpy()
    observed = panel.loc[panel["unit"] == "tr"].sort_values("time")["outcome"].to_numpy()
    np.testing.assert_allclose(imputed.tauhat_aug, observed - synthetic)
    np.testing.assert_allclose(imputed.outest, observed - imputed.outparams.Y_ct.mean(axis=1))


def test_gsynaug_without_weights_is_factor_counterfactual(panel, metadata):
    imputed = get_gsynaug(panel, metadata, weightfunc="NONE", opts_gsyn={"r_max": 2})
    _check_panel(imputed)
    np.testing.assert_array_equal(imputed.weights, np.zeros(N_CONTROLS))
    np.testing.assert_allclose(
        imputed.synthetic_series().to_numpy(), imputed.params.Y_ct.mean(axis=1)
    )


@pytest.mark.parametrize(
    "call",
    [
        lambda p, m: get_progsyn(p, m, progfunc="XX"),
        lambda p, m: get_augsyn(p, m, progfunc="XX"),
        lambda p, m: get_progsyn(p, m, weightfunc="XX"),
        lambda p, m: get_screensyn(p, m, screenfunc="XX"),
        lambda p, m: get_gsynaug(p, m, weightfunc="XX"),
        lambda p, m: get_augsyn(p, m, weightfunc="NONE"),
    ],
)
def test_invalid_selectors_rejected(panel, metadata, call):
    with pytest.raises(HDSynthConfigError, match="must be one of"):
        call(panel, metadata)


def test_custom_column_names(panel, metadata):
    renamed = panel.rename(columns={"unit": "state", "time": "year", "outcome": "sales", "treated": "is_treated"})
    cols = {"unit": "state", "time": "year", "outcome": "sales", "treated": "is_treated"}
    imputed = get_progsyn(renamed, metadata, cols=cols)
    assert imputed.outcomes.shape[0] == N_ROWS
    assert imputed.synthetic_series(cols).shape == (T,)
