from unittest.mock import patch

import numpy as np
import pytest

from hdsynth import AUGSYNTH
from hdsynth.config_models import AUGSYNTHConfig, BaseEstimatorResults
from hdsynth.estimators.augsynth import AUGSYNTHOutput
from hdsynth.exceptions import (
    HDSynthConfigError,
    HDSynthDataError,
    HDSynthInfeasibleError,
    HDSynthPlottingError,
)
from hdsynth.utils.imputeutils import SYNTHETIC_COL
from conftest import N_CONTROLS, T_INT, T_PRE, T_POST


@pytest.fixture
def base_config(estimator_df):
    return {
        "df": estimator_df,
        "outcome": "gdp",
        "treat": "treat",
        "unitid": "region",
        "time": "year",
        "display_graphs": False,
    }


def test_augsynth_creation(base_config):
    estimator = AUGSYNTH(AUGSYNTHConfig(**base_config))
    assert isinstance(estimator, AUGSYNTH)
    assert estimator.method.value == "augsyn"


def test_augsynth_fit_smoke(base_config):
    out = AUGSYNTH(base_config).fit()

    assert isinstance(out, AUGSYNTHOutput)
    assert isinstance(out.results, BaseEstimatorResults)
    assert np.isfinite(out.results.effects.att)
    assert out.results.time_series.counterfactual_outcome.shape == (T_PRE + T_POST,)
    assert set(out.results.weights.donor_weights) == {f"c{j + 1:02d}" for j in range(N_CONTROLS)}
    assert out.results.weights.summary_stats["weight_sum"] == pytest.approx(1.0)
    assert out.results.method_details.method_name == "augsyn-EN-SC"
    assert out.results.effects.additional_effects["outcome_model_effect"].shape == (T_POST,)
    assert out.prepped_data["treated_unit_name"] == "tr"


def test_augsynth_att_matches_quick_att(base_config):
    out = AUGSYNTH(dict(base_config, method="progsyn")).fit()
    effects = out.results.effects
    assert effects.att == pytest.approx(effects.additional_effects["quick_att"], abs=1e-3)


def test_augsynth_imputed_panel_keeps_columns(base_config, estimator_df):
    out = AUGSYNTH(base_config).fit()
    panel = out.imputed.outcomes
    assert {"region", "year", "gdp", SYNTHETIC_COL}.issubset(panel.columns)
    assert panel.shape[0] == estimator_df.shape[0] + T_PRE + T_POST


@pytest.mark.parametrize(
    "overrides",
    [
        {"method": "progsyn", "progfunc": "RF", "opts_prog": {"n_estimators": 25, "random_state": 0}},
        {"method": "screensyn", "screenfunc": "LAS"},
        {"method": "gsynaug", "opts_prog": {"r_max": 2}},
        {"method": "gsynaug", "weightfunc": "NONE", "opts_prog": {"r_max": 2}},
        {"method": "augsyn", "weightfunc": "ENT", "opts_weights": {"eps": 100.0}},
    ],
)
def test_augsynth_methods(base_config, overrides):
    out = AUGSYNTH(dict(base_config, **overrides)).fit()
    assert np.isfinite(out.results.effects.att)
    assert len(out.results.weights.donor_weights) == N_CONTROLS


def test_augsynth_gsynaug_reports_augmented_gap(base_config):
    out = AUGSYNTH(dict(base_config, method="gsynaug", opts_prog={"r_max": 2})).fit()
    np.testing.assert_allclose(
        out.results.effects.additional_effects["tauhat_aug"],
        out.results.time_series.estimated_gap,
        atol=1e-3,
    )


def test_augsynth_none_weights_rejected_outside_gsynaug(base_config):
    with pytest.raises(HDSynthConfigError):
        AUGSYNTH(dict(base_config, weightfunc="NONE"))


def test_augsynth_invalid_backend_options(base_config):
    with pytest.raises(HDSynthConfigError):
        AUGSYNTH(dict(base_config, opts_prog={"alpha": 5.0})).fit()


def test_augsynth_unbalanced_panel(base_config, estimator_df):
    config = dict(base_config, df=estimator_df.iloc[1:])
    with pytest.raises(HDSynthDataError, match="balancing"):
        AUGSYNTH(config).fit()


def test_augsynth_two_treated_units(base_config, estimator_df):
    df = estimator_df.copy()
    df.loc[(df["region"] == "c01") & (df["year"] >= T_INT), "treat"] = 1
    with pytest.raises(HDSynthDataError):
        AUGSYNTH(dict(base_config, df=df)).fit()


def test_augsynth_infeasible_double_screen(base_config):
    error = HDSynthInfeasibleError("Failed to find a synthetic control with good enough balance", lo=0.0, hi=1.0, by=1.0)
    with patch("hdsynth.estimators.augsynth.get_screensyn", side_effect=error):
        with pytest.raises(HDSynthInfeasibleError) as excinfo:
            AUGSYNTH(dict(base_config, method="screensyn", screenfunc="2")).fit()
    assert excinfo.value.reason == "infeasible_balance"


def test_augsynth_plotting_failure_warns(base_config):
    config = dict(base_config, display_graphs=True)
    with patch("hdsynth.estimators.augsynth.plot_estimates", side_effect=HDSynthPlottingError("disk full")):
        with pytest.warns(UserWarning, match="Plotting failed"):
            out = AUGSYNTH(config).fit()
    assert isinstance(out, AUGSYNTHOutput)


def test_augsynth_saves_plot(base_config, tmp_path):
    config = dict(
        base_config,
        display_graphs=True,
        save={"filename": "augsynth", "extension": "png", "directory": str(tmp_path), "display": False},
    )
    AUGSYNTH(config).fit()
    assert (tmp_path / "augsynth.png").exists()
