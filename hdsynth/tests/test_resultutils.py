import os

import numpy as np
import pandas as pd
import pytest

from hdsynth import get_progsyn
from hdsynth.exceptions import HDSynthDataError
from hdsynth.utils.resultutils import effects, plot_estimates, quick_att
from conftest import T_INT, T_PRE, T_POST


def test_effects_calculate():
    observed = np.array([1.0, 2.0, 3.0, 10.0, 12.0])
    counterfactual = np.array([1.0, 2.0, 3.0, 8.0, 8.0])
    eff, fit, vectors = effects.calculate(observed, counterfactual, 3, 2)

    assert eff["ATT"] == pytest.approx(3.0)
    assert eff["Percent ATT"] == pytest.approx(37.5)
    assert eff["TTE"] == pytest.approx(6.0)
    np.testing.assert_allclose(eff["ATT_Time"], [2.0, 4.0])
    assert fit["T0 RMSE"] == 0.0
    assert fit["R-Squared"] == pytest.approx(1.0)
    assert fit["Pre-Periods"] == 3
    assert fit["Post-Periods"] == 2
    assert vectors["Gap"].shape == (5, 2)
    np.testing.assert_allclose(vectors["Gap"][:, 1], [-2, -1, 0, 1, 2])


def test_effects_calculate_mismatched_lengths():
    with pytest.raises(HDSynthDataError):
        effects.calculate(np.ones(5), np.ones(4), 3, 2)


def test_quick_att(panel, metadata):
    imputed = get_progsyn(panel, metadata)
    synthetic = imputed.synthetic_series()
    observed = panel.loc[panel["unit"] == "tr"].set_index("time")["outcome"].sort_index()
    post = observed.index >= T_INT
    expected = (observed[post] - synthetic[post]).mean()

    assert quick_att(imputed, metadata) == pytest.approx(expected)


def test_quick_att_metadata_frame(panel, metadata):
    imputed = get_progsyn(panel, metadata)
    assert quick_att(imputed, pd.DataFrame({"t_int": [T_INT]})) == pytest.approx(quick_att(imputed, metadata))


def test_plot_estimates_saves_file(tmp_path):
    time_labels = pd.Index(range(2000, 2000 + T_PRE + T_POST), name="year")
    observed = np.linspace(0.0, 1.0, T_PRE + T_POST)
    plot_estimates(
        time_labels=time_labels,
        observed_outcome_series=observed,
        counterfactual_series=observed - 0.1,
        pre_periods=T_PRE,
        treated_unit_name="tr",
        outcome_variable_label="gdp",
        time_axis_label="year",
        estimation_method_name="augsyn",
        save_plot_config={"filename": "augsyn_plot", "extension": "png",
                          "directory": str(tmp_path), "display": False},
    )
    assert os.path.exists(tmp_path / "augsyn_plot.png")


def test_plot_estimates_rejects_bad_lengths():
    with pytest.raises(HDSynthDataError):
        plot_estimates(
            time_labels=pd.Index(range(4)),
            observed_outcome_series=np.ones(4),
            counterfactual_series=np.ones(3),
            pre_periods=2,
            treated_unit_name="tr",
            outcome_variable_label="y",
            time_axis_label="t",
            estimation_method_name="augsyn",
        )
