# tests/conftest.py
import matplotlib

matplotlib.use("Agg")

import numpy as np
import pandas as pd
import pytest

from hdsynth.utils.datautils import format_ipw, format_synth

N_CONTROLS = 10
T_PRE = 5
T_POST = 3
FIRST_YEAR = 2000
T_INT = FIRST_YEAR + T_PRE
EFFECT = 5.0

# Treated unit is this convex combination of the controls in every period.
TREATED_MIX = np.array([3, 2, 2, 1, 1, 1, 0.5, 0.5, 0.5, 0.5]) / 12.0


def simulate_outcomes(seed: int = 42) -> np.ndarray:
    """Control outcomes (periods x controls) with two-way effects, one factor and noise."""
    rng = np.random.default_rng(seed)
    T = T_PRE + T_POST
    alpha = rng.normal(10.0, 2.0, N_CONTROLS)
    loadings = rng.normal(1.0, 0.5, N_CONTROLS)
    factor = np.linspace(0.0, 3.0, T) + rng.normal(0.0, 0.3, T)
    xi = 0.5 * np.arange(T)
    noise = rng.normal(0.0, 0.3, (T, N_CONTROLS))
    return alpha[np.newaxis, :] + xi[:, np.newaxis] + np.outer(factor, loadings) + noise


def to_long(Y_co: np.ndarray) -> pd.DataFrame:
    T = Y_co.shape[0]
    y_tr = Y_co @ TREATED_MIX
    y_tr[T_PRE:] += EFFECT

    rows = []
    for t in range(T):
        for j in range(N_CONTROLS):
            rows.append({"unit": f"c{j + 1:02d}", "time": FIRST_YEAR + t, "outcome": Y_co[t, j], "treated": 0})
        rows.append({"unit": "tr", "time": FIRST_YEAR + t, "outcome": y_tr[t], "treated": 1})
    return pd.DataFrame(rows)


@pytest.fixture
def control_outcomes() -> np.ndarray:
    return simulate_outcomes()


@pytest.fixture
def panel(control_outcomes) -> pd.DataFrame:
    """Tidy panel: 10 controls and 1 treated unit over 5 pre- and 3 post-periods."""
    return to_long(control_outcomes)


@pytest.fixture
def metadata() -> dict:
    return {"t_int": T_INT}


@pytest.fixture
def ipw_format(panel, metadata):
    return format_ipw(panel, metadata)


@pytest.fixture
def syn_format(panel, metadata):
    return format_synth(panel, metadata)


@pytest.fixture
def estimator_df(panel) -> pd.DataFrame:
    """The same panel with a unit-by-period treatment indicator."""
    df = panel.rename(columns={"unit": "region", "time": "year", "outcome": "gdp"})
    df["treat"] = ((df["treated"] == 1) & (df["year"] >= T_INT)).astype(int)
    return df.drop(columns="treated")
