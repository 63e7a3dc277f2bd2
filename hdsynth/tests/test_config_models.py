import pytest
import pandas as pd
from pydantic import ValidationError
from typing import Dict, Any

from hdsynth.exceptions import HDSynthDataError, HDSynthConfigError
from hdsynth.config_models import (
    AUGSYNTHConfig,
    AugMethod,
    DoubleScreenConfig,
    EntropyWeightsConfig,
    FactorModelConfig,
    ProgFunc,
    RegressionModelConfig,
    ScreenFunc,
    SynthWeightsConfig,
    WeightFunc,
    coerce_options,
)


@pytest.fixture
def sample_df() -> pd.DataFrame:
    return pd.DataFrame({
        'unit': [1, 1, 2, 2, 3, 3],
        'time': [1, 2, 1, 2, 1, 2],
        'outcome_var': [10, 12, 15, 16, 11, 13],
        'treat_var': [0, 0, 0, 1, 0, 0],
    })


@pytest.fixture
def base_config_data(sample_df: pd.DataFrame) -> Dict[str, Any]:
    return {
        "df": sample_df,
        "outcome": "outcome_var",
        "treat": "treat_var",
        "unitid": "unit",
        "time": "time",
    }


# ======================
# Estimator configuration
# ======================

def test_augsynth_config_defaults(base_config_data):
    config = AUGSYNTHConfig(**base_config_data)
    assert config.method == AugMethod.AUGSYN
    assert config.progfunc == ProgFunc.EN
    assert config.weightfunc == WeightFunc.SC
    assert config.screenfunc == ScreenFunc.LAS
    assert config.opts_prog is None
    assert config.display_graphs is True


def test_augsynth_config_accepts_strings(base_config_data):
    config = AUGSYNTHConfig(**base_config_data, method="screensyn", screenfunc="2", weightfunc="ENT")
    assert config.method == AugMethod.SCREENSYN
    assert config.screenfunc == ScreenFunc.DOUBLE
    assert config.weightfunc == WeightFunc.ENT


def test_augsynth_config_rejects_unknown_selector(base_config_data):
    with pytest.raises(ValidationError):
        AUGSYNTHConfig(**base_config_data, progfunc="XX")


def test_augsynth_config_none_weights_only_with_gsynaug(base_config_data):
    with pytest.raises(HDSynthConfigError, match="only available with method 'gsynaug'"):
        AUGSYNTHConfig(**base_config_data, weightfunc="NONE")
    config = AUGSYNTHConfig(**base_config_data, method="gsynaug", weightfunc="NONE")
    assert config.weightfunc == WeightFunc.NONE


def test_augsynth_config_missing_column(base_config_data):
    data = dict(base_config_data, outcome="missing_col")
    with pytest.raises(HDSynthDataError, match="Missing required columns"):
        AUGSYNTHConfig(**data)


def test_augsynth_config_empty_df(base_config_data):
    data = dict(base_config_data, df=pd.DataFrame(columns=["unit", "time", "outcome_var", "treat_var"]))
    with pytest.raises(HDSynthDataError, match="cannot be empty"):
        AUGSYNTHConfig(**data)


def test_augsynth_config_forbids_extra_fields(base_config_data):
    with pytest.raises(ValidationError):
        AUGSYNTHConfig(**base_config_data, lambda_penalty=0.5)


# ======================
# Backend options
# ======================

def test_coerce_options_defaults():
    config = coerce_options(RegressionModelConfig, None)
    assert config.alpha == 1.0
    assert config.avg is False


def test_coerce_options_from_dict():
    config = coerce_options(EntropyWeightsConfig, {"eps": 0.5, "norm": "linf"})
    assert config.eps == 0.5
    assert config.norm == "linf"


def test_coerce_options_passes_instance_through():
    original = FactorModelConfig(r_max=2)
    assert coerce_options(FactorModelConfig, original) is original


def test_coerce_options_rejects_other_backend_model():
    with pytest.raises(HDSynthConfigError, match="must be a EntropyWeightsConfig or a dict"):
        coerce_options(EntropyWeightsConfig, SynthWeightsConfig(), "opts_weights")


def test_coerce_options_invalid_value():
    with pytest.raises(HDSynthConfigError, match="Invalid opts_prog"):
        coerce_options(RegressionModelConfig, {"alpha": 0.0}, "opts_prog")


def test_coerce_options_unknown_key():
    with pytest.raises(HDSynthConfigError, match="Invalid opts_weights"):
        coerce_options(SynthWeightsConfig, {"tolerance": 1e-6}, "opts_weights")


def test_coerce_options_rejects_non_mapping():
    with pytest.raises(HDSynthConfigError):
        coerce_options(SynthWeightsConfig, ["CLARABEL"])


def test_double_screen_config_extends_lasso_options():
    config = DoubleScreenConfig(alpha=0.5, by=0.25)
    assert config.alpha == 0.5
    assert config.mine == 0.0
    with pytest.raises(ValidationError):
        DoubleScreenConfig(by=0.0)
