from enum import Enum
from typing import Optional, Any, Dict, Union, Literal, Type, TypeVar
import pandas as pd
import numpy as np
from pydantic import BaseModel, Field, ValidationError, model_validator
from hdsynth.exceptions import HDSynthDataError, HDSynthConfigError


# =======================
# Strategy selectors
# =======================

class ProgFunc(str, Enum):
    """Outcome (prognostic) model used to predict control outcomes."""
    EN = "EN"
    RF = "RF"
    GSYN = "GSYN"


class WeightFunc(str, Enum):
    """Balancing scheme used to reweight control units."""
    SC = "SC"
    ENT = "ENT"
    NONE = "NONE"


class ScreenFunc(str, Enum):
    """Covariate screen applied before balancing."""
    LAS = "LAS"
    DOUBLE = "2"


class AugMethod(str, Enum):
    """Composition strategy run by the AUGSYNTH estimator."""
    PROGSYN = "progsyn"
    SCREENSYN = "screensyn"
    AUGSYN = "augsyn"
    GSYNAUG = "gsynaug"


# =======================
# Per-backend options
# =======================

class RegressionModelConfig(BaseModel):
    """Options for the elastic net outcome model (``progfunc="EN"``)."""
    alpha: float = Field(default=1.0, gt=0, le=1, description="Mixing between L1 and L2 penalties; 1 is the LASSO. Passed to ElasticNetCV as l1_ratio.")
    avg: bool = Field(default=False, description="Fit one model on the stacked post-periods instead of one per post-period.")
    n_folds: int = Field(default=5, ge=2, description="Number of cross-validation folds used to pick the penalty.")
    max_iter: int = Field(default=10000, ge=1, description="Maximum coordinate descent iterations.")

    class Config:
        extra = "forbid"


class RandomForestModelConfig(BaseModel):
    """Options for the random forest outcome model (``progfunc="RF"``)."""
    avg: bool = Field(default=False, description="Fit one forest on the stacked post-periods instead of one per post-period.")
    n_estimators: int = Field(default=500, ge=1, description="Number of trees.")
    max_features: Union[float, int, str] = Field(default=1 / 3, description="Features considered at each split (regression default p/3).")
    min_samples_leaf: int = Field(default=5, ge=1, description="Minimum number of samples in a leaf.")
    random_state: Optional[int] = Field(default=None, description="Seed for the forest.")
    n_jobs: Optional[int] = Field(default=None, description="Parallel jobs forwarded to scikit-learn.")

    class Config:
        extra = "forbid"


class FactorModelConfig(BaseModel):
    """Options for the interactive fixed effects outcome model (``progfunc="GSYN"``)."""
    r_max: int = Field(default=5, ge=0, description="Largest number of latent factors considered.")
    tol: float = Field(default=1e-3, gt=0, description="Relative convergence tolerance of the alternating fit.")
    max_iter: int = Field(default=1000, ge=1, description="Maximum alternating iterations.")
    force: Literal["none", "unit", "time", "two-way"] = Field(default="two-way", description="Additive fixed effects included next to the factors.")
    cv: bool = Field(default=True, description="Pick the number of factors by leave-one-period-out cross-validation. If False, r_max factors are used.")

    class Config:
        extra = "forbid"


class LassoScreenConfig(BaseModel):
    """Options for the LASSO covariate screen (``screenfunc="LAS"``)."""
    avg: bool = Field(default=False, description="Fit one model on the stacked post-periods instead of one per post-period.")
    alpha: float = Field(default=0.25, gt=0, le=1, description="Mixing between L1 and L2 penalties of the screening regression.")
    n_folds: int = Field(default=5, ge=2, description="Number of cross-validation folds used to pick the penalty.")
    max_iter: int = Field(default=10000, ge=1, description="Maximum coordinate descent iterations.")

    class Config:
        extra = "forbid"


class DoubleScreenConfig(LassoScreenConfig):
    """Options for the LASSO plus L-infinity balance screen (``screenfunc="2"``)."""
    mine: float = Field(default=0.0, ge=0, description="Smallest imbalance tolerance searched.")
    by: float = Field(default=1.0, gt=0, description="Step size of the tolerance grid.")
    dual_tol: float = Field(default=1e-6, ge=0, description="Dual coefficients with absolute value above this select a covariate.")
    solver: str = Field(default="CLARABEL", description="CVXPY solver for the entropy balancing problems.")


class SynthWeightsConfig(BaseModel):
    """Options for simplex synthetic control weights (``weightfunc="SC"``)."""
    solver: str = Field(default="CLARABEL", description="CVXPY solver.")
    tol_abs: float = Field(default=1e-8, gt=0, description="Absolute solver tolerance.")
    tol_rel: float = Field(default=1e-8, gt=0, description="Relative solver tolerance.")

    class Config:
        extra = "forbid"


class EntropyWeightsConfig(BaseModel):
    """Options for maximum entropy balancing weights (``weightfunc="ENT"``)."""
    eps: float = Field(default=0.1, ge=0, description="Radius of the allowed imbalance.")
    norm: Literal["l2", "linf"] = Field(default="l2", description="Norm bounding the imbalance. 'linf' is the LASSO-type dual.")
    feas_tol: float = Field(default=1e-4, ge=0, description="Slack allowed when checking the attained imbalance against eps.")
    solver: str = Field(default="CLARABEL", description="CVXPY solver.")

    class Config:
        extra = "forbid"


OptionsT = TypeVar("OptionsT", bound=BaseModel)


def coerce_options(model_cls: Type[OptionsT], options: Any, name: str = "options") -> OptionsT:
    """Validate an option bag against the backend's configuration model.

    ``None`` yields the defaults, a dict is validated field by field and an
    instance of ``model_cls`` is passed through. Anything else, including the
    options model of a different backend, is rejected.
    """
    if options is None:
        return model_cls()
    if isinstance(options, model_cls):
        return options
    if isinstance(options, BaseModel):
        raise HDSynthConfigError(
            f"{name} must be a {model_cls.__name__} or a dict; got {type(options).__name__}."
        )
    if isinstance(options, dict):
        try:
            return model_cls(**options)
        except ValidationError as e:
            raise HDSynthConfigError(f"Invalid {name} for {model_cls.__name__}: {e}") from e
    raise HDSynthConfigError(
        f"{name} must be a {model_cls.__name__} or a dict; got {type(options).__name__}."
    )


# =======================
# Estimator configuration
# =======================

class BaseEstimatorConfig(BaseModel):
    """
    Base Pydantic model for estimator configurations.
    Includes common fields required by most or all estimators.
    """
    df: pd.DataFrame = Field(..., description="Input panel data as a pandas DataFrame.")
    outcome: str = Field(..., description="Name of the outcome variable column in the DataFrame.")
    treat: str = Field(..., description="Name of the treatment indicator column in the DataFrame.")
    unitid: str = Field(..., description="Name of the unit identifier column in the DataFrame.")
    time: str = Field(..., description="Name of the time period column in the DataFrame.")
    display_graphs: bool = Field(default=True, description="Whether to display plots of results.")
    save: Union[bool, Dict[str, Any]] = Field(default=False, description="Configuration for saving plots. If False (default), plots are not saved. If True, plots are saved with default names. A dict may set 'filename', 'extension', 'directory' and 'display'.")
    counterfactual_color: str = Field(default="red", description="Color for the counterfactual line in plots.")
    treated_color: str = Field(default="black", description="Color for the treated unit line in plots.")

    class Config:
        arbitrary_types_allowed = True
        extra = 'forbid'

    @model_validator(mode='after')
    def check_df_and_columns(cls, values: Any) -> Any:
        df = values.df

        if df.empty:
            raise HDSynthDataError("Input DataFrame 'df' cannot be empty.")

        required_columns = {values.outcome, values.treat, values.unitid, values.time}
        missing_columns = required_columns - set(df.columns)
        if missing_columns:
            raise HDSynthDataError(
                f"Missing required columns in DataFrame 'df': {', '.join(sorted(missing_columns))}"
            )
        return values


class AUGSYNTHConfig(BaseEstimatorConfig):
    """
    Configuration for the augmented / high-dimensional synthetic control estimator.

    ``method`` picks the composition strategy:

    - ``"progsyn"``: balance the fitted outcome model predictions.
    - ``"screensyn"``: balance the covariates kept by a screen.
    - ``"augsyn"``: balance raw pre-period outcomes, then correct with the
      weighted outcome model residuals.
    - ``"gsynaug"``: balance factor model residuals and add them to the
      factor model counterfactual.
    """
    method: AugMethod = Field(default=AugMethod.AUGSYN, description="Composition strategy.")
    progfunc: ProgFunc = Field(default=ProgFunc.EN, description="Outcome model: 'EN', 'RF' or 'GSYN'. Ignored by 'screensyn' and 'gsynaug'.")
    weightfunc: WeightFunc = Field(default=WeightFunc.SC, description="Balancing scheme: 'SC', 'ENT', or 'NONE' (gsynaug only).")
    screenfunc: ScreenFunc = Field(default=ScreenFunc.LAS, description="Covariate screen for 'screensyn': 'LAS' or '2'.")
    opts_prog: Optional[Dict[str, Any]] = Field(default=None, description="Options for the outcome model (or the factor model for 'gsynaug').")
    opts_screen: Optional[Dict[str, Any]] = Field(default=None, description="Options for the covariate screen.")
    opts_weights: Optional[Dict[str, Any]] = Field(default=None, description="Options for the weight fitter.")
    verbose: bool = Field(default=False, description="Log progress at INFO level.")

    @model_validator(mode='after')
    def check_strategy(cls, values: Any) -> Any:
        if values.weightfunc == WeightFunc.NONE and values.method != AugMethod.GSYNAUG:
            raise HDSynthConfigError("weightfunc 'NONE' is only available with method 'gsynaug'.")
        return values


# =======================
# Standardized results
# =======================

class EffectsResults(BaseModel):
    """Treatment effect estimates."""
    att: Optional[float] = Field(default=None, description="Average Treatment Effect on the Treated.")
    att_percent: Optional[float] = Field(default=None, description="ATT as a percentage of the mean post-period counterfactual.")
    additional_effects: Optional[Dict[str, Any]] = Field(default=None, description="Estimator-specific effects.")

    class Config:
        extra = 'forbid'


class FitDiagnosticsResults(BaseModel):
    """Goodness of fit and optimizer diagnostics."""
    rmse_pre: Optional[float] = Field(default=None, description="Root Mean Squared Error in the pre-treatment period.")
    rmse_post: Optional[float] = Field(default=None, description="Standard deviation of the post-treatment gap.")
    r_squared_pre: Optional[float] = Field(default=None, description="R-squared in the pre-treatment period.")
    additional_metrics: Optional[Dict[str, Any]] = Field(default=None, description="Other fit metrics.")

    class Config:
        extra = 'forbid'


class TimeSeriesResults(BaseModel):
    """Observed, counterfactual and gap series of the treated unit."""
    observed_outcome: Optional[np.ndarray] = Field(default=None, description="Observed outcome vector for the treated unit.")
    counterfactual_outcome: Optional[np.ndarray] = Field(default=None, description="Estimated counterfactual outcome vector.")
    estimated_gap: Optional[np.ndarray] = Field(default=None, description="Observed minus counterfactual.")
    time_periods: Optional[np.ndarray] = Field(default=None, description="Time periods corresponding to the series.")

    class Config:
        arbitrary_types_allowed = True
        extra = 'forbid'


class WeightsResults(BaseModel):
    """Donor weights."""
    donor_weights: Optional[Dict[str, float]] = Field(default=None, description="Mapping of donor unit to weight.")
    summary_stats: Optional[Dict[str, Any]] = Field(default=None, description="Summary statistics about the weights.")

    class Config:
        extra = 'forbid'


class MethodDetailsResults(BaseModel):
    """Which strategy produced the results and with what options."""
    method_name: Optional[str] = Field(default=None, description="Name of the composition strategy and backends.")
    parameters_used: Optional[Dict[str, Any]] = Field(default=None, description="Key parameters used for this result set.")

    class Config:
        extra = 'allow'


class BaseEstimatorResults(BaseModel):
    """
    Base Pydantic model for standardized estimator `fit()` method results.
    """
    effects: Optional[EffectsResults] = None
    fit_diagnostics: Optional[FitDiagnosticsResults] = None
    time_series: Optional[TimeSeriesResults] = None
    weights: Optional[WeightsResults] = None
    method_details: Optional[MethodDetailsResults] = None
    additional_outputs: Optional[Dict[str, Any]] = Field(default=None, description="Outputs not covered by the standard fields.")
    raw_results: Optional[Dict[str, Any]] = Field(default=None, exclude=True, description="Unprocessed outputs of the estimator's core logic.")

    class Config:
        arbitrary_types_allowed = True
        extra = 'forbid'
