import numpy as np
import pandas as pd
from dataclasses import dataclass, field, replace
from typing import Optional, Dict, Tuple, Any, Mapping
from hdsynth.exceptions import HDSynthDataError, HDSynthConfigError

# Constants for dictionary keys used in logictreat and dataprep
KEY_NUM_TREATED_UNITS = "Num Treated Units"
KEY_POST_PERIODS = "Post Periods"
KEY_TREATED_INDEX = "Treated Index"
KEY_PRE_PERIODS = "Pre Periods"
KEY_TOTAL_PERIODS = "Total Periods"

# Default column names of the tidy panel
DEFAULT_COLS = {"unit": "unit", "time": "time", "outcome": "outcome", "treated": "treated"}


def logictreat(treatment_matrix: np.ndarray) -> Dict[str, Any]:
    """Locate the single treated unit and its treatment timing.

    Parameters
    ----------
    treatment_matrix : np.ndarray
        2D array with time periods as rows and units as columns. A value of 1
        marks a treated unit-period. Shape (n_periods, n_units).

    Returns
    -------
    Dict[str, Any]
        "Num Treated Units" (always 1), "Treated Index" (column index of the
        treated unit, shape (1,)), "Pre Periods", "Post Periods" and
        "Total Periods".

    Raises
    ------
    HDSynthDataError
        If the matrix is not binary, has no treated cell, has more than one
        treated unit, or treatment switches off after it starts.
    """
    if not isinstance(treatment_matrix, np.ndarray):
        raise HDSynthDataError("treatment_matrix must be a NumPy array")

    # NaNs may stand for missing data rather than an invalid treatment state.
    unique_values = np.unique(treatment_matrix)
    valid_treatment_values = unique_values[~np.isnan(unique_values)]
    if not np.all(np.isin(valid_treatment_values, [0, 1])):
        raise HDSynthDataError("Treatment indicator must be a binary variable (0 or 1).")

    if not np.count_nonzero(treatment_matrix == 1) > 0:
        raise HDSynthDataError("No treated units found (zero treated observations with value 1)")

    treated_indices = np.where(np.any(treatment_matrix == 1, axis=0))[0]
    if len(treated_indices) != 1:
        raise HDSynthDataError(
            f"Exactly one treated unit is supported; found {len(treated_indices)}."
        )

    treated_unit_treatment_vector = treatment_matrix[:, treated_indices[0]]
    first_treatment_period_index = np.where(treated_unit_treatment_vector == 1)[0][0]
    # Once treated, a unit must stay treated.
    if not np.all(treated_unit_treatment_vector[first_treatment_period_index:] == 1):
        raise HDSynthDataError("Treatment is not sustained for the treated unit.")

    num_post_treatment_periods = int(np.sum(treated_unit_treatment_vector[first_treatment_period_index:]))
    num_pre_treatment_periods = int(first_treatment_period_index)

    return {
        KEY_NUM_TREATED_UNITS: 1,
        KEY_POST_PERIODS: num_post_treatment_periods,
        KEY_TREATED_INDEX: treated_indices,
        KEY_PRE_PERIODS: num_pre_treatment_periods,
        KEY_TOTAL_PERIODS: num_pre_treatment_periods + num_post_treatment_periods,
    }


def dataprep(
    df: pd.DataFrame,
    unit_id_column_name: str,
    time_period_column_name: str,
    outcome_column_name: str,
    treatment_indicator_column_name: str,
) -> Dict[str, Any]:
    """Pivot a long panel with a unit-by-period treatment indicator to wide form.

    Parameters
    ----------
    df : pd.DataFrame
        Long panel with unit, time, outcome and treatment indicator columns.
    unit_id_column_name : str
        Column identifying units.
    time_period_column_name : str
        Column identifying time periods.
    outcome_column_name : str
        Outcome column.
    treatment_indicator_column_name : str
        Column equal to 1 for the treated unit in post-treatment periods.

    Returns
    -------
    Dict[str, Any]
        "treated_unit_name", "Ywide" (time x units), "y" (treated outcome
        vector), "donor_names", "donor_matrix" (time x donors),
        "total_periods", "pre_periods", "post_periods" and "time_labels".

    Raises
    ------
    HDSynthDataError
        If there are no donors or no pre-treatment periods, or if
        `logictreat` rejects the treatment pattern.
    """
    treatment_matrix_wide = df.pivot(index=time_period_column_name, columns=unit_id_column_name, values=treatment_indicator_column_name)
    treatment_analysis_results = logictreat(treatment_matrix_wide.to_numpy(dtype=float))

    treated_unit_column_index = treatment_analysis_results[KEY_TREATED_INDEX][0]
    num_pre_treatment_periods = treatment_analysis_results[KEY_PRE_PERIODS]

    outcome_matrix_wide = df.pivot(index=time_period_column_name, columns=unit_id_column_name, values=outcome_column_name)
    treated_unit_name = outcome_matrix_wide.columns[treated_unit_column_index]
    donor_outcome_df_wide = outcome_matrix_wide.drop(columns=[treated_unit_name])

    if donor_outcome_df_wide.shape[1] == 0:
        raise HDSynthDataError("No donor units found after pivoting and selecting.")
    if num_pre_treatment_periods == 0:
        raise HDSynthDataError("Not enough pre-treatment periods (0 pre-periods found).")

    return {
        "treated_unit_name": treated_unit_name,
        "Ywide": outcome_matrix_wide,
        "y": outcome_matrix_wide[treated_unit_name].to_numpy(dtype=float),
        "donor_names": donor_outcome_df_wide.columns,
        "donor_matrix": donor_outcome_df_wide.to_numpy(dtype=float),
        "total_periods": treatment_analysis_results[KEY_TOTAL_PERIODS],
        "pre_periods": num_pre_treatment_periods,
        "post_periods": treatment_analysis_results[KEY_POST_PERIODS],
        "time_labels": outcome_matrix_wide.index,
    }


def balance(df: pd.DataFrame, unit_id_column_name: str, time_period_column_name: str) -> None:
    """Check that the panel is strongly balanced.

    Every unit must be observed exactly once in every time period.

    Raises
    ------
    HDSynthDataError
        If duplicate unit-time observations are found or some unit misses
        some period.
    """
    if df.duplicated([unit_id_column_name, time_period_column_name]).any():
        raise HDSynthDataError(
            "Duplicate observations found. Ensure each combination of unit and time is unique."
        )

    total_unique_time_periods = df[time_period_column_name].nunique()
    observations_per_unit = df.groupby(unit_id_column_name)[time_period_column_name].nunique()
    if not (observations_per_unit == total_unique_time_periods).all():
        raise HDSynthDataError(
            "The panel is not strongly balanced. Not all units have observations "
            "for all unique time periods in the dataset."
        )


# =======================
# Tidy panel formatters
# =======================

def resolve_cols(cols: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """Merge user column names over the defaults, rejecting unknown roles."""
    if cols is None:
        return dict(DEFAULT_COLS)
    unknown = set(cols) - set(DEFAULT_COLS)
    if unknown:
        raise HDSynthConfigError(
            f"Unknown column roles {sorted(unknown)}; expected a subset of {sorted(DEFAULT_COLS)}."
        )
    return {**DEFAULT_COLS, **dict(cols)}


def get_t_int(metadata: Any) -> Any:
    """Read the first treated period ``t_int`` from a mapping or a one-row DataFrame."""
    if isinstance(metadata, pd.DataFrame):
        if "t_int" not in metadata.columns or metadata.empty:
            raise HDSynthDataError("metadata must contain a 't_int' column with at least one row.")
        return metadata["t_int"].iloc[0]
    if isinstance(metadata, Mapping):
        if "t_int" not in metadata:
            raise HDSynthDataError("metadata must contain 't_int'.")
        return metadata["t_int"]
    raise HDSynthDataError(
        f"metadata must be a mapping or a DataFrame; got {type(metadata).__name__}."
    )


def _validate_panel(outcomes: pd.DataFrame, cols: Dict[str, str]) -> None:
    if not isinstance(outcomes, pd.DataFrame) or outcomes.empty:
        raise HDSynthDataError("outcomes must be a non-empty DataFrame.")
    missing_columns = set(cols.values()) - set(outcomes.columns)
    if missing_columns:
        raise HDSynthDataError(
            f"Missing required columns in outcomes: {', '.join(sorted(missing_columns))}"
        )
    if outcomes[cols["outcome"]].isna().any():
        raise HDSynthDataError("Outcome column contains missing values.")
    balance(outcomes, cols["unit"], cols["time"])
    # The treated flag marks units, so it cannot change over time.
    if (outcomes.groupby(cols["unit"])[cols["treated"]].nunique() > 1).any():
        raise HDSynthDataError("The treated flag must be constant within each unit.")


def _wide_panel(outcomes: pd.DataFrame, metadata: Any, cols: Dict[str, str]) -> Tuple[pd.DataFrame, np.ndarray, np.ndarray]:
    """Return the time x unit outcome matrix, per-unit treatment flags and the pre-period mask."""
    _validate_panel(outcomes, cols)
    t_int = get_t_int(metadata)

    ywide = outcomes.pivot(index=cols["time"], columns=cols["unit"], values=cols["outcome"]).sort_index()
    ywide = ywide.reindex(sorted(ywide.columns), axis=1)
    trt = (
        outcomes.groupby(cols["unit"])[cols["treated"]].first()
        .reindex(ywide.columns).astype(bool).to_numpy().astype(int)
    )

    pre_mask = np.asarray(ywide.index < t_int)
    if not pre_mask.any():
        raise HDSynthDataError(f"No pre-treatment periods before t_int={t_int}.")
    if pre_mask.all():
        raise HDSynthDataError(f"No post-treatment periods at or after t_int={t_int}.")
    if trt.sum() == 0:
        raise HDSynthDataError("No treated units flagged in the treated column.")
    if trt.sum() == len(trt):
        raise HDSynthDataError("No control units: every unit is flagged as treated.")
    return ywide, trt, pre_mask


@dataclass(frozen=True)
class IPWFormat:
    """Unit-by-feature view of the panel.

    ``X`` holds pre-period outcomes (units x pre-periods), ``y`` the
    post-period outcomes (units x post-periods) and ``trt`` a 0/1 treatment
    flag per unit. Rows are aligned by position.
    """
    X: np.ndarray
    y: np.ndarray
    trt: np.ndarray
    units: Tuple[Any, ...] = ()
    pre_times: Tuple[Any, ...] = ()
    post_times: Tuple[Any, ...] = ()

    def __post_init__(self):
        X = np.asarray(self.X, dtype=float)
        y = np.asarray(self.y, dtype=float)
        trt = np.asarray(self.trt).astype(int).ravel()
        if X.ndim != 2 or y.ndim != 2:
            raise HDSynthDataError("X and y must be 2D arrays (units x periods).")
        if not (X.shape[0] == y.shape[0] == trt.shape[0]):
            raise HDSynthDataError(
                f"Row mismatch: X has {X.shape[0]} rows, y has {y.shape[0]}, trt has {trt.shape[0]}."
            )
        object.__setattr__(self, "X", X)
        object.__setattr__(self, "y", y)
        object.__setattr__(self, "trt", trt)


@dataclass(frozen=True)
class SynthData:
    """Balancing target: ``Z0`` (features x controls) and ``Z1`` (features,)."""
    Z0: np.ndarray
    Z1: np.ndarray
    Y0plot: Optional[np.ndarray] = None
    Y1plot: Optional[np.ndarray] = None

    def __post_init__(self):
        Z0 = np.asarray(self.Z0, dtype=float)
        if Z0.ndim == 1:
            Z0 = Z0.reshape(-1, 1)
        Z1 = np.asarray(self.Z1, dtype=float).ravel()
        if Z0.ndim != 2:
            raise HDSynthDataError("Z0 must be a 2D array (features x controls).")
        if Z0.shape[0] != Z1.shape[0]:
            raise HDSynthDataError(
                f"Z0 has {Z0.shape[0]} features but Z1 has {Z1.shape[0]}."
            )
        object.__setattr__(self, "Z0", Z0)
        object.__setattr__(self, "Z1", Z1)


@dataclass(frozen=True)
class SynthFormat:
    """Balancing target plus the tidy panel it was built from."""
    synth_data: SynthData
    outcomes: pd.DataFrame
    trt_unit: Any
    control_units: Tuple[Any, ...] = field(default_factory=tuple)
    cols: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_COLS))

    def __post_init__(self):
        if self.control_units and self.synth_data.Z0.shape[1] != len(self.control_units):
            raise HDSynthDataError(
                f"Z0 has {self.synth_data.Z0.shape[1]} columns but there are "
                f"{len(self.control_units)} control units."
            )

    def with_target(self, Z0: np.ndarray, Z1: np.ndarray) -> "SynthFormat":
        """Return a copy balancing ``Z0``/``Z1`` instead of the current target."""
        return replace(self, synth_data=replace(self.synth_data, Z0=Z0, Z1=Z1))


def format_ipw(outcomes: pd.DataFrame, metadata: Any, cols: Optional[Mapping[str, str]] = None) -> IPWFormat:
    """Build the unit-by-feature view of a tidy panel.

    Periods strictly before ``metadata["t_int"]`` become the columns of
    ``X``; the remaining periods become the columns of ``y``. Units are
    sorted by identifier.
    """
    cols = resolve_cols(cols)
    ywide, trt, pre_mask = _wide_panel(outcomes, metadata, cols)
    return IPWFormat(
        X=ywide.loc[pre_mask].to_numpy(dtype=float).T,
        y=ywide.loc[~pre_mask].to_numpy(dtype=float).T,
        trt=trt,
        units=tuple(ywide.columns),
        pre_times=tuple(ywide.index[pre_mask]),
        post_times=tuple(ywide.index[~pre_mask]),
    )


def format_synth(
    outcomes: pd.DataFrame,
    metadata: Any,
    trt_unit: Any = None,
    cols: Optional[Mapping[str, str]] = None,
) -> SynthFormat:
    """Build the balancing view of a tidy panel.

    ``Z0`` stacks the controls' pre-period outcomes as columns and ``Z1`` is
    the pre-period profile of the treated units (their mean when more than
    one unit is flagged). When ``trt_unit`` is None the single treated unit
    is used.
    """
    cols = resolve_cols(cols)
    ywide, trt, pre_mask = _wide_panel(outcomes, metadata, cols)

    treated_units = list(ywide.columns[trt == 1])
    control_units = tuple(ywide.columns[trt == 0])
    if trt_unit is None:
        if len(treated_units) != 1:
            raise HDSynthDataError(
                f"trt_unit must be given when {len(treated_units)} units are flagged as treated."
            )
        trt_unit = treated_units[0]
    elif trt_unit not in treated_units:
        raise HDSynthDataError(f"trt_unit {trt_unit!r} is not flagged as treated.")

    controls_wide = ywide[list(control_units)].to_numpy(dtype=float)
    treated_wide = ywide[treated_units].to_numpy(dtype=float).mean(axis=1)

    synth_data = SynthData(
        Z0=controls_wide[pre_mask],
        Z1=treated_wide[pre_mask],
        Y0plot=controls_wide,
        Y1plot=treated_wide,
    )
    tidy = outcomes.sort_values([cols["unit"], cols["time"]]).reset_index(drop=True)
    return SynthFormat(
        synth_data=synth_data,
        outcomes=tidy,
        trt_unit=trt_unit,
        control_units=control_units,
        cols=cols,
    )
