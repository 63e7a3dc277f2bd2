from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple, Mapping

import numpy as np
import pandas as pd

from hdsynth.exceptions import HDSynthDataError
from hdsynth.utils.datautils import get_t_int, resolve_cols
from hdsynth.utils.weightutils import SynthFit

SYNTHETIC_COL = "synthetic"
POTENTIAL_OUTCOME_COL = "potential_outcome"


@dataclass(frozen=True)
class ImputedPanel:
    """
    Augmented panel and the diagnostics of the fit that produced it.

    Attributes
    ----------
    outcomes : pd.DataFrame
        Control rows, then the treated rows, then one synthesized row per
        period for the treated unit carrying the counterfactual outcome.
        Observed rows are tagged ``synthetic="N"``; synthesized rows
        ``synthetic="Y"`` and ``potential_outcome="Y(0)"``.
    weights : np.ndarray
        Control unit weights, in the order of ``controls``.
    dual, primal_obj, scaled_primal_obj, primal_group_obj, feasible,
    pscores, eta, groups, controls :
        Forwarded from the weight fit.
    params : any
        Outcome model or screening parameters.
    tauhat_aug : np.ndarray, optional
        Factor-augmented fits: treated mean minus the augmented
        counterfactual, for every period.
    outest : np.ndarray, optional
        Augmented fits: the outcome model's own effect estimate.
    """
    outcomes: pd.DataFrame
    weights: np.ndarray
    dual: Optional[np.ndarray]
    params: Any
    primal_obj: float
    scaled_primal_obj: float
    feasible: bool
    primal_group_obj: Optional[float] = None
    pscores: Optional[np.ndarray] = None
    eta: Optional[np.ndarray] = None
    groups: Optional[Any] = None
    controls: Tuple[Any, ...] = ()
    tauhat_aug: Optional[np.ndarray] = None
    outest: Optional[np.ndarray] = None

    @property
    def outparams(self) -> Any:
        return self.params

    def synthetic_series(self, cols: Optional[Mapping[str, str]] = None) -> pd.Series:
        """Counterfactual outcome of the treated unit, indexed by time."""
        cols = resolve_cols(cols)
        synth = self.outcomes.loc[self.outcomes[SYNTHETIC_COL] == "Y"]
        return synth.set_index(cols["time"])[cols["outcome"]].sort_index()


def _assemble(
    outcomes: pd.DataFrame,
    metadata: Any,
    trt_unit: Any,
    series: np.ndarray,
    cols: Dict[str, str],
) -> pd.DataFrame:
    """Stack control rows, treated rows and the synthesized treated block."""
    t_int = get_t_int(metadata)
    treated = outcomes[cols["treated"]].astype(bool)

    ctrls = outcomes.loc[~treated].copy()
    ctrls[SYNTHETIC_COL] = "N"
    ctrls[POTENTIAL_OUTCOME_COL] = "Y(0)"

    avgs = outcomes.loc[treated].copy()
    avgs[SYNTHETIC_COL] = "N"
    avgs[POTENTIAL_OUTCOME_COL] = np.where(avgs[cols["time"]] >= t_int, "Y(1)", "Y(0)")

    synth = outcomes.loc[outcomes[cols["unit"]] == trt_unit].sort_values(cols["time"]).copy()
    series = np.asarray(series, dtype=float).ravel()
    if synth.shape[0] != series.shape[0]:
        raise HDSynthDataError(
            f"Counterfactual has {series.shape[0]} periods but treated unit {trt_unit!r} "
            f"has {synth.shape[0]} rows."
        )
    synth[cols["outcome"]] = series
    synth[SYNTHETIC_COL] = "Y"
    synth[POTENTIAL_OUTCOME_COL] = "Y(0)"

    return pd.concat([ctrls, avgs, synth], ignore_index=True)


def _package(panel: pd.DataFrame, fit: SynthFit, tauhat_aug: Optional[np.ndarray] = None) -> ImputedPanel:
    return ImputedPanel(
        outcomes=panel,
        weights=fit.weights,
        dual=fit.dual,
        params=fit.params,
        primal_obj=fit.primal_obj,
        scaled_primal_obj=fit.scaled_primal_obj,
        feasible=fit.feasible,
        primal_group_obj=fit.primal_group_obj,
        pscores=fit.pscores,
        eta=fit.eta,
        groups=fit.groups,
        controls=fit.controls,
        tauhat_aug=tauhat_aug,
    )


def impute_controls(
    outcomes: pd.DataFrame,
    metadata: Any,
    fit: SynthFit,
    trt_unit: Any,
    cols: Optional[Mapping[str, str]] = None,
) -> ImputedPanel:
    """Synthetic control as the weighted average of control outcomes in every period."""
    cols = resolve_cols(cols)
    controls = outcomes.loc[~outcomes[cols["treated"]].astype(bool)]
    Y0 = controls.pivot(index=cols["time"], columns=cols["unit"], values=cols["outcome"]).sort_index()
    Y0 = Y0.reindex(sorted(Y0.columns), axis=1).to_numpy(dtype=float)
    if Y0.shape[1] != fit.weights.shape[0]:
        raise HDSynthDataError(
            f"{fit.weights.shape[0]} weights for {Y0.shape[1]} control units."
        )

    panel = _assemble(outcomes, metadata, trt_unit, Y0 @ fit.weights, cols)
    return _package(panel, fit)


def impute_synaug(
    outcomes: pd.DataFrame,
    metadata: Any,
    fit: SynthFit,
    trt_unit: Any,
    cols: Optional[Mapping[str, str]] = None,
) -> ImputedPanel:
    """Doubly robust counterfactual: treated prediction plus weighted control residuals.

    Pre-periods carry the treated pre-period mean; post-periods carry
    ``y0hat_t + resid' w``.
    """
    cols = resolve_cols(cols)
    wresid = fit.resid.T @ fit.weights
    dr = fit.y0hat_t + wresid
    panel = _assemble(outcomes, metadata, trt_unit, np.concatenate([fit.treatout, dr]), cols)
    return _package(panel, fit)


def impute_gsynaug(
    outcomes: pd.DataFrame,
    metadata: Any,
    fit: SynthFit,
    trt_unit: Any,
    cols: Optional[Mapping[str, str]] = None,
) -> ImputedPanel:
    """Factor-augmented counterfactual: mean factor counterfactual plus weighted residuals."""
    cols = resolve_cols(cols)
    wresid = fit.params.residuals @ fit.weights
    aug_ctrl = fit.params.Y_ct.mean(axis=1) + wresid
    panel = _assemble(outcomes, metadata, trt_unit, aug_ctrl, cols)
    return _package(panel, fit, tauhat_aug=fit.treatout - aug_ctrl)
