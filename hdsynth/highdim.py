"""
High-dimensional options for synthetic controls.

1. LASSO (and LASSO plus L-infinity balance) as a covariate screen.
2. Fitting E[Y(0) | X] and balancing the predictions.
3. Augmented approach: fit E[Y(0) | X] and balance the residuals, with an
   elastic net, a random forest or a latent factor model.

Every entry point takes a tidy panel (``cols`` maps the unit, time, outcome
and treated-flag roles to column names), metadata holding the first treated
period ``t_int`` and the treated unit, and returns an ``ImputedPanel``.
"""

import logging
from dataclasses import replace
from typing import Any, Mapping, Optional, Union

import numpy as np
import pandas as pd

from hdsynth.config_models import ProgFunc, WeightFunc, ScreenFunc
from hdsynth.utils.composeutils import (
    resolve_selector,
    fit_progsyn_formatted,
    fit_screensyn_formatted,
    fit_augsyn_formatted,
    fit_gsynaug_formatted,
)
from hdsynth.utils.datautils import format_ipw, format_synth, resolve_cols
from hdsynth.utils.imputeutils import ImputedPanel, impute_controls, impute_synaug, impute_gsynaug

LOGGER = logging.getLogger(__name__)

_BALANCERS = (WeightFunc.SC, WeightFunc.ENT)


def get_progsyn(
    outcomes: pd.DataFrame,
    metadata: Any,
    trt_unit: Any = None,
    progfunc: Union[str, ProgFunc] = ProgFunc.EN,
    weightfunc: Union[str, WeightFunc] = WeightFunc.SC,
    opts_prog: Any = None,
    opts_weights: Any = None,
    cols: Optional[Mapping[str, str]] = None,
) -> ImputedPanel:
    """
    Fit synthetic controls on estimated outcomes under control.

    Parameters
    ----------
    outcomes : pd.DataFrame
        Tidy panel with unit, time, outcome and treated-flag columns.
    metadata : mapping or pd.DataFrame
        Must hold ``t_int``, the first treated period.
    trt_unit : optional
        Treated unit to synthesize. Defaults to the single flagged unit.
    progfunc : {"EN", "RF", "GSYN"}
        Elastic net, random forest or latent factor outcome model.
    weightfunc : {"SC", "ENT"}
        Simplex synthetic control or maximum entropy weights.
    opts_prog, opts_weights : dict or options model, optional
        Options for the outcome model and the weight fitter.
    cols : mapping, optional
        Column names for the "unit", "time", "outcome" and "treated" roles.

    Returns
    -------
    ImputedPanel
        Panel with the weighted-control synthetic series appended.
    """
    progfunc = resolve_selector(ProgFunc, progfunc, "progfunc")
    weightfunc = resolve_selector(WeightFunc, weightfunc, "weightfunc", _BALANCERS)
    cols = resolve_cols(cols)

    ipw_format = format_ipw(outcomes, metadata, cols)
    syn_format = format_synth(outcomes, metadata, trt_unit, cols)

    out = fit_progsyn_formatted(ipw_format, syn_format, progfunc, weightfunc, opts_prog, opts_weights)
    LOGGER.debug("progsyn fitted with %s/%s", progfunc.value, weightfunc.value)
    return impute_controls(syn_format.outcomes, metadata, out, syn_format.trt_unit, cols)


def get_screensyn(
    outcomes: pd.DataFrame,
    metadata: Any,
    trt_unit: Any = None,
    screenfunc: Union[str, ScreenFunc] = ScreenFunc.LAS,
    weightfunc: Union[str, WeightFunc] = WeightFunc.SC,
    opts_screen: Any = None,
    opts_weights: Any = None,
    cols: Optional[Mapping[str, str]] = None,
) -> ImputedPanel:
    """
    Screen the pre-period covariates, then fit synthetic controls on the survivors.

    ``screenfunc="LAS"`` keeps what a LASSO of the post-period outcomes uses;
    ``screenfunc="2"`` adds the covariates an L-infinity entropy balance
    needs. The double screen raises ``HDSynthInfeasibleError`` when no
    imbalance tolerance in its search range is feasible.
    """
    screenfunc = resolve_selector(ScreenFunc, screenfunc, "screenfunc")
    weightfunc = resolve_selector(WeightFunc, weightfunc, "weightfunc", _BALANCERS)
    cols = resolve_cols(cols)

    ipw_format = format_ipw(outcomes, metadata, cols)
    syn_format = format_synth(outcomes, metadata, trt_unit, cols)

    out = fit_screensyn_formatted(ipw_format, syn_format, screenfunc, weightfunc, opts_screen, opts_weights)
    LOGGER.debug("screensyn fitted with %s/%s", screenfunc.value, weightfunc.value)
    return impute_controls(syn_format.outcomes, metadata, out, syn_format.trt_unit, cols)


def get_augsyn(
    outcomes: pd.DataFrame,
    metadata: Any,
    trt_unit: Any = None,
    progfunc: Union[str, ProgFunc] = ProgFunc.EN,
    weightfunc: Union[str, WeightFunc] = WeightFunc.SC,
    opts_prog: Any = None,
    opts_weights: Any = None,
    cols: Optional[Mapping[str, str]] = None,
) -> ImputedPanel:
    """
    Fit an outcome model and balance its residuals.

    Weights are fitted on the raw pre-period outcomes; the counterfactual
    is the treated prediction plus the weighted control residuals. The
    outcome model's own estimate is returned as ``outest``.
    """
    progfunc = resolve_selector(ProgFunc, progfunc, "progfunc")
    weightfunc = resolve_selector(WeightFunc, weightfunc, "weightfunc", _BALANCERS)
    cols = resolve_cols(cols)

    ipw_format = format_ipw(outcomes, metadata, cols)
    syn_format = format_synth(outcomes, metadata, trt_unit, cols)

    out = fit_augsyn_formatted(ipw_format, syn_format, progfunc, weightfunc, opts_prog, opts_weights)
    LOGGER.debug("augsyn fitted with %s/%s", progfunc.value, weightfunc.value)
    imputed = impute_synaug(syn_format.outcomes, metadata, out, syn_format.trt_unit, cols)
    return replace(imputed, outest=out.tauhat)


def get_gsynaug(
    outcomes: pd.DataFrame,
    metadata: Any,
    trt_unit: Any = None,
    weightfunc: Union[str, WeightFunc] = WeightFunc.SC,
    opts_gsyn: Any = None,
    opts_weights: Any = None,
    cols: Optional[Mapping[str, str]] = None,
) -> ImputedPanel:
    """
    Fit the latent factor model and balance its pre-period residuals.

    ``weightfunc="NONE"`` returns the plain factor model counterfactual:
    simplex weights are still fitted so their diagnostics are reported, but
    the weights are set to zero before imputation.
    """
    weightfunc = resolve_selector(WeightFunc, weightfunc, "weightfunc")
    cols = resolve_cols(cols)

    ipw_format = format_ipw(outcomes, metadata, cols)
    syn_format = format_synth(outcomes, metadata, trt_unit, cols)

    out = fit_gsynaug_formatted(ipw_format, syn_format, weightfunc, opts_gsyn, opts_weights)
    if weightfunc == WeightFunc.NONE:
        out = replace(out, weights=np.zeros_like(out.weights))
    LOGGER.debug("gsynaug fitted with rank %d and %s weights", out.params.rank, weightfunc.value)

    imputed = impute_gsynaug(syn_format.outcomes, metadata, out, syn_format.trt_unit, cols)
    return replace(imputed, outest=out.tauhat)
