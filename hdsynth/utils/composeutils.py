"""Composition strategies wiring an outcome model or screen to a weight fitter.

Every strategy follows the same steps: fit the model on the IPW view,
substitute a model-derived quantity into a new balancing target, fit the
weights, and attach the model diagnostics to the returned ``SynthFit``.
Backends are looked up in the registries below, so adding one does not touch
the strategies.
"""

import logging
import warnings
from dataclasses import replace
from typing import Any, Callable, Dict, Optional, Sequence, Type, TypeVar, Union

import numpy as np

from hdsynth.config_models import ProgFunc, WeightFunc, ScreenFunc
from hdsynth.exceptions import HDSynthConfigError, HDSynthEstimationError
from hdsynth.utils.datautils import IPWFormat, SynthFormat
from hdsynth.utils.progutils import ProgFit, fit_prog_reg, fit_prog_rf, fit_prog_gsynth
from hdsynth.utils.screenutils import ScreenFit, lasso_screen, double_screen
from hdsynth.utils.weightutils import SynthFit, fit_synth_weights, fit_entropy_weights

LOGGER = logging.getLogger(__name__)

PROG_MODELS: Dict[ProgFunc, Callable[..., ProgFit]] = {
    ProgFunc.EN: fit_prog_reg,
    ProgFunc.RF: fit_prog_rf,
    ProgFunc.GSYN: fit_prog_gsynth,
}

SCREENERS: Dict[ScreenFunc, Callable[..., ScreenFit]] = {
    ScreenFunc.LAS: lasso_screen,
    ScreenFunc.DOUBLE: double_screen,
}

# NONE still fits simplex weights; callers zero them afterwards.
WEIGHT_FITTERS: Dict[WeightFunc, Callable[..., SynthFit]] = {
    WeightFunc.SC: fit_synth_weights,
    WeightFunc.ENT: fit_entropy_weights,
    WeightFunc.NONE: fit_synth_weights,
}

SelectorT = TypeVar("SelectorT", ProgFunc, WeightFunc, ScreenFunc)


def resolve_selector(
    enum_cls: Type[SelectorT],
    value: Union[str, SelectorT],
    name: str,
    allowed: Optional[Sequence[SelectorT]] = None,
) -> SelectorT:
    """Map a selector string onto its enum member, naming the valid set on failure."""
    allowed = list(allowed) if allowed is not None else list(enum_cls)
    valid = ", ".join(f"'{member.value}'" for member in allowed)
    try:
        member = enum_cls(value)
    except ValueError:
        raise HDSynthConfigError(f"{name} must be one of {valid}; got {value!r}.") from None
    if member not in allowed:
        raise HDSynthConfigError(f"{name} must be one of {valid}; got {value!r}.")
    return member


def _fit_weights(target: SynthFormat, weightfunc: WeightFunc, opts_weights: Any) -> SynthFit:
    syn = WEIGHT_FITTERS[weightfunc](target, opts_weights)
    LOGGER.debug(
        "Fitted %s weights on %d features (feasible=%s)",
        weightfunc.value, target.synth_data.Z0.shape[0], syn.feasible,
    )
    if not np.all(np.isfinite(syn.weights)):
        raise HDSynthEstimationError(
            f"{weightfunc.value} balancing found no weights for the target; "
            "the imbalance bound cannot be met."
        )
    if not syn.feasible:
        warnings.warn(
            f"{weightfunc.value} weights exceed the requested imbalance tolerance.", UserWarning
        )
    return syn


def fit_progsyn_formatted(
    ipw_format: IPWFormat,
    syn_format: SynthFormat,
    progfunc: Union[str, ProgFunc],
    weightfunc: Union[str, WeightFunc],
    opts_prog: Any = None,
    opts_weights: Any = None,
) -> SynthFit:
    """Balance the outcome model's predictions of the post-period outcomes.

    ``Z0`` becomes the predicted control outcomes (post-periods x controls)
    and ``Z1`` the mean prediction over the treated units.
    """
    progfunc = resolve_selector(ProgFunc, progfunc, "progfunc")
    weightfunc = resolve_selector(WeightFunc, weightfunc, "weightfunc", (WeightFunc.SC, WeightFunc.ENT))
    trt = ipw_format.trt

    fitout = PROG_MODELS[progfunc](ipw_format.X, ipw_format.y, trt, opts_prog)
    y0hat = fitout.y0hat

    target = syn_format.with_target(
        Z0=y0hat[trt == 0].T,
        Z1=y0hat[trt == 1].mean(axis=0),
    )
    syn = _fit_weights(target, weightfunc, opts_weights)
    return replace(syn, params=fitout.params)


def fit_screensyn_formatted(
    ipw_format: IPWFormat,
    syn_format: SynthFormat,
    screenfunc: Union[str, ScreenFunc],
    weightfunc: Union[str, WeightFunc],
    opts_screen: Any = None,
    opts_weights: Any = None,
) -> SynthFit:
    """Balance only the covariates kept by the screen."""
    screenfunc = resolve_selector(ScreenFunc, screenfunc, "screenfunc")
    weightfunc = resolve_selector(WeightFunc, weightfunc, "weightfunc", (WeightFunc.SC, WeightFunc.ENT))
    trt = ipw_format.trt

    fitout = SCREENERS[screenfunc](ipw_format, syn_format, opts_screen)
    selX = fitout.selX
    if selX.shape[1] == 0:
        raise HDSynthEstimationError("The covariate screen selected no covariates to balance.")

    target = syn_format.with_target(
        Z0=selX[trt == 0].T,
        Z1=selX[trt == 1].mean(axis=0),
    )
    syn = _fit_weights(target, weightfunc, opts_weights)
    return replace(syn, params=fitout.params)


def fit_augsyn_formatted(
    ipw_format: IPWFormat,
    syn_format: SynthFormat,
    progfunc: Union[str, ProgFunc],
    weightfunc: Union[str, WeightFunc],
    opts_prog: Any = None,
    opts_weights: Any = None,
) -> SynthFit:
    """Balance the raw pre-period outcomes and keep what the augmentation needs.

    Attached fields: ``y0hat_c`` (control predictions), ``y0hat_t`` (mean
    treated prediction), ``resid`` (control actual minus predicted),
    ``tauhat`` (treated actual minus predicted, averaged over treated units)
    and ``treatout`` (treated pre-period mean).
    """
    progfunc = resolve_selector(ProgFunc, progfunc, "progfunc")
    weightfunc = resolve_selector(WeightFunc, weightfunc, "weightfunc", (WeightFunc.SC, WeightFunc.ENT))
    X, y, trt = ipw_format.X, ipw_format.y, ipw_format.trt
    ctrl, treated = trt == 0, trt == 1

    fitout = PROG_MODELS[progfunc](X, y, trt, opts_prog)
    y0hat = fitout.y0hat
    if y0hat.shape != y.shape:
        raise HDSynthEstimationError(
            "Augmentation needs one prediction per post-period; fit the outcome model with avg=False."
        )

    syn = _fit_weights(syn_format, weightfunc, opts_weights)
    return replace(
        syn,
        params=fitout.params,
        y0hat_c=y0hat[ctrl],
        y0hat_t=y0hat[treated].mean(axis=0),
        resid=y[ctrl] - y0hat[ctrl],
        tauhat=(y[treated] - y0hat[treated]).mean(axis=0),
        treatout=X[treated].mean(axis=0),
    )


def fit_gsynaug_formatted(
    ipw_format: IPWFormat,
    syn_format: SynthFormat,
    weightfunc: Union[str, WeightFunc],
    opts_gsyn: Any = None,
    opts_weights: Any = None,
) -> SynthFit:
    """Balance the factor model's pre-period residuals.

    ``Z0`` becomes the control residuals and ``Z1`` the treated mean minus
    the mean counterfactual, both over the pre-periods. ``tauhat`` keeps
    that treated gap over all periods and ``treatout`` the treated mean.
    """
    weightfunc = resolve_selector(WeightFunc, weightfunc, "weightfunc")
    X, y, trt = ipw_format.X, ipw_format.y, ipw_format.trt
    ctrl, treated = trt == 0, trt == 1

    gsyn = fit_prog_gsynth(X, y, trt, opts_gsyn)
    params = gsyn.params

    treatout = np.hstack([X, y])[treated].mean(axis=0)
    trt_resids = treatout - params.Y_ct.mean(axis=1)

    t0 = X.shape[1]
    target = syn_format.with_target(Z0=params.residuals[:t0], Z1=trt_resids[:t0])
    syn = _fit_weights(target, weightfunc, opts_weights)
    return replace(
        syn,
        params=params,
        y0hat_c=gsyn.y0hat[ctrl],
        y0hat_t=gsyn.y0hat[treated].mean(axis=0),
        tauhat=trt_resids,
        treatout=treatout,
    )
