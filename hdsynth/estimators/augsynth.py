import logging
import warnings
from dataclasses import dataclass
from typing import Any, Callable, Dict, Union

import numpy as np
import pandas as pd
from pydantic import ValidationError

from ..config_models import (
    AUGSYNTHConfig,
    AugMethod,
    BaseEstimatorResults,
    EffectsResults,
    FitDiagnosticsResults,
    MethodDetailsResults,
    TimeSeriesResults,
    WeightsResults,
)
from ..exceptions import (
    HDSynthConfigError,
    HDSynthDataError,
    HDSynthEstimationError,
    HDSynthPlottingError,
)
from ..highdim import get_augsyn, get_gsynaug, get_progsyn, get_screensyn
from ..utils.datautils import balance, dataprep
from ..utils.imputeutils import ImputedPanel
from ..utils.resultutils import effects, plot_estimates, quick_att

LOGGER = logging.getLogger(__name__)

TREATED_UNIT_COL = "treated_unit"


@dataclass(frozen=True)
class AUGSYNTHOutput:
    """
    Container for the results of an AUGSYNTH fit.

    Attributes
    ----------
    results : BaseEstimatorResults
        Standardized effects, fit diagnostics, time series and donor weights.
    imputed : ImputedPanel
        The augmented tidy panel with the synthesized treated rows, plus the
        weight and outcome model diagnostics.
    prepped_data : dict
        Wide matrices and period counts produced by ``dataprep``.
    """
    results: BaseEstimatorResults
    imputed: ImputedPanel
    prepped_data: dict


class AUGSYNTH:
    """
    Augmented and high-dimensional synthetic control estimator.

    Wraps the functional entry points of ``hdsynth.highdim`` for a long
    panel with a unit-by-period treatment indicator, as used by the other
    estimators: the panel is checked and pivoted, one composition strategy
    builds the counterfactual of the treated unit, and the effects are
    summarized and optionally plotted.

    Parameters
    ----------
    config : AUGSYNTHConfig or dict
        - df, outcome, treat, unitid, time : the panel and its column names.
          ``treat`` is 1 for the treated unit from the first treated period on.
        - method : {"progsyn", "screensyn", "augsyn", "gsynaug"}, default "augsyn"
        - progfunc : {"EN", "RF", "GSYN"}, default "EN"
        - weightfunc : {"SC", "ENT", "NONE"}, default "SC"
        - screenfunc : {"LAS", "2"}, default "LAS"
        - opts_prog, opts_screen, opts_weights : dict, optional
        - display_graphs, save, counterfactual_color, treated_color : plotting.
        - verbose : bool, default False

    References
    ----------
    Ben-Michael, E., Feller, A., and Rothstein, J. (2021). The Augmented
    Synthetic Control Method. Journal of the American Statistical
    Association, 116(536), 1789-1803.

    Xu, Y. (2017). Generalized Synthetic Control Method: Causal Inference
    with Interactive Fixed Effects Models. Political Analysis, 25(1), 57-76.

    Examples
    --------
    >>> from hdsynth import AUGSYNTH
    >>> config = {
    ...     "df": data,
    ...     "outcome": "gdpcap",
    ...     "treat": "treated",
    ...     "unitid": "region",
    ...     "time": "year",
    ...     "method": "augsyn",
    ...     "progfunc": "EN",
    ...     "display_graphs": False,
    ... }
    >>> out = AUGSYNTH(config).fit()
    >>> out.results.effects.att
    """

    def __init__(self, config: Union[AUGSYNTHConfig, dict]) -> None:
        if isinstance(config, dict):
            config = AUGSYNTHConfig(**config)
        self.config = config
        self.df: pd.DataFrame = config.df
        self.unitid: str = config.unitid
        self.time: str = config.time
        self.outcome: str = config.outcome
        self.treated: str = config.treat
        self.method: AugMethod = config.method
        self.counterfactual_color: str = config.counterfactual_color
        self.treated_color: str = config.treated_color
        self.display_graphs: bool = config.display_graphs
        self.save: Union[bool, dict] = config.save
        self.verbose: bool = config.verbose

    def _tidy_panel(self, treated_unit_name: Any) -> pd.DataFrame:
        tidy = self.df[[self.unitid, self.time, self.outcome]].copy()
        tidy[TREATED_UNIT_COL] = (tidy[self.unitid] == treated_unit_name).astype(int)
        return tidy

    def _run(self, tidy: pd.DataFrame, metadata: Dict[str, Any], cols: Dict[str, str]) -> ImputedPanel:
        config = self.config
        runners: Dict[AugMethod, Callable[[], ImputedPanel]] = {
            AugMethod.PROGSYN: lambda: get_progsyn(
                tidy, metadata, progfunc=config.progfunc, weightfunc=config.weightfunc,
                opts_prog=config.opts_prog, opts_weights=config.opts_weights, cols=cols,
            ),
            AugMethod.SCREENSYN: lambda: get_screensyn(
                tidy, metadata, screenfunc=config.screenfunc, weightfunc=config.weightfunc,
                opts_screen=config.opts_screen, opts_weights=config.opts_weights, cols=cols,
            ),
            AugMethod.AUGSYN: lambda: get_augsyn(
                tidy, metadata, progfunc=config.progfunc, weightfunc=config.weightfunc,
                opts_prog=config.opts_prog, opts_weights=config.opts_weights, cols=cols,
            ),
            AugMethod.GSYNAUG: lambda: get_gsynaug(
                tidy, metadata, weightfunc=config.weightfunc,
                opts_gsyn=config.opts_prog, opts_weights=config.opts_weights, cols=cols,
            ),
        }
        return runners[self.method]()

    def _method_name(self) -> str:
        config = self.config
        if self.method == AugMethod.SCREENSYN:
            backend = config.screenfunc.value
        elif self.method == AugMethod.GSYNAUG:
            backend = "GSYN"
        else:
            backend = config.progfunc.value
        return f"{self.method.value}-{backend}-{config.weightfunc.value}"

    def _package(
        self,
        imputed: ImputedPanel,
        prepared_data: Dict[str, Any],
        metadata: Dict[str, Any],
        cols: Dict[str, str],
    ) -> BaseEstimatorResults:
        counterfactual = imputed.synthetic_series(cols).reindex(prepared_data["time_labels"]).to_numpy(dtype=float)
        observed = prepared_data["y"]

        effects_dict, fit_dict, vectors_dict = effects.calculate(
            observed, counterfactual, prepared_data["pre_periods"], prepared_data["post_periods"]
        )

        donor_weights = {str(unit): float(w) for unit, w in zip(imputed.controls, imputed.weights)}
        additional_effects = {
            "TTE": effects_dict["TTE"],
            "ATT_Time": effects_dict["ATT_Time"],
            "quick_att": quick_att(imputed, metadata, cols),
        }
        if imputed.outest is not None:
            additional_effects["outcome_model_effect"] = np.asarray(imputed.outest)
        if imputed.tauhat_aug is not None:
            additional_effects["tauhat_aug"] = np.asarray(imputed.tauhat_aug)

        return BaseEstimatorResults(
            effects=EffectsResults(
                att=effects_dict["ATT"],
                att_percent=effects_dict["Percent ATT"],
                additional_effects=additional_effects,
            ),
            fit_diagnostics=FitDiagnosticsResults(
                rmse_pre=fit_dict["T0 RMSE"],
                rmse_post=fit_dict["T1 RMSE"],
                r_squared_pre=fit_dict["R-Squared"],
                additional_metrics={
                    "pre_periods": fit_dict["Pre-Periods"],
                    "post_periods": fit_dict["Post-Periods"],
                    "primal_obj": imputed.primal_obj,
                    "scaled_primal_obj": imputed.scaled_primal_obj,
                    "feasible": imputed.feasible,
                },
            ),
            time_series=TimeSeriesResults(
                observed_outcome=vectors_dict["Observed Unit"].ravel(),
                counterfactual_outcome=vectors_dict["Counterfactual"].ravel(),
                estimated_gap=vectors_dict["Gap"][:, 0],
                time_periods=np.asarray(prepared_data["time_labels"]),
            ),
            weights=WeightsResults(
                donor_weights=donor_weights,
                summary_stats={
                    "num_positive_weights": int(np.sum(imputed.weights > 1e-6)),
                    "weight_sum": float(np.sum(imputed.weights)),
                },
            ),
            method_details=MethodDetailsResults(
                method_name=self._method_name(),
                parameters_used={
                    "method": self.method.value,
                    "progfunc": self.config.progfunc.value,
                    "weightfunc": self.config.weightfunc.value,
                    "screenfunc": self.config.screenfunc.value,
                    "opts_prog": self.config.opts_prog,
                    "opts_screen": self.config.opts_screen,
                    "opts_weights": self.config.opts_weights,
                },
            ),
            raw_results={"dual": imputed.dual, "params": imputed.params},
        )

    def fit(self) -> AUGSYNTHOutput:
        """
        Fit the configured composition strategy.

        Steps: check the panel is balanced, pivot it with ``dataprep``, build
        the tidy panel and metadata the functional API expects, run the
        strategy, summarize the effects and optionally plot.

        Returns
        -------
        AUGSYNTHOutput

        Raises
        ------
        HDSynthDataError
            If the panel is unbalanced or the treatment pattern is invalid.
        HDSynthConfigError
            If backend options are invalid.
        HDSynthEstimationError
            If a model or weight fit fails. ``HDSynthInfeasibleError`` is
            raised when the double screen finds no feasible tolerance.
        """
        if self.verbose:
            logging.getLogger("hdsynth").setLevel(logging.INFO)

        # Step 1: Balance
        try:
            balance(self.df, self.unitid, self.time)
        except Exception as e:
            raise HDSynthDataError(f"Error balancing panel data: {str(e)}") from e

        # Step 2: Prepare matrices
        try:
            prepared_data = dataprep(self.df, self.unitid, self.time, self.outcome, self.treated)
        except HDSynthDataError:
            raise
        except Exception as e:
            raise HDSynthDataError(f"Error preparing data matrices: {str(e)}") from e

        treated_unit_name = prepared_data["treated_unit_name"]
        metadata = {
            "t_int": prepared_data["time_labels"][prepared_data["pre_periods"]],
            "trt_unit": treated_unit_name,
        }
        cols = {"unit": self.unitid, "time": self.time, "outcome": self.outcome, "treated": TREATED_UNIT_COL}
        LOGGER.info(
            "Fitting %s for %r: %d donors, %d pre-periods, %d post-periods",
            self._method_name(), treated_unit_name, len(prepared_data["donor_names"]),
            prepared_data["pre_periods"], prepared_data["post_periods"],
        )

        # Step 3: Estimate
        try:
            imputed = self._run(self._tidy_panel(treated_unit_name), metadata, cols)
            results = self._package(imputed, prepared_data, metadata, cols)
        except (HDSynthConfigError, HDSynthDataError, HDSynthEstimationError):
            raise
        except ValidationError as e:
            raise HDSynthEstimationError(f"Error creating results structure: {str(e)}") from e
        except Exception as e:
            raise HDSynthEstimationError(f"Unexpected error during AUGSYNTH estimation: {str(e)}") from e

        LOGGER.info("ATT %.4f (feasible=%s)", results.effects.att, imputed.feasible)

        # Step 4: Plotting
        if self.display_graphs:
            try:
                plot_estimates(
                    time_labels=prepared_data["time_labels"],
                    observed_outcome_series=prepared_data["y"],
                    counterfactual_series=results.time_series.counterfactual_outcome,
                    pre_periods=prepared_data["pre_periods"],
                    treated_unit_name=str(treated_unit_name),
                    outcome_variable_label=self.outcome,
                    time_axis_label=self.time,
                    estimation_method_name=self._method_name(),
                    treated_series_color=self.treated_color,
                    counterfactual_series_color=self.counterfactual_color,
                    save_plot_config=self.save,
                )
            except (HDSynthPlottingError, HDSynthDataError) as e:
                warnings.warn(f"Plotting failed: {str(e)}", UserWarning)
            except Exception as e:
                warnings.warn(f"Unexpected plotting error: {str(e)}", UserWarning)

        return AUGSYNTHOutput(results=results, imputed=imputed, prepped_data=prepared_data)
