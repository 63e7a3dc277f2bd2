import os
from typing import Any, Dict, Mapping, Optional, Tuple, Union

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from matplotlib import rc_context

from hdsynth.exceptions import HDSynthDataError, HDSynthPlottingError
from hdsynth.utils.datautils import get_t_int, resolve_cols
from hdsynth.utils.imputeutils import ImputedPanel, SYNTHETIC_COL


def plot_estimates(
    time_labels: pd.Index,
    observed_outcome_series: np.ndarray,
    counterfactual_series: np.ndarray,
    pre_periods: int,
    treated_unit_name: str,
    outcome_variable_label: str,
    time_axis_label: str,
    estimation_method_name: str,
    treated_series_color: str = "black",
    counterfactual_series_color: str = "red",
    save_plot_config: Union[bool, Dict[str, Any]] = False,
) -> None:
    """Plot the observed treated trajectory against its counterfactual.

    Parameters
    ----------
    time_labels : pd.Index
        Time periods, used for the treatment line label and the title.
    observed_outcome_series, counterfactual_series : np.ndarray
        1D series of length T.
    pre_periods : int
        Number of pre-treatment periods; the treatment line is drawn there.
    treated_unit_name, outcome_variable_label, time_axis_label : str
        Labels for the legend, title and x-axis.
    estimation_method_name : str
        Used in default file names when saving.
    treated_series_color, counterfactual_series_color : str
        Line colors.
    save_plot_config : bool or dict, default False
        False shows the plot. True saves it as
        ``{estimation_method_name}_{treated_unit_name}.png`` in the working
        directory. A dict may set 'filename', 'extension', 'directory' and
        'display'.
    """
    observed_outcome_series = np.asarray(observed_outcome_series, dtype=float)
    counterfactual_series = np.asarray(counterfactual_series, dtype=float)
    if observed_outcome_series.ndim != 1 or observed_outcome_series.shape != counterfactual_series.shape:
        raise HDSynthDataError("Observed and counterfactual series must be 1D arrays of equal length.")
    if not 0 < pre_periods < len(time_labels):
        raise HDSynthDataError(
            f"pre_periods ({pre_periods}) is out of bounds for {len(time_labels)} time periods."
        )

    plot_theme_settings = {
        "figure.facecolor": "white",
        "figure.figsize": (11, 5),
        "figure.dpi": 100,
        "lines.linewidth": 1.2,
        "font.size": 14,
        "axes.grid": True,
        "axes.titleweight": "bold",
        "axes.labelweight": "bold",
        "axes.spines.top": False,
        "axes.spines.right": False,
        "grid.alpha": 0.1,
        "legend.fontsize": "small",
    }

    with rc_context(rc=plot_theme_settings):
        time_points_numeric = np.arange(len(observed_outcome_series))

        plt.axvline(
            x=pre_periods,
            color="grey",
            linestyle="--",
            linewidth=1.8,
            label=f"Treatment, {time_labels[pre_periods]}",
        )
        plt.plot(time_points_numeric, counterfactual_series, label=f"{estimation_method_name} {treated_unit_name}",
                 color=counterfactual_series_color, linewidth=1.5)
        plt.plot(time_points_numeric, observed_outcome_series, label=f"{treated_unit_name}",
                 color=treated_series_color, linewidth=1.5)

        plt.xlabel(time_axis_label)
        plt.title(
            f"Causal Impact on {outcome_variable_label}, {time_labels.min()} to {time_labels.max()}", loc="left"
        )
        plt.legend()

        if save_plot_config:
            if isinstance(save_plot_config, dict):
                filename = save_plot_config.get("filename", f"{estimation_method_name}_{treated_unit_name}")
                extension = save_plot_config.get("extension", "png")
                directory = save_plot_config.get("directory", os.getcwd())
            else:
                filename = f"{estimation_method_name}_{treated_unit_name}"
                extension = "png"
                directory = os.getcwd()

            os.makedirs(directory, exist_ok=True)
            filepath = os.path.join(directory, f"{filename}.{extension}")
            try:
                plt.savefig(filepath)
            except OSError as e:
                raise HDSynthPlottingError(f"Failed to save plot to {filepath}. Original error: {e}") from e

        if not save_plot_config or (isinstance(save_plot_config, dict) and save_plot_config.get("display", True)):
            plt.show()

        plt.close()


class effects:
    @staticmethod
    def calculate(
        observed_outcome_series: np.ndarray,
        counterfactual_outcome_series: np.ndarray,
        num_pre_treatment_periods: int,
        num_actual_post_periods: int,
    ) -> Tuple[Dict[str, Any], Dict[str, Any], Dict[str, np.ndarray]]:
        """Effect sizes, fit statistics and time series of a treated/counterfactual pair.

        Returns
        -------
        tuple
            ``(effects, fit, vectors)``. ``effects`` has "ATT", "Percent ATT",
            "TTE" and "ATT_Time"; ``fit`` has "T0 RMSE", "T1 RMSE",
            "R-Squared", "Pre-Periods" and "Post-Periods"; ``vectors`` has
            "Observed Unit", "Counterfactual" and "Gap" (gap with event
            time in the second column).
        """
        observed = np.asarray(observed_outcome_series, dtype=float).ravel()
        counterfactual = np.asarray(counterfactual_outcome_series, dtype=float).ravel()
        T0, T1 = num_pre_treatment_periods, num_actual_post_periods
        if observed.shape != counterfactual.shape or T0 + T1 > observed.shape[0]:
            raise HDSynthDataError("Observed and counterfactual series do not match the period counts.")

        gap = observed - counterfactual
        pre_gap = gap[:T0]
        post_gap = gap[T0:T0 + T1]

        pre_variance = np.mean((observed[:T0] - observed[:T0].mean()) ** 2) if T0 > 0 else 0.0
        r_squared = 1 - np.mean(pre_gap ** 2) / pre_variance if pre_variance > 0 else np.nan

        if T1 > 0:
            att = float(np.mean(post_gap))
            mean_counterfactual_post = np.mean(counterfactual[T0:T0 + T1])
            att_percent = 100 * att / mean_counterfactual_post if mean_counterfactual_post != 0 else np.nan
            tte = float(np.sum(post_gap))
            rmse_post = float(np.std(post_gap))
        else:
            att = att_percent = tte = rmse_post = np.nan

        effects_dict = {
            "ATT": round(att, 3),
            "Percent ATT": round(att_percent, 3),
            "TTE": round(tte, 3),
            "ATT_Time": np.round(post_gap, 3),
        }
        fit_dict = {
            "T0 RMSE": round(float(np.sqrt(np.mean(pre_gap ** 2))), 3) if T0 > 0 else np.nan,
            "T1 RMSE": round(rmse_post, 3),
            "R-Squared": round(r_squared, 3),
            "Pre-Periods": T0,
            "Post-Periods": T1,
        }
        # Event time: 1 is the first treated period.
        event_time = np.arange(gap.shape[0]) - T0 + 1
        vectors_dict = {
            "Observed Unit": np.round(observed.reshape(-1, 1), 3),
            "Counterfactual": np.round(counterfactual.reshape(-1, 1), 3),
            "Gap": np.round(np.column_stack((gap, event_time)), 3),
        }
        return effects_dict, fit_dict, vectors_dict


def quick_att(imputed: ImputedPanel, metadata: Any, cols: Optional[Mapping[str, str]] = None) -> float:
    """Average post-period effect: observed treated outcome minus its counterfactual."""
    cols = resolve_cols(cols)
    t_int = get_t_int(metadata)
    panel = imputed.outcomes

    synth = panel.loc[panel[SYNTHETIC_COL] == "Y"]
    if synth.empty:
        raise HDSynthDataError("The imputed panel has no synthesized rows.")
    trt_unit = synth[cols["unit"]].iloc[0]
    observed = panel.loc[(panel[SYNTHETIC_COL] == "N") & (panel[cols["unit"]] == trt_unit)]

    observed = observed.set_index(cols["time"])[cols["outcome"]]
    counterfactual = synth.set_index(cols["time"])[cols["outcome"]]
    post = observed.index[observed.index >= t_int]
    return float((observed.loc[post] - counterfactual.loc[post]).mean())
