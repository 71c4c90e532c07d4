"""Target trial emulation results and reporting.

This module implements classes for storing and reporting results from target trial emulation.
"""

from __future__ import annotations

import html
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Union

import numpy as np
import pandas as pd

from ..core.base import EffectEstimate
from ..diagnostics.weights import WeightSummary
from .weights import WeightModelSummary


@dataclass
class EmulationDiagnostics:
    """Diagnostic information from target trial emulation."""

    # Sample sizes
    n_patients: int
    n_person_periods: int
    n_trials: int
    n_person_trials: int
    n_expanded_rows: int

    # Treatment arms
    treatment_group_sizes: dict[str, int]
    events_by_arm: dict[str, int]

    # Events and censoring
    n_events: int
    censoring_rate: float
    n_competing_events: Optional[int] = None

    # Weights carried by the expanded data
    weight_summary: Optional[WeightSummary] = None

    def to_dict(self) -> dict[str, Any]:
        out = {
            "n_patients": self.n_patients,
            "n_person_periods": self.n_person_periods,
            "n_trials": self.n_trials,
            "n_person_trials": self.n_person_trials,
            "n_expanded_rows": self.n_expanded_rows,
            "treatment_group_sizes": self.treatment_group_sizes,
            "events_by_arm": self.events_by_arm,
            "n_events": self.n_events,
            "censoring_rate": self.censoring_rate,
            "n_competing_events": self.n_competing_events,
        }
        if self.weight_summary is not None:
            out["weight_summary"] = self.weight_summary.to_dict()
        return out


@dataclass
class TargetTrialResults:
    """Results from one emulated estimand."""

    estimand: str
    effect: EffectEstimate
    outcome_model_summary: pd.DataFrame

    cumulative_incidence: Optional[pd.DataFrame] = None
    competing_model_summary: Optional[pd.DataFrame] = None
    weight_models: Optional[WeightModelSummary] = None

    # Protocol and emulation details
    protocol_summary: str = ""
    period_length_days: Optional[int] = None

    # Diagnostic information
    diagnostics: Optional[EmulationDiagnostics] = None

    # Raw emulation data (for further analysis)
    expanded_data: Optional[pd.DataFrame] = None

    def risk_at(self, followup_time: int) -> dict[str, float]:
        """Cumulative incidence in each arm at a reported follow-up time."""
        if self.cumulative_incidence is None:
            raise ValueError("No cumulative incidence predictions available")
        row = self.cumulative_incidence[
            self.cumulative_incidence["followup_time"] == followup_time
        ]
        if row.empty:
            raise ValueError(f"Follow-up time {followup_time} was not predicted")
        row = row.iloc[0]
        return {
            "cum_inc_control": float(row["cum_inc_control"]),
            "cum_inc_treated": float(row["cum_inc_treated"]),
            "difference": float(row["difference"]),
        }

    def to_dict(self) -> dict[str, Any]:
        """JSON-serializable summary of the estimand."""
        out: dict[str, Any] = {
            "estimand": self.estimand,
            "odds_ratio": self.effect.estimate,
            "ci_lower": self.effect.ci_lower,
            "ci_upper": self.effect.ci_upper,
            "p_value": self.effect.p_value,
            "confidence_level": self.effect.confidence_level,
            "n_observations": self.effect.n_observations,
            "n_patients": self.effect.n_patients,
            "n_events": self.effect.n_events,
        }
        if self.cumulative_incidence is not None and not self.cumulative_incidence.empty:
            last = int(self.cumulative_incidence["followup_time"].max())
            out["risk_at_end"] = {"followup_time": last, **self.risk_at(last)}
        if self.diagnostics is not None:
            out["diagnostics"] = self.diagnostics.to_dict()
        return out

    def generate_report(
        self,
        include_protocol: bool = True,
        include_diagnostics: bool = True,
        include_weight_models: bool = False,
    ) -> EmulationReport:
        """Generate comprehensive emulation report.

        Args:
            include_protocol: Include protocol specification
            include_diagnostics: Include sample sizes and weight diagnostics
            include_weight_models: Include weight model coefficients

        Returns:
            EmulationReport with formatted results
        """
        sections = {}

        if include_protocol and self.protocol_summary:
            sections["protocol_specification"] = self.protocol_summary

        if include_diagnostics and self.diagnostics:
            sections["emulation_diagnostics"] = self._format_diagnostics_section()

        sections["emulation_results"] = self._format_results_section()

        if self.cumulative_incidence is not None:
            sections["cumulative_incidence"] = self._format_cumulative_incidence_section()

        if include_weight_models and self.weight_models and self.weight_models.models:
            sections["weight_models"] = self._format_weight_models_section()

        sections["interpretation_guidelines"] = self._format_interpretation_section()

        return EmulationReport(
            sections=sections, effect=self.effect, diagnostics=self.diagnostics
        )

    def _format_diagnostics_section(self) -> str:
        """Format sample size and weight diagnostics section."""
        if not self.diagnostics:
            return "No diagnostic information available."

        d = self.diagnostics
        lines = [
            "Emulation Diagnostics",
            "-" * 21,
            f"Patients: {d.n_patients:,}",
            f"Person-periods: {d.n_person_periods:,}",
            f"Trials: {d.n_trials:,}",
            f"Person-trials: {d.n_person_trials:,}",
            f"Expanded rows: {d.n_expanded_rows:,}",
            f"Outcome events: {d.n_events:,}",
            f"Censored person-periods: {d.censoring_rate:.1%}",
        ]
        if d.n_competing_events is not None:
            lines.append(f"Competing events: {d.n_competing_events:,}")

        lines.extend(["", "Person-trials by assigned treatment:"])
        for group, size in d.treatment_group_sizes.items():
            events = d.events_by_arm.get(group, 0)
            lines.append(f"  {group}: {size:,} ({events:,} events)")

        if d.weight_summary is not None:
            w = d.weight_summary
            lines.extend(
                [
                    "",
                    "Weights:",
                    f"  mean {w.mean_weight:.3f}, median {w.median_weight:.3f}, "
                    f"range [{w.min_weight:.3f}, {w.max_weight:.3f}]",
                    f"  effective sample size: {w.effective_sample_size:,.1f} "
                    f"({w.ess_ratio:.1%})",
                    f"  extreme weights (> {w.extreme_weight_threshold:g}): "
                    f"{w.extreme_weight_count:,}",
                ]
            )
        return "\n".join(lines)

    def _format_results_section(self) -> str:
        """Format main results section."""
        effect = self.effect
        label = "Intention-to-Treat" if self.estimand == "ITT" else "Per-Protocol"
        lines = [
            "Emulation Results",
            "-" * 17,
            f"Estimation method: {effect.method}",
            "",
            f"{label} Analysis:",
            f"  Odds ratio: {effect.estimate:.3f}",
        ]
        if effect.ci_lower is not None:
            lines.append(
                f"  {effect.confidence_level:.0%} CI: [{effect.ci_lower:.3f}, "
                f"{effect.ci_upper:.3f}]"
            )
            lines.append(f"  Significant: {effect.is_significant}")
        if effect.p_value is not None:
            lines.append(f"  p-value: {effect.p_value:.4f}")
        return "\n".join(lines)

    def _format_cumulative_incidence_section(self) -> str:
        ci = self.cumulative_incidence
        unit = (
            f" (periods of {self.period_length_days} days)"
            if self.period_length_days
            else ""
        )
        lines = [
            "Cumulative Incidence",
            "-" * 20,
            f"{'follow-up' + unit:<32}{'control':>10}{'treated':>10}{'difference':>12}",
        ]
        # Report at most ~10 time points
        step = max(1, int(np.ceil(len(ci) / 10)))
        shown = ci.iloc[::step]
        if ci.index[-1] not in shown.index:
            shown = pd.concat([shown, ci.iloc[[-1]]])
        for _, row in shown.iterrows():
            lines.append(
                f"{int(row['followup_time']):<32}{row['cum_inc_control']:>10.4f}"
                f"{row['cum_inc_treated']:>10.4f}{row['difference']:>12.4f}"
            )
        return "\n".join(lines)

    def _format_weight_models_section(self) -> str:
        lines = ["Weight Models", "-" * 13]
        for model in self.weight_models.models.values():
            status = " (degenerate)" if model.degenerate else ""
            lines.append(
                f"{model.name}{status}: {model.formula} "
                f"[n={model.n_observations:,}, events={model.n_events:,}]"
            )
        return "\n".join(lines)

    def _format_interpretation_section(self) -> str:
        """Format interpretation guidelines section."""
        lines = [
            "Interpretation Guidelines",
            "-" * 25,
            "",
            "Key Considerations:",
            "• Odds ratios are per-period and pooled over all emulated trials",
            "• Confidence intervals use patient-clustered robust standard errors",
            "• Results assume all measured confounders were adequately controlled",
        ]
        if self.estimand == "ITT":
            lines.append(
                "• The ITT effect compares initiating vs not initiating treatment"
            )
        else:
            lines.extend(
                [
                    "• The per-protocol effect compares sustained treatment strategies",
                    "• Deviations are censored and re-weighted with switching weights",
                ]
            )
        return "\n".join(lines)


def compare_itt_vs_pp(
    itt: TargetTrialResults, pp: TargetTrialResults
) -> dict[str, Any]:
    """Compare intention-to-treat vs per-protocol effects.

    Returns:
        Dictionary with comparison results
    """
    itt_or = itt.effect.estimate
    pp_or = pp.effect.estimate
    comparison: dict[str, Any] = {
        "itt_odds_ratio": itt_or,
        "pp_odds_ratio": pp_or,
        "ratio_of_odds_ratios": pp_or / itt_or,
        "log_difference": float(np.log(pp_or) - np.log(itt_or)),
    }

    if itt.effect.confidence_interval and pp.effect.confidence_interval:
        itt_width = np.log(itt.effect.ci_upper) - np.log(itt.effect.ci_lower)
        pp_width = np.log(pp.effect.ci_upper) - np.log(pp.effect.ci_lower)
        comparison.update(
            {
                "itt_log_ci_width": float(itt_width),
                "pp_log_ci_width": float(pp_width),
                "ci_width_ratio": float(pp_width / itt_width) if itt_width != 0 else None,
            }
        )

    if itt.cumulative_incidence is not None and pp.cumulative_incidence is not None:
        common = set(itt.cumulative_incidence["followup_time"]) & set(
            pp.cumulative_incidence["followup_time"]
        )
        if common:
            last = max(common)
            comparison["followup_time"] = int(last)
            comparison["itt_risk_difference"] = itt.risk_at(last)["difference"]
            comparison["pp_risk_difference"] = pp.risk_at(last)["difference"]

    difference = comparison["log_difference"]
    if abs(difference) < 0.1:
        comparison["interpretation"] = "ITT and per-protocol effects are similar"
    elif abs(np.log(pp_or)) > abs(np.log(itt_or)):
        comparison["interpretation"] = "Per-protocol effect is stronger than ITT effect"
    else:
        comparison["interpretation"] = "Per-protocol effect is weaker than ITT effect"

    return comparison


class EmulationReport:
    """Formatted report from target trial emulation."""

    def __init__(
        self,
        sections: dict[str, str],
        effect: EffectEstimate,
        diagnostics: Optional[EmulationDiagnostics] = None,
    ):
        """Initialize emulation report.

        Args:
            sections: Dictionary of report sections
            effect: Estimated treatment effect
            diagnostics: Optional diagnostic information
        """
        self.sections = sections
        self.effect = effect
        self.diagnostics = diagnostics

    def to_string(self) -> str:
        """Convert report to formatted string.

        Returns:
            Formatted report string
        """
        lines = ["TARGET TRIAL EMULATION REPORT", "=" * 40, ""]

        for content in self.sections.values():
            lines.extend([content, ""])

        lines.extend(
            ["-" * 40, f"Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}"]
        )
        return "\n".join(lines)

    def to_html(self) -> str:
        """Convert report to HTML format.

        Returns:
            HTML formatted report
        """
        html_lines = [
            "<html><head><title>Target Trial Emulation Report</title></head><body>",
            "<h1>Target Trial Emulation Report</h1>",
        ]

        for section_name, content in self.sections.items():
            section_title = section_name.replace("_", " ").title()
            html_lines.extend(
                [f"<h2>{section_title}</h2>", f"<pre>{html.escape(content)}</pre>"]
            )

        html_lines.append("</body></html>")
        return "\n".join(html_lines)

    def save(self, filename: Union[str, Path], format: str = "txt") -> None:
        """Save report to file.

        Args:
            filename: Output filename
            format: Output format ("txt" or "html")
        """
        if format not in ("txt", "html"):
            raise ValueError("format must be 'txt' or 'html'")
        content = self.to_html() if format == "html" else self.to_string()

        with open(filename, "w", encoding="utf-8") as f:
            f.write(content)
