"""Dynamic LVM HTML report builder.

Reuses the coverage, convergence, cutpoint and discrimination sections of
the static report and adds the random-walk specific ones: trajectory
lengths, tau, top movers and agreement with the static estimates.

Usage (called from dynamic_lvm.py):
    from analysis.dynamic_lvm_report import build_dynamic_lvm_report
    build_dynamic_lvm_report(ctx.report, estimates=..., plots_dir=ctx.plots_dir, ...)
"""

from pathlib import Path

import polars as pl

try:
    from analysis.report import FigureSection, ReportBuilder, TableSection, TextSection, make_gt
except ModuleNotFoundError:
    from report import (  # type: ignore[no-redef]
        FigureSection,
        ReportBuilder,
        TableSection,
        TextSection,
        make_gt,
    )

try:
    from analysis.static_lvm_report import (
        add_convergence_section,
        add_coverage_section,
        add_cutpoint_sections,
        add_discrimination_section,
        add_rhat_section,
    )
except ModuleNotFoundError:
    from static_lvm_report import (  # type: ignore[no-redef]
        add_convergence_section,
        add_coverage_section,
        add_cutpoint_sections,
        add_discrimination_section,
        add_rhat_section,
    )

from svac_lvm.config import CONFLICT_COL, COUNTRY_COL


def build_dynamic_lvm_report(
    report: ReportBuilder,
    *,
    estimates: pl.DataFrame,
    coverage: pl.DataFrame,
    lengths: pl.DataFrame,
    cutpoints: pl.DataFrame,
    discrimination: pl.DataFrame,
    tau: pl.DataFrame,
    movers: pl.DataFrame,
    correlation: pl.DataFrame | None,
    diagnostics: dict,
    plots_dir: Path,
    sampling: dict,
) -> None:
    """Build the full dynamic LVM HTML report by adding sections."""
    _add_overview(report, estimates, lengths, tau, diagnostics, sampling)
    add_coverage_section(report, coverage)
    _add_trajectory_lengths(report, lengths)
    add_convergence_section(report, diagnostics)
    add_rhat_section(report, plots_dir, "dynamic")
    _add_tau_posterior(report, plots_dir)
    add_cutpoint_sections(report, cutpoints, plots_dir, "dynamic")
    add_discrimination_section(report, discrimination)
    _add_top_movers(report, movers)
    _add_static_correlation(report, correlation, plots_dir)
    _add_methodology(report)


# ── Individual Sections ──────────────────────────────────────────────────────


def _add_overview(
    report: ReportBuilder,
    estimates: pl.DataFrame,
    lengths: pl.DataFrame,
    tau: pl.DataFrame,
    diagnostics: dict,
    sampling: dict,
) -> None:
    status = "converged" if diagnostics.get("rhat_ok") else "NOT converged"
    lines = [
        "<h3>Dynamic Ordinal Latent Variable Model</h3>",
        f"<p><strong>Rows estimated:</strong> {estimates.height:,} "
        f"across {lengths.height} conflicts</p>",
        f"<p><strong>Sampling:</strong> {sampling['iter']} iterations per chain "
        f"(half tuning), {sampling['chains']} chains, seed {sampling['seed']}</p>",
        f"<p><strong>Convergence:</strong> {status} "
        f"(max R-hat {diagnostics.get('rhat_max', float('nan')):.3f})</p>",
    ]
    if tau.height > 0:
        t = tau.row(0, named=True)
        lines.append(
            f"<p><strong>Evolution SD (tau):</strong> {t['tau_mean']:.4f} "
            f"[{t['tau_q2.5']:.4f}, {t['tau_q97.5']:.4f}]</p>"
        )
    report.add(TextSection(id="overview", title="Overview", html="\n".join(lines)))


def _add_trajectory_lengths(report: ReportBuilder, lengths: pl.DataFrame) -> None:
    """Distribution of years per conflict."""
    if lengths.height == 0:
        return
    summary = (
        lengths.group_by("n_years")
        .agg(pl.len().alias("n_conflicts"), pl.col("n_gaps").gt(0).sum().alias("with_gaps"))
        .sort("n_years")
    )
    report.add(
        TableSection(
            id="trajectory-lengths",
            title="Trajectory Lengths",
            html=make_gt(
                summary,
                title="Years Observed per Conflict",
                subtitle="Gaps: missing years inside a conflict, bridged by a wider step",
                column_labels={
                    "n_years": "Years",
                    "n_conflicts": "Conflicts",
                    "with_gaps": "With Gaps",
                },
            ),
        )
    )


def _add_tau_posterior(report: ReportBuilder, plots_dir: Path) -> None:
    path = plots_dir / "tau_dynamic.png"
    if path.exists():
        report.add(
            FigureSection.from_file(
                "tau-posterior",
                "Evolution SD (tau)",
                path,
                caption="Typical change in theta from one year to the next within a conflict.",
            )
        )


def _add_top_movers(report: ReportBuilder, movers: pl.DataFrame) -> None:
    if movers.height == 0:
        return
    display = movers.select(
        CONFLICT_COL,
        COUNTRY_COL,
        "n_years",
        "first_year",
        "last_year",
        "total_movement",
        "net_movement",
        "direction",
    )
    report.add(
        TableSection(
            id="top-movers",
            title="Top Movers",
            html=make_gt(
                display,
                title="Conflicts with the Largest Change in theta",
                subtitle="Total = sum of absolute year-to-year changes; net = last - first",
                column_labels={
                    CONFLICT_COL: "Conflict",
                    COUNTRY_COL: "Country",
                    "n_years": "Years",
                    "first_year": "First",
                    "last_year": "Last",
                    "total_movement": "Total",
                    "net_movement": "Net",
                    "direction": "Direction",
                },
                number_formats={"total_movement": ".3f", "net_movement": ".3f"},
            ),
        )
    )


def _add_static_correlation(
    report: ReportBuilder,
    correlation: pl.DataFrame | None,
    plots_dir: Path,
) -> None:
    if correlation is None:
        return
    if correlation.height > 0:
        report.add(
            TableSection(
                id="static-correlation",
                title="Agreement with Static Estimates",
                html=make_gt(
                    correlation,
                    title="Dynamic vs. Static theta",
                    column_labels={
                        "n_shared": "Shared Rows",
                        "pearson_r": "Pearson r",
                        "spearman_rho": "Spearman rho",
                    },
                    number_formats={"pearson_r": ".3f", "spearman_rho": ".3f"},
                ),
            )
        )
    path = plots_dir / "static_vs_dynamic.png"
    if path.exists():
        report.add(
            FigureSection.from_file(
                "static-vs-dynamic",
                "Dynamic vs. Static Scatter",
                path,
                caption="Dotted line: identity.",
            )
        )


def _add_methodology(report: ReportBuilder) -> None:
    html = """
<p>Rows are sorted by conflict and year.  The first year of each conflict
starts from <code>Normal(0, 1)</code>; every later year adds a step
<code>tau * sqrt(gap) * z</code> with <code>z ~ Normal(0, 1)</code>, where
<code>gap</code> is the number of years since the previous observed year.
The measurement model and sampler settings match the static phase.</p>
<p>Intervals are the 2.5% and 97.5% quantiles of the pooled posterior draws.</p>
"""
    report.add(TextSection(id="methodology", title="Methodology", html=html))
