"""Static LVM HTML report builder.

Each section is a small function that slices a polars DataFrame and calls
make_gt() or FigureSection.from_file().

Usage (called from static_lvm.py):
    from analysis.static_lvm_report import build_static_lvm_report
    build_static_lvm_report(ctx.report, estimates=..., plots_dir=ctx.plots_dir, ...)
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

from svac_lvm.config import CONFLICT_COL, COUNTRY_COL, YEAR_COL


def build_static_lvm_report(
    report: ReportBuilder,
    *,
    estimates: pl.DataFrame,
    coverage: pl.DataFrame,
    frequencies: pl.DataFrame,
    cutpoints: pl.DataFrame,
    discrimination: pl.DataFrame,
    diagnostics: dict,
    plots_dir: Path,
    sampling: dict,
    top_n: int = 15,
) -> None:
    """Build the static LVM report by adding sections in reading order."""
    _add_overview(report, estimates, diagnostics, sampling)
    add_coverage_section(report, coverage)
    _add_category_frequencies(report, frequencies)
    add_convergence_section(report, diagnostics)
    add_rhat_section(report, plots_dir, "static")
    add_cutpoint_sections(report, cutpoints, plots_dir, "static")
    add_discrimination_section(report, discrimination)
    _add_top_cases(report, estimates, top_n)
    _add_methodology(report)


# ── Individual Sections ──────────────────────────────────────────────────────


def _add_overview(
    report: ReportBuilder,
    estimates: pl.DataFrame,
    diagnostics: dict,
    sampling: dict,
) -> None:
    status = "converged" if diagnostics.get("rhat_ok") else "NOT converged"
    lines = [
        "<h3>Static Ordinal Latent Variable Model</h3>",
        f"<p><strong>Rows estimated:</strong> {estimates.height:,}</p>",
        f"<p><strong>Sampling:</strong> {sampling['iter']} iterations per chain "
        f"(half tuning), {sampling['chains']} chains, seed {sampling['seed']}</p>",
        f"<p><strong>Convergence:</strong> {status} "
        f"(max R-hat {diagnostics.get('rhat_max', float('nan')):.3f}, "
        f"threshold {diagnostics.get('rhat_threshold', 1.1)})</p>",
    ]
    if "theta" in estimates.columns:
        theta = estimates["theta"]
        lines.append(
            f"<p><strong>theta range:</strong> {theta.min():.2f} to {theta.max():.2f}, "
            f"mean interval width "
            f"{(estimates['theta_upper'] - estimates['theta_low']).mean():.2f}</p>"
        )
    report.add(TextSection(id="overview", title="Overview", html="\n".join(lines)))


def add_coverage_section(report: ReportBuilder, coverage: pl.DataFrame) -> None:
    report.add(
        TableSection(
            id="coverage",
            title="Source Coverage",
            html=make_gt(
                coverage,
                title="Observed Prevalence Codes by Source",
                subtitle="Rows without any source get theta from the prior only",
                column_labels={"item": "Source / Bucket", "n_rows": "Rows", "pct_rows": "% Rows"},
                number_formats={"n_rows": ",.0f", "pct_rows": ".1f"},
            ),
        )
    )


def _add_category_frequencies(report: ReportBuilder, frequencies: pl.DataFrame) -> None:
    if frequencies.height == 0:
        return
    wide = frequencies.pivot(on="category", index="source", values="count")
    wide = wide.rename({c: f"cat_{c}" for c in wide.columns if c != "source"})
    report.add(
        TableSection(
            id="frequencies",
            title="Category Frequencies",
            html=make_gt(
                wide,
                title="Prevalence Codes by Source",
                subtitle="0 = none, 1 = isolated, 2 = numerous, 3 = massive",
                column_labels={"source": "Source"},
            ),
        )
    )


def add_convergence_section(report: ReportBuilder, diagnostics: dict) -> None:
    rows = []
    for key, value in diagnostics.items():
        if key.endswith("_rhat_max"):
            var = key.removesuffix("_rhat_max")
            rows.append(
                {
                    "parameter": var,
                    "rhat_max": float(value),
                    "ess_min": float(diagnostics.get(f"{var}_ess_min", float("nan"))),
                }
            )
    if not rows:
        return
    df = pl.DataFrame(rows)
    report.add(
        TableSection(
            id="convergence",
            title="Convergence Diagnostics",
            html=make_gt(
                df,
                title="R-hat and Bulk ESS by Parameter Group",
                subtitle=f"Divergences: {diagnostics.get('divergences', 0)}",
                column_labels={
                    "parameter": "Parameter",
                    "rhat_max": "Max R-hat",
                    "ess_min": "Min ESS",
                },
                number_formats={"rhat_max": ".4f", "ess_min": ",.0f"},
            ),
        )
    )


def add_rhat_section(report: ReportBuilder, plots_dir: Path, model_type: str) -> None:
    path = plots_dir / f"rhat_{model_type}.png"
    if path.exists():
        report.add(
            FigureSection.from_file(
                f"rhat-{model_type}",
                "R-hat Distribution",
                path,
                caption="Every monitored parameter should sit left of the dashed line.",
            )
        )


def add_cutpoint_sections(
    report: ReportBuilder,
    cutpoints: pl.DataFrame,
    plots_dir: Path,
    model_type: str,
) -> None:
    path = plots_dir / f"cutpoints_{model_type}.png"
    if path.exists():
        report.add(
            FigureSection.from_file(
                f"cutpoints-fig-{model_type}",
                "Cutpoints by Source",
                path,
                caption="Posterior of the thresholds between adjacent prevalence categories.",
            )
        )
    if cutpoints.height > 0:
        report.add(
            TableSection(
                id=f"cutpoints-{model_type}",
                title="Cutpoint Estimates",
                html=make_gt(
                    cutpoints,
                    title="Cutpoint Posterior Summaries",
                    column_labels={
                        "source": "Source",
                        "cutpoint": "Between",
                        "mean": "Mean",
                        "sd": "SD",
                        "q2.5": "2.5%",
                        "q97.5": "97.5%",
                    },
                    number_formats={"mean": ".3f", "sd": ".3f", "q2.5": ".3f", "q97.5": ".3f"},
                ),
            )
        )


def add_discrimination_section(report: ReportBuilder, discrimination: pl.DataFrame) -> None:
    report.add(
        TableSection(
            id="discrimination",
            title="Source Discrimination",
            html=make_gt(
                discrimination,
                title="Discrimination (beta) by Source",
                subtitle="Larger values separate low and high prevalence more sharply",
                column_labels={
                    "source": "Source",
                    "beta_mean": "Mean",
                    "beta_sd": "SD",
                    "beta_q2.5": "2.5%",
                    "beta_q97.5": "97.5%",
                },
                number_formats={
                    "beta_mean": ".3f",
                    "beta_sd": ".3f",
                    "beta_q2.5": ".3f",
                    "beta_q97.5": ".3f",
                },
            ),
        )
    )


def _add_top_cases(report: ReportBuilder, estimates: pl.DataFrame, top_n: int) -> None:
    """Highest-theta rows with their source codes."""
    keep = [c for c in (CONFLICT_COL, COUNTRY_COL, YEAR_COL) if c in estimates.columns]
    prev_cols = [c for c in estimates.columns if c.endswith("_prev")]
    display = (
        estimates.select(keep + prev_cols + ["theta", "theta_low", "theta_upper"])
        .sort("theta", descending=True)
        .head(top_n)
    )
    report.add(
        TableSection(
            id="top-cases",
            title="Highest Estimated Prevalence",
            html=make_gt(
                display,
                title=f"Top {display.height} Rows by theta",
                number_formats={"theta": ".2f", "theta_low": ".2f", "theta_upper": ".2f"},
                source_note="Interval: 2.5% and 97.5% posterior quantiles.",
            ),
        )
    )


def _add_methodology(report: ReportBuilder) -> None:
    html = """
<p>Each row of the panel gets a latent prevalence <code>theta ~ Normal(0, 1)</code>.
Each source <em>s</em> has a positive discrimination <code>beta_s</code> and an
ordered set of cutpoints; an observed code follows
<code>OrderedLogistic(beta_s * theta, cut_s)</code>.  Sources that did not code
a row are left out of that row's likelihood.</p>
<p>Posterior draws come from nutpie's NUTS sampler.  The reported point estimate
is the posterior mean and the interval is the 2.5% to 97.5% quantile range of
the pooled draws.</p>
"""
    report.add(TextSection(id="methodology", title="Methodology", html=html))
