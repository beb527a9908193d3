"""Per-conflict plots HTML report builder.

The PDFs stay on disk; the report lists them and embeds the PNG overview of
each estimate type.
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


def build_plot_estimates_report(
    report: ReportBuilder,
    *,
    produced: dict[str, pl.DataFrame],
    plots_dir: Path,
    every_conflict: bool,
    n_worst: int,
) -> None:
    """Build the plots report: overview, then per type a file table and overview figure."""
    _add_overview(report, produced, every_conflict, n_worst)
    for model_type, files in produced.items():
        _add_file_table(report, model_type, files)
        _add_overview_figure(report, model_type, plots_dir)


def _add_overview(
    report: ReportBuilder,
    produced: dict[str, pl.DataFrame],
    every_conflict: bool,
    n_worst: int,
) -> None:
    selection = (
        "every conflict"
        if every_conflict
        else f"conflicts with a row among the {n_worst} largest distinct rank values"
    )
    lines = [
        "<h3>Per-Conflict Estimate Plots</h3>",
        f"<p><strong>Selection:</strong> {selection}</p>",
        "<ul>",
    ]
    for model_type, files in produced.items():
        lines.append(f"<li>{model_type}: {files.height} PDF(s)</li>")
    lines.append("</ul>")
    report.add(TextSection(id="overview", title="Overview", html="\n".join(lines)))


def _add_file_table(report: ReportBuilder, model_type: str, files: pl.DataFrame) -> None:
    if files.height == 0:
        return
    report.add(
        TableSection(
            id=f"files-{model_type}",
            title=f"{model_type.capitalize()}: Plotted Conflicts",
            html=make_gt(
                files,
                title=f"{model_type.capitalize()} Estimate Plots",
                column_labels={
                    "conflict": "Conflict",
                    "country": "Country",
                    "n_years": "Years",
                    "file": "File",
                },
            ),
        )
    )


def _add_overview_figure(report: ReportBuilder, model_type: str, plots_dir: Path) -> None:
    path = plots_dir / f"overview_{model_type}.png"
    if path.exists():
        report.add(
            FigureSection.from_file(
                f"overview-{model_type}",
                f"{model_type.capitalize()}: Trajectories",
                path,
                caption="Posterior mean theta (squares) with the 95% credible band.",
            )
        )
