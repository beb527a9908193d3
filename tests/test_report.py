"""
Tests for the HTML report system in analysis/report.py and the per-phase
report builders.

Run: uv run pytest tests/test_report.py -v
"""

import base64
import sys
from pathlib import Path

import polars as pl
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from analysis.report import (
    FigureSection,
    ReportBuilder,
    TableSection,
    TextSection,
    _decimals_from_fmt,
    make_gt,
)

# ── _decimals_from_fmt() ─────────────────────────────────────────────────────


class TestDecimalsFromFmt:
    def test_three_decimals(self):
        assert _decimals_from_fmt(".3f") == 3

    def test_one_decimal_with_comma(self):
        assert _decimals_from_fmt(",.1f") == 1

    def test_no_match_returns_zero(self):
        assert _decimals_from_fmt("d") == 0


# ── Sections ─────────────────────────────────────────────────────────────────


class TestSections:
    """Each section type wraps its body in a typed container."""

    def test_table_container(self):
        html = TableSection(id="t1", title="T", html="<table></table>").render()
        assert '<div class="table-container" id="t1-body">' in html
        assert "<table></table>" in html

    def test_text_container(self):
        html = TextSection(id="x1", title="Note", html="<p>Hello</p>").render()
        assert '<div class="text-container" id="x1-body">' in html

    def test_caption_only_when_given(self):
        with_cap = TableSection(id="t1", title="T", html="", caption="Note").render()
        without = TableSection(id="t1", title="T", html="").render()
        assert '<p class="caption">Note</p>' in with_cap
        assert "caption" not in without

    def test_figure_embeds_base64(self):
        html = FigureSection(id="f1", title="Plot", image_data="AAAA").render()
        assert "data:image/png;base64,AAAA" in html
        assert 'alt="Plot"' in html

    def test_figure_from_file(self, tmp_path):
        png = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16
        path = tmp_path / "rhat_static.png"
        path.write_bytes(png)
        section = FigureSection.from_file("rhat", "R-hat", path, caption="Cap")
        assert section.image_data == base64.b64encode(png).decode("ascii")
        assert section.caption == "Cap"

    def test_figure_from_matplotlib(self):
        import matplotlib

        matplotlib.use("Agg")
        import matplotlib.pyplot as plt

        fig, ax = plt.subplots()
        ax.plot([0, 1], [0, 1])
        section = FigureSection.from_figure("f", "Line", fig)
        plt.close(fig)
        assert base64.b64decode(section.image_data)[:4] == b"\x89PNG"

    def test_frozen(self):
        section = TextSection(id="x1", title="Note", html="<p>Hello</p>")
        with pytest.raises(AttributeError):
            section.html = "<p>New</p>"  # type: ignore[misc]


# ── ReportBuilder ────────────────────────────────────────────────────────────


class TestReportBuilder:
    """Assembles sections into a single HTML file."""

    def _report(self, **kwargs) -> ReportBuilder:
        report = ReportBuilder(title="Static LVM Report", **kwargs)
        report.add(TextSection(id="overview", title="Overview", html="<p>1</p>"))
        report.add(TableSection(id="coverage", title="Source Coverage", html="<table>D</table>"))
        return report

    def test_has_sections(self):
        assert ReportBuilder().has_sections is False
        assert self._report().has_sections is True

    def test_header_and_toc(self):
        html = self._report(dataset="svac").render()
        assert html.startswith("<!DOCTYPE html>")
        assert "Static LVM Report" in html
        assert "Dataset: <strong>svac</strong>" in html
        assert 'href="#overview"' in html
        assert 'href="#coverage"' in html

    def test_ids_unique(self):
        html = self._report().render()
        assert html.count('id="overview"') == 1
        assert html.count('id="coverage"') == 1
        assert 'id="coverage-body"' in html

    def test_section_order(self):
        html = self._report().render()
        assert html.index("<p>1</p>") < html.index("<table>D</table>")

    def test_runtime_only_when_set(self):
        assert "Runtime: 2m 15s" in self._report(elapsed_display="2m 15s").render()
        assert "Runtime:" not in self._report().render()

    def test_commit_hidden_when_unknown(self):
        assert "Commit:" not in self._report(git_hash="unknown").render()
        assert "abcdef12" in self._report(git_hash="abcdef1234567890").render()

    def test_write_creates_parent(self, tmp_path):
        path = tmp_path / "nested" / "report.html"
        self._report().write(path)
        assert "</html>" in path.read_text()


# ── make_gt() ────────────────────────────────────────────────────────────────


class TestMakeGt:
    def test_title_subtitle_note(self):
        df = pl.DataFrame({"x": [1]})
        html = make_gt(df, title="My Title", subtitle="Sub", source_note="Source: SVAC")
        assert "My Title" in html
        assert "Sub" in html
        assert "Source: SVAC" in html

    def test_styles_inlined(self):
        html = make_gt(pl.DataFrame({"x": [1]}), title="Inline")
        assert "<style" not in html
        assert 'style="' in html

    def test_rejects_non_polars(self):
        with pytest.raises(TypeError, match="polars DataFrame"):
            make_gt({"a": [1]}, title="Bad")

    def test_number_format(self):
        html = make_gt(pl.DataFrame({"value": [1.23456]}), number_formats={"value": ".2f"})
        assert "1.23" in html
        assert "1.2346" not in html

    def test_unknown_columns_ignored(self):
        df = pl.DataFrame({"x": [1.5]})
        html = make_gt(df, column_labels={"nope": "N"}, number_formats={"nope": ".1f"})
        assert isinstance(html, str)


# ── Phase report builders ────────────────────────────────────────────────────


def _diagnostics() -> dict:
    return {
        "rhat_threshold": 1.1,
        "theta_rhat_max": 1.01,
        "theta_ess_min": 812.0,
        "beta_rhat_max": 1.002,
        "beta_ess_min": 1500.0,
        "rhat_max": 1.01,
        "divergences": 0,
        "rhat_ok": True,
    }


def _cutpoints() -> pl.DataFrame:
    return pl.DataFrame(
        {
            "source": ["state", "state"],
            "cutpoint": ["0|1", "1|2"],
            "mean": [-1.0, 0.5],
            "sd": [0.1, 0.1],
            "q2.5": [-1.2, 0.3],
            "q97.5": [-0.8, 0.7],
        }
    )


def _discrimination() -> pl.DataFrame:
    return pl.DataFrame(
        {
            "source": ["state"],
            "beta_mean": [1.4],
            "beta_sd": [0.2],
            "beta_q2.5": [1.0],
            "beta_q97.5": [1.8],
        }
    )


def _section_ids(report: ReportBuilder) -> list[str]:
    return [s.id for s in report._sections]


class TestStaticReport:
    def test_sections_added(self, svac_panel, tmp_path):
        from analysis.static_lvm_data import (
            category_frequencies,
            prepare_lvm_data,
            summarize_coverage,
        )
        from analysis.static_lvm_report import build_static_lvm_report

        data = prepare_lvm_data(svac_panel, ["state", "ai", "hrw"], 4)
        estimates = svac_panel.with_columns(
            pl.lit(0.0).alias("theta"),
            pl.lit(0.1).alias("theta_sd"),
            pl.lit(0.5).alias("theta_upper"),
            pl.lit(-0.5).alias("theta_low"),
        )
        report = ReportBuilder(title="Static")
        build_static_lvm_report(
            report,
            estimates=estimates,
            coverage=summarize_coverage(data),
            frequencies=category_frequencies(data),
            cutpoints=_cutpoints(),
            discrimination=_discrimination(),
            diagnostics=_diagnostics(),
            plots_dir=tmp_path,
            sampling={"iter": 2000, "chains": 4, "seed": 20160711},
        )
        ids = _section_ids(report)
        assert ids[0] == "overview"
        assert "frequencies" in ids
        assert "convergence" in ids
        assert "top-cases" in ids
        assert ids[-1] == "methodology"
        # No PNGs on disk: figure sections are skipped
        assert "rhat-static" not in ids
        assert "converged" in report.render()


class TestDynamicReport:
    def test_optional_sections(self, tmp_path):
        from analysis.dynamic_lvm_report import build_dynamic_lvm_report

        report = ReportBuilder(title="Dynamic")
        build_dynamic_lvm_report(
            report,
            estimates=pl.DataFrame({"theta": [0.0, 1.0]}),
            coverage=pl.DataFrame(
                {"item": ["state"], "n_rows": [2], "pct_rows": [100.0]}
            ),
            lengths=pl.DataFrame({"conflict": ["1"], "n_years": [2], "n_gaps": [1]}),
            cutpoints=_cutpoints(),
            discrimination=_discrimination(),
            tau=pl.DataFrame(
                {"tau_mean": [0.3], "tau_sd": [0.05], "tau_q2.5": [0.2], "tau_q97.5": [0.4]}
            ),
            movers=pl.DataFrame(),
            correlation=None,
            diagnostics=_diagnostics(),
            plots_dir=tmp_path,
            sampling={"iter": 4000, "chains": 4, "seed": 1},
        )
        ids = _section_ids(report)
        assert "trajectory-lengths" in ids
        assert "top-movers" not in ids
        assert "static-correlation" not in ids
        assert "0.3000" in report.render()


class TestPlotsReport:
    def test_file_table_per_type(self, tmp_path):
        from analysis.plot_estimates_report import build_plot_estimates_report

        files = pl.DataFrame(
            {
                "conflict": ["203"],
                "country": ["Chad"],
                "n_years": [3],
                "file": ["pp-static-estimates-Chad-203.pdf"],
            }
        )
        report = ReportBuilder(title="Plots")
        build_plot_estimates_report(
            report,
            produced={"static": files},
            plots_dir=tmp_path,
            every_conflict=False,
            n_worst=10,
        )
        assert _section_ids(report) == ["overview", "files-static"]
        assert "pp-static-estimates-Chad-203.pdf" in report.render()
