"""Self-contained HTML reports for the LVM phases.

A report is an ordered list of sections rendered into one HTML file with a
table of contents.  Plots are embedded as base64 PNG, tables are rendered by
great_tables, so the file can be mailed around without its plots/ folder.

Section types:
  - TableSection: HTML produced by make_gt()
  - FigureSection: PNG from disk or from a live matplotlib figure
  - TextSection: free HTML (overview, methodology)

Usage:
    from analysis.report import ReportBuilder, TableSection, FigureSection, make_gt

    report = ReportBuilder(title="Static LVM Report", dataset="svac")
    report.add(TableSection(id="coverage", title="Source Coverage", html=make_gt(df)))
    report.add(FigureSection.from_file("rhat", "R-hat Distribution", path))
    report.write(Path("report.html"))
"""

from __future__ import annotations

import base64
import io
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from jinja2 import Environment


def _wrap(kind: str, section_id: str, body: str, caption: str | None) -> str:
    parts = [f'<div class="{kind}-container" id="{section_id}-body">', body]
    if caption:
        parts.append(f'<p class="caption">{caption}</p>')
    parts.append("</div>")
    return "\n".join(parts)


# ── Section Types ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class TableSection:
    id: str
    title: str
    html: str
    caption: str | None = None

    def render(self) -> str:
        return _wrap("table", self.id, self.html, self.caption)


@dataclass(frozen=True)
class FigureSection:
    """PNG image stored base64-encoded inside the section."""

    id: str
    title: str
    image_data: str
    caption: str | None = None

    @classmethod
    def from_file(
        cls,
        id: str,
        title: str,
        path: Path,
        caption: str | None = None,
    ) -> FigureSection:
        encoded = base64.b64encode(path.read_bytes()).decode("ascii")
        return cls(id=id, title=title, image_data=encoded, caption=caption)

    @classmethod
    def from_figure(
        cls,
        id: str,
        title: str,
        fig: object,
        caption: str | None = None,
        dpi: int = 150,
    ) -> FigureSection:
        """Encode a matplotlib figure without writing it to disk."""
        buf = io.BytesIO()
        fig.savefig(buf, format="png", dpi=dpi, bbox_inches="tight", facecolor="white")  # type: ignore[union-attr]
        encoded = base64.b64encode(buf.getvalue()).decode("ascii")
        return cls(id=id, title=title, image_data=encoded, caption=caption)

    def render(self) -> str:
        img = f'<img src="data:image/png;base64,{self.image_data}" alt="{self.title}" />'
        return _wrap("figure", self.id, img, self.caption)


@dataclass(frozen=True)
class TextSection:
    id: str
    title: str
    html: str
    caption: str | None = None

    def render(self) -> str:
        return _wrap("text", self.id, self.html, self.caption)


SectionType = TableSection | FigureSection | TextSection


# ── Tables ────────────────────────────────────────────────────────────────────

# Top and bottom rules, a thin rule under the header, no vertical lines
_TABLE_OPTIONS: dict[str, str] = {
    "table_border_top_style": "solid",
    "table_border_top_width": "2px",
    "table_border_top_color": "#222222",
    "table_border_bottom_style": "solid",
    "table_border_bottom_width": "2px",
    "table_border_bottom_color": "#222222",
    "column_labels_border_bottom_style": "solid",
    "column_labels_border_bottom_width": "1px",
    "column_labels_border_bottom_color": "#222222",
    "table_body_border_bottom_style": "solid",
    "table_body_border_bottom_width": "1px",
    "table_body_border_bottom_color": "#222222",
    "table_width": "100%",
    "table_font_size": "13px",
    "heading_title_font_size": "15px",
    "heading_subtitle_font_size": "12px",
    "source_notes_font_size": "11px",
}


def make_gt(
    df: object,
    title: str | None = None,
    subtitle: str | None = None,
    column_labels: dict[str, str] | None = None,
    number_formats: dict[str, str] | None = None,
    source_note: str | None = None,
) -> str:
    """Render a polars DataFrame as an inline-styled great_tables HTML table.

    *number_formats* maps column names to format specs such as ``".3f"`` or
    ``",.0f"``; only the decimal count and the thousands separator are used.
    Columns missing from *df* are ignored.
    """
    import great_tables as gt_mod
    import polars as pl

    if not isinstance(df, pl.DataFrame):
        msg = f"make_gt expects a polars DataFrame, got {type(df).__name__}"
        raise TypeError(msg)

    tbl = gt_mod.GT(df)
    if title:
        tbl = tbl.tab_header(title=title, subtitle=subtitle)
    if column_labels:
        labels = {k: v for k, v in column_labels.items() if k in df.columns}
        if labels:
            tbl = tbl.cols_label(**labels)
    for col_name, fmt in (number_formats or {}).items():
        if col_name not in df.columns:
            continue
        tbl = tbl.fmt_number(
            columns=col_name,
            decimals=_decimals_from_fmt(fmt),
            use_seps="," in fmt,
        )
    if source_note:
        tbl = tbl.tab_source_note(source_note)

    tbl = tbl.tab_options(**_TABLE_OPTIONS)
    return tbl.as_raw_html(inline_css=True)


def _decimals_from_fmt(fmt: str) -> int:
    m = re.search(r"\.(\d+)f", fmt)
    return int(m.group(1)) if m else 0


# ── ReportBuilder ─────────────────────────────────────────────────────────────


@dataclass
class ReportBuilder:
    """Collects sections and writes them as one HTML document."""

    title: str = "Analysis Report"
    dataset: str = ""
    git_hash: str = ""
    elapsed_display: str = ""
    _sections: list[SectionType] = field(default_factory=list)

    def add(self, section: SectionType) -> None:
        self._sections.append(section)

    @property
    def has_sections(self) -> bool:
        return bool(self._sections)

    def render(self) -> str:
        sections = [
            {"number": i, "id": s.id, "title": s.title, "content": s.render()}
            for i, s in enumerate(self._sections, 1)
        ]
        generated = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC")
        return _get_template().render(
            title=self.title,
            dataset=self.dataset,
            git_hash=self.git_hash if self.git_hash != "unknown" else "",
            elapsed_display=self.elapsed_display,
            generated_at=generated,
            sections=sections,
            css=REPORT_CSS,
        )

    def write(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.render(), encoding="utf-8")


# ── Template & CSS ────────────────────────────────────────────────────────────


REPORT_CSS = """\
* { box-sizing: border-box; }
body {
  font-family: Georgia, "Times New Roman", serif;
  max-width: 1080px;
  margin: 0 auto;
  padding: 20px 28px;
  color: #202020;
  line-height: 1.45;
}
header { border-bottom: 2px solid #202020; margin-bottom: 20px; padding-bottom: 8px; }
header h1 { font-size: 22px; margin: 0 0 4px 0; }
header .meta { font-size: 12px; color: #5a5a5a; }
header .meta span + span::before { content: " | "; }
nav.toc { font-size: 13px; margin-bottom: 28px; }
nav.toc ol { columns: 2; margin: 6px 0 0 0; }
nav.toc a { color: #24527a; text-decoration: none; }
section.report-section { margin-bottom: 32px; }
section.report-section h2 {
  font-size: 17px;
  border-bottom: 1px solid #999;
  padding-bottom: 3px;
}
.section-number { color: #999; margin-right: 6px; }
.table-container { overflow-x: auto; margin-bottom: 10px; }
.figure-container { text-align: center; margin: 10px 0; }
.figure-container img { max-width: 100%; height: auto; }
.caption { font-size: 12px; color: #666; font-style: italic; text-align: center; }
footer { margin-top: 40px; font-size: 11px; color: #888; text-align: center; }
@media print {
  nav.toc { display: none; }
  section.report-section { page-break-inside: avoid; }
}"""

REPORT_TEMPLATE = """\
<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="utf-8" />
  <title>{{ title }}</title>
  <style>{{ css }}</style>
</head>
<body>
  <header>
    <h1>{{ title }}</h1>
    <div class="meta">
      {%- if dataset %}<span>Dataset: <strong>{{ dataset }}</strong></span>{% endif -%}
      <span>Generated: {{ generated_at }}</span>
      {%- if elapsed_display %}<span>Runtime: {{ elapsed_display }}</span>{% endif -%}
      {%- if git_hash %}<span>Commit: <code>{{ git_hash[:8] }}</code></span>{% endif -%}
    </div>
  </header>
  <nav class="toc">
    <strong>Contents</strong>
    <ol>
    {%- for s in sections %}
      <li><a href="#{{ s.id }}">{{ s.title }}</a></li>
    {%- endfor %}
    </ol>
  </nav>
  {%- for s in sections %}
  <section class="report-section" id="{{ s.id }}">
    <h2><span class="section-number">{{ s.number }}.</span>{{ s.title }}</h2>
    {{ s.content }}
  </section>
  {%- endfor %}
  <footer>{{ title }}, generated {{ generated_at }}</footer>
</body>
</html>"""


def _get_template():
    env = Environment(autoescape=False)
    return env.from_string(REPORT_TEMPLATE)
