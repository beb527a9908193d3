"""Run directories, console capture and run metadata for the analysis phases.

Layouts:

  Single phase (no run_id)
    results/<dataset>/<analysis>/<YYMMDD>[.N]/{plots,data}
    results/<dataset>/<analysis>/latest -> <YYMMDD>[.N]

  Pipeline (run_id groups the phases of one run)
    results/<dataset>/<run_id>/<analysis>/{plots,data}
    results/<dataset>/latest -> <run_id>

Each run leaves run_log.txt (everything printed while the context was open),
run_info.json and, when sections were added, <analysis>_report.html with a
convenience symlink in the dataset directory.

Usage:
    with RunContext(dataset="svac", analysis_name="01_static_lvm",
                    params=vars(args), primer=STATIC_LVM_PRIMER) as ctx:
        write_svac_csv(estimates, ctx.data_dir / "static_estimates.csv")
        save_fig(fig, ctx.plots_dir / "rhat_static.png")
"""

import io
import json
import re
import subprocess
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from types import TracebackType
from typing import TextIO

try:
    from analysis.report import ReportBuilder
except ModuleNotFoundError:
    from report import ReportBuilder  # type: ignore[no-redef]

from svac_lvm.config import PACKAGE_VERSION

_SLUG_RE = re.compile(r"[^a-z0-9]+")


class _TeeStream:
    """File-like object that writes to *original* and keeps a copy in memory."""

    def __init__(self, original: TextIO) -> None:
        self._original = original
        self._copy = io.StringIO()

    def write(self, data: str) -> int:
        self._original.write(data)
        return self._copy.write(data)

    def flush(self) -> None:
        self._original.flush()

    def getvalue(self) -> str:
        return self._copy.getvalue()


@contextmanager
def tee_to_file(path: Path) -> Iterator[None]:
    """Copy everything printed inside the block into *path*.

    The console still sees the output, and an enclosing RunContext still
    captures it for run_log.txt.  The file is written even if the block raises.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    saved = sys.stdout
    tee = _TeeStream(saved)
    sys.stdout = tee  # type: ignore[assignment]
    try:
        yield
    finally:
        sys.stdout = saved
        path.write_text(tee.getvalue(), encoding="utf-8")


def normalize_dataset(name: str) -> str:
    """Turn a dataset label or input file stem into a directory-safe slug.

    Examples:
        "SVAC_main"      -> "svac-main"
        "SVAC 3.0 (v2)"  -> "svac-3-0-v2"
    """
    return _SLUG_RE.sub("-", name.strip().lower()).strip("-") or "dataset"


def _today() -> str:
    return datetime.now(timezone.utc).strftime("%y%m%d")


def _git_commit_hash() -> str:
    """HEAD commit of the working directory's repository, or 'unknown'."""
    try:
        out = subprocess.run(
            ["git", "rev-parse", "HEAD"], capture_output=True, text=True, timeout=5
        )
    except (OSError, subprocess.TimeoutExpired):
        return "unknown"
    return out.stdout.strip() if out.returncode == 0 else "unknown"


def _format_elapsed(seconds: float) -> str:
    """"3.2s", "1m 45s" or "1h 12m 5s"."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    total = int(seconds)
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes}m {secs}s"
    return f"{minutes}m {secs}s"


def _next_free_name(parent: Path, base: str) -> str:
    """*base*, or the first *base*.N that is not already a directory under *parent*.

    A symlink named *base* (e.g. left by an older layout) does not block it.
    """
    candidate = parent / base
    if not candidate.exists() or candidate.is_symlink():
        return base
    n = 1
    while (parent / f"{base}.{n}").exists():
        n += 1
    return f"{base}.{n}"


def _next_run_label(analysis_dir: Path, today: str) -> str:
    """Date label for a new single-phase run: "261019", then "261019.1", ..."""
    return _next_free_name(analysis_dir, today)


def generate_run_id(dataset: str, results_root: Path | None = None) -> str:
    """Run ID shared by all phases of one pipeline run: ``<dataset>-<YYMMDD>``.

    With *results_root* (the dataset directory), a second run on the same day
    becomes ``<dataset>-<YYMMDD>.1`` and so on.
    """
    base = f"{normalize_dataset(dataset)}-{_today()}"
    if results_root is None:
        return base
    return _next_free_name(results_root, base)


def resolve_upstream_dir(
    phase: str,
    results_root: Path,
    run_id: str | None = None,
    override: Path | None = None,
) -> Path:
    """Where to read an upstream phase's output from.

    First match wins:
      1. *override* (a --static-dir style flag)
      2. results_root/<run_id>/<phase>
      3. results_root/<phase>/latest, if it exists
      4. results_root/latest/<phase>

    The returned path is not checked for existence.
    """
    if override is not None:
        return override
    if run_id is not None:
        return results_root / run_id / phase
    single_phase = results_root / phase / "latest"
    if single_phase.exists():
        return single_phase
    return results_root / "latest" / phase


def _relink(link: Path, target: Path | str) -> None:
    """Point *link* at *target*, replacing whatever was there."""
    if link.is_symlink() or link.exists():
        link.unlink()
    link.symlink_to(target)


class RunContext:
    """Output directories, stdout capture and metadata for one analysis run.

    Attributes:
        dataset: Normalized dataset slug (e.g. "svac").
        analysis_name: Phase directory name (e.g. "01_static_lvm").
        params: Recorded verbatim in run_info.json.
        run_dir: Root of this run's output.
        plots_dir: PNG and PDF output.
        data_dir: CSV, NetCDF and JSON output.
        report: ReportBuilder; written on exit if any section was added.
    """

    def __init__(
        self,
        dataset: str,
        analysis_name: str,
        params: dict | None = None,
        results_root: Path | None = None,
        primer: str | None = None,
        run_id: str | None = None,
    ) -> None:
        self.dataset = normalize_dataset(dataset)
        self.analysis_name = analysis_name
        self.params = params or {}
        self.run_id = run_id
        self._primer = primer
        self._today = _today()
        self._dataset_root = (results_root or Path("results")) / self.dataset

        if run_id is None:
            self._analysis_dir = self._dataset_root / analysis_name
            self._run_label = _next_run_label(self._analysis_dir, self._today)
            self.run_dir = self._analysis_dir / self._run_label
        else:
            self._analysis_dir = self._dataset_root / run_id / analysis_name
            self._run_label = run_id
            self.run_dir = self._analysis_dir

        self.plots_dir = self.run_dir / "plots"
        self.data_dir = self.run_dir / "data"
        self.report = ReportBuilder(title=f"{analysis_name.upper()} Report", dataset=self.dataset)

        self._tee: _TeeStream | None = None
        self._saved_stdout: TextIO | None = None
        self._started: datetime | None = None

    @property
    def dataset_root(self) -> Path:
        return self._dataset_root

    def __enter__(self) -> "RunContext":
        self.setup()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.finalize(failed=exc_type is not None)

    def setup(self) -> None:
        """Create the run directories, write the primer and start capturing stdout."""
        self.plots_dir.mkdir(parents=True, exist_ok=True)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        if self._primer:
            (self._analysis_dir / "README.md").write_text(self._primer, encoding="utf-8")

        self._saved_stdout = sys.stdout
        self._tee = _TeeStream(sys.stdout)
        sys.stdout = self._tee  # type: ignore[assignment]
        self._started = datetime.now(timezone.utc)

    def finalize(self, *, failed: bool = False) -> None:
        """Stop capturing, then write run_log.txt, run_info.json and the report.

        ``latest`` only moves on success, so downstream phases never pick up a
        partial run.
        """
        log_text = self._tee.getvalue() if self._tee is not None else ""
        if self._saved_stdout is not None:
            sys.stdout = self._saved_stdout  # type: ignore[assignment]
        (self.run_dir / "run_log.txt").write_text(log_text, encoding="utf-8")

        info = self._write_run_info(failed)
        print(f"\n{self.analysis_name.upper()} completed in {info['elapsed_display']}")

        if self.report.has_sections:
            self._write_report(info)
        if not failed:
            self._update_latest()

    def _write_run_info(self, failed: bool) -> dict:
        ended = datetime.now(timezone.utc)
        elapsed = (ended - self._started).total_seconds() if self._started else 0.0
        info = {
            "analysis": self.analysis_name,
            "dataset": self.dataset,
            "run_date": self._today,
            "run_label": self._run_label,
            "run_id": self.run_id,
            "failed": failed,
            "timestamp_start": self._started.isoformat() if self._started else None,
            "timestamp_end": ended.isoformat(),
            "elapsed_seconds": round(elapsed, 1),
            "elapsed_display": _format_elapsed(elapsed),
            "git_commit": _git_commit_hash(),
            "python_version": sys.version,
            "package_version": PACKAGE_VERSION,
            "params": self.params,
        }
        with open(self.run_dir / "run_info.json", "w") as f:
            json.dump(info, f, indent=2, default=str)
        return info

    def _write_report(self, info: dict) -> None:
        name = f"{self.analysis_name}_report.html"
        self.report.git_hash = info["git_commit"]
        self.report.elapsed_display = info["elapsed_display"]
        self.report.write(self.run_dir / name)

        # Relative link through `latest`, so it follows the newest successful run
        if self.run_id is None:
            target = Path(self.analysis_name) / "latest" / name
        else:
            target = Path("latest") / self.analysis_name / name
        _relink(self._dataset_root / name, target)

    def _update_latest(self) -> None:
        if self.run_id is None:
            _relink(self._analysis_dir / "latest", self._run_label)
        else:
            _relink(self._dataset_root / "latest", self.run_id)
