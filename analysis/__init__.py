"""Analysis pipeline for the SVAC latent variable models.

Pipeline phases (in order):
  01_static_lvm   - static ordinal LVM, one latent value per conflict-year
  02_dynamic_lvm  - dynamic ordinal LVM, random walk within each conflict
  03_plots        - per-conflict estimate plots with credible intervals

Shared infrastructure at root: run_context.py, report.py, lvm_diagnostics.py

Phase directories start with a digit and cannot be imported by name, so a
meta-path finder maps ``analysis.static_lvm`` onto
``analysis.01_static_lvm.static_lvm`` (and likewise for every module below).
"""

from __future__ import annotations

import importlib
import sys
import types
from importlib.abc import Loader, MetaPathFinder
from importlib.machinery import ModuleSpec

_PHASES: dict[str, tuple[str, ...]] = {
    "01_static_lvm": ("static_lvm", "static_lvm_data", "static_lvm_report"),
    "02_dynamic_lvm": ("dynamic_lvm", "dynamic_lvm_data", "dynamic_lvm_report"),
    "03_plots": ("plot_estimates", "plot_estimates_report"),
}

_MODULE_MAP: dict[str, str] = {
    module: phase for phase, modules in _PHASES.items() for module in modules
}


class _PhaseFinder(MetaPathFinder, Loader):
    """Resolve ``analysis.<module>`` to the module inside its phase directory."""

    def find_spec(
        self,
        fullname: str,
        path: object = None,
        target: types.ModuleType | None = None,
    ) -> ModuleSpec | None:
        package, _, name = fullname.partition(".")
        if package != "analysis" or name not in _MODULE_MAP:
            return None
        return ModuleSpec(fullname, self)

    def create_module(self, spec: ModuleSpec) -> types.ModuleType | None:
        return None

    def exec_module(self, module: types.ModuleType) -> None:
        name = module.__name__.partition(".")[2]
        real = importlib.import_module(f"analysis.{_MODULE_MAP[name]}.{name}")
        module.__dict__.update(real.__dict__)
        module.__file__ = real.__file__
        module.__loader__ = real.__loader__


sys.meta_path.insert(0, _PhaseFinder())
