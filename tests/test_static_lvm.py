"""Tests for the static ordinal latent variable model (Phase 01).

Data preparation, model graph structure and posterior extraction.  The
sampler is never run; extraction uses a hand-built InferenceData.

Run:
    uv run pytest tests/test_static_lvm.py -v
"""

from __future__ import annotations

import numpy as np
import polars as pl
import pytest
from analysis.static_lvm_data import (
    category_frequencies,
    prepare_lvm_data,
    summarize_coverage,
)

SOURCES = ["state", "ai", "hrw"]

# ── prepare_lvm_data() ───────────────────────────────────────────────────────


class TestPrepareLvmData:
    """Per-source index arrays over observed rows only."""

    def test_counts(self, svac_panel) -> None:
        data = prepare_lvm_data(svac_panel, SOURCES, 4)
        assert data["n_all"] == 8
        assert data["n_state"] == 6
        assert data["n_ai"] == 4
        assert data["n_hrw"] == 5

    def test_indices_point_at_observed_rows(self, svac_panel) -> None:
        data = prepare_lvm_data(svac_panel, SOURCES, 4)
        assert data["index_state"].tolist() == [0, 1, 2, 4, 6, 7]
        assert data["index_ai"].tolist() == [1, 2, 3, 6]
        assert data["index_hrw"].tolist() == [0, 3, 4, 6, 7]

    def test_values_are_zero_based_codes(self, svac_panel) -> None:
        data = prepare_lvm_data(svac_panel, SOURCES, 4)
        assert data["state"].tolist() == [1, 0, 3, 2, 3, 1]
        assert data["ai"].tolist() == [0, 3, 1, 2]
        assert data["state"].dtype == np.int64

    def test_lengths_match(self, svac_panel) -> None:
        data = prepare_lvm_data(svac_panel, SOURCES, 4)
        for s in SOURCES:
            assert len(data[f"index_{s}"]) == len(data[s]) == data[f"n_{s}"]

    def test_indices_increasing_and_in_range(self, svac_panel) -> None:
        data = prepare_lvm_data(svac_panel, SOURCES, 4)
        for s in SOURCES:
            idx = data[f"index_{s}"]
            assert np.all(np.diff(idx) > 0)
            assert idx.min() >= 0
            assert idx.max() < data["n_all"]

    def test_index_all(self, svac_panel) -> None:
        data = prepare_lvm_data(svac_panel, SOURCES, 4)
        assert data["index_all"].tolist() == list(range(8))

    def test_case_ids(self, svac_panel) -> None:
        data = prepare_lvm_data(svac_panel, SOURCES, 4)
        assert data["case_ids"][0] == "101:1990"
        assert len(set(data["case_ids"])) == 8

    def test_duplicate_case_ids_suffixed(self) -> None:
        df = pl.DataFrame(
            {
                "conflictid_new": [1, 1],
                "year": [2000, 2000],
                "state_prev": [1, 2],
            }
        )
        data = prepare_lvm_data(df, ["state"], 4)
        assert data["case_ids"] == ["1:2000", "1:2000#1"]

    def test_case_ids_without_panel_columns(self) -> None:
        df = pl.DataFrame({"state_prev": [1, None, 2]})
        data = prepare_lvm_data(df, ["state"], 4)
        assert data["case_ids"] == ["0", "1", "2"]


class TestCoverage:
    def test_per_source_rows(self, svac_panel) -> None:
        cov = summarize_coverage(prepare_lvm_data(svac_panel, SOURCES, 4))
        by_item = dict(zip(cov["item"].to_list(), cov["n_rows"].to_list()))
        assert by_item["state"] == 6
        assert by_item["ai"] == 4
        assert by_item["hrw"] == 5

    def test_observed_by_buckets(self, svac_panel) -> None:
        cov = summarize_coverage(prepare_lvm_data(svac_panel, SOURCES, 4))
        by_item = dict(zip(cov["item"].to_list(), cov["n_rows"].to_list()))
        assert by_item["observed by 0"] == 1
        assert by_item["observed by 1"] == 0
        assert by_item["observed by 2"] == 6
        assert by_item["observed by 3"] == 1

    def test_percentages(self, svac_panel) -> None:
        cov = summarize_coverage(prepare_lvm_data(svac_panel, SOURCES, 4))
        state = cov.filter(pl.col("item") == "state")
        assert state["pct_rows"][0] == pytest.approx(75.0)


class TestCategoryFrequencies:
    def test_counts_include_empty_categories(self, svac_panel) -> None:
        freq = category_frequencies(prepare_lvm_data(svac_panel, SOURCES, 4))
        state = freq.filter(pl.col("source") == "state").sort("category")
        assert state["count"].to_list() == [1, 2, 1, 2]
        assert freq.height == 3 * 4


# ── Model Structure ──────────────────────────────────────────────────────────


class TestModelStructure:
    """Tests for the PyMC model graph builder."""

    @pytest.fixture
    def data(self, svac_panel) -> dict:
        return prepare_lvm_data(svac_panel, SOURCES, 4)

    def test_graph_builds(self, data) -> None:
        from analysis.static_lvm import build_static_lvm_graph

        assert build_static_lvm_graph(data) is not None

    def test_free_variables(self, data) -> None:
        from analysis.static_lvm import build_static_lvm_graph

        model = build_static_lvm_graph(data)
        names = {v.name for v in model.free_RVs}
        assert names == {"theta", "beta", "cut_state", "cut_ai", "cut_hrw"}

    def test_theta_one_per_row(self, data) -> None:
        from analysis.static_lvm import build_static_lvm_graph

        model = build_static_lvm_graph(data)
        assert model["theta"].eval().shape == (8,)

    def test_positive_beta_per_source(self, data) -> None:
        from analysis.static_lvm import build_static_lvm_graph

        model = build_static_lvm_graph(data)
        beta = model["beta"]
        assert "HalfNormal" in str(type(beta.owner.op))
        assert beta.eval().shape == (3,)

    def test_cutpoints_k_minus_one(self, data) -> None:
        from analysis.static_lvm import build_static_lvm_graph

        model = build_static_lvm_graph(data)
        for s in SOURCES:
            assert model[f"cut_{s}"].eval().shape == (3,)

    def test_observed_per_source(self, data) -> None:
        from analysis.static_lvm import build_static_lvm_graph

        model = build_static_lvm_graph(data)
        obs_names = {v.name for v in model.observed_RVs}
        assert obs_names == {"obs_state", "obs_ai", "obs_hrw"}
        assert model["obs_ai"].eval().shape == (4,)

    def test_coords(self, data) -> None:
        from analysis.static_lvm import build_static_lvm_graph

        model = build_static_lvm_graph(data)
        assert list(model.coords["source"]) == SOURCES
        assert list(model.coords["cutpoint"]) == ["0|1", "1|2", "2|3"]
        assert len(model.coords["case"]) == 8


# ── Posterior Extraction ─────────────────────────────────────────────────────


class TestSummarizeTheta:
    def test_means_follow_cases(self, fake_idata) -> None:
        from analysis.static_lvm import summarize_theta

        summary = summarize_theta(fake_idata)
        np.testing.assert_allclose(summary["theta"], [0, 1, 2, 3], atol=0.05)

    def test_interval_brackets_mean(self, fake_idata) -> None:
        from analysis.static_lvm import summarize_theta

        s = summarize_theta(fake_idata)
        assert np.all(s["theta_low"] < s["theta"])
        assert np.all(s["theta"] < s["theta_upper"])

    def test_quantiles_match_numpy(self, fake_idata) -> None:
        from analysis.static_lvm import summarize_theta

        s = summarize_theta(fake_idata)
        draws = fake_idata.posterior["theta"].values.reshape(-1, 4)
        np.testing.assert_allclose(s["theta_low"], np.quantile(draws, 0.025, axis=0))
        np.testing.assert_allclose(s["theta_upper"], np.quantile(draws, 0.975, axis=0))
        np.testing.assert_allclose(s["theta_sd"], draws.std(axis=0, ddof=1))


class TestAttachTheta:
    def test_columns_appended_in_order(self, fake_idata) -> None:
        from analysis.static_lvm import attach_theta, summarize_theta

        df = pl.DataFrame({"conflictid_new": [1, 1, 2, 2], "year": [1990, 1991, 1990, 1991]})
        out = attach_theta(df, summarize_theta(fake_idata))
        assert out.columns == [
            "conflictid_new",
            "year",
            "theta",
            "theta_sd",
            "theta_upper",
            "theta_low",
        ]
        assert out["theta"].to_list() == sorted(out["theta"].to_list())

    def test_length_mismatch(self, fake_idata) -> None:
        from analysis.static_lvm import attach_theta, summarize_theta

        df = pl.DataFrame({"year": [1990, 1991]})
        with pytest.raises(ValueError, match="rows"):
            attach_theta(df, summarize_theta(fake_idata))


class TestExtractCutpoints:
    def test_one_row_per_source_cutpoint(self, fake_idata) -> None:
        from analysis.static_lvm import extract_cutpoints

        cuts = extract_cutpoints(fake_idata, SOURCES)
        assert cuts.height == 9
        assert cuts["cutpoint"].to_list()[:3] == ["0|1", "1|2", "2|3"]

    def test_means_ordered_within_source(self, fake_idata) -> None:
        from analysis.static_lvm import extract_cutpoints

        cuts = extract_cutpoints(fake_idata, SOURCES)
        for s in SOURCES:
            means = cuts.filter(pl.col("source") == s)["mean"].to_list()
            assert means == sorted(means)


class TestExtractDiscrimination:
    def test_positive_means(self, fake_idata) -> None:
        from analysis.static_lvm import extract_discrimination

        disc = extract_discrimination(fake_idata, SOURCES)
        assert disc["source"].to_list() == SOURCES
        assert (disc["beta_mean"] > 0).all()
        assert disc["beta_mean"].to_list() == pytest.approx([1.0, 1.0, 1.0], abs=0.05)


class TestCheckConvergence:
    def test_well_mixed_chains_pass_rhat(self, fake_idata) -> None:
        from analysis.static_lvm import check_convergence

        diag = check_convergence(fake_idata, ["theta", "beta"])
        assert diag["rhat_ok"] is True
        assert diag["divergences"] == 0
        assert diag["rhat_threshold"] == 1.1
        assert "theta_rhat_max" in diag
        assert "beta_ess_min" in diag

    def test_stuck_chain_fails_rhat(self, fake_idata) -> None:
        from analysis.static_lvm import check_convergence

        idata = fake_idata.copy()
        theta = idata.posterior["theta"].values.copy()
        theta[1] += 5.0
        idata.posterior["theta"] = (("chain", "draw", "case"), theta)
        diag = check_convergence(idata, ["theta"])
        assert diag["rhat_ok"] is False
        assert diag["all_ok"] is False


# ── Diagnostic Plots ─────────────────────────────────────────────────────────


class TestDiagnosticPlots:
    def test_collect_rhat_flattens_elements(self, fake_idata) -> None:
        from analysis.lvm_diagnostics import collect_rhat

        values = collect_rhat(fake_idata, ["theta", "beta"])
        assert values.shape == (4 + 3,)
        assert np.all(values < 1.1)

    def test_rhat_png(self, fake_idata, tmp_path) -> None:
        from analysis.lvm_diagnostics import plot_rhat

        path = plot_rhat(fake_idata, ["theta", "beta"], "static", tmp_path)
        assert path == tmp_path / "rhat_static.png"
        assert path.read_bytes()[:4] == b"\x89PNG"

    def test_cutpoints_png(self, fake_idata, tmp_path) -> None:
        from analysis.lvm_diagnostics import plot_cutpoints_by_source

        path = plot_cutpoints_by_source(fake_idata, SOURCES, "static", tmp_path)
        assert path.name == "cutpoints_static.png"
        assert path.exists()


# ── CLI ──────────────────────────────────────────────────────────────────────


class TestParseArgs:
    @pytest.mark.parametrize(
        "flags",
        [["--n-iter", "1"], ["--n-iter", "0"], ["--n-iter", "lots"], ["--n-chains", "0"]],
    )
    def test_bad_override_stops_at_parsing(self, flags) -> None:
        from analysis.static_lvm import parse_args

        with pytest.raises(SystemExit) as exc:
            parse_args(flags)
        assert exc.value.code == 2

    def test_smallest_overrides_accepted(self) -> None:
        from analysis.static_lvm import parse_args

        args = parse_args(["--n-iter", "2", "--n-chains", "1"])
        assert args.n_iter == 2
        assert args.n_chains == 1


class TestMain:
    """End to end with the sampler replaced by a hand-built posterior."""

    @pytest.fixture
    def panel_csv(self, svac_panel, tmp_path, monkeypatch):
        from svac_lvm.dataset import write_svac_csv

        monkeypatch.chdir(tmp_path)
        return write_svac_csv(svac_panel, tmp_path / "svac.csv")

    def _patch_sampler(self, monkeypatch, sampler) -> None:
        import importlib

        module = importlib.import_module("analysis.01_static_lvm.static_lvm")
        monkeypatch.setattr(module, "sample_lvm", sampler)

    def test_estimates_follow_input_rows(
        self, panel_csv, constants_file, fake_sampler, monkeypatch, tmp_path
    ) -> None:
        from analysis.static_lvm import main
        from svac_lvm.dataset import read_svac_csv

        sampler = fake_sampler(np.arange(8, dtype=float))
        self._patch_sampler(monkeypatch, sampler)
        copy = tmp_path / "out" / "static.csv"
        argv = ["--input", str(panel_csv), "--constants", str(constants_file),
                "--dataset", "test", "--output", str(copy)]
        assert main(argv) == 0

        data_dir = tmp_path / "results" / "test" / "01_static_lvm" / "latest" / "data"
        estimates = read_svac_csv(data_dir / "static_estimates.csv")
        assert estimates["theta"].to_numpy() == pytest.approx(np.arange(8), abs=0.1)
        assert estimates["conflictid_new"].to_list() == [101, 101, 203, 101, 203, 305, 203, 305]
        assert copy.read_text() == (data_dir / "static_estimates.csv").read_text()
        assert (data_dir / "idata_static.nc").exists()
        assert (data_dir / "cutpoints_static.csv").exists()

    def test_constants_drive_sampler(
        self, panel_csv, constants_file, fake_sampler, monkeypatch
    ) -> None:
        from analysis.static_lvm import main

        sampler = fake_sampler(np.zeros(8))
        self._patch_sampler(monkeypatch, sampler)
        main(["--input", str(panel_csv), "--constants", str(constants_file), "--dataset", "test"])
        (call,) = sampler.calls
        assert (call["tune"], call["draws"], call["chains"]) == (1000, 1000, 4)
        assert call["seed"] == 20160711

    def test_overrides_replace_constants(
        self, panel_csv, constants_file, fake_sampler, monkeypatch
    ) -> None:
        from analysis.static_lvm import main

        sampler = fake_sampler(np.zeros(8))
        self._patch_sampler(monkeypatch, sampler)
        main(["--input", str(panel_csv), "--constants", str(constants_file),
              "--dataset", "test", "--n-iter", "11", "--n-chains", "1"])
        (call,) = sampler.calls
        assert (call["tune"], call["draws"], call["chains"]) == (5, 6, 1)

    def test_strict_fails_on_rhat(
        self, panel_csv, constants_file, fake_sampler, monkeypatch
    ) -> None:
        from analysis.static_lvm import main

        self._patch_sampler(monkeypatch, fake_sampler(np.arange(8, dtype=float), stuck=True))
        argv = ["--input", str(panel_csv), "--constants", str(constants_file), "--dataset", "test"]
        assert main(argv) == 0
        assert main([*argv, "--strict"]) == 1
