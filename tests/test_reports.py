import json
import logging

import numpy as np
import pandas as pd
import pytest

from invasion_score_model import (
    export_model_inputs,
    load_phylo_corr,
    main,
    parameter_sweep,
    plot_surface,
    print_explain_community,
    run_pipeline,
    summarize,
    validate_phylo_corr,
    ModelParameters,
    RandomSeeds,
    SimulationConfig,
    RECORD_COLUMNS,
)


def make_config(**overrides):
    params = dict(n_communities=4, n_invaders=5,
                  seeds=RandomSeeds(env=31, pp=32, traits=33, jitter=34))
    params.update(overrides)
    return SimulationConfig(**params)


def make_corr(invaders, rho=0.3):
    n = len(invaders)
    mat = rho * np.ones((n, n)) + (1.0 - rho) * np.eye(n)
    return pd.DataFrame(mat, index=invaders, columns=invaders)


def test_pipeline_reproducible():
    r1 = run_pipeline(make_config())
    r2 = run_pipeline(make_config())
    pd.testing.assert_frame_equal(r1.table, r2.table)
    assert r1.median == r2.median


def test_pipeline_labels_from_unjittered_scores():
    res = run_pipeline(make_config())
    assert list(res.table.columns) == list(RECORD_COLUMNS)
    assert "invasion_success" not in res.raw_table.columns
    expected = (res.raw_table["invasiveness"] > res.median).astype(int)
    assert list(res.table["invasion_success"]) == list(expected)
    assert not np.array_equal(res.table["d_f"], res.raw_table["d_f"])


def test_summarize_schema():
    summ = summarize(run_pipeline(make_config()))
    assert set(summ.keys()) == {"dataset", "invasiveness", "communities"}
    ds = summ["dataset"]
    assert ds["n_records"] == 20
    assert 0.0 <= ds["success_rate"] <= 1.0
    assert ds["degenerate"] is False
    assert [c["community"] for c in summ["communities"]] == ["C1", "C2", "C3", "C4"]
    assert summ["invasiveness"]["min"] >= 0.0
    json.dumps(summ)


def test_degenerate_split_is_flagged_not_raised(caplog):
    cfg = make_config(params=ModelParameters(a0=0.0, a1=0.0))
    res = run_pipeline(cfg)
    with caplog.at_level(logging.WARNING, logger="invasion_score_model"):
        summ = summarize(res)
    assert summ["dataset"]["degenerate"] is True
    assert summ["dataset"]["success_rate"] == 0.0
    assert "degenerate" in caplog.text


def test_validate_phylo_corr_reorders():
    invaders = ["I1", "I2", "I3"]
    corr = make_corr(["I3", "I1", "I2"])
    out = validate_phylo_corr(corr, invaders)
    assert list(out.index) == invaders
    assert list(out.columns) == invaders


@pytest.mark.parametrize("mutate", ["labels", "asym", "diag"])
def test_validate_phylo_corr_rejects_bad_matrix(mutate):
    invaders = ["I1", "I2", "I3"]
    corr = make_corr(invaders)
    if mutate == "labels":
        corr = corr.rename(index={"I3": "X"}, columns={"I3": "X"})
    elif mutate == "asym":
        corr.loc["I1", "I2"] = 0.9
    else:
        corr.loc["I2", "I2"] = 0.8
    with pytest.raises(ValueError):
        validate_phylo_corr(corr, invaders)


def test_export_model_inputs(tmp_path):
    res = run_pipeline(make_config())
    corr = make_corr(res.inputs.invaders)
    paths = export_model_inputs(res.table, str(tmp_path / "out"), corr=corr)
    data = pd.read_csv(paths["data"])
    assert list(data.columns) == list(RECORD_COLUMNS)
    assert len(data) == 20
    loaded = load_phylo_corr(paths["phylo_corr"])
    assert list(loaded.index) == res.inputs.invaders
    assert np.allclose(loaded.to_numpy(), corr.to_numpy())


def test_parameter_sweep_holds_seeds():
    cfg = make_config()
    out = parameter_sweep(cfg, "lam", [0.0, 0.2])
    assert [label for label, _ in out] == ["lam=0", "lam=0.2"]
    base = summarize(run_pipeline(cfg))
    assert out[0][1]["dataset"]["n_records"] == base["dataset"]["n_records"]
    with pytest.raises(ValueError):
        parameter_sweep(cfg, "gamma", [1.0])


def test_explain_community_prints(capsys):
    cfg = make_config()
    res = run_pipeline(cfg)
    print_explain_community(res, cfg.params, "C2")
    out = capsys.readouterr().out
    assert "Factor breakdown for C2" in out
    assert all(inv in out for inv in res.inputs.invaders)


def test_plot_surface_writes_file(tmp_path):
    res = run_pipeline(make_config(grid_points=20), grid_community="C1")
    path = tmp_path / "surface.png"
    plot_surface(res.surface, path=str(path))
    assert path.exists() and path.stat().st_size > 0


def test_cli_end_to_end(tmp_path, capsys):
    corr_path = tmp_path / "corr.csv"
    make_corr([f"I{j}" for j in range(1, 5)]).to_csv(corr_path)
    json_path = tmp_path / "summary.json"
    csv_path = tmp_path / "data.csv"
    main([
        "--n_communities", "3", "--n_invaders", "4", "--seed", "7",
        "--params", "lam=0.05,competition=1.0",
        "--grid_community", "C2", "--explain", "C1",
        "--report_json", str(json_path), "--report_csv", str(csv_path),
        "--phylo_corr", str(corr_path), "--export_dir", str(tmp_path / "export"),
        "--sweep", "alpha_f=5|10",
    ])
    out = capsys.readouterr().out
    assert "Records: 12" in out
    assert "Grid for C2: shape=(100, 100)" in out
    assert "Sweep over alpha_f" in out
    assert json.loads(json_path.read_text(encoding="utf-8"))["dataset"]["n_records"] == 12
    assert len(pd.read_csv(csv_path)) == 12
    assert (tmp_path / "export" / "phylo_corr.csv").exists()


def test_cli_rejects_unknown_parameter():
    with pytest.raises(ValueError):
        main(["--params", "gamma=1"])
