from __future__ import annotations

import json

import numpy as np

from raypose.eval.synthetic_sweep import SweepCase, default_cases, eval_synthetic_trial, run_synthetic_sweep


def test_trial_on_clean_scene_is_exact():
    stats = eval_synthetic_trial(SweepCase(name="c", n_points=6, central=False), seed=0)
    assert stats["n_hypotheses"] >= 1.0
    assert stats["rot_err_deg"] < 1e-6
    assert stats["trans_err"] < 1e-6
    assert stats["best_rank"] == 0.0


def test_run_sweep_prints_json_lines(capsys) -> None:
    cases = [
        SweepCase(name="central", n_points=6, central=True, trials=2),
        SweepCase(name="noisy", n_points=20, central=False, noise_std_rad=1e-3, trials=2),
    ]
    results = run_synthetic_sweep(cases, seed=3)
    lines = capsys.readouterr().out.strip().splitlines()
    assert len(lines) == 2
    assert json.loads(lines[0])["name"] == "central"
    assert results[0]["solved_fraction"] == 1.0
    assert results[0]["rot_err_median_deg"] < 1e-6
    assert results[1]["rot_err_median_deg"] < 1.0
    assert np.isfinite(results[1]["mean_hypotheses"])


def test_default_cases_names_are_unique():
    names = [c.name for c in default_cases()]
    assert len(names) == len(set(names))
