from __future__ import annotations

import json
import os

import numpy as np
import pytest
import yaml

import sys
sys.path.append(os.path.dirname(os.path.dirname(__file__)))
import region_finder as RF
from local_label import label


def _write_field(tmp_path, seed=0, shape=(24, 20, 16)):
    rng = np.random.default_rng(seed)
    data = rng.random(shape).astype(np.float32)
    path = tmp_path / "field.npy"
    np.save(path, data)
    return data, str(path)


def _write_config(tmp_path, **cfg):
    path = tmp_path / "config.yaml"
    with open(path, "w") as f:
        yaml.safe_dump(cfg, f)
    return str(path)


def test_run_writes_npz_and_meta(tmp_path):
    data, in_path = _write_field(tmp_path)
    out_dir = str(tmp_path / "out")
    cfg_path = _write_config(tmp_path, input_path=in_path, threshold=0.7, connectivity=1,
                             features=["Size", "Mean"], output_dir=out_dir)
    RF.main(["--config", cfg_path])

    ref, k = label(data > 0.7, connectivity=1)
    with np.load(os.path.join(out_dir, "regions.npz")) as d:
        np.testing.assert_array_equal(d["labels"], ref)
        np.testing.assert_array_equal(d["label_ids"], np.arange(1, k + 1))
        assert d["Size"].shape == (k, 1)
        assert d["Size"].sum() == np.count_nonzero(data > 0.7)
        assert np.all(d["Mean"][:, 0] > 0.7)
    with open(os.path.join(out_dir, "regions.meta.json")) as f:
        meta = json.load(f)
    assert meta["K"] == k
    assert meta["shape"] == list(data.shape)
    assert set(meta["times"]) == {"load", "label", "grow", "measure"}


def test_tiled_run_matches_untiled(tmp_path):
    data, in_path = _write_field(tmp_path, seed=4)
    cfg = RF.parse_config(None)
    cfg.update(input_path=in_path, threshold=0.6, min_size=3, features=[],
               output_dir=str(tmp_path / "a"))
    a = RF.run(cfg)
    cfg.update(tile_shape=[8, 7, 5], n_threads=2, output_dir=str(tmp_path / "b"))
    b = RF.run(cfg)
    np.testing.assert_array_equal(a["labels"], b["labels"])
    # relabeled after size filtering
    u = np.unique(a["labels"])
    np.testing.assert_array_equal(u[u > 0], np.arange(1, u.size))


def test_run_with_growth(tmp_path):
    data, in_path = _write_field(tmp_path, seed=9, shape=(30, 30))
    cfg = RF.parse_config(None)
    cfg.update(input_path=in_path, threshold=0.9, grow_iterations=0, grow_connectivity=2,
               features=["Size"], output_dir=str(tmp_path / "g"))
    out = RF.run(cfg)
    seeds, _ = label(data > 0.9)
    assert np.count_nonzero(out["labels"]) >= np.count_nonzero(seeds)

    cfg.update(grow_weighted=True, output_dir=str(tmp_path / "w"))
    out = RF.run(cfg)
    assert np.all(out["labels"] > 0)


def test_parse_config_warns_on_unknown_key(tmp_path, capsys):
    path = _write_config(tmp_path, threshold=2.0, colour="blue")
    cfg = RF.parse_config(path)
    assert cfg["threshold"] == 2.0
    assert "colour" not in cfg
    assert "WARNING" in capsys.readouterr().out


def test_make_mask_and_input_errors():
    x = np.array([0.1, 0.5, 0.9])
    np.testing.assert_array_equal(RF.make_mask(x, 0.5, "lt"), [True, False, False])
    np.testing.assert_array_equal(RF.make_mask(x, 0.5, "gt"), [False, False, True])
    with pytest.raises(ValueError):
        RF.make_mask(x, 0.5, "eq")
    with pytest.raises(ValueError):
        RF.run(RF.parse_config(None))
