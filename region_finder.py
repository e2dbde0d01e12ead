from __future__ import annotations

import argparse
import json
import os
import subprocess
import time
from typing import Optional, Sequence

import numpy as np
import yaml

from local_label import label, label_tiled
from measurement import PhysicalQuantity, measure
from neighbors import Metric
from regions import grow_regions, grow_regions_weighted, relabel

DEFAULT_CONFIG = {
    "input_path": None,
    "input_key": None,
    "grey_path": None,
    "grey_key": None,
    "threshold": 0.5,
    "cut_op": "gt",
    "connectivity": 0,
    "min_size": 0,
    "max_size": 0,
    "boundary_condition": None,
    "tile_shape": None,
    "n_threads": 1,
    "relabel": True,
    "grow_iterations": None,
    "grow_connectivity": -1,
    "grow_weighted": False,
    "metric": {"kind": "chamfer", "order": 2},
    "pixel_size": None,
    "pixel_units": "px",
    "features": ["Size", "Center"],
    "output_dir": "./region_out",
    "output_name": "regions",
    "profile": False,
}


def parse_config(path: str | None) -> dict:
    cfg = dict(DEFAULT_CONFIG)
    if path is None:
        return cfg
    with open(path, "r") as f:
        user = yaml.safe_load(f) or {}
    if not isinstance(user, dict):
        raise ValueError(f"{path}: top level of the config must be a mapping")
    for key in user:
        if key not in DEFAULT_CONFIG:
            print(f"WARNING: unknown config key '{key}' ignored.")
    cfg.update({k: v for k, v in user.items() if k in DEFAULT_CONFIG})
    return cfg


def load_array(path: str, key: str | None = None) -> np.ndarray:
    """Load a .npy file or one member of a .npz archive."""
    if path.endswith(".npz"):
        with np.load(path) as d:
            if key is None:
                if len(d.files) != 1:
                    raise KeyError(f"{path} holds {d.files}; set the *_key option")
                key = d.files[0]
            return d[key]
    return np.load(path)


def make_mask(data: np.ndarray, threshold: float, cut_op: str) -> np.ndarray:
    if data.dtype == np.bool_:
        print("NOTE: input is boolean; threshold and cut_op are ignored.")
        return data
    if cut_op == "lt":
        return data < threshold
    if cut_op == "gt":
        return data > threshold
    raise ValueError("cut_op must be 'lt' or 'gt'")


def _pixel_size(cfg: dict, ndim: int):
    ps = cfg.get("pixel_size")
    if ps is None:
        return None
    units = str(cfg.get("pixel_units", "px"))
    if np.isscalar(ps):
        ps = [ps] * ndim
    return [PhysicalQuantity(float(p), units) for p in ps]


def _git_rev():
    try:
        return subprocess.check_output(["git", "rev-parse", "HEAD"], stderr=subprocess.DEVNULL).decode().strip()
    except (OSError, subprocess.CalledProcessError):
        return "unknown"


def run(cfg: dict) -> dict:
    """Threshold, label, optionally grow, and measure; write npz + JSON sidecar."""
    if not cfg.get("input_path"):
        raise ValueError("config needs 'input_path'")
    t0 = time.time()
    data = load_array(str(cfg["input_path"]), cfg.get("input_key"))
    grey = None
    if cfg.get("grey_path"):
        grey = load_array(str(cfg["grey_path"]), cfg.get("grey_key"))
    elif data.dtype != np.bool_:
        grey = data
    t_load = time.time()

    mask = make_mask(data, float(cfg["threshold"]), str(cfg["cut_op"]))
    connectivity = int(cfg["connectivity"])
    min_size = int(cfg.get("min_size") or 0)
    max_size = int(cfg.get("max_size") or 0)
    tile_shape = cfg.get("tile_shape")
    if tile_shape:
        if np.isscalar(tile_shape):
            tile_shape = [int(tile_shape)] * mask.ndim
        labels, K = label_tiled(mask, tile_shape, connectivity=connectivity,
                                min_size=min_size, max_size=max_size,
                                boundary_condition=cfg.get("boundary_condition"),
                                n_threads=int(cfg.get("n_threads", 1)))
    else:
        labels, K = label(mask, connectivity=connectivity, min_size=min_size, max_size=max_size,
                          boundary_condition=cfg.get("boundary_condition"))
    if cfg.get("relabel", True) and (min_size > 0 or max_size > 0):
        labels = relabel(labels)
    t_label = time.time()

    if cfg.get("grow_weighted"):
        if grey is None:
            print("WARNING: grow_weighted needs a grey image; skipping growth.")
        else:
            mc = cfg.get("metric") or {}
            metric = Metric(str(mc.get("kind", "chamfer")), int(mc.get("order", 2)), cfg.get("pixel_size"))
            labels = grow_regions_weighted(labels, grey, metric=metric)
    elif cfg.get("grow_iterations") is not None:
        labels = grow_regions(labels, connectivity=int(cfg.get("grow_connectivity", -1)),
                              iterations=int(cfg["grow_iterations"]))
    t_grow = time.time()

    features = list(cfg.get("features") or [])
    out = {"labels": labels, "connectivity": np.int32(connectivity)}
    if features:
        m = measure(labels, grey, features=features, pixel_size=_pixel_size(cfg, labels.ndim))
        out.update(m.to_dict())
    t_done = time.time()

    out_dir = cfg.get("output_dir", "./region_out")
    os.makedirs(out_dir, exist_ok=True)
    name = cfg.get("output_name", "regions")
    npz_path = os.path.join(out_dir, f"{name}.npz")
    np.savez(npz_path, **out)

    meta = {
        "K": int(K),
        "shape": list(labels.shape),
        "times": {
            "load": float(t_load - t0),
            "label": float(t_label - t_load),
            "grow": float(t_grow - t_label),
            "measure": float(t_done - t_grow),
        },
        "git_rev": _git_rev(),
        "config": cfg,
        "output_npz": os.path.basename(npz_path),
    }
    with open(os.path.join(out_dir, f"{name}.meta.json"), "w") as f:
        json.dump(meta, f, indent=2, default=str)

    if cfg.get("profile", False):
        print(f"times: load={t_load-t0:.2f}s label={t_label-t_load:.2f}s "
              f"grow={t_grow-t_label:.2f}s measure={t_done-t_grow:.2f}s K={K}")
    return out


def main(argv: Optional[Sequence[str]] = None):
    ap = argparse.ArgumentParser(description="Label, grow and measure regions of an N-D image.")
    ap.add_argument("--config", default=None, help="YAML config file")
    ap.add_argument("--input", dest="input_path", default=None)
    ap.add_argument("--threshold", type=float, default=None)
    ap.add_argument("--connectivity", type=int, default=None)
    ap.add_argument("--min-size", dest="min_size", type=int, default=None)
    ap.add_argument("--output-dir", dest="output_dir", default=None)
    ap.add_argument("--profile", action="store_true")
    args = ap.parse_args(argv)

    cfg = parse_config(args.config)
    for key in ("input_path", "threshold", "connectivity", "min_size", "output_dir"):
        val = getattr(args, key)
        if val is not None:
            cfg[key] = val
    if args.profile:
        cfg["profile"] = True
    out = run(cfg)
    n = int(np.count_nonzero(np.unique(out["labels"])))
    print(f"Labeled {n} regions -> {cfg['output_dir']}")


if __name__ == "__main__":
    main()
