"""Fit the shared PCA reducer offline from a content dump.

    feedrecs-fit-reducer --config configs/reducer.yaml
"""
from __future__ import annotations

import argparse
import logging
import os

import numpy as np
import pandas as pd
import yaml

from ..errors import InsufficientSampleError
from ..models import ContentItem
from ..reducer import draw_training_sample, fit, load_model, project_many, save_model
from ..settings import configure_logging

log = logging.getLogger(__name__)


def load_cfg(path: str) -> dict:
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def load_embeddings(path: str) -> pd.DataFrame:
    """Rows of (id, kind, embedding) for items that carry a full embedding."""
    df = pd.read_json(path, lines=True)
    if "embedding" not in df.columns:
        return pd.DataFrame(columns=["id", "kind", "embedding"])
    if "kind" not in df.columns:
        df["kind"] = "article"
    if "flagged" in df.columns:
        df = df[~df["flagged"].fillna(False).astype(bool)]
    df = df[df["embedding"].apply(lambda v: isinstance(v, list) and len(v) > 0)].copy()
    df["kind"] = df["kind"].fillna("article")
    df["id"] = df["id"].astype(str)
    return df[["id", "kind", "embedding"]].reset_index(drop=True)


def main(cfgpath: str) -> int:
    cfg = load_cfg(cfgpath)
    data_cfg = cfg.get("data", {})
    red_cfg = cfg.get("reducer", {})
    out_cfg = cfg.get("output", {})

    df = load_embeddings(data_cfg["corpus"])
    log.info(f"Loaded {len(df)} embedded items from {data_cfg['corpus']}")
    items = [ContentItem(id=r.id, source="", kind=r.kind, embedding=r.embedding) for r in df.itertuples()]
    sample = draw_training_sample(
        items,
        caps=red_cfg.get("sample_caps", {"article": 3000, "video": 2000}),
        seed=int(red_cfg.get("seed", 42)),
    )

    model_path = out_cfg.get("reducer", "artifacts/reducer.joblib")
    generation = 1
    if os.path.exists(model_path):
        generation = load_model(model_path).generation + 1

    try:
        model = fit(
            sample,
            d_low=int(red_cfg.get("d_low", 128)),
            min_samples=int(red_cfg.get("min_samples", 50)),
            generation=generation,
            d_high=red_cfg.get("d_high"),
        )
    except InsufficientSampleError as e:
        log.error(str(e))
        return 1
    save_model(model, model_path)

    reduced_path = out_cfg.get("reduced")
    if reduced_path:
        try:
            X = np.asarray(df["embedding"].tolist(), dtype=np.float32)
        except ValueError:
            X = None
        if X is None or X.ndim != 2 or X.shape[1] != model.d_high:
            log.warning("Mixed embedding dimensions in corpus; skipping reduced export")
        else:
            out = pd.DataFrame({
                "id": df["id"],
                "embedding_reduced": [row.tolist() for row in project_many(model, X)],
                "reduced_generation": model.generation,
            })
            os.makedirs(os.path.dirname(reduced_path) or ".", exist_ok=True)
            out.to_json(reduced_path, orient="records", lines=True)
            log.info(f"Wrote {len(out)} reduced vectors to {reduced_path}")
    return 0


def cli() -> None:
    configure_logging()
    ap = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    ap.add_argument("--config", required=True)
    args = ap.parse_args()
    raise SystemExit(main(args.config))


if __name__ == "__main__":
    cli()
