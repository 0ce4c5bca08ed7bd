"""Shared PCA projection from D_high embeddings to the D_low index space.

Every reduced vector carries the generation of the model that produced it;
content and profiles are only comparable inside one generation.
"""
from __future__ import annotations

import logging
import os
import random
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

import joblib
import numpy as np
from sklearn.decomposition import PCA

from .errors import DataError, InsufficientSampleError, ModelNotReadyError
from .models import ContentItem, utcnow

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReducerModel:
    generation: int
    mean: np.ndarray          # (d_high,)
    components: np.ndarray    # (d_low, d_high); rows past n_components are zero
    n_samples: int
    explained_variance: float
    trained_at: datetime = field(default_factory=utcnow)

    @property
    def d_high(self) -> int:
        return int(self.mean.shape[0])

    @property
    def d_low(self) -> int:
        return int(self.components.shape[0])


def _valid_rows(samples: Iterable[Sequence[float]], d_high: Optional[int]) -> np.ndarray:
    rows = []
    for s in samples:
        if s is None:
            continue
        v = np.asarray(s, dtype=np.float64)
        if v.ndim != 1 or (d_high is not None and v.shape[0] != d_high):
            continue
        if not np.all(np.isfinite(v)):
            continue
        rows.append(v)
    if not rows:
        return np.empty((0, d_high or 0))
    return np.vstack(rows)


def fit(
    samples: Iterable[Sequence[float]],
    *,
    d_low: int,
    min_samples: int = 50,
    generation: int = 1,
    d_high: Optional[int] = None,
) -> ReducerModel:
    """Train a centered, unscaled PCA on valid sample vectors."""
    if d_high is None:
        samples = list(samples)
        first = next((s for s in samples if s is not None and len(s) > 0), None)
        d_high = len(first) if first is not None else None
    X = _valid_rows(samples, d_high)
    if X.shape[0] < min_samples or X.shape[0] == 0:
        raise InsufficientSampleError(int(X.shape[0]), min_samples)
    if d_low > X.shape[1]:
        raise DataError(f"d_low={d_low} exceeds input dimension {X.shape[1]}")

    n_components = min(d_low, X.shape[0], X.shape[1])
    pca = PCA(n_components=n_components, whiten=False, random_state=42)
    pca.fit(X)

    components = np.zeros((d_low, X.shape[1]), dtype=np.float32)
    components[:n_components] = pca.components_.astype(np.float32)
    explained = float(np.sum(pca.explained_variance_ratio_))
    log.info(
        f"Fitted reducer generation={generation} on {X.shape[0]}x{X.shape[1]} "
        f"-> {d_low}D ({n_components} estimated components, explained={explained:.3f})"
    )
    return ReducerModel(
        generation=generation,
        mean=pca.mean_.astype(np.float32),
        components=components,
        n_samples=int(X.shape[0]),
        explained_variance=explained,
    )


def project(model: ReducerModel, vector: Sequence[float]) -> np.ndarray:
    v = np.asarray(vector, dtype=np.float32)
    if v.ndim != 1 or v.shape[0] != model.d_high:
        raise DataError(f"expected {model.d_high}D vector for projection, got shape {v.shape}")
    if not np.all(np.isfinite(v)):
        raise DataError("cannot project vector with non-finite values")
    return (v - model.mean) @ model.components.T


def project_many(model: ReducerModel, matrix: np.ndarray) -> np.ndarray:
    M = np.asarray(matrix, dtype=np.float32)
    if M.ndim != 2 or M.shape[1] != model.d_high:
        raise DataError(f"expected (n, {model.d_high}) matrix for projection, got {M.shape}")
    return (M - model.mean) @ model.components.T


def draw_training_sample(
    items: Iterable[ContentItem],
    caps: Optional[Dict[str, int]] = None,
    max_total: Optional[int] = None,
    seed: int = 42,
) -> List[Sequence[float]]:
    """Sample full embeddings across content kinds, capped per kind."""
    caps = caps or {"article": 3000, "video": 2000}
    by_kind: Dict[str, List[Sequence[float]]] = {}
    for item in items:
        if item.flagged or item.embedding is None or len(item.embedding) == 0:
            continue
        by_kind.setdefault(item.kind, []).append(item.embedding)

    rng = random.Random(seed)
    out: List[Sequence[float]] = []
    for kind in sorted(by_kind):
        vecs = by_kind[kind]
        cap = caps.get(kind, max(caps.values()) if caps else len(vecs))
        if len(vecs) > cap:
            vecs = rng.sample(vecs, cap)
        out.extend(vecs)
    if max_total is not None and len(out) > max_total:
        out = rng.sample(out, max_total)
    return out


def save_model(model: ReducerModel, path: str) -> None:
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    joblib.dump(
        {
            "generation": model.generation,
            "mean": model.mean,
            "components": model.components,
            "n_samples": model.n_samples,
            "explained_variance": model.explained_variance,
            "trained_at": model.trained_at.isoformat(),
        },
        path,
    )
    log.info(f"Saved reducer generation={model.generation} to {path}")


def load_model(path: str) -> ReducerModel:
    raw = joblib.load(path)
    return ReducerModel(
        generation=int(raw["generation"]),
        mean=np.asarray(raw["mean"], dtype=np.float32),
        components=np.asarray(raw["components"], dtype=np.float32),
        n_samples=int(raw["n_samples"]),
        explained_variance=float(raw["explained_variance"]),
        trained_at=datetime.fromisoformat(raw["trained_at"]),
    )


class ReducerRegistry:
    """Holds the current reducer; generations only move forward."""

    def __init__(self, model: Optional[ReducerModel] = None):
        self._model = model

    @property
    def model(self) -> Optional[ReducerModel]:
        return self._model

    @property
    def generation(self) -> int:
        return self._model.generation if self._model else 0

    def require(self) -> ReducerModel:
        if self._model is None:
            raise ModelNotReadyError("reducer model has not been trained")
        return self._model

    def install(self, model: ReducerModel) -> None:
        if self._model is not None and model.generation <= self._model.generation:
            raise DataError(
                f"reducer generation must increase: current={self._model.generation} new={model.generation}"
            )
        self._model = model
        log.info(f"Installed reducer generation={model.generation}")
