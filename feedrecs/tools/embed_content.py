# feedrecs/tools/embed_content.py
"""Backfill full (and reduced) embeddings for a content dump.

    feedrecs-embed-content data/content.ndjson data/content.embedded.ndjson [--limit N]
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import os
from pathlib import Path
from typing import Optional

import numpy as np
import orjson
from tqdm.asyncio import tqdm

from ..embedding import EmbeddingService, content_text, make_provider
from ..errors import DataError, ProviderError
from ..models import ContentItem
from ..reducer import ReducerModel, load_model, project
from ..settings import Settings, configure_logging, load_settings
from ..stores import content_from_record, content_to_record, stream_ndjson

log = logging.getLogger(__name__)

CONCURRENCY = int(os.getenv("EMBED_CONCURRENCY", "10"))
MAX_RETRIES = int(os.getenv("EMBED_MAX_RETRIES", "5"))


async def embed_with_retry(service: EmbeddingService, text: str, max_retries: int = MAX_RETRIES) -> Optional[np.ndarray]:
    for attempt in range(1, max_retries + 1):
        try:
            return await service.embed(text)
        except ProviderError as e:
            if not e.retryable or attempt == max_retries:
                log.warning(f"Giving up after {attempt} attempt(s): {e}")
                return None
            await asyncio.sleep(min(2 ** attempt, 20))
    return None


async def embed_item(
    service: EmbeddingService,
    item: ContentItem,
    model: Optional[ReducerModel],
    sem: asyncio.Semaphore,
    max_retries: int = MAX_RETRIES,
) -> bool:
    """Fill missing vectors on ``item`` in place; False when it stays unembedded."""
    if item.embedding is None:
        if not (item.title or item.snippet):
            return False
        async with sem:
            vec = await embed_with_retry(service, content_text(item), max_retries)
        if vec is None:
            return False
        item.embedding = vec.tolist()
    if model is not None and (item.embedding_reduced is None or item.reduced_generation != model.generation):
        try:
            item.embedding_reduced = project(model, item.embedding).tolist()
            item.reduced_generation = model.generation
        except DataError as e:
            log.warning(f"Not projecting {item.id}: {e}")
    return True


async def backfill(
    in_path: Path,
    out_path: Path,
    settings: Settings,
    limit: Optional[int] = None,
    service: Optional[EmbeddingService] = None,
    concurrency: int = CONCURRENCY,
) -> dict:
    items = []
    for rec in stream_ndjson(in_path):
        try:
            items.append(content_from_record(rec))
        except (KeyError, ValueError, TypeError) as e:
            log.warning(f"Skipping malformed record: {e}")
        if limit and len(items) >= limit:
            break

    model = load_model(settings.reducer_path) if os.path.exists(settings.reducer_path) else None
    service = service or EmbeddingService(make_provider(settings), settings.d_high, settings.embed_timeout)
    sem = asyncio.Semaphore(concurrency)
    try:
        results = await tqdm.gather(*(embed_item(service, it, model, sem) for it in items), desc="embedding")
    finally:
        await service.close()

    out_path.parent.mkdir(parents=True, exist_ok=True)
    with open(out_path, "wb") as out_f:
        for item in items:
            out_f.write(orjson.dumps(content_to_record(item)) + b"\n")
    summary = {"items": len(items), "embedded": sum(results), "missing": len(items) - sum(results)}
    log.info(f"Wrote {out_path}: {summary}")
    return summary


def cli() -> None:
    configure_logging()
    ap = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    ap.add_argument("input")
    ap.add_argument("output")
    ap.add_argument("--config", default=os.getenv("FEEDRECS_CONFIG"))
    ap.add_argument("--limit", type=int, default=None)
    args = ap.parse_args()
    settings = load_settings(args.config).validate()
    asyncio.run(backfill(Path(args.input), Path(args.output), settings, args.limit))


if __name__ == "__main__":
    cli()
