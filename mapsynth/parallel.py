"""
Deterministic parallel map and random-stream partitioning.

Every parallel unit gets its own generator derived from the global seed and
the unit key, and results are collected in input order, so the worker count
never changes output.
"""

from __future__ import annotations

import hashlib
import logging
from multiprocessing import Pool
from typing import Any, Callable, Optional, Sequence, TypeVar

import numpy as np
from tqdm import tqdm

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

# =============================================================================
# MULTIPROCESSING GLOBALS (initialized per worker)
# =============================================================================

_worker_state: Any = None
_worker_func: Optional[Callable[[Any, Any], Any]] = None


def stable_u64(text: str) -> int:
    """
    Stable 64-bit hash for deterministic per-unit seeds across processes/runs.
    """
    digest = hashlib.blake2b(text.encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, byteorder="little", signed=False)


def derive_seed(seed: int, *parts: Any) -> int:
    """Sub-seed for one unit of work, e.g. derive_seed(seed, "zone", zone_id)."""
    key = ":".join([str(int(seed))] + [str(p) for p in parts])
    return stable_u64(key)


def derive_rng(seed: int, *parts: Any) -> np.random.Generator:
    """Independent generator for one unit of work."""
    return np.random.default_rng(derive_seed(seed, *parts))


def _init_worker(func, context, setup):
    """Initialize worker process with shared read-only data."""
    global _worker_state, _worker_func
    _worker_state = setup(context) if setup is not None else context
    _worker_func = func


def _run_unit(item):
    return _worker_func(_worker_state, item)


def chunked(items: Sequence[T], size: int) -> list[list[T]]:
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


def parallel_map(
    func: Callable[[Any, T], R],
    items: Sequence[T],
    context: Any = None,
    n_workers: int = 1,
    setup: Optional[Callable[[Any], Any]] = None,
    desc: Optional[str] = None,
    verbose: bool = False,
    chunksize: Optional[int] = None,
) -> list[R]:
    """
    Apply func(state, item) to every item, preserving input order.

    state is setup(context) (or context itself), built once per worker
    process. func and setup must be module-level functions so they can be
    sent to workers.

    Args:
        func: Unit of work
        items: Independent inputs
        context: Read-only data shared by all units
        n_workers: Worker processes; 1 runs in-process
        setup: Builds per-worker state from context (e.g. a spatial index)
        desc: Progress bar label
        verbose: Show a progress bar
        chunksize: Items per task sent to a worker

    Returns:
        Results in the same order as items
    """
    items = list(items)
    if not items:
        return []

    if n_workers <= 1 or len(items) == 1:
        state = setup(context) if setup is not None else context
        return [func(state, item) for item in tqdm(items, desc=desc, disable=not verbose)]

    n_workers = min(n_workers, len(items))
    if chunksize is None:
        chunksize = max(1, len(items) // (n_workers * 4))
    logger.debug(f"{desc or 'parallel_map'}: {len(items)} units on {n_workers} workers")

    with Pool(processes=n_workers, initializer=_init_worker, initargs=(func, context, setup)) as pool:
        results = list(tqdm(
            pool.imap(_run_unit, items, chunksize=chunksize),
            total=len(items),
            desc=desc,
            disable=not verbose,
        ))
    return results
