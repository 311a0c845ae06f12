#!/usr/bin/env python3
"""runner.py

Drive a phenology product over the full pixel x year grid.

State machine:

    INIT -> (LOAD_CHECKPOINT | FRESH) -> PROCESSING -> (CHECKPOINTING)*
         -> FINALIZING -> DONE

- INIT: enumerate distinct pixel ids in the (read-only) timeseries.
- LOAD_CHECKPOINT: with resume enabled and a readable snapshot, subtract the
  pixels it already holds. If nothing remains, go straight to FINALIZING.
- PROCESSING: remaining pixels are split into batches of n_cores. Each pixel's
  full-year sweep runs on one worker; the driver blocks until the whole batch
  returns. A pixel that raises is counted as failed; its siblings carry on.
- CHECKPOINTING: every checkpoint_interval successfully processed pixels the
  accumulated records overwrite the snapshot.
- FINALIZING: write the output table, delete the snapshot.

Workers (n_cores > 1) are spawned processes initialised once with
single-threaded BLAS/OpenMP pools, so n_cores workers use n_cores cores. Each
task receives only its own pixel's rows.

Progress (pixels/min, ETA) is logged every progress_interval pixels.
"""

from __future__ import annotations

import logging
import multiprocessing as mp
import os
import time
from collections import Counter
from concurrent.futures import Future, ProcessPoolExecutor, wait
from concurrent.futures.process import BrokenProcessPool
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pandas as pd
from threadpoolctl import threadpool_limits

from hlsdrought.config import PhenologyConfig
from hlsdrought.phenology.checkpoint import CheckpointStore
from hlsdrought.phenology.pixel_year import PixelResult, PixelYearProcessor, Product
from hlsdrought.timeseries import TimeseriesError, write_table

logger = logging.getLogger(__name__)

THREAD_ENV_VARS = (
    "OMP_NUM_THREADS",
    "OPENBLAS_NUM_THREADS",
    "MKL_NUM_THREADS",
    "NUMEXPR_NUM_THREADS",
    "VECLIB_MAXIMUM_THREADS",
)

WORKER_COLUMNS = ["pixel_id", "year", "yday", "ndvi"]


class RunState(str, Enum):
    INIT = "init"
    LOAD_CHECKPOINT = "load_checkpoint"
    FRESH = "fresh"
    PROCESSING = "processing"
    CHECKPOINTING = "checkpointing"
    FINALIZING = "finalizing"
    DONE = "done"


# -----------------------------------------------------------------------------
# Worker side
# -----------------------------------------------------------------------------

def init_worker(n_threads: int = 1) -> None:
    """Pool initializer: pin numerical libraries to n_threads per worker."""
    for var in THREAD_ENV_VARS:
        os.environ[var] = str(n_threads)
    threadpool_limits(limits=n_threads)


def sweep_pixel(pixel_series: pd.DataFrame, pixel_id, config: PhenologyConfig, product: Product) -> PixelResult:
    """Worker task: every configured year of one pixel."""
    return PixelYearProcessor(config, product).process_pixel(pixel_series, pixel_id)


# -----------------------------------------------------------------------------
# Accounting
# -----------------------------------------------------------------------------

@dataclass
class RunStats:
    n_pixels_total: int = 0
    n_pixels_resumed: int = 0
    n_pixels_remaining: int = 0
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    year_status: Counter = field(default_factory=Counter)
    n_records: int = 0
    n_significant: Optional[int] = None
    elapsed_s: float = 0.0

    @property
    def n_done(self) -> int:
        return self.processed + self.skipped + self.failed

    @property
    def pct_significant(self) -> Optional[float]:
        if self.n_significant is None or self.n_records == 0:
            return None
        return 100.0 * self.n_significant / self.n_records

    def as_dict(self) -> Dict[str, Any]:
        return {
            "pixels_total": self.n_pixels_total,
            "pixels_resumed": self.n_pixels_resumed,
            "pixels_processed": self.processed,
            "pixels_skipped": self.skipped,
            "pixels_failed": self.failed,
            "pixel_years": dict(self.year_status),
            "records": self.n_records,
            "pct_significant": self.pct_significant,
            "elapsed_min": self.elapsed_s / 60.0,
        }


class ResultBuffer:
    """Append-only record buffer, materialized only when asked.

    Blocks accumulate in `pending`; materialize() folds them into one frame
    and keeps it, so each block is concatenated once per checkpoint rather
    than once per batch.
    """

    def __init__(self, columns: Sequence[str], seed: Optional[pd.DataFrame] = None):
        self.columns = list(columns)
        self._frame = seed[self.columns] if seed is not None else pd.DataFrame(columns=self.columns)
        self._pending: List[pd.DataFrame] = []

    def append(self, block: pd.DataFrame) -> None:
        self._pending.append(block)

    def materialize(self) -> pd.DataFrame:
        if self._pending:
            parts = [self._frame] if len(self._frame) else []
            self._frame = pd.concat(parts + self._pending, ignore_index=True)
            self._pending = []
        return self._frame


# -----------------------------------------------------------------------------
# Driver
# -----------------------------------------------------------------------------

class BatchDerivativeRunner:
    """Resumable, parallel driver for one phenology product.

    Args:
        config: run configuration.
        product: Product.DERIVATIVES (default) or Product.SPLINES.
        output_path: final table (CSV or parquet). When None, results are
            only returned.
        checkpoint: checkpoint store; defaults to one beside output_path.
    """

    def __init__(
        self,
        config: PhenologyConfig,
        product: Product = Product.DERIVATIVES,
        *,
        output_path: Optional[Path] = None,
        checkpoint: Optional[CheckpointStore] = None,
    ):
        self.config = config
        self.product = Product(product)
        self.output_path = Path(output_path) if output_path is not None else None
        if checkpoint is None and self.output_path is not None:
            checkpoint = CheckpointStore.for_output(self.output_path)
        self.checkpoint = checkpoint
        self.state = RunState.INIT
        self.stats = RunStats()
        self._tag = self.product.tag

    def _enter(self, state: RunState) -> None:
        logger.debug("%s state %s -> %s", self._tag, self.state.value, state.value)
        self.state = state

    # --- public entrypoint ---

    def run(self, timeseries: pd.DataFrame) -> pd.DataFrame:
        cfg = self.config
        self.state = RunState.INIT
        self.stats = RunStats()
        start = time.monotonic()

        if timeseries is None or timeseries.empty:
            raise TimeseriesError("Timeseries is empty; nothing to process")

        pixel_ids = list(pd.unique(timeseries["pixel_id"]))
        self.stats.n_pixels_total = len(pixel_ids)
        logger.info("%s %d pixels x %d years (%d-%d) = %d pixel-years",
                    self._tag, len(pixel_ids), len(cfg.target_years), cfg.first_year, cfg.last_year,
                    len(pixel_ids) * len(cfg.target_years))

        prior = self._load_checkpoint()
        done = CheckpointStore.processed_pixels(prior)
        remaining = [p for p in pixel_ids if p not in done]
        self.stats.n_pixels_resumed = len(pixel_ids) - len(remaining)
        self.stats.n_pixels_remaining = len(remaining)
        buffer = ResultBuffer(self.product.columns, seed=prior)

        if remaining:
            self._process(timeseries, remaining, buffer)
        else:
            logger.info("%s All pixels already processed", self._tag)

        self._enter(RunState.FINALIZING)
        results = buffer.materialize()
        self.stats.n_records = len(results)
        if self.product is Product.DERIVATIVES:
            self.stats.n_significant = int((results["sig"] == "*").sum()) if len(results) else 0
        if self.output_path is not None:
            write_table(results, self.output_path)
            logger.info("%s Wrote %d records -> %s", self._tag, len(results), self.output_path)
        if self.checkpoint is not None:
            self.checkpoint.clear()

        self.stats.elapsed_s = time.monotonic() - start
        self._log_summary()
        self._enter(RunState.DONE)
        return results

    # --- states ---

    def _load_checkpoint(self) -> Optional[pd.DataFrame]:
        if not (self.config.resume_from_checkpoint and self.checkpoint is not None and self.checkpoint.exists()):
            self._enter(RunState.FRESH)
            return None
        self._enter(RunState.LOAD_CHECKPOINT)
        prior = self.checkpoint.load(required_columns=self.product.columns)
        if prior is None:
            self._enter(RunState.FRESH)
            return None
        logger.info("%s Resuming from checkpoint with %d completed pixels",
                    self._tag, prior["pixel_id"].nunique())
        return prior

    def _process(self, timeseries: pd.DataFrame, remaining: List, buffer: ResultBuffer) -> None:
        cfg = self.config
        self._enter(RunState.PROCESSING)

        columns = [c for c in WORKER_COLUMNS if c in timeseries.columns]
        grouped = timeseries[columns].groupby("pixel_id", sort=False)
        batch_size = max(1, cfg.n_cores)
        batches = [remaining[i:i + batch_size] for i in range(0, len(remaining), batch_size)]
        logger.info("%s Processing %d pixels in %d batches of <= %d | checkpoint every %d pixels | %d core(s)",
                    self._tag, len(remaining), len(batches), batch_size, cfg.checkpoint_interval, cfg.n_cores)

        t0 = time.monotonic()
        since_checkpoint = 0
        last_report = 0
        pool = self._make_pool()
        try:
            for i, batch in enumerate(batches, start=1):
                if pool is not None:
                    results, broken = self._run_parallel(pool, grouped, batch)
                    if broken:
                        logger.warning("%s Worker pool broke during batch %d; restarting it", self._tag, i)
                        results, pool = self._retry_orphans(pool, grouped, results)
                else:
                    results = self._run_sequential(grouped, batch)

                for pixel_id, result, error in results:
                    if error is not None:
                        self.stats.failed += 1
                        logger.warning("%s Pixel %s failed: %s: %s",
                                       self._tag, pixel_id, type(error).__name__, error)
                        continue
                    self.stats.year_status.update(result.status_counts)
                    if result.records is not None and len(result.records):
                        buffer.append(result.records)
                        self.stats.processed += 1
                        since_checkpoint += 1
                    else:
                        self.stats.skipped += 1

                if since_checkpoint >= cfg.checkpoint_interval and self.checkpoint is not None:
                    self._enter(RunState.CHECKPOINTING)
                    self.checkpoint.save(buffer.materialize())
                    since_checkpoint = 0
                    self._enter(RunState.PROCESSING)

                if self.stats.n_done - last_report >= cfg.progress_interval or i == len(batches):
                    self._log_progress(t0, len(remaining))
                    last_report = self.stats.n_done
        finally:
            if pool is not None:
                pool.shutdown(wait=True, cancel_futures=True)

    # --- execution backends ---

    def _make_pool(self) -> Optional[ProcessPoolExecutor]:
        if self.config.n_cores <= 1:
            return None
        return ProcessPoolExecutor(
            max_workers=self.config.n_cores,
            mp_context=mp.get_context("spawn"),
            initializer=init_worker,
            initargs=(1,),
        )

    def _run_sequential(self, grouped, batch: Sequence) -> List[Tuple[Any, Optional[PixelResult], Optional[BaseException]]]:
        processor = PixelYearProcessor(self.config, self.product)
        out = []
        for pixel_id in batch:
            try:
                out.append((pixel_id, processor.process_pixel(grouped.get_group(pixel_id), pixel_id), None))
            except Exception as e:
                out.append((pixel_id, None, e))
        return out

    def _run_parallel(self, pool: ProcessPoolExecutor, grouped, batch: Sequence):
        futures: Dict[Future, Any] = {}
        out: List[Tuple[Any, Optional[PixelResult], Optional[BaseException]]] = []
        broken = False
        for pixel_id in batch:
            try:
                fut = pool.submit(sweep_pixel, grouped.get_group(pixel_id), pixel_id, self.config, self.product)
            except BrokenProcessPool as e:
                broken = True
                out.append((pixel_id, None, e))
                continue
            futures[fut] = pixel_id

        # block at the batch boundary
        wait(futures)
        for fut, pixel_id in futures.items():
            try:
                out.append((pixel_id, fut.result(), None))
            except BrokenProcessPool as e:
                broken = True
                out.append((pixel_id, None, e))
            except Exception as e:
                out.append((pixel_id, None, e))
        return out, broken

    def _retry_orphans(self, pool: ProcessPoolExecutor, grouped, results: List):
        """Rerun, one at a time on a fresh pool, every pixel lost to a broken pool.

        A dead worker fails all unfinished futures of its batch, so the pixel
        that crashed cannot be told apart from its siblings. Run alone, only
        the culprit breaks the pool again; it alone is counted as failed.
        Returns (results, usable pool).
        """
        kept = [r for r in results if not isinstance(r[2], BrokenProcessPool)]
        orphans = [r[0] for r in results if isinstance(r[2], BrokenProcessPool)]
        logger.info("%s Retrying %d pixel(s) one at a time", self._tag, len(orphans))

        broken = True
        for pixel_id in orphans:
            if broken:
                pool.shutdown(wait=False, cancel_futures=True)
                pool = self._make_pool()
            single, broken = self._run_parallel(pool, grouped, [pixel_id])
            kept.extend(single)
        if broken:
            pool.shutdown(wait=False, cancel_futures=True)
            pool = self._make_pool()
        return kept, pool

    # --- reporting ---

    def _log_progress(self, t0: float, n_remaining: int) -> None:
        s = self.stats
        elapsed_min = max((time.monotonic() - t0) / 60.0, 1e-9)
        rate = s.n_done / elapsed_min
        eta = (n_remaining - s.n_done) / rate if rate > 0 else float("nan")
        logger.info("%s Progress: %d/%d pixels (%.1f%%) | %.1f pixels/min | ETA: %.0f min",
                    self._tag, s.n_done, n_remaining, 100.0 * s.n_done / max(n_remaining, 1), rate, eta)

    def _log_summary(self) -> None:
        s = self.stats
        logger.info("%s Complete in %.1f min", self._tag, s.elapsed_s / 60.0)
        logger.info("%s Pixels: %d total | %d resumed | %d processed | %d skipped | %d failed",
                    self._tag, s.n_pixels_total, s.n_pixels_resumed, s.processed, s.skipped, s.failed)
        if s.year_status:
            logger.info("%s Pixel-years: %s", self._tag,
                        ", ".join(f"{k}={v}" for k, v in sorted(s.year_status.items())))
        logger.info("%s Records: %d", self._tag, s.n_records)
        if s.pct_significant is not None:
            logger.info("%s Significant changes: %d (%.1f%%)", self._tag, s.n_significant, s.pct_significant)

    @property
    def all_failed(self) -> bool:
        """True when pixels were attempted and every one raised."""
        return self.stats.n_pixels_remaining > 0 and self.stats.failed == self.stats.n_pixels_remaining


def run_product(
    timeseries: pd.DataFrame,
    config: PhenologyConfig,
    product: Product = Product.DERIVATIVES,
    output_path: Optional[Path] = None,
) -> Tuple[pd.DataFrame, RunStats]:
    """Convenience wrapper: run one product and return (results, stats)."""
    runner = BatchDerivativeRunner(config, product, output_path=output_path)
    results = runner.run(timeseries)
    return results, runner.stats
