#!/usr/bin/env python3
"""checkpoint.py

Durable snapshot of partial phenology results.

The checkpoint holds every record produced so far for fully processed pixels.
The set of pixels already done is implicit: the distinct pixel_id values in
the snapshot.

Lifecycle:
- overwritten (never appended) every checkpoint_interval pixels by the driver
  process only; workers never touch it
- read at startup to compute the resume set
- deleted once the final output has been written

Format: gzip-compressed parquet beside the final output
(`<output stem>_checkpoint.parquet`). Parquet keeps column dtypes exactly,
which matters for pixel_id matching on resume. Saves go through a temp file
and an atomic rename, so a kill mid-write leaves the previous snapshot intact.

An unreadable snapshot is treated as absent (fresh run), with a warning.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterable, Optional, Set

import pandas as pd

logger = logging.getLogger(__name__)

CHECKPOINT_SUFFIX = "_checkpoint.parquet"


def checkpoint_path_for(output_path: Path) -> Path:
    """Checkpoint location for a given final output path."""
    output_path = Path(output_path)
    return output_path.with_name(f"{output_path.stem}{CHECKPOINT_SUFFIX}")


class CheckpointStore:
    def __init__(self, path: Path, compression: str = "gzip"):
        self.path = Path(path)
        self.compression = compression

    @classmethod
    def for_output(cls, output_path: Path, **kwargs) -> "CheckpointStore":
        return cls(checkpoint_path_for(output_path), **kwargs)

    def exists(self) -> bool:
        return self.path.exists()

    def save(self, results: pd.DataFrame) -> None:
        """Overwrite the snapshot with `results`."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(f".{self.path.name}.tmp")
        results.to_parquet(tmp, index=False, compression=self.compression)
        os.replace(tmp, self.path)
        logger.info("[CHECKPOINT] Saved %d records for %d pixels -> %s",
                    len(results), results["pixel_id"].nunique() if len(results) else 0, self.path)

    def load(self, required_columns: Optional[Iterable[str]] = None) -> Optional[pd.DataFrame]:
        """Return the snapshot, or None when absent or unreadable."""
        if not self.path.exists():
            return None
        try:
            df = pd.read_parquet(self.path)
        except Exception as e:
            logger.warning("[CHECKPOINT] Ignoring unreadable checkpoint %s (%s); starting fresh", self.path, e)
            return None

        if required_columns is not None:
            missing = [c for c in required_columns if c not in df.columns]
            if missing:
                logger.warning("[CHECKPOINT] Ignoring checkpoint %s missing columns %s; starting fresh",
                               self.path, missing)
                return None
        return df

    def clear(self) -> None:
        if self.path.exists():
            self.path.unlink()
            logger.info("[CHECKPOINT] Removed %s", self.path)

    @staticmethod
    def processed_pixels(results: Optional[pd.DataFrame]) -> Set:
        if results is None or results.empty:
            return set()
        return set(results["pixel_id"].unique().tolist())
