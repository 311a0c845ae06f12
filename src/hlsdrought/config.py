#!/usr/bin/env python3
"""hlsdrought.config

Shared configuration utilities for hlsdrought CLI subsystems.

This module provides the YAML loader and the immutable run configuration
consumed by the phenology pipeline (year-specific GAM splines and
derivatives). Centralizing these avoids duplication and ensures every
subsystem reads the same knobs the same way.

Design notes:
- YAML loading is strict: files must exist and be valid mappings.
- Every option is resolved and validated once, at load time. Downstream code
  receives a frozen PhenologyConfig and never looks at raw YAML again.
- The smoother basis is resolved to a BasisKind enum here, so a typo in the
  YAML fails before any pixel is touched.
- All functions are pure (no side effects on import).

Example YAML (config/phenology.yaml):

    paths:
      timeseries_file: data/gam_models/conus_4km_ndvi_timeseries.csv
      derivatives_file: data/gam_models/conus_4km_year_derivatives.csv
    years: {start: 2013, end: 2024}
    gam: {knots: 12, basis: tp}
"""

from __future__ import annotations

import dataclasses
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from hlsdrought.gam.smoother import BasisKind


# -----------------------------------------------------------------------------
# YAML loading
# -----------------------------------------------------------------------------

def load_yaml(path: Path) -> Dict[str, Any]:
    """Load a YAML file and return as dict.

    Raises SystemExit on missing file or invalid format (non-mapping).
    This strict behavior is intentional: config errors should fail fast.
    """
    if not path.exists():
        raise SystemExit(f"Config not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise SystemExit(f"Expected YAML mapping at {path}")
    return data


def _section(data: Dict[str, Any], name: str) -> Dict[str, Any]:
    """Return a named sub-mapping (empty if absent); reject non-mappings."""
    block = data.get(name, {})
    if block is None:
        return {}
    if not isinstance(block, dict):
        raise ValueError(f"Config section '{name}' must be a mapping, got {type(block).__name__}")
    return block


def _flag(block: Dict[str, Any], section: str, key: str, default: bool) -> bool:
    """Read a true/false option; quoted strings like "false" are rejected."""
    value = block.get(key, default)
    if not isinstance(value, bool):
        raise ValueError(f"Config option {section}.{key} must be true or false, got {value!r}")
    return value


# -----------------------------------------------------------------------------
# Basis resolution
# -----------------------------------------------------------------------------
# Aliases accepted in YAML. Cyclic bases are refused outright: the padded
# window already carries continuity across the year boundary.

_BASIS_ALIASES: Dict[str, BasisKind] = {
    "tp": BasisKind.THIN_PLATE,
    "thin-plate": BasisKind.THIN_PLATE,
    "thin_plate": BasisKind.THIN_PLATE,
    "ps": BasisKind.P_SPLINE,
    "p-spline": BasisKind.P_SPLINE,
    "pspline": BasisKind.P_SPLINE,
}

_CYCLIC_BASES = {"cc", "cp", "cyclic"}


def resolve_basis(name: Any) -> BasisKind:
    """Map a YAML basis name onto a BasisKind."""
    if isinstance(name, BasisKind):
        return name
    key = str(name).strip().lower()
    if key in _CYCLIC_BASES:
        raise ValueError(
            f"Cyclic basis '{name}' is not supported: edge padding already supplies "
            "continuity across the year boundary. Use 'tp' or 'ps'."
        )
    try:
        return _BASIS_ALIASES[key]
    except KeyError:
        raise ValueError(f"Unknown gam basis '{name}'. Expected one of: {sorted(_BASIS_ALIASES)}") from None


def resolve_n_cores(value: Any) -> int:
    """Accept an int or 'auto' (all cores but one, minimum 1)."""
    if isinstance(value, str) and value.strip().lower() == "auto":
        return max(1, (os.cpu_count() or 2) - 1)
    return int(value)


# -----------------------------------------------------------------------------
# Run configuration
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class PhenologyConfig:
    """Process-wide, immutable settings for a year-specific GAM run."""

    target_years: Tuple[int, ...] = tuple(range(2013, 2025))
    edge_padding_days: int = 31
    gam_knots: int = 12
    gam_basis: BasisKind = BasisKind.THIN_PLATE
    boundary_knot_reduction: int = 1
    n_posterior_sims: int = 1000
    alpha_level: float = 0.05
    posterior_seed: Optional[int] = 1124
    min_observations: int = 15
    n_cores: int = 1
    checkpoint_interval: int = 100
    resume_from_checkpoint: bool = True
    progress_interval: int = 50
    log_level: str = "INFO"

    timeseries_file: Optional[Path] = None
    derivatives_file: Optional[Path] = None
    splines_file: Optional[Path] = None

    def __post_init__(self) -> None:
        years = tuple(int(y) for y in self.target_years)
        object.__setattr__(self, "target_years", years)
        object.__setattr__(self, "gam_basis", resolve_basis(self.gam_basis))
        object.__setattr__(self, "log_level", str(self.log_level).upper())
        self.validate()

    # --- validation ---

    def validate(self) -> None:
        if not self.target_years:
            raise ValueError("target_years must contain at least one year")
        if list(self.target_years) != sorted(set(self.target_years)):
            raise ValueError("target_years must be strictly increasing")
        if not 0 <= self.edge_padding_days <= 180:
            raise ValueError(f"edge_padding_days must be in [0, 180], got {self.edge_padding_days}")
        if self.boundary_knot_reduction < 0:
            raise ValueError("boundary_knot_reduction must be >= 0")
        if self.gam_knots - self.boundary_knot_reduction < 4:
            raise ValueError(
                f"gam_knots ({self.gam_knots}) minus boundary_knot_reduction "
                f"({self.boundary_knot_reduction}) must leave at least 4 basis functions"
            )
        if self.n_posterior_sims < 2:
            raise ValueError("n_posterior_sims must be >= 2")
        if not 0.0 < self.alpha_level < 1.0:
            raise ValueError(f"alpha_level must be in (0, 1), got {self.alpha_level}")
        if self.min_observations < 1:
            raise ValueError("min_observations must be >= 1")
        if self.n_cores < 1:
            raise ValueError("n_cores must be >= 1")
        if not isinstance(self.resume_from_checkpoint, bool):
            raise ValueError(f"resume_from_checkpoint must be a bool, got {self.resume_from_checkpoint!r}")
        if self.checkpoint_interval < 1:
            raise ValueError("checkpoint_interval must be >= 1")
        if self.progress_interval < 1:
            raise ValueError("progress_interval must be >= 1")
        if not isinstance(logging.getLevelName(self.log_level), int):
            raise ValueError(f"Unknown log level: {self.log_level}")

    # --- year policy ---

    @property
    def first_year(self) -> int:
        return self.target_years[0]

    @property
    def last_year(self) -> int:
        return self.target_years[-1]

    def is_boundary_year(self, year: int) -> bool:
        """First and last configured years lack one side of padding."""
        return year in (self.first_year, self.last_year)

    def knots_for_year(self, year: int) -> int:
        """Basis size for a target year (reduced at the series boundaries)."""
        if self.is_boundary_year(year):
            return self.gam_knots - self.boundary_knot_reduction
        return self.gam_knots

    def with_overrides(self, **kwargs: Any) -> "PhenologyConfig":
        """Return a copy with non-None keyword overrides applied (CLI flags)."""
        changes = {k: v for k, v in kwargs.items() if v is not None}
        if not changes:
            return self
        return dataclasses.replace(self, **changes)


def config_from_mapping(data: Dict[str, Any], base_dir: Optional[Path] = None) -> PhenologyConfig:
    """Build a PhenologyConfig from a parsed YAML mapping.

    Relative paths are resolved against base_dir when given; otherwise they
    stay relative to the working directory, like every other CLI default.
    """
    paths = _section(data, "paths")
    years = _section(data, "years")
    padding = _section(data, "padding")
    gam = _section(data, "gam")
    posterior = _section(data, "posterior")
    quality = _section(data, "quality")
    parallel = _section(data, "parallel")
    checkpoint = _section(data, "checkpoint")
    logs = _section(data, "logging")

    defaults = PhenologyConfig()

    if years:
        if "start" not in years or "end" not in years:
            raise ValueError("Config section 'years' needs both 'start' and 'end'")
        start, end = int(years["start"]), int(years["end"])
        if end < start:
            raise ValueError(f"years.end ({end}) must be >= years.start ({start})")
        target_years: Tuple[int, ...] = tuple(range(start, end + 1))
    else:
        target_years = defaults.target_years

    def _path(key: str) -> Optional[Path]:
        value = paths.get(key)
        if value in (None, ""):
            return None
        p = Path(str(value))
        if base_dir is not None and not p.is_absolute():
            p = base_dir / p
        return p

    seed = posterior.get("seed", defaults.posterior_seed)

    return PhenologyConfig(
        target_years=target_years,
        edge_padding_days=int(padding.get("edge_padding_days", defaults.edge_padding_days)),
        gam_knots=int(gam.get("knots", defaults.gam_knots)),
        gam_basis=resolve_basis(gam.get("basis", defaults.gam_basis)),
        boundary_knot_reduction=int(gam.get("boundary_knot_reduction", defaults.boundary_knot_reduction)),
        n_posterior_sims=int(posterior.get("n_sims", defaults.n_posterior_sims)),
        alpha_level=float(posterior.get("alpha", defaults.alpha_level)),
        posterior_seed=None if seed is None else int(seed),
        min_observations=int(quality.get("min_observations", defaults.min_observations)),
        n_cores=resolve_n_cores(parallel.get("n_cores", defaults.n_cores)),
        checkpoint_interval=int(checkpoint.get("interval", defaults.checkpoint_interval)),
        resume_from_checkpoint=_flag(checkpoint, "checkpoint", "resume", defaults.resume_from_checkpoint),
        progress_interval=int(logs.get("progress_interval", defaults.progress_interval)),
        log_level=str(logs.get("level", defaults.log_level)),
        timeseries_file=_path("timeseries_file"),
        derivatives_file=_path("derivatives_file"),
        splines_file=_path("splines_file"),
    )


def load_config(path: Path) -> PhenologyConfig:
    """Load and validate a phenology YAML config."""
    return config_from_mapping(load_yaml(path))


# -----------------------------------------------------------------------------
# Logging
# -----------------------------------------------------------------------------

LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging once for a CLI invocation."""
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
        force=True,
    )


# -----------------------------------------------------------------------------
# Default paths
# -----------------------------------------------------------------------------
# Centralized so all CLIs use the same defaults.

DEFAULT_CONFIG_YAML = Path("config/phenology.yaml")
