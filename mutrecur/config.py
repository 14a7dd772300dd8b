"""
Engine configuration and logging setup.
"""

import logging
import sys
from dataclasses import dataclass, replace
from typing import Literal, Optional

from statsmodels.stats.multitest import multipletests


@dataclass(frozen=True)
class Config:
    """Execution and model configuration with sensible defaults."""
    # Event counting
    dedup_key: Optional[str] = "sample"  # None counts every event
    idcap: int = 1                       # max events per sample per hypothesis

    # Execution
    workers: int = 1
    backend: str = "loky"                # joblib backend
    progress: bool = False               # tqdm progress bars on serial runs

    # Fit
    max_iter: int = 25
    tol: float = 1e-6
    min_eligible: int = 1

    # Scoring
    fdr_method: str = "fdr_bh"           # statsmodels multipletests method
    lambda_method: Literal["ols", "huber"] = "ols"

    # Interval queries
    strand_aware: bool = False

    def __post_init__(self):
        if self.idcap < 1:
            raise ValueError(f"idcap must be >= 1, got {self.idcap}")
        if self.workers < 1:
            raise ValueError(f"workers must be >= 1, got {self.workers}")
        if self.max_iter < 1:
            raise ValueError(f"max_iter must be >= 1, got {self.max_iter}")
        if not self.tol > 0:
            raise ValueError(f"tol must be positive, got {self.tol}")
        if self.min_eligible < 0:
            raise ValueError(f"min_eligible must be >= 0, got {self.min_eligible}")
        if self.lambda_method not in ("ols", "huber"):
            raise ValueError(f"lambda_method must be 'ols' or 'huber', got {self.lambda_method!r}")
        # fail early on an unknown FDR method
        try:
            multipletests([0.5], method=self.fdr_method)
        except ValueError as e:
            raise ValueError(f"Unknown fdr_method {self.fdr_method!r}") from e

    def replace(self, **changes) -> "Config":
        return replace(self, **changes)


def setup_logging(verbosity: int = 1):
    """Setup logging with verbosity control."""
    level = logging.WARNING if verbosity <= 0 else (logging.INFO if verbosity == 1 else logging.DEBUG)
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)s | %(message)s",
        datefmt="%H:%M:%S",
        handlers=[logging.StreamHandler(sys.stderr)],
        force=True,
    )
