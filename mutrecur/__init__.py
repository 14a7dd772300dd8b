"""
mutrecur - covariate-corrected recurrence testing for somatic mutations.

Finds hypotheses (genes, regulatory elements, arbitrary intervals or groups of
intervals) whose eligible territory carries more events than a negative
binomial background model, fitted on covariates with log(eligible bases) as
offset, would predict.
"""

from .config import Config, setup_logging
from .covariates import Covariate, CovariateTrack, annotate
from .errors import (FitNonConvergence, InvalidSetReference, MalformedInterval,
                     MutrecurError, SingularDesignError)
from .hypotheses import Hypotheses
from .intervals import GenomicInterval, IntervalSet, find_overlaps
from .model import ScoringModel
from .regression import Diagnostics, FitResult, qq_lambda
from .sets import SetResults, build_sets

__version__ = "0.1.0"

__all__ = [
    "Config", "setup_logging",
    "Covariate", "CovariateTrack", "annotate",
    "FitNonConvergence", "InvalidSetReference", "MalformedInterval", "MutrecurError", "SingularDesignError",
    "Hypotheses",
    "GenomicInterval", "IntervalSet", "find_overlaps",
    "ScoringModel",
    "Diagnostics", "FitResult", "qq_lambda",
    "SetResults", "build_sets",
]
