"""
Error and warning kinds raised by the scoring engine.

Structural problems (bad intervals, singular designs, unknown set members)
are exceptions and abort the call that hit them. Per-row data problems never
abort a scoring run; they are reported as an ``excluded_reason`` label on the
affected row instead.
"""


class MutrecurError(Exception):
    """Base class for engine errors."""


class MalformedInterval(MutrecurError, ValueError):
    """Interval with a missing chromosome, negative start, or start >= end."""


class SingularDesignError(MutrecurError):
    """Design matrix columns are linearly dependent."""

    def __init__(self, columns, message=None):
        self.columns = list(columns)
        if message is None:
            message = f"Design matrix is rank deficient; offending column(s): {', '.join(self.columns)}"
        super().__init__(message)


class InvalidSetReference(MutrecurError, KeyError):
    """A set references a hypothesis that does not exist."""

    def __str__(self):
        # KeyError quotes its argument; keep the plain message
        return str(self.args[0]) if self.args else ""


class FitNonConvergence(UserWarning):
    """Dispersion fit hit the iteration cap; the best estimate is returned."""


# Per-row exclusion labels
EMPTY_ELIGIBLE_TERRITORY = "EmptyEligibleTerritory"
BELOW_MIN_ELIGIBLE = "BelowMinEligible"
MISSING_COVARIATE_VALUE = "MissingCovariateValue"
