# lossfn.py
from dataclasses import dataclass

import numpy as np
from scipy.stats import linregress
from sklearn.metrics import mean_squared_error


@dataclass(frozen=True)
class FitDiagnostic:
    """OLS of observed on simulated: obs ~ intercept + slope * sim."""
    intercept: float
    intercept_se: float
    slope: float
    slope_se: float

    @classmethod
    def undefined(cls):
        return cls(np.nan, np.nan, np.nan, np.nan)

    def accepts(self) -> bool:
        """
        Dual acceptance test.

        The one-standard-error band around the intercept must contain 0, and the band
        around the slope must contain 1. NaN diagnostics never pass.
        """
        return bool(acceptance_mask(self.intercept, self.intercept_se, self.slope, self.slope_se))


def acceptance_mask(intercept, intercept_se, slope, slope_se):
    """Element-wise form of `FitDiagnostic.accepts` over diagnostic columns."""
    intercept = np.asarray(intercept, dtype=np.float64)
    intercept_se = np.asarray(intercept_se, dtype=np.float64)
    slope = np.asarray(slope, dtype=np.float64)
    slope_se = np.asarray(slope_se, dtype=np.float64)
    with np.errstate(invalid="ignore"):
        return ((intercept - intercept_se <= 0.0) & (intercept + intercept_se >= 0.0)
                & (slope - slope_se <= 1.0) & (slope + slope_se >= 1.0))


def rmse(observed, simulated):
    """Root mean squared error over all pooled rows."""
    observed = np.asarray(observed, dtype=np.float64)
    simulated = np.asarray(simulated, dtype=np.float64)
    if observed.shape != simulated.shape:
        raise ValueError(f"shape mismatch: observed {observed.shape} vs simulated {simulated.shape}")
    return float(np.sqrt(mean_squared_error(observed, simulated)))


def fit_diagnostic(observed, simulated):
    """
    Regress the observed series on the simulated series.

    Returns `FitDiagnostic.undefined()` when the regression cannot be formed
    (fewer than three points, or a constant simulated series).
    """
    x = np.asarray(simulated, dtype=np.float64)
    y = np.asarray(observed, dtype=np.float64)
    if x.size < 3 or np.ptp(x) == 0.0:
        return FitDiagnostic.undefined()
    res = linregress(x, y)
    return FitDiagnostic(
        intercept=float(res.intercept),
        intercept_se=float(res.intercept_stderr),
        slope=float(res.slope),
        slope_se=float(res.stderr),
    )


def score(observed, simulated):
    """RMSE and regression diagnostic for one candidate."""
    return rmse(observed, simulated), fit_diagnostic(observed, simulated)
