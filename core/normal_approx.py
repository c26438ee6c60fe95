"""
Closed-form standard normal approximations used by every power model.

probit(p)
    Inverse CDF via a piecewise rational-polynomial approximation (central
    region in (p - 0.5)^2, tails in sqrt(-2 log p)), Acklam's coefficients.
    Absolute error is far below 1e-4 on [-4, 4], probit(0.5) is exactly 0 and
    the function is monotone. Probabilities at or beyond {0, 1} saturate at
    +/-6.5 instead of returning infinities.

cdf(z)
    Maclaurin series of the standard normal CDF,

        Phi(z) = 1/2 + phi0 * sum_k (-1)^k z^(2k+1) / ((2k+1) 2^k k!),

    summed until the term magnitude drops below 1e-23. The series is only
    numerically usable for moderate |z|, so |z| > 6.5 returns 0 or 1 directly.

Both functions are pure and deliberately avoid SciPy so the engine's numbers
do not depend on the installed SciPy build; the test-suite uses
scipy.stats.norm as the exact reference.
"""

from __future__ import annotations

import math

from core.calibration import CDF_SERIES_TOL, INV_SQRT_2PI, PROBIT_CLAMP

_P_LOW = 0.02425
_P_HIGH = 1.0 - _P_LOW

_A = (
    -3.969683028665376e+01,
    2.209460984245205e+02,
    -2.759285104469687e+02,
    1.383577518672690e+02,
    -3.066479806614716e+01,
    2.506628277459239e+00,
)
_B = (
    -5.447609879822406e+01,
    1.615858368580409e+02,
    -1.556989798598866e+02,
    6.680131188771972e+01,
    -1.328068155288572e+01,
)
_C = (
    -7.784894002430293e-03,
    -3.223964580411365e-01,
    -2.400758277161838e+00,
    -2.549671010243726e+00,
    4.374664141464968e+00,
    2.938163982698783e+00,
)
_D = (
    7.784695709041462e-03,
    3.224671290700398e-01,
    2.445134137142996e+00,
    3.754408661907416e+00,
)


def _tail(q: float) -> float:
    """Lower-tail rational approximation in q = sqrt(-2 log p)."""
    num = ((((_C[0] * q + _C[1]) * q + _C[2]) * q + _C[3]) * q + _C[4]) * q + _C[5]
    den = (((_D[0] * q + _D[1]) * q + _D[2]) * q + _D[3]) * q + 1.0
    return num / den


def probit(p: float) -> float:
    """Return z such that cdf(z) = p, clamped to [-6.5, 6.5]."""
    if p != p:
        raise ValueError("probit is undefined for NaN")
    if p <= 0.0:
        return -PROBIT_CLAMP
    if p >= 1.0:
        return PROBIT_CLAMP

    if p < _P_LOW:
        z = _tail(math.sqrt(-2.0 * math.log(p)))
    elif p <= _P_HIGH:
        q = p - 0.5
        r = q * q
        num = (((((_A[0] * r + _A[1]) * r + _A[2]) * r + _A[3]) * r + _A[4]) * r + _A[5]) * q
        den = ((((_B[0] * r + _B[1]) * r + _B[2]) * r + _B[3]) * r + _B[4]) * r + 1.0
        z = num / den
    else:
        z = -_tail(math.sqrt(-2.0 * math.log1p(-p)))
    return max(-PROBIT_CLAMP, min(PROBIT_CLAMP, z))


def cdf(z: float) -> float:
    """Standard normal CDF via its power series."""
    if z != z:
        raise ValueError("cdf is undefined for NaN")
    if z < -PROBIT_CLAMP:
        return 0.0
    if z > PROBIT_CLAMP:
        return 1.0

    # b_k = (-1)^k z^(2k+1) / (2^k k!), term_k = b_k / (2k+1)
    b = z
    term = z
    total = 0.0
    k = 0
    while abs(term) >= CDF_SERIES_TOL:
        total += term
        k += 1
        b *= -z * z / (2.0 * k)
        term = b / (2 * k + 1)
    return max(0.0, min(1.0, 0.5 + INV_SQRT_2PI * total))


def z_two_sided(alpha: float) -> float:
    """Critical value for a two-sided test at level alpha."""
    return probit(1.0 - alpha / 2.0)


def power_from_noncentrality(lam: float, alpha: float) -> float:
    """Normal-approximation power, Phi(lam - z_{1-alpha/2}), clamped to [0,1].

    Only the dominant rejection tail is counted, matching the sample-size
    formulas that invert it.
    """
    if not math.isfinite(lam):
        return 1.0 if lam > 0 else 0.0
    return float(max(0.0, min(1.0, cdf(lam - z_two_sided(alpha)))))
