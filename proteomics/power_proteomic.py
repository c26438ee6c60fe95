"""
Sample size and power for a two-arm bulk-protein biomarker comparison.

Design
------
Two-sample, two-sided, equal allocation, equal variance comparison of a
protein level between drug and control arms, with the noise expressed as
coefficients of variation (CV, %) and optional Bonferroni correction when
several analytes are tested at once.

Model
-----
- Total CV combines assay (technical) and between-patient (biological) noise:
    totalCV = sqrt(techCV^2 + bioCV^2)
- SD = controlMean * totalCV / 100; delta = controlMean * |percentChange| / 100
- Cohen's d = delta / SD
- Bonferroni: alpha_eff = alpha / analyteCount when correction is enabled.
- Per-arm sample size (normal approximation):
    n = ceil(2 * ((z_{1-alpha_eff/2} + z_{power}) / d)^2)
- Achieved power at n per arm:
    power(n) = Phi(sqrt(n * d^2 / 2) - z_{1-alpha_eff/2})

When d <= 0 there is nothing to detect: the result is flagged
``detectable=False`` with required_n = 0 instead of dividing by zero.

Assay presets
-------------
Technical CV defaults per platform (ASSAY_PRESETS): ELISA 8%, MSD/Luminex 12%,
Olink 18%, Custom 10%.

Usage examples
--------------
1) Reference design (20% change, ELISA 8% CV, 45% biological CV):
   python3 -m proteomics.power_proteomic --control-mean 100 --percent-change 20 \
     --technical-cv 8 --biological-cv 45 --alpha 0.05 --target-power 0.8

2) Olink panel of 92 analytes with Bonferroni correction:
   python3 -m proteomics.power_proteomic --assay olink --percent-change 25 \
     --biological-cv 35 --analytes 92 --bonferroni

3) Check the analytic answer with a Monte Carlo t-test simulation:
   python3 -m proteomics.power_proteomic --percent-change 20 --n-per-arm 82 --simulate --sims 4000
"""

from __future__ import annotations

import argparse
import math
import sys
import warnings
from dataclasses import dataclass
from types import MappingProxyType
from typing import Optional, Tuple

import numpy as np
import pandas as pd
import scipy.stats as sps

from core.calibration import (
    CURVE_MIN_N,
    CURVE_MIN_SPAN,
    CURVE_SPAN_NO_EFFECT,
    CURVE_TARGET_POINTS,
    SD_FLOOR,
)
from core.normal_approx import power_from_noncentrality, probit, z_two_sided
from core.validation import validate_count, validate_positive, validate_probability


@dataclass(frozen=True)
class AssayPreset:
    name: str
    technical_cv: float
    description: str
    cost: str


ASSAY_PRESETS = MappingProxyType({
    "elisa": AssayPreset("ELISA (Single-plex)", 8.0,
                         "High sensitivity, gold standard for single analytes. Lower noise.", "$$"),
    "msd": AssayPreset("MSD/Luminex (Multiplex)", 12.0,
                       "Robust multiplexing, wide dynamic range. Moderate noise.", "$$$"),
    "olink": AssayPreset("Olink (Proteomics)", 18.0,
                         "High throughput proteomics. Higher variability due to NPX scale/normalization.", "$$$$"),
    "custom": AssayPreset("Custom Assay", 10.0, "User defined specifications.", "?"),
})


@dataclass(frozen=True)
class ProteomicInputs:
    control_mean: float = 100.0
    percent_change: float = 20.0    # expected effect, % of control mean (sign ignored)
    technical_cv: float = 8.0       # assay CV, %
    biological_cv: float = 45.0     # between-patient CV, %
    alpha: float = 0.05
    target_power: float = 0.80
    analyte_count: int = 1
    bonferroni: bool = False

    def __post_init__(self):
        validate_positive(self.control_mean, "control_mean")
        if not math.isfinite(self.percent_change):
            raise ValueError(f"percent_change must be finite, got {self.percent_change}")
        validate_positive(self.technical_cv, "technical_cv", allow_zero=True)
        validate_positive(self.biological_cv, "biological_cv", allow_zero=True)
        validate_probability(self.alpha, "alpha", allow_zero=False, allow_one=False)
        validate_probability(self.target_power, "target_power", allow_zero=False, allow_one=False)
        validate_count(self.analyte_count, "analyte_count", minimum=1)

    @classmethod
    def from_assay(cls, assay: str, **kwargs) -> "ProteomicInputs":
        """Inputs with the technical CV taken from an assay preset."""
        key = assay.lower()
        if key not in ASSAY_PRESETS:
            raise ValueError(f"Unknown assay {assay!r}; expected one of {sorted(ASSAY_PRESETS)}")
        return cls(technical_cv=ASSAY_PRESETS[key].technical_cv, **kwargs)

    def total_cv(self) -> float:
        return total_cv(self.technical_cv, self.biological_cv)

    def sd(self) -> float:
        return self.control_mean * self.total_cv() / 100.0

    def delta(self) -> float:
        return self.control_mean * abs(self.percent_change) / 100.0

    def cohens_d(self) -> float:
        return self.delta() / max(SD_FLOOR, self.sd())

    def effective_alpha(self) -> float:
        return effective_alpha(self.alpha, self.analyte_count, self.bonferroni)


@dataclass(frozen=True)
class CurvePoint:
    n: int
    power: float
    target: float


@dataclass(frozen=True)
class ProteomicResult:
    total_cv: float
    sd: float
    delta: float
    treatment_mean: float
    cohens_d: float
    effective_alpha: float
    z_alpha: float
    z_beta: float
    required_n: int          # per arm; 0 when the effect is not detectable
    detectable: bool
    curve: Tuple[CurvePoint, ...]

    @property
    def total_n(self) -> int:
        return 2 * self.required_n

    def curve_frame(self) -> pd.DataFrame:
        return pd.DataFrame([{"N": p.n, "power": p.power, "target": p.target} for p in self.curve])


def total_cv(technical_cv: float, biological_cv: float) -> float:
    """Independent noise sources add in variance: sqrt(tech^2 + bio^2)."""
    return float(math.sqrt(technical_cv ** 2 + biological_cv ** 2))


def effective_alpha(alpha: float, analyte_count: int = 1, bonferroni: bool = False) -> float:
    """Per-test alpha after an optional Bonferroni split across analytes."""
    if bonferroni and analyte_count > 1:
        return alpha / analyte_count
    return alpha


def required_n_per_arm(d: float, alpha: float, target_power: float) -> int:
    """Per-arm n for a two-sided two-sample z-test; 0 when d <= 0."""
    if not (d > 0):
        return 0
    n = 2.0 * ((z_two_sided(alpha) + probit(target_power)) / d) ** 2
    return max(1, int(math.ceil(n)))


def power_at_n(n: int, d: float, alpha: float) -> float:
    """Achieved power with n per arm."""
    if n <= 0:
        return 0.0
    return power_from_noncentrality(math.sqrt(n * d * d / 2.0), alpha)


def _curve_grid(required_n: int) -> range:
    max_n = max(required_n * 2, CURVE_MIN_SPAN) if required_n > 0 else CURVE_SPAN_NO_EFFECT
    step = max(1, max_n // CURVE_TARGET_POINTS)
    return range(CURVE_MIN_N, max_n + 1, step)


def proteomic_power(inputs: ProteomicInputs) -> ProteomicResult:
    """Required n per arm and the power-vs-n curve for one design."""
    d = inputs.cohens_d()
    alpha_eff = inputs.effective_alpha()
    n_req = required_n_per_arm(d, alpha_eff, inputs.target_power)
    detectable = n_req > 0
    if not detectable:
        warnings.warn(
            "percent_change is 0: no detectable effect, required_n reported as 0",
            stacklevel=2,
        )
    curve = tuple(
        CurvePoint(n=n, power=power_at_n(n, d, alpha_eff), target=inputs.target_power)
        for n in _curve_grid(n_req)
    )
    return ProteomicResult(
        total_cv=inputs.total_cv(),
        sd=inputs.sd(),
        delta=inputs.delta(),
        treatment_mean=inputs.control_mean * (1.0 + inputs.percent_change / 100.0),
        cohens_d=d,
        effective_alpha=alpha_eff,
        z_alpha=z_two_sided(alpha_eff),
        z_beta=probit(inputs.target_power),
        required_n=n_req,
        detectable=detectable,
        curve=curve,
    )


def simulate_power(inputs: ProteomicInputs, n_per_arm: int, sims: int = 2000,
                   seed: Optional[int] = 12345) -> Tuple[float, float]:
    """Monte Carlo power of a pooled-variance two-sample t-test at n per arm.

    Draws normal control and treated samples with the design's SD and mean
    shift and counts rejections at the effective alpha.
    Returns (power, avg_estimated_difference).
    """
    validate_count(n_per_arm, "n_per_arm", minimum=2)
    if sims <= 0:
        raise ValueError("sims must be a positive integer")
    rng = np.random.default_rng(seed)
    sd = max(SD_FLOOR, inputs.sd())
    control = rng.normal(inputs.control_mean, sd, size=(sims, n_per_arm))
    treated = rng.normal(inputs.control_mean + inputs.delta(), sd, size=(sims, n_per_arm))
    res = sps.ttest_ind(treated, control, axis=1, equal_var=True)
    pvals = np.asarray(res.pvalue, dtype=float)
    hits = int(np.sum((pvals < inputs.effective_alpha()) & ~np.isnan(pvals)))
    avg_diff = float(np.mean(treated.mean(axis=1) - control.mean(axis=1)))
    return hits / sims, avg_diff


# ---------- CLI ----------

def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Sample size / power for a two-arm proteomic biomarker comparison",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    p.add_argument("--assay", choices=sorted(ASSAY_PRESETS), default=None,
                   help="Assay preset for the technical CV (overridden by --technical-cv)")
    p.add_argument("--control-mean", type=float, default=100.0)
    p.add_argument("--percent-change", type=float, default=20.0, help="Expected change vs control, %%")
    p.add_argument("--technical-cv", type=float, default=None, help="Assay CV, %%")
    p.add_argument("--biological-cv", type=float, default=45.0, help="Between-patient CV, %%")
    p.add_argument("--alpha", type=float, default=0.05)
    p.add_argument("--target-power", type=float, default=0.80)
    p.add_argument("--analytes", type=int, default=1, help="Number of analytes tested")
    p.add_argument("--bonferroni", action="store_true", help="Divide alpha by the number of analytes")
    p.add_argument("--n-per-arm", type=int, default=None, help="Report achieved power at this n per arm")
    p.add_argument("--simulate", action="store_true", help="Add a Monte Carlo t-test check at --n-per-arm")
    p.add_argument("--sims", type=int, default=2000)
    p.add_argument("--seed", type=int, default=12345)
    return p


def main():
    args = _build_parser().parse_args()
    try:
        technical_cv = args.technical_cv
        if technical_cv is None:
            technical_cv = ASSAY_PRESETS[args.assay or "elisa"].technical_cv
        inputs = ProteomicInputs(
            control_mean=args.control_mean,
            percent_change=args.percent_change,
            technical_cv=technical_cv,
            biological_cv=args.biological_cv,
            alpha=args.alpha,
            target_power=args.target_power,
            analyte_count=args.analytes,
            bonferroni=args.bonferroni,
        )
        if args.analytes > 1 and not args.bonferroni:
            print("[info] Multiple analytes without --bonferroni: alpha is not adjusted", file=sys.stderr)
        res = proteomic_power(inputs)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    print("=" * 70)
    print("SAMPLE SIZE: Two-arm proteomic biomarker")
    print("=" * 70)
    print(f"\nVARIABILITY:")
    print(f"  Technical CV: {inputs.technical_cv:.1f}%  Biological CV: {inputs.biological_cv:.1f}%")
    print(f"  Total CV: {res.total_cv:.2f}%  ->  SD: {res.sd:.3f}")
    print(f"\nEFFECT SIZE:")
    print(f"  Control mean: {inputs.control_mean:.3f}  Treatment mean: {res.treatment_mean:.3f}")
    print(f"  Difference: {res.delta:.3f}  Cohen's d: {res.cohens_d:.3f}")
    print(f"\nSIGNIFICANCE:")
    print(f"  alpha={inputs.alpha:.4f}, analytes={inputs.analyte_count}, "
          f"Bonferroni={'on' if inputs.bonferroni else 'off'} -> alpha_eff={res.effective_alpha:.2e}")
    print(f"\nRESULTS:")
    if res.detectable:
        print(f"  Required n per arm: {res.required_n}  (total {res.total_n})")
    else:
        print("  No detectable effect (percent change is 0)")

    if args.n_per_arm is not None:
        pw = power_at_n(args.n_per_arm, res.cohens_d, res.effective_alpha)
        print(f"  Achieved power at n={args.n_per_arm} per arm: {pw:.3f} ({pw*100:.1f}%)")
        if args.simulate:
            try:
                sim_pw, avg = simulate_power(inputs, args.n_per_arm, sims=args.sims, seed=args.seed)
            except ValueError as e:
                print(f"Error: {e}", file=sys.stderr)
                sys.exit(1)
            se = math.sqrt(max(sim_pw * (1 - sim_pw), 1e-12) / args.sims)
            print(f"  Simulated t-test power: {sim_pw:.3f} (±{1.96 * se:.3f}, sims={args.sims})")
            print(f"  Avg estimated difference: {avg:.3f}")
    elif args.simulate:
        print("[info] --simulate needs --n-per-arm; skipped", file=sys.stderr)
    print("=" * 70)


if __name__ == "__main__":
    main()
