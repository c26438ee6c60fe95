"""
Power and cost for a longitudinal spatial transcriptomics study.

Design
------
N patients per arm, S tissue slices per patient at each of T timepoints. The
tested quantity is a change in a spatial readout (e.g. immune infiltration of
tumour regions). Two designs are compared side by side:

- single-arm: each patient is its own control (baseline vs follow-up). Paired
  drift cancels, so the SE is scaled by sqrt(2 * (1 - rho)).
- two-arm: treated vs placebo. The placebo comparison carries the full
  variance, so the SE is scaled by sqrt(2) and twice as many patients are
  imaged.

Hierarchical variance model
---------------------------
- patient SD is scaled by the platform resolution gain: sigmaP' = sigmaP * gain
- technical variance sigmaT^2 = platform technical variance / capture efficiency
- longitudinal gain = 1 + (T - 1) * rho, with rho = 0.45
- group SE = sqrt(sigmaP'^2 / (N * gain_T)
                  + sigmaS^2 / (N * S * T)
                  + sigmaT^2 / (N * S * T * effective observations))
- power = Phi(effect / final SE - z_{1-alpha/2})
- cost (thousands) = N * arms * S * T * cost per slice / 1000

Usage examples
--------------
1) Default Xenium design (24 patients, 2 slices, baseline to week 24):
   python3 -m spatial.power_spatial

2) Visium, two-arm headline, interim analysis at week 12:
   python3 -m spatial.power_spatial --platform visium --design two --analysis-timepoint 2

3) Print the full N sweep:
   python3 -m spatial.power_spatial --curve
"""

from __future__ import annotations

import argparse
import math
import sys
from dataclasses import dataclass
from types import MappingProxyType
from typing import Optional, Tuple

import pandas as pd

from core.calibration import (
    COST_UNIT,
    SPATIAL_CURVE_START,
    SPATIAL_CURVE_STEP,
    SPATIAL_CURVE_STOP,
    SPATIAL_ICC,
)
from core.normal_approx import power_from_noncentrality
from core.validation import validate_count, validate_positive, validate_probability


@dataclass(frozen=True)
class PlatformPreset:
    name: str
    resolution: str
    technical_variance: float
    capture_efficiency: float
    cost_per_slice: float
    effective_observations: float
    resolution_gain: float
    description: str = ""

    def __post_init__(self):
        validate_positive(self.technical_variance, "technical_variance", allow_zero=True)
        validate_probability(self.capture_efficiency, "capture_efficiency", allow_zero=False)
        validate_positive(self.cost_per_slice, "cost_per_slice", allow_zero=True)
        validate_positive(self.effective_observations, "effective_observations")
        validate_positive(self.resolution_gain, "resolution_gain")

    @property
    def technical_sigma2(self) -> float:
        return self.technical_variance / self.capture_efficiency


PLATFORMS = MappingProxyType({
    "visium": PlatformPreset("10x Visium (Spot-based)", "55um spot", 0.15, 0.25, 1500.0, 500.0, 1.0,
                             "NGS-based. High transcriptomic coverage, multi-cell spots."),
    "xenium": PlatformPreset("10x Xenium (Cell-based)", "0.2um pixel (single cell)", 0.08, 0.85, 3000.0,
                             2000.0, 0.8,
                             "In-situ hybridization. Single-cell/sub-cellular resolution."),
    "cosmx": PlatformPreset("NanoString CosMx (Cell-based)", "0.18um pixel (single cell)", 0.10, 0.80,
                            2800.0, 1500.0, 0.85,
                            "In-situ imaging. High plex, single-cell protein + RNA."),
    "slide_seq": PlatformPreset("Slide-seq (Bead-based)", "10um bead", 0.25, 0.05, 1200.0, 1000.0, 0.9,
                                "Bead-based NGS. High resolution but low capture efficiency."),
})

# Number of post-baseline timepoints -> label of the last visit
TIMEPOINT_LABELS = MappingProxyType({1: "Wk 4", 2: "Wk 12", 3: "Wk 24", 4: "Wk 52"})

DESIGNS = ("single", "two")


@dataclass(frozen=True)
class SpatialInputs:
    platform: PlatformPreset = PLATFORMS["xenium"]
    design: str = "single"
    n_per_arm: int = 24
    slices_per_patient: int = 2
    timepoints: int = 3
    treatment_effect: float = 0.4
    patient_sd: float = 0.6
    slice_sd: float = 0.2
    alpha: float = 0.05
    analysis_timepoint: Optional[int] = None   # interim for the curve; capped at timepoints

    def __post_init__(self):
        if self.design not in DESIGNS:
            raise ValueError(f"design must be one of {DESIGNS}, got {self.design!r}")
        validate_count(self.n_per_arm, "n_per_arm", minimum=1)
        validate_count(self.slices_per_patient, "slices_per_patient", minimum=1)
        validate_count(self.timepoints, "timepoints", minimum=1)
        if not math.isfinite(self.treatment_effect):
            raise ValueError(f"treatment_effect must be finite, got {self.treatment_effect}")
        validate_positive(self.patient_sd, "patient_sd", allow_zero=True)
        validate_positive(self.slice_sd, "slice_sd", allow_zero=True)
        validate_probability(self.alpha, "alpha", allow_zero=False, allow_one=False)
        if self.analysis_timepoint is not None:
            validate_count(self.analysis_timepoint, "analysis_timepoint", minimum=1)

    @property
    def effective_analysis_timepoint(self) -> int:
        if self.analysis_timepoint is None:
            return self.timepoints
        return min(self.analysis_timepoint, self.timepoints)

    @property
    def arm_multiplier(self) -> int:
        return 2 if self.design == "two" else 1


@dataclass(frozen=True)
class SpatialCurvePoint:
    n: int
    power_single: float
    power_two: float
    cost_single: float
    cost_two: float


@dataclass(frozen=True)
class VarianceComponent:
    name: str
    value: float


@dataclass(frozen=True)
class SpatialResult:
    group_se: float
    se_single: float
    se_two: float
    power_single: float
    power_two: float
    cost_single: float
    cost_two: float
    design: str
    analysis_timepoint: int
    curve: Tuple[SpatialCurvePoint, ...]
    variance_breakdown: Tuple[VarianceComponent, ...]

    @property
    def power(self) -> float:
        """Power of the selected design."""
        return self.power_two if self.design == "two" else self.power_single

    @property
    def cost(self) -> float:
        return self.cost_two if self.design == "two" else self.cost_single

    def curve_frame(self) -> pd.DataFrame:
        return pd.DataFrame([vars(p) for p in self.curve])


def longitudinal_gain(timepoints: int, rho: float = SPATIAL_ICC) -> float:
    return 1.0 + (timepoints - 1) * rho


def _variance_terms(inputs: SpatialInputs) -> Tuple[float, float, float]:
    sigma_p = inputs.patient_sd * inputs.platform.resolution_gain
    return sigma_p ** 2, inputs.slice_sd ** 2, inputs.platform.technical_sigma2


def group_se(inputs: SpatialInputs, n: int, slices: int, timepoints: int) -> float:
    """SE of one arm's mean change for n patients."""
    sp2, ss2, st2 = _variance_terms(inputs)
    obs = inputs.platform.effective_observations
    return math.sqrt(
        sp2 / (n * longitudinal_gain(timepoints))
        + ss2 / (n * slices * timepoints)
        + st2 / (n * slices * timepoints * obs)
    )


def design_se(se: float, design: str, rho: float = SPATIAL_ICC) -> float:
    if design == "two":
        return se * math.sqrt(2.0)
    return se * math.sqrt(2.0 * (1.0 - rho))


def _power(effect: float, se: float, alpha: float) -> float:
    if se <= 0:
        return 1.0 if effect > 0 else 0.0
    return power_from_noncentrality(effect / se, alpha)


def slice_cost(inputs: SpatialInputs, n: int, timepoints: int, arms: int) -> float:
    """Imaging cost in thousands."""
    return n * arms * inputs.slices_per_patient * timepoints * inputs.platform.cost_per_slice / COST_UNIT


def variance_breakdown(inputs: SpatialInputs) -> Tuple[VarianceComponent, ...]:
    """Per-patient contribution of each variance tier over the full study."""
    sp2, ss2, st2 = _variance_terms(inputs)
    t = inputs.timepoints
    return (
        VarianceComponent("Patient", sp2 / longitudinal_gain(t)),
        VarianceComponent("Slice", ss2 / t),
        VarianceComponent("Technical", st2 / inputs.platform.effective_observations / t),
    )


def spatial_power(inputs: SpatialInputs) -> SpatialResult:
    """Headline power for both designs, the N sweep and the variance breakdown."""
    s = inputs.slices_per_patient
    t = inputs.timepoints
    se = group_se(inputs, inputs.n_per_arm, s, t)
    se_single = design_se(se, "single")
    se_two = design_se(se, "two")

    t_curve = inputs.effective_analysis_timepoint
    curve = []
    for n in range(SPATIAL_CURVE_START, SPATIAL_CURVE_STOP + 1, SPATIAL_CURVE_STEP):
        g = group_se(inputs, n, s, t_curve)
        curve.append(SpatialCurvePoint(
            n=n,
            power_single=_power(inputs.treatment_effect, design_se(g, "single"), inputs.alpha),
            power_two=_power(inputs.treatment_effect, design_se(g, "two"), inputs.alpha),
            cost_single=slice_cost(inputs, n, t_curve, 1),
            cost_two=slice_cost(inputs, n, t_curve, 2),
        ))

    return SpatialResult(
        group_se=se,
        se_single=se_single,
        se_two=se_two,
        power_single=_power(inputs.treatment_effect, se_single, inputs.alpha),
        power_two=_power(inputs.treatment_effect, se_two, inputs.alpha),
        cost_single=slice_cost(inputs, inputs.n_per_arm, t, 1),
        cost_two=slice_cost(inputs, inputs.n_per_arm, t, 2),
        design=inputs.design,
        analysis_timepoint=t_curve,
        curve=tuple(curve),
        variance_breakdown=variance_breakdown(inputs),
    )


def timepoint_label(timepoints: int) -> str:
    return TIMEPOINT_LABELS.get(timepoints, f"{timepoints} follow-ups")


# ---------- CLI ----------

def _build_parser() -> argparse.ArgumentParser:
    d = SpatialInputs()
    p = argparse.ArgumentParser(
        description="Power and cost for a longitudinal spatial transcriptomics design",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    p.add_argument("--platform", choices=sorted(PLATFORMS), default="xenium")
    p.add_argument("--design", choices=DESIGNS, default=d.design)
    p.add_argument("--n-per-arm", type=int, default=d.n_per_arm)
    p.add_argument("--slices", type=int, default=d.slices_per_patient, help="Slices per patient per timepoint")
    p.add_argument("--timepoints", type=int, default=d.timepoints, help="Post-baseline timepoints (1-4 labelled)")
    p.add_argument("--analysis-timepoint", type=int, default=None, help="Interim used for the N sweep")
    p.add_argument("--effect", type=float, default=d.treatment_effect)
    p.add_argument("--patient-sd", type=float, default=d.patient_sd)
    p.add_argument("--slice-sd", type=float, default=d.slice_sd)
    p.add_argument("--alpha", type=float, default=d.alpha)
    p.add_argument("--curve", action="store_true", help="Print the power/cost sweep over N")
    return p


def main():
    args = _build_parser().parse_args()
    try:
        inputs = SpatialInputs(
            platform=PLATFORMS[args.platform],
            design=args.design,
            n_per_arm=args.n_per_arm,
            slices_per_patient=args.slices,
            timepoints=args.timepoints,
            treatment_effect=args.effect,
            patient_sd=args.patient_sd,
            slice_sd=args.slice_sd,
            alpha=args.alpha,
            analysis_timepoint=args.analysis_timepoint,
        )
        res = spatial_power(inputs)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    if args.analysis_timepoint is not None and args.analysis_timepoint > args.timepoints:
        print(f"[info] analysis timepoint capped at {args.timepoints}", file=sys.stderr)

    pf = inputs.platform
    print("=" * 70)
    print("POWER: Longitudinal spatial transcriptomics")
    print("=" * 70)
    print(f"\nPLATFORM: {pf.name} ({pf.resolution})")
    print(f"  Technical var: {pf.technical_variance:.2f}  capture: {pf.capture_efficiency:.2f}"
          f"  -> sigmaT^2={pf.technical_sigma2:.3f}")
    print(f"  Cost/slice: ${pf.cost_per_slice:,.0f}  effective obs: {pf.effective_observations:.0f}")
    print(f"\nDESIGN:")
    print(f"  {inputs.n_per_arm} patients/arm x {inputs.slices_per_patient} slices x "
          f"{inputs.timepoints} timepoints (to {timepoint_label(inputs.timepoints)})")
    print(f"  Effect: {inputs.treatment_effect:.3f}  sigmaP: {inputs.patient_sd:.3f}  sigmaS: {inputs.slice_sd:.3f}")
    print(f"\nRESULTS:")
    print(f"  Group SE: {res.group_se:.4f}")
    print(f"  Single-arm: power {res.power_single:.3f}  SE {res.se_single:.4f}  cost ${res.cost_single:.1f}k")
    print(f"  Two-arm:    power {res.power_two:.3f}  SE {res.se_two:.4f}  cost ${res.cost_two:.1f}k")
    print(f"  Selected ({inputs.design}-arm): power {res.power:.3f} ({res.power*100:.1f}%)")
    print(f"\nVARIANCE BREAKDOWN:")
    for comp in res.variance_breakdown:
        print(f"  {comp.name:<10s} {comp.value:.5f}")

    if args.curve:
        print(f"\nSWEEP at {timepoint_label(res.analysis_timepoint)}:")
        print(f"  {'N':>4s} {'single':>8s} {'two':>8s} {'cost1 $k':>10s} {'cost2 $k':>10s}")
        for p in res.curve:
            print(f"  {p.n:4d} {p.power_single:8.3f} {p.power_two:8.3f} {p.cost_single:10.1f} {p.cost_two:10.1f}")
    print("=" * 70)


if __name__ == "__main__":
    main()
