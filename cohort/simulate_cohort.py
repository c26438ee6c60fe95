"""
Synthetic longitudinal biomarker cohorts for a three-arm RCT.

Each patient gets one measurement series per biomarker at Baseline, Week 4,
Week 12 and Week 24, drawn from a pharmacologic / placebo / noise model:

    baseline_i   ~ N(mu, (mu * cv)^2), floored at 0.01
    plateau      = sign(direction) * effect(arm, responder)
    value_i(t)   = baseline_i * (1 + plateau * profile(t))
                   + N(0, (baseline_i * cv * 0.4)^2)          # measurement noise
                   + N(0, (baseline_i * drift * t_idx / 3)^2)  # drift, grows with time

where effect(placebo) = placebo_effect_size, effect(active responder) =
drug_effect_size * dose_factor (2 mg: 1.0, 1 mg: 0.7) and active
non-responders behave like placebo. Change and percent change are computed
against the patient's own baseline; baseline rows carry exactly 0.

Arms are assigned round-robin (index mod 3), so N divisible by 3 gives an
exact 1:1:1 split. Randomness is unseeded by default (every call is a fresh
draw); pass ``seed`` (or an ``rng``) for reproducible cohorts.

Usage
-----
    python3 -m cohort.simulate_cohort --n-patients 600 --scenario "Standard Efficacy" --seed 7
    python3 -m cohort.simulate_cohort --n-patients 90 --drug-effect 0.4 --time-profile delayed \
        --add-biomarker "Ferritin" --add-baseline 150
"""

from __future__ import annotations

import argparse
import math
import sys
import warnings
from dataclasses import replace
from typing import List, Optional, Sequence, Tuple

import numpy as np

from cohort.models import (
    ARM_ORDER,
    DEFAULT_BIOMARKERS,
    FOLLOW_UP_TIMEPOINTS,
    SCENARIO_PRESETS,
    TIME_PROFILES,
    Arm,
    BiomarkerDefinition,
    Measurement,
    PatientRecord,
    SimulationConfig,
    Timepoint,
    validate_records,
)
from core.calibration import (
    DOSE_FACTOR_HIGH,
    DOSE_FACTOR_LOW,
    EPSILON_FLOOR,
    NOISE_DAMPING,
)

DOSE_FACTORS = {
    Arm.DRUG_1MG: DOSE_FACTOR_LOW,
    Arm.DRUG_2MG: DOSE_FACTOR_HIGH,
}


def _resolve_rng(seed: Optional[int], rng: Optional[np.random.Generator]) -> np.random.Generator:
    if rng is not None and seed is not None:
        raise ValueError("Pass either seed or rng, not both")
    if rng is not None:
        return rng
    return np.random.default_rng(seed)


def box_muller(rng: np.random.Generator) -> float:
    """One standard normal draw via the Box-Muller transform."""
    u = 0.0
    while u == 0.0:
        u = float(rng.random())
    v = 0.0
    while v == 0.0:
        v = float(rng.random())
    return math.sqrt(-2.0 * math.log(u)) * math.cos(2.0 * math.pi * v)


def patient_id_for(index: int) -> str:
    return f"PT-{index + 1:04d}"


def arm_for(index: int) -> Arm:
    return ARM_ORDER[index % len(ARM_ORDER)]


def plateau_effect(biomarker: BiomarkerDefinition, arm: Arm, config: SimulationConfig,
                   is_responder: bool) -> float:
    """Signed fractional change reached at the plateau of the time profile."""
    if arm is Arm.PLACEBO or not is_responder:
        magnitude = config.placebo_effect_size
    else:
        magnitude = config.drug_effect_size * DOSE_FACTORS[arm]
    return biomarker.sign * magnitude


def simulate_trajectory(
    biomarker: BiomarkerDefinition,
    arm: Arm,
    config: SimulationConfig,
    is_responder: bool,
    rng: Optional[np.random.Generator] = None,
) -> Tuple[Measurement, ...]:
    """Generate one patient's Baseline..Week 24 series for one biomarker."""
    if rng is None:
        rng = np.random.default_rng()

    mu = biomarker.baseline_mean
    baseline = max(EPSILON_FLOOR, mu + box_muller(rng) * mu * config.variability)
    measurements = [Measurement(biomarker.id, Timepoint.BASELINE, baseline, 0.0, 0.0)]

    plateau = plateau_effect(biomarker, arm, config, is_responder)
    multipliers = config.profile_multipliers()
    n_follow = len(FOLLOW_UP_TIMEPOINTS)
    noise_sd = baseline * config.variability * NOISE_DAMPING

    for idx, (tp, multiplier) in enumerate(zip(FOLLOW_UP_TIMEPOINTS, multipliers), start=1):
        drift_sd = baseline * config.drift * idx / n_follow
        # Draw both terms even when an SD is 0 so the stream layout is fixed
        noise = box_muller(rng) * noise_sd
        drift = box_muller(rng) * drift_sd
        value = max(EPSILON_FLOOR, baseline * (1.0 + plateau * multiplier) + noise + drift)
        change = value - baseline
        measurements.append(Measurement(
            biomarker_id=biomarker.id,
            timepoint=tp,
            value=value,
            change_from_baseline=change,
            percent_change=change / baseline * 100.0,
        ))
    return tuple(measurements)


def _roll_responder(arm: Arm, config: SimulationConfig, rng: np.random.Generator) -> bool:
    if arm is Arm.PLACEBO:
        return False
    return bool(rng.random() < config.responder_rate)


def _check_unique_ids(biomarkers: Sequence[BiomarkerDefinition]) -> None:
    ids = [b.id for b in biomarkers]
    dupes = sorted({i for i in ids if ids.count(i) > 1})
    if dupes:
        raise ValueError(f"Duplicate biomarker ids: {dupes}")


def generate_cohort(
    n: int,
    biomarkers: Sequence[BiomarkerDefinition] = DEFAULT_BIOMARKERS,
    config: SimulationConfig = SCENARIO_PRESETS["Standard Efficacy"],
    *,
    seed: Optional[int] = None,
    rng: Optional[np.random.Generator] = None,
) -> List[PatientRecord]:
    """Simulate n patients across all biomarkers.

    Returns a fresh list of PatientRecords; responder status is drawn once per
    active-arm patient and stored on the record so later augmentation reuses it.
    """
    if isinstance(n, bool) or int(n) != n or n < 0:
        raise ValueError(f"n must be a non-negative integer, got {n}")
    n = int(n)
    _check_unique_ids(biomarkers)
    if n % len(ARM_ORDER) != 0:
        warnings.warn(
            f"n={n} is not divisible by {len(ARM_ORDER)}; arms will be unbalanced by one patient",
            stacklevel=2,
        )
    rng = _resolve_rng(seed, rng)

    patients: List[PatientRecord] = []
    for i in range(n):
        arm = arm_for(i)
        responder = _roll_responder(arm, config, rng)
        measurements: List[Measurement] = []
        for bio in biomarkers:
            measurements.extend(simulate_trajectory(bio, arm, config, responder, rng))
        patients.append(PatientRecord(
            patient_id=patient_id_for(i),
            arm=arm,
            measurements=tuple(measurements),
            is_responder=responder,
        ))
    return patients


def augment_cohort(
    existing: Sequence[PatientRecord],
    new_biomarker: BiomarkerDefinition,
    config: SimulationConfig = SCENARIO_PRESETS["Standard Efficacy"],
    *,
    seed: Optional[int] = None,
    rng: Optional[np.random.Generator] = None,
) -> List[PatientRecord]:
    """Add one biomarker's series to every patient, leaving existing data untouched.

    Patients with a stored responder status keep it; records without one
    (uploaded data) get a fresh roll.
    """
    if not isinstance(new_biomarker, BiomarkerDefinition):
        raise ValueError(f"new_biomarker must be a BiomarkerDefinition, got {type(new_biomarker).__name__}")
    validate_records(existing, require_complete=False)
    rng = _resolve_rng(seed, rng)
    augmented: List[PatientRecord] = []
    for rec in existing:
        if any(m.biomarker_id == new_biomarker.id for m in rec.measurements):
            raise ValueError(f"Patient {rec.patient_id} already has biomarker {new_biomarker.id!r}")
        responder = rec.is_responder
        if responder is None:
            responder = _roll_responder(rec.arm, config, rng)
        new_measurements = simulate_trajectory(new_biomarker, rec.arm, config, responder, rng)
        augmented.append(replace(
            rec,
            measurements=rec.measurements + new_measurements,
            is_responder=responder,
        ))
    return augmented


def arm_counts(records: Sequence[PatientRecord]) -> dict:
    counts = {arm: 0 for arm in ARM_ORDER}
    for rec in records:
        counts[rec.arm] += 1
    return counts


# ---------- CLI ----------

def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Simulate a three-arm longitudinal biomarker cohort",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    p.add_argument("--n-patients", type=int, default=600, help="Total patients (divisible by 3 for 1:1:1)")
    p.add_argument("--scenario", choices=sorted(SCENARIO_PRESETS), default="Standard Efficacy",
                   help="Named preset; individual flags below override its values")
    p.add_argument("--drug-effect", type=float, default=None, help="Fractional improvement at plateau, high dose")
    p.add_argument("--placebo-effect", type=float, default=None, help="Fractional placebo improvement")
    p.add_argument("--variability", type=float, default=None, help="Baseline CV (SD / mean)")
    p.add_argument("--responder-rate", type=float, default=None, help="Share of active-arm responders (0-1)")
    p.add_argument("--time-profile", choices=TIME_PROFILES, default=None)
    p.add_argument("--drift", type=float, default=None, help="Drift SD per unit time, as a fraction of baseline")
    p.add_argument("--seed", type=int, default=None, help="Random seed (unseeded when omitted)")
    p.add_argument("--add-biomarker", type=str, default=None, help="Name of a custom biomarker to append")
    p.add_argument("--add-baseline", type=float, default=10.0, help="Baseline mean of the custom biomarker")
    p.add_argument("--add-direction", choices=["lower_is_better", "higher_is_better"], default="lower_is_better")
    return p


def _config_from_args(args: argparse.Namespace) -> SimulationConfig:
    config = SCENARIO_PRESETS[args.scenario]
    overrides = {
        "drug_effect_size": args.drug_effect,
        "placebo_effect_size": args.placebo_effect,
        "variability": args.variability,
        "responder_rate": args.responder_rate,
        "time_profile": args.time_profile,
        "drift": args.drift,
    }
    overrides = {k: v for k, v in overrides.items() if v is not None}
    if overrides:
        config = replace(config, scenario_name="Custom", **overrides)
    return config


def main():
    args = _build_parser().parse_args()
    try:
        config = _config_from_args(args)
        rng = np.random.default_rng(args.seed)
        records = generate_cohort(args.n_patients, DEFAULT_BIOMARKERS, config, rng=rng)
        biomarkers = list(DEFAULT_BIOMARKERS)
        if args.add_biomarker:
            extra = BiomarkerDefinition.custom(args.add_biomarker, direction=args.add_direction,
                                               baseline_mean=args.add_baseline)
            records = augment_cohort(records, extra, config, rng=rng)
            biomarkers.append(extra)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    # Imported here so the generator itself does not pull in statsmodels
    from cohort.cohort_stats import timepoint_summary

    print("=" * 70)
    print("SIMULATED COHORT")
    print("=" * 70)
    print(f"\nScenario: {config.scenario_name}")
    print(f"  Drug effect (2 mg plateau): {config.drug_effect_size:.1%}")
    print(f"  Placebo effect: {config.placebo_effect_size:.1%}")
    print(f"  Variability (CV): {config.variability:.1%}, drift: {config.drift:.1%}")
    print(f"  Responder rate: {config.responder_rate:.1%}, time profile: {config.time_profile}")
    print(f"\nPATIENTS: {len(records)}")
    for arm, count in arm_counts(records).items():
        print(f"  {arm.value}: {count}")

    print("\nMEAN % CHANGE AT WEEK 24:")
    for bio in biomarkers:
        summary = timepoint_summary(records, bio.id, metric="percent_change")
        wk24 = summary[summary["timepoint"] == Timepoint.WEEK_24.value]
        cells = ", ".join(
            f"{row.arm}={row.mean:+.1f}% (±{row.sem:.1f})" for row in wk24.itertuples()
        )
        print(f"  {bio.name:<18} {cells}")
    print("=" * 70)


if __name__ == "__main__":
    main()
