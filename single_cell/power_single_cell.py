"""
Power for a longitudinal single-cell study analysed as pseudobulk per cell type.

Design
------
Two arms with n patients each, sampled at T timepoints. For one cell type at a
given abundance, cells are pooled per patient and sample (pseudobulk) and a
module score over the co-regulated genes is compared between arms.

Gating (evaluated in order, first failure wins)
-----------------------------------------------
1. mean genes/cell below the complexity QC threshold  -> "Low Resolution (< QC)"
2. target cells/patient below the sample yield QC     -> "Low Yield"
3. expected cells = cells/patient * abundance; patients whose cell type falls
   below the minimum cluster size drop out linearly:
       dropout = min(1, expected / min_cluster_size)
       effective_n = n_per_arm * dropout
   effective_n < 3                                    -> "High Dropout"

A failed gate is a normal result (power 0, is_qc_fail True, reason set), not an
exception.

Variance model
--------------
- longitudinal factor = 1 / (1 + (T - 2) * 0.5)
- biological variance = 2 * bioCV^2 / effective_n * (1 - rho) * longitudinal factor
- pseudobulk counts = expected cells * 2.0 / (500 / mean genes per cell)
- technical variance = 2 / (effective_n * T * pseudobulk counts * module size)
- SE = sqrt(biological + technical); power = Phi(|log2FC| / SE - z_{1-alpha/2})

Usage examples
--------------
1) Default design (20 per arm, 5000 cells, 1500 genes, baseline + end):
   python3 -m single_cell.power_single_cell

2) Rare population at 1% abundance with deeper sequencing:
   python3 -m single_cell.power_single_cell --scenario deep_seq --abundance 0.01

3) Full sensitivity matrix (patients per arm x abundance):
   python3 -m single_cell.power_single_cell --matrix
"""

from __future__ import annotations

import argparse
import math
import sys
from dataclasses import asdict, dataclass, replace
from types import MappingProxyType
from typing import Optional, Sequence

import pandas as pd

from core.calibration import (
    SC_ABUNDANCE_STEPS,
    SC_COUNTS_PER_GENE,
    SC_DEFAULT_ICC,
    SC_LONGITUDINAL_DIVISOR,
    SC_MEDIUM_ABUNDANCE,
    SC_MIN_EFFECTIVE_N,
    SC_PATIENT_STEPS,
    SC_RARE_ABUNDANCE,
    SC_RESOLUTION_REFERENCE_GENES,
)
from core.normal_approx import power_from_noncentrality
from core.validation import validate_count, validate_positive, validate_probability

LOW_RESOLUTION = "Low Resolution (< QC)"
LOW_YIELD = "Low Yield"
HIGH_DROPOUT = "High Dropout"


@dataclass(frozen=True)
class SingleCellInputs:
    n_per_arm: int = 20
    cells_per_patient: float = 5000.0
    mean_genes_per_cell: float = 1500.0
    timepoints: int = 2              # baseline + end of treatment
    min_genes_per_cell: float = 200.0
    min_total_cells: float = 500.0
    min_cluster_size: float = 10.0
    module_size: int = 250           # co-regulated genes in the tested module
    effect_log2: float = 0.5
    bio_cv: float = 0.6
    icc: float = SC_DEFAULT_ICC      # intra-subject correlation
    alpha: float = 0.05
    abundance: float = 0.05          # fraction of cells in the tested cell type

    def __post_init__(self):
        validate_count(self.n_per_arm, "n_per_arm", minimum=1)
        validate_positive(self.cells_per_patient, "cells_per_patient", allow_zero=True)
        validate_positive(self.mean_genes_per_cell, "mean_genes_per_cell")
        validate_count(self.timepoints, "timepoints", minimum=1)
        validate_positive(self.min_genes_per_cell, "min_genes_per_cell", allow_zero=True)
        validate_positive(self.min_total_cells, "min_total_cells", allow_zero=True)
        validate_positive(self.min_cluster_size, "min_cluster_size")
        validate_count(self.module_size, "module_size", minimum=0)
        if not math.isfinite(self.effect_log2):
            raise ValueError(f"effect_log2 must be finite, got {self.effect_log2}")
        validate_positive(self.bio_cv, "bio_cv", allow_zero=True)
        validate_probability(self.icc, "icc", allow_zero=True, allow_one=False)
        validate_probability(self.alpha, "alpha", allow_zero=False, allow_one=False)
        validate_probability(self.abundance, "abundance")

    @property
    def total_libraries(self) -> int:
        """Sequencing libraries across both arms and all timepoints."""
        return self.n_per_arm * 2 * self.timepoints


@dataclass(frozen=True)
class SingleCellResult:
    power: float
    effective_n: float
    is_qc_fail: bool
    reason: Optional[str] = None
    expected_cells: float = 0.0
    dropout_factor: float = 0.0
    bio_variance: float = 0.0
    tech_variance: float = 0.0
    se: float = 0.0


@dataclass(frozen=True)
class Scenario:
    label: str
    description: str
    effect_log2: float
    bio_cv: float
    mean_genes_per_cell: float
    cells_per_patient: float


SCENARIOS = MappingProxyType({
    "standard": Scenario("Standard Efficacy", "Balanced parameters (0.5 log2FC, 60% CV)",
                         0.5, 0.6, 1500.0, 5000.0),
    "low_effect": Scenario("Low Effect Size", "Weak signal (0.3 log2FC). Requires larger N.",
                           0.3, 0.6, 1500.0, 5000.0),
    "high_var": Scenario("High Biological CV", "Noisy population (100% CV). Hard to detect changes.",
                         0.5, 1.0, 1500.0, 5000.0),
    "deep_seq": Scenario("High Sensitivity", "Deep sequencing reduces technical noise.",
                         0.5, 0.6, 2500.0, 8000.0),
})


def apply_scenario(inputs: SingleCellInputs, name: str) -> SingleCellInputs:
    """Copy of inputs with the effect, variability and depth of a preset."""
    if name not in SCENARIOS:
        raise ValueError(f"Unknown scenario {name!r}; expected one of {sorted(SCENARIOS)}")
    s = SCENARIOS[name]
    return replace(
        inputs,
        effect_log2=s.effect_log2,
        bio_cv=s.bio_cv,
        mean_genes_per_cell=s.mean_genes_per_cell,
        cells_per_patient=s.cells_per_patient,
    )


def abundance_category(abundance: float) -> str:
    if abundance < SC_RARE_ABUNDANCE:
        return "Rare"
    if abundance < SC_MEDIUM_ABUNDANCE:
        return "Medium"
    return "Major"


def longitudinal_factor(timepoints: int) -> float:
    return 1.0 / (1.0 + (timepoints - 2) * SC_LONGITUDINAL_DIVISOR)


def single_cell_power(inputs: SingleCellInputs, n_per_arm: Optional[int] = None,
                      abundance: Optional[float] = None) -> SingleCellResult:
    """Evaluate one design point; n_per_arm/abundance override the inputs."""
    n = inputs.n_per_arm if n_per_arm is None else n_per_arm
    ab = inputs.abundance if abundance is None else abundance
    validate_count(n, "n_per_arm", minimum=1)
    validate_probability(ab, "abundance")

    if inputs.mean_genes_per_cell < inputs.min_genes_per_cell:
        return SingleCellResult(power=0.0, effective_n=0.0, is_qc_fail=True, reason=LOW_RESOLUTION)
    if inputs.cells_per_patient < inputs.min_total_cells:
        return SingleCellResult(power=0.0, effective_n=0.0, is_qc_fail=True, reason=LOW_YIELD)

    expected = inputs.cells_per_patient * ab
    dropout = min(1.0, max(0.0, expected / inputs.min_cluster_size))
    eff_n = n * dropout
    if eff_n < SC_MIN_EFFECTIVE_N:
        return SingleCellResult(power=0.0, effective_n=eff_n, is_qc_fail=True, reason=HIGH_DROPOUT,
                                expected_cells=expected, dropout_factor=dropout)

    bio_var = (2.0 * inputs.bio_cv ** 2) / eff_n * (1.0 - inputs.icc) * longitudinal_factor(inputs.timepoints)
    resolution = SC_RESOLUTION_REFERENCE_GENES / inputs.mean_genes_per_cell
    pseudobulk = expected * (SC_COUNTS_PER_GENE / resolution)
    module = max(1, inputs.module_size)
    tech_var = 2.0 / (eff_n * inputs.timepoints * pseudobulk * module)
    se = math.sqrt(bio_var + tech_var)

    # zero bioCV with a large pool can drive se to ~0; a zero effect then has no power
    if se > 0:
        lam = abs(inputs.effect_log2) / se
    else:
        lam = math.inf if inputs.effect_log2 != 0 else 0.0
    power = power_from_noncentrality(lam, inputs.alpha)
    return SingleCellResult(
        power=power,
        effective_n=eff_n,
        is_qc_fail=False,
        expected_cells=expected,
        dropout_factor=dropout,
        bio_variance=bio_var,
        tech_variance=tech_var,
        se=se,
    )


def single_cell_power_matrix(
    inputs: SingleCellInputs,
    patient_steps: Sequence[int] = SC_PATIENT_STEPS,
    abundance_steps: Sequence[float] = SC_ABUNDANCE_STEPS,
) -> pd.DataFrame:
    """Sensitivity grid over patients per arm and cell-type abundance.

    Returns a long DataFrame with one row per (abundance, n_per_arm) and
    columns abundance, label, category, n_per_arm, power, effective_n,
    dropout_factor, is_qc_fail, reason. Use ``power_matrix_table`` for the
    abundance x N pivot.
    """
    rows = []
    for ab in abundance_steps:
        for n in patient_steps:
            res = single_cell_power(inputs, n_per_arm=n, abundance=ab)
            rows.append({
                "abundance": float(ab),
                "label": f"{ab * 100:.1f}%",
                "category": abundance_category(ab),
                "n_per_arm": int(n),
                "power": res.power,
                "effective_n": res.effective_n,
                "dropout_factor": res.dropout_factor,
                "is_qc_fail": res.is_qc_fail,
                "reason": res.reason,
            })
    return pd.DataFrame(rows)


def power_matrix_table(matrix: pd.DataFrame) -> pd.DataFrame:
    return matrix.pivot(index="abundance", columns="n_per_arm", values="power")


def abundance_profile(inputs: SingleCellInputs,
                      abundance_steps: Sequence[float] = SC_ABUNDANCE_STEPS) -> pd.DataFrame:
    """Power at the configured n per arm across abundance levels."""
    rows = []
    for ab in abundance_steps:
        res = single_cell_power(inputs, abundance=ab)
        row = {"abundance": float(ab), "label": f"{ab * 100:.1f}%", "category": abundance_category(ab)}
        row.update(asdict(res))
        rows.append(row)
    return pd.DataFrame(rows)


# ---------- CLI ----------

def _build_parser() -> argparse.ArgumentParser:
    d = SingleCellInputs()
    p = argparse.ArgumentParser(
        description="Power for a longitudinal single-cell pseudobulk design",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    p.add_argument("--scenario", choices=sorted(SCENARIOS), default=None,
                   help="Preset for effect, biological CV, genes/cell and cells/patient")
    p.add_argument("--n-per-arm", type=int, default=d.n_per_arm)
    p.add_argument("--cells-per-patient", type=float, default=None)
    p.add_argument("--genes-per-cell", type=float, default=None)
    p.add_argument("--timepoints", type=int, default=d.timepoints)
    p.add_argument("--min-genes-per-cell", type=float, default=d.min_genes_per_cell)
    p.add_argument("--min-total-cells", type=float, default=d.min_total_cells)
    p.add_argument("--min-cluster-size", type=float, default=d.min_cluster_size)
    p.add_argument("--module-size", type=int, default=d.module_size)
    p.add_argument("--effect-log2", type=float, default=None)
    p.add_argument("--bio-cv", type=float, default=None)
    p.add_argument("--icc", type=float, default=d.icc)
    p.add_argument("--alpha", type=float, default=d.alpha)
    p.add_argument("--abundance", type=float, default=d.abundance)
    p.add_argument("--matrix", action="store_true", help="Print the N x abundance power matrix")
    return p


def _inputs_from_args(args) -> SingleCellInputs:
    inputs = SingleCellInputs(
        n_per_arm=args.n_per_arm,
        timepoints=args.timepoints,
        min_genes_per_cell=args.min_genes_per_cell,
        min_total_cells=args.min_total_cells,
        min_cluster_size=args.min_cluster_size,
        module_size=args.module_size,
        icc=args.icc,
        alpha=args.alpha,
        abundance=args.abundance,
    )
    if args.scenario:
        inputs = apply_scenario(inputs, args.scenario)
    overrides = {}
    if args.cells_per_patient is not None:
        overrides["cells_per_patient"] = args.cells_per_patient
    if args.genes_per_cell is not None:
        overrides["mean_genes_per_cell"] = args.genes_per_cell
    if args.effect_log2 is not None:
        overrides["effect_log2"] = args.effect_log2
    if args.bio_cv is not None:
        overrides["bio_cv"] = args.bio_cv
    return replace(inputs, **overrides) if overrides else inputs


def main():
    args = _build_parser().parse_args()
    try:
        inputs = _inputs_from_args(args)
        res = single_cell_power(inputs)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    print("=" * 70)
    print("POWER: Longitudinal single-cell pseudobulk")
    print("=" * 70)
    print(f"\nDESIGN:")
    print(f"  {inputs.n_per_arm} patients/arm x {inputs.timepoints} timepoints "
          f"= {inputs.total_libraries} libraries")
    print(f"  Cells/patient: {inputs.cells_per_patient:.0f}  Genes/cell: {inputs.mean_genes_per_cell:.0f}")
    print(f"  Abundance: {inputs.abundance * 100:.1f}% ({abundance_category(inputs.abundance)})")
    print(f"  Effect: {inputs.effect_log2:.2f} log2FC  bioCV: {inputs.bio_cv:.2f}  rho: {inputs.icc:.2f}")
    print(f"\nRESULTS:")
    if res.is_qc_fail:
        print(f"  QC FAIL: {res.reason}")
        if res.reason == HIGH_DROPOUT:
            print(f"  Expected cells/patient: {res.expected_cells:.1f}  effective N: {res.effective_n:.1f}")
    else:
        print(f"  Expected cells/patient: {res.expected_cells:.1f}  dropout factor: {res.dropout_factor:.2f}")
        print(f"  Effective N per arm: {res.effective_n:.1f}")
        print(f"  Variance: biological {res.bio_variance:.4g}, technical {res.tech_variance:.4g}  SE={res.se:.4f}")
        print(f"  Power: {res.power:.3f} ({res.power*100:.1f}%)")

    if args.matrix:
        table = power_matrix_table(single_cell_power_matrix(inputs))
        print(f"\nPOWER MATRIX (rows: abundance, columns: patients per arm):")
        header = "  abundance " + "".join(f"{int(n):>7d}" for n in table.columns)
        print(header)
        for ab, row in table.iterrows():
            print(f"  {ab * 100:8.1f}% " + "".join(f"{v:7.2f}" for v in row.to_numpy()))
    print("=" * 70)


if __name__ == "__main__":
    main()
