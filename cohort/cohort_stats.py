"""
Descriptive and inferential summaries of a biomarker cohort.

- cohort_to_frame: long-format DataFrame (one row per measurement) with
  ordered categorical arm/timepoint columns.
- records_from_frame: the inverse direction for uploaded long-format tables
  (columns patientId, arm, biomarkerId, timepoint, value; case-insensitive).
- timepoint_summary: mean, SEM and n per (timepoint, arm). SEM uses the
  population SD, sqrt(sum((x - mean)^2) / n) / sqrt(n).
- change_auc: trapezoidal area under the mean change curve over weeks
  0/4/12/24, with the baseline change fixed at 0.
- compare_arms: OLS of the chosen metric on arm (placebo reference),
  optionally adjusted for the patient baseline (ANCOVA).
"""

from __future__ import annotations

from typing import Dict, List, Sequence, Union

import numpy as np
import pandas as pd
import statsmodels.formula.api as smf

from cohort.models import (
    ARM_ORDER,
    TIMEPOINT_ORDER,
    TIMEPOINT_WEEKS,
    Arm,
    PatientRecord,
    Timepoint,
    parse_timepoint,
    records_from_dicts,
)

ARM_DTYPE = pd.CategoricalDtype(categories=[a.value for a in ARM_ORDER], ordered=True)
TIMEPOINT_DTYPE = pd.CategoricalDtype(categories=[t.value for t in TIMEPOINT_ORDER], ordered=True)
METRICS = ("value", "change_from_baseline", "percent_change")
REQUIRED_COLUMNS = ("patientid", "arm", "biomarkerid", "timepoint", "value")

RecordsOrFrame = Union[Sequence[PatientRecord], pd.DataFrame]


def cohort_to_frame(records: Sequence[PatientRecord]) -> pd.DataFrame:
    """Flatten records to one row per measurement."""
    rows = []
    for rec in records:
        for m in rec.measurements:
            rows.append({
                "patient_id": rec.patient_id,
                "arm": rec.arm.value,
                "is_responder": rec.is_responder,
                "biomarker_id": m.biomarker_id,
                "timepoint": m.timepoint.value,
                "week": TIMEPOINT_WEEKS[m.timepoint],
                "value": m.value,
                "change_from_baseline": m.change_from_baseline,
                "percent_change": m.percent_change,
            })
    df = pd.DataFrame(rows, columns=[
        "patient_id", "arm", "is_responder", "biomarker_id", "timepoint", "week",
        "value", "change_from_baseline", "percent_change",
    ])
    df["arm"] = df["arm"].astype(ARM_DTYPE)
    df["timepoint"] = df["timepoint"].astype(TIMEPOINT_DTYPE)
    return df


def records_from_frame(df: pd.DataFrame, require_complete: bool = True) -> List[PatientRecord]:
    """Group a long-format measurement table into validated PatientRecords."""
    lookup = {str(c).strip().lower(): c for c in df.columns}
    missing = [c for c in REQUIRED_COLUMNS if c not in lookup]
    if missing:
        raise ValueError(f"Missing required columns: {', '.join(missing)}")
    if df.empty:
        raise ValueError("No measurement rows found")

    values = pd.to_numeric(df[lookup["value"]], errors="coerce")
    bad = values.isna()
    if bad.any():
        pos = int(np.flatnonzero(bad.to_numpy())[0])
        raw = df[lookup["value"]].iloc[pos]
        # +2: header row plus 1-based numbering, as in the source file
        raise ValueError(f"Row {pos + 2}: value {raw!r} is not a valid number")

    patients: Dict[str, dict] = {}
    for pos in range(len(df)):
        pid = str(df[lookup["patientid"]].iloc[pos]).strip()
        entry = patients.setdefault(pid, {
            "patientId": pid,
            "arm": df[lookup["arm"]].iloc[pos],
            "measurements": [],
        })
        entry["measurements"].append({
            "biomarkerId": str(df[lookup["biomarkerid"]].iloc[pos]).strip(),
            "timepoint": df[lookup["timepoint"]].iloc[pos],
            "value": float(values.iloc[pos]),
        })
    return records_from_dicts(list(patients.values()), require_complete=require_complete)


def _as_frame(data: RecordsOrFrame) -> pd.DataFrame:
    if isinstance(data, pd.DataFrame):
        return data
    return cohort_to_frame(data)


def timepoint_summary(data: RecordsOrFrame, biomarker_id: str, metric: str = "percent_change") -> pd.DataFrame:
    """Mean, SEM and n per (timepoint, arm) for one biomarker.

    Empty cells are reported with mean 0, sem 0 and n 0.
    """
    if metric not in METRICS:
        raise ValueError(f"metric must be one of {METRICS}, got {metric!r}")
    df = _as_frame(data)
    sub = df[df["biomarker_id"] == biomarker_id]

    rows = []
    for tp in TIMEPOINT_ORDER:
        for arm in ARM_ORDER:
            vals = sub.loc[(sub["timepoint"] == tp.value) & (sub["arm"] == arm.value), metric]
            vals = vals.to_numpy(dtype=float)
            n = len(vals)
            if n:
                mean = float(np.mean(vals))
                sem = float(np.std(vals, ddof=0) / np.sqrt(n))
            else:
                mean, sem = 0.0, 0.0
            rows.append({
                "timepoint": tp.value,
                "week": TIMEPOINT_WEEKS[tp],
                "arm": arm.value,
                "mean": mean,
                "sem": sem,
                "n": n,
            })
    return pd.DataFrame(rows)


def change_auc(summary: pd.DataFrame) -> Dict[str, float]:
    """Trapezoidal AUC of the mean curve per arm, anchored at (week 0, 0)."""
    out: Dict[str, float] = {}
    for arm in ARM_ORDER:
        arm_rows = summary[summary["arm"] == arm.value].set_index("timepoint")
        weeks = [0.0]
        means = [0.0]
        for tp in TIMEPOINT_ORDER[1:]:
            weeks.append(float(TIMEPOINT_WEEKS[tp]))
            means.append(float(arm_rows["mean"].get(tp.value, 0.0)))
        area = 0.0
        for (w0, y0), (w1, y1) in zip(zip(weeks, means), zip(weeks[1:], means[1:])):
            area += (w1 - w0) * (y0 + y1) / 2.0
        out[arm.value] = area
    return out


def compare_arms(
    data: RecordsOrFrame,
    biomarker_id: str,
    timepoint: Union[Timepoint, str] = Timepoint.WEEK_24,
    metric: str = "percent_change",
    adjust_baseline: bool = False,
    alpha: float = 0.05,
) -> pd.DataFrame:
    """Treatment-vs-placebo contrasts at one timepoint via OLS.

    Returns one row per active arm with columns arm, estimate, se, ci_low,
    ci_high, p_value, n_arm, n_placebo.
    """
    if metric not in METRICS:
        raise ValueError(f"metric must be one of {METRICS}, got {metric!r}")
    tp = parse_timepoint(timepoint)
    df = _as_frame(data)
    sub = df[df["biomarker_id"] == biomarker_id]
    at_tp = sub[sub["timepoint"] == tp.value][["patient_id", "arm", metric]].copy()
    at_tp = at_tp.rename(columns={metric: "y"})
    at_tp["arm"] = at_tp["arm"].astype(str)

    formula = "y ~ C(arm, Treatment(reference='Placebo'))"
    if adjust_baseline:
        base = sub[sub["timepoint"] == Timepoint.BASELINE.value][["patient_id", "value"]]
        at_tp = at_tp.merge(base.rename(columns={"value": "baseline"}), on="patient_id", how="inner")
        formula += " + baseline"

    n_placebo = int((at_tp["arm"] == Arm.PLACEBO.value).sum())
    active = [a for a in ARM_ORDER[1:] if (at_tp["arm"] == a.value).any()]
    if n_placebo < 2 or not active:
        raise ValueError(
            f"Need at least 2 placebo patients and one active arm with data for {biomarker_id} at {tp.value}"
        )

    fit = smf.ols(formula, data=at_tp).fit()
    ci = fit.conf_int(alpha=alpha)
    rows = []
    for arm in active:
        term = next(name for name in fit.params.index if name.endswith(f"[T.{arm.value}]"))
        rows.append({
            "arm": arm.value,
            "estimate": float(fit.params[term]),
            "se": float(fit.bse[term]),
            "ci_low": float(ci.loc[term, 0]),
            "ci_high": float(ci.loc[term, 1]),
            "p_value": float(fit.pvalues[term]),
            "n_arm": int((at_tp["arm"] == arm.value).sum()),
            "n_placebo": n_placebo,
        })
    return pd.DataFrame(rows)
