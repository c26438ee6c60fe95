"""
Data model for simulated and uploaded biomarker cohorts.

Records are frozen dataclasses holding tuples, so a cohort is a snapshot:
regenerating or augmenting builds new records and never mutates old ones.

Decoded uploads (the JSON shape ``[{patientId, arm, measurements: [...]}]``)
enter through ``records_from_dicts``, which derives change-from-baseline
metrics and rejects structurally invalid data with a descriptive ValueError.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from core.calibration import DEFAULT_BASELINE_MEAN, TIME_PROFILE_MULTIPLIERS
from core.validation import validate_finite, validate_positive, validate_probability


class Arm(str, Enum):
    PLACEBO = "Placebo"
    DRUG_1MG = "Drug X 1mg"
    DRUG_2MG = "Drug X 2mg"


class Timepoint(str, Enum):
    BASELINE = "Baseline"
    WEEK_4 = "Week 4"
    WEEK_12 = "Week 12"
    WEEK_24 = "Week 24"


class Direction(str, Enum):
    LOWER_IS_BETTER = "lower_is_better"
    HIGHER_IS_BETTER = "higher_is_better"


class BiomarkerCategory(str, Enum):
    INFLAMMATION = "Inflammation"
    FIBROSIS = "Fibrosis"
    OXIDATIVE_STRESS = "Oxidative Stress"
    METABOLIC_HEALTH = "Metabolic Health"
    CUSTOM = "Custom"


ARM_ORDER: Tuple[Arm, ...] = (Arm.PLACEBO, Arm.DRUG_1MG, Arm.DRUG_2MG)
TIMEPOINT_ORDER: Tuple[Timepoint, ...] = (
    Timepoint.BASELINE,
    Timepoint.WEEK_4,
    Timepoint.WEEK_12,
    Timepoint.WEEK_24,
)
FOLLOW_UP_TIMEPOINTS: Tuple[Timepoint, ...] = TIMEPOINT_ORDER[1:]
TIMEPOINT_WEEKS = MappingProxyType({
    Timepoint.BASELINE: 0,
    Timepoint.WEEK_4: 4,
    Timepoint.WEEK_12: 12,
    Timepoint.WEEK_24: 24,
})
TIME_PROFILES: Tuple[str, ...] = tuple(TIME_PROFILE_MULTIPLIERS)


def parse_arm(value) -> Arm:
    """Accept an Arm, its display value ("Drug X 1mg") or its name ("DRUG_1MG")."""
    if isinstance(value, Arm):
        return value
    text = str(value).strip()
    for arm in Arm:
        if text.lower() in (arm.value.lower(), arm.name.lower()):
            return arm
    raise ValueError(f"Unknown arm {value!r}; expected one of {[a.value for a in Arm]}")


def parse_timepoint(value) -> Timepoint:
    if isinstance(value, Timepoint):
        return value
    text = str(value).strip()
    for tp in Timepoint:
        if text.lower() in (tp.value.lower(), tp.name.lower()):
            return tp
    raise ValueError(f"Unknown timepoint {value!r}; expected one of {[t.value for t in Timepoint]}")


@dataclass(frozen=True)
class BiomarkerDefinition:
    id: str
    name: str
    category: BiomarkerCategory = BiomarkerCategory.CUSTOM
    unit: str = ""
    direction: Direction = Direction.LOWER_IS_BETTER
    baseline_mean: float = DEFAULT_BASELINE_MEAN

    def __post_init__(self):
        if not self.id:
            raise ValueError("biomarker id must be a non-empty string")
        # Allow plain strings from configuration
        object.__setattr__(self, "direction", Direction(self.direction))
        object.__setattr__(self, "category", BiomarkerCategory(self.category))
        validate_positive(self.baseline_mean, "baseline_mean")

    @property
    def sign(self) -> float:
        """+1 when an increase is an improvement, -1 when a decrease is."""
        return -1.0 if self.direction is Direction.LOWER_IS_BETTER else 1.0

    @classmethod
    def custom(cls, name: str, unit: str = "", direction: str = "lower_is_better",
               baseline_mean: float = DEFAULT_BASELINE_MEAN) -> "BiomarkerDefinition":
        """User-defined biomarker; the id is the slugged name."""
        slug = "-".join(name.lower().split())
        return cls(id=slug, name=name, category=BiomarkerCategory.CUSTOM, unit=unit,
                   direction=Direction(direction), baseline_mean=baseline_mean)


@dataclass(frozen=True)
class Measurement:
    biomarker_id: str
    timepoint: Timepoint
    value: float
    change_from_baseline: float = 0.0
    percent_change: float = 0.0


@dataclass(frozen=True)
class PatientRecord:
    patient_id: str
    arm: Arm
    measurements: Tuple[Measurement, ...] = ()
    # None when unknown (uploaded data)
    is_responder: Optional[bool] = None

    def biomarker_ids(self) -> List[str]:
        seen: Dict[str, None] = {}
        for m in self.measurements:
            seen.setdefault(m.biomarker_id, None)
        return list(seen)

    def measurements_for(self, biomarker_id: str) -> Tuple[Measurement, ...]:
        return tuple(m for m in self.measurements if m.biomarker_id == biomarker_id)

    def get(self, biomarker_id: str, timepoint: Timepoint) -> Optional[Measurement]:
        for m in self.measurements:
            if m.biomarker_id == biomarker_id and m.timepoint is timepoint:
                return m
        return None


@dataclass(frozen=True)
class SimulationConfig:
    """Parameters of one cohort generation call.

    Effect sizes are fractional improvements at the plateau (0.30 = 30%);
    the biomarker direction decides whether an improvement is a rise or a fall.
    """

    scenario_name: str = "Custom"
    drug_effect_size: float = 0.30
    placebo_effect_size: float = 0.05
    variability: float = 0.20      # CV of the patient baseline (SD / mean)
    responder_rate: float = 0.70
    time_profile: str = "linear"
    drift: float = 0.02

    def __post_init__(self):
        validate_finite(self.drug_effect_size, "drug_effect_size")
        validate_finite(self.placebo_effect_size, "placebo_effect_size")
        validate_positive(self.variability, "variability", allow_zero=True)
        validate_positive(self.drift, "drift", allow_zero=True)
        validate_probability(self.responder_rate, "responder_rate", allow_one=True)
        if self.time_profile not in TIME_PROFILE_MULTIPLIERS:
            raise ValueError(f"time_profile must be one of {TIME_PROFILES}, got {self.time_profile!r}")

    def profile_multipliers(self) -> Tuple[float, float, float]:
        return TIME_PROFILE_MULTIPLIERS[self.time_profile]


SCENARIO_PRESETS: Mapping[str, SimulationConfig] = MappingProxyType({
    "Standard Efficacy": SimulationConfig(
        scenario_name="Standard Efficacy", drug_effect_size=0.30, placebo_effect_size=0.05,
        variability=0.20, responder_rate=0.70, time_profile="linear", drift=0.02,
    ),
    "High Placebo Response": SimulationConfig(
        scenario_name="High Placebo Response", drug_effect_size=0.30, placebo_effect_size=0.18,
        variability=0.20, responder_rate=0.70, time_profile="linear", drift=0.02,
    ),
    "Low Responder Rate": SimulationConfig(
        scenario_name="Low Responder Rate", drug_effect_size=0.30, placebo_effect_size=0.05,
        variability=0.20, responder_rate=0.30, time_profile="linear", drift=0.02,
    ),
    "Fast Onset": SimulationConfig(
        scenario_name="Fast Onset", drug_effect_size=0.30, placebo_effect_size=0.05,
        variability=0.20, responder_rate=0.70, time_profile="immediate", drift=0.02,
    ),
    "Delayed Onset": SimulationConfig(
        scenario_name="Delayed Onset", drug_effect_size=0.30, placebo_effect_size=0.05,
        variability=0.20, responder_rate=0.70, time_profile="delayed", drift=0.02,
    ),
    "Transient Response": SimulationConfig(
        scenario_name="Transient Response", drug_effect_size=0.30, placebo_effect_size=0.05,
        variability=0.20, responder_rate=0.70, time_profile="biphasic", drift=0.02,
    ),
    "Early Peak": SimulationConfig(
        scenario_name="Early Peak", drug_effect_size=0.30, placebo_effect_size=0.05,
        variability=0.20, responder_rate=0.70, time_profile="peak_drop", drift=0.02,
    ),
    "Noisy Assay": SimulationConfig(
        scenario_name="Noisy Assay", drug_effect_size=0.30, placebo_effect_size=0.05,
        variability=0.45, responder_rate=0.70, time_profile="linear", drift=0.05,
    ),
    "Null Drug": SimulationConfig(
        scenario_name="Null Drug", drug_effect_size=0.0, placebo_effect_size=0.05,
        variability=0.20, responder_rate=0.70, time_profile="linear", drift=0.02,
    ),
})


def _bm(id_, name, category, unit, direction, baseline_mean):
    return BiomarkerDefinition(id=id_, name=name, category=category, unit=unit,
                               direction=direction, baseline_mean=baseline_mean)


_LOWER = Direction.LOWER_IS_BETTER
_HIGHER = Direction.HIGHER_IS_BETTER

DEFAULT_BIOMARKERS: Tuple[BiomarkerDefinition, ...] = (
    _bm("hsCRP", "hs-CRP", BiomarkerCategory.INFLAMMATION, "mg/L", _LOWER, 3.5),
    _bm("IL-6", "IL-6", BiomarkerCategory.INFLAMMATION, "pg/mL", _LOWER, 5.0),
    _bm("TNF-a", "TNF-alpha", BiomarkerCategory.INFLAMMATION, "pg/mL", _LOWER, 15.0),
    _bm("Col1a1", "Collagen 1a1", BiomarkerCategory.FIBROSIS, "ng/mL", _LOWER, 120.0),
    _bm("TGF-b", "TGF-beta", BiomarkerCategory.FIBROSIS, "ng/mL", _LOWER, 45.0),
    _bm("a-SMA", "alpha-SMA", BiomarkerCategory.FIBROSIS, "IU/L", _LOWER, 30.0),
    _bm("MDA", "Malondialdehyde", BiomarkerCategory.OXIDATIVE_STRESS, "µM", _LOWER, 2.5),
    _bm("GSH", "Glutathione", BiomarkerCategory.OXIDATIVE_STRESS, "µM", _HIGHER, 800.0),
    _bm("HbA1c", "HbA1c", BiomarkerCategory.METABOLIC_HEALTH, "%", _LOWER, 6.2),
    _bm("Adiponectin", "Adiponectin", BiomarkerCategory.METABOLIC_HEALTH, "µg/mL", _HIGHER, 10.0),
)


# ---------- Decoding and validation ----------

def validate_records(records: Sequence[PatientRecord], require_complete: bool = True) -> None:
    """Reject structurally invalid cohorts with a descriptive ValueError.

    Checks: unique non-empty patient ids, known arms and timepoints, finite
    positive values, at most one measurement per (biomarker, timepoint) and,
    when require_complete is set, all four timepoints for every biomarker.
    """
    seen_ids = set()
    for idx, rec in enumerate(records):
        if not isinstance(rec, PatientRecord):
            raise ValueError(f"Record {idx}: expected PatientRecord, got {type(rec).__name__}")
        if not rec.patient_id:
            raise ValueError(f"Record {idx}: missing patientId")
        if rec.patient_id in seen_ids:
            raise ValueError(f"Duplicate patientId {rec.patient_id!r}")
        seen_ids.add(rec.patient_id)
        if not isinstance(rec.arm, Arm):
            raise ValueError(f"Patient {rec.patient_id}: unknown arm {rec.arm!r}")

        slots: Dict[Tuple[str, Timepoint], Measurement] = {}
        for m in rec.measurements:
            if not isinstance(m, Measurement):
                raise ValueError(f"Patient {rec.patient_id}: expected Measurement, got {type(m).__name__}")
            if not isinstance(m.timepoint, Timepoint):
                raise ValueError(f"Patient {rec.patient_id}: unknown timepoint {m.timepoint!r}")
            value = m.value
            if (isinstance(value, bool) or not isinstance(value, (int, float))
                    or not math.isfinite(value) or value <= 0):
                raise ValueError(
                    f"Patient {rec.patient_id}, {m.biomarker_id} @ {m.timepoint.value}: "
                    f"value must be a finite number > 0, got {m.value!r}"
                )
            key = (m.biomarker_id, m.timepoint)
            if key in slots:
                raise ValueError(
                    f"Patient {rec.patient_id}: duplicate measurement for {m.biomarker_id} @ {m.timepoint.value}"
                )
            slots[key] = m

        if require_complete:
            for biomarker_id in rec.biomarker_ids():
                missing = [tp.value for tp in TIMEPOINT_ORDER if (biomarker_id, tp) not in slots]
                if missing:
                    raise ValueError(
                        f"Patient {rec.patient_id}: biomarker {biomarker_id} missing timepoints {missing}"
                    )


def with_derived_metrics(measurements: Iterable[Measurement]) -> Tuple[Measurement, ...]:
    """Recompute change and percent change against each biomarker's baseline.

    Baseline rows get exactly 0; biomarkers without a baseline keep 0 as well.
    """
    measurements = tuple(measurements)
    baselines = {m.biomarker_id: m.value for m in measurements if m.timepoint is Timepoint.BASELINE}
    out = []
    for m in measurements:
        base = baselines.get(m.biomarker_id)
        if m.timepoint is Timepoint.BASELINE or not base:
            change, pct = 0.0, 0.0
        else:
            change = m.value - base
            pct = change / base * 100.0
        out.append(Measurement(m.biomarker_id, m.timepoint, m.value, change, pct))
    return tuple(out)


def _field(row: Mapping, name: str, context: str, required: bool = True):
    lowered = {str(k).lower(): v for k, v in row.items()}
    # JSON null counts as missing
    value = lowered.get(name.lower())
    if value is None and required:
        raise ValueError(f"{context}: missing field '{name}'")
    return value


def records_from_dicts(rows: Sequence[Mapping], require_complete: bool = True) -> List[PatientRecord]:
    """Build validated PatientRecords from decoded JSON-shaped dictionaries."""
    if not isinstance(rows, (list, tuple)):
        raise ValueError("Patient data must be an array of patient objects")
    records = []
    for idx, row in enumerate(rows):
        context = f"Patient entry {idx}"
        if not isinstance(row, Mapping):
            raise ValueError(f"{context}: expected an object, got {type(row).__name__}")
        patient_id = str(_field(row, "patientId", context)).strip()
        arm = parse_arm(_field(row, "arm", context))
        raw_measurements = _field(row, "measurements", context)
        if not isinstance(raw_measurements, (list, tuple)):
            raise ValueError(f"{context}: 'measurements' must be an array")
        measurements = []
        for j, m in enumerate(raw_measurements):
            m_context = f"{context}, measurement {j}"
            if not isinstance(m, Mapping):
                raise ValueError(f"{m_context}: expected an object, got {type(m).__name__}")
            raw_value = _field(m, "value", m_context)
            try:
                value = float(raw_value)
            except (TypeError, ValueError):
                raise ValueError(f"{m_context}: value {raw_value!r} is not a valid number") from None
            measurements.append(Measurement(
                biomarker_id=str(_field(m, "biomarkerId", m_context)),
                timepoint=parse_timepoint(_field(m, "timepoint", m_context)),
                value=value,
            ))
        responder = _field(row, "isResponder", context, required=False)
        records.append(PatientRecord(
            patient_id=patient_id,
            arm=arm,
            measurements=with_derived_metrics(measurements),
            is_responder=None if responder is None else bool(responder),
        ))
    validate_records(records, require_complete=require_complete)
    return records


def records_to_dicts(records: Sequence[PatientRecord]) -> List[dict]:
    """Inverse of records_from_dicts, for handing snapshots to the presentation layer."""
    return [
        {
            "patientId": rec.patient_id,
            "arm": rec.arm.value,
            "isResponder": rec.is_responder,
            "measurements": [
                {
                    "biomarkerId": m.biomarker_id,
                    "timepoint": m.timepoint.value,
                    "value": m.value,
                    "changeFromBaseline": m.change_from_baseline,
                    "percentChange": m.percent_change,
                }
                for m in rec.measurements
            ],
        }
        for rec in records
    ]
