"""
Tests for the cohort simulator: arm allocation, derived metrics, seeding,
deterministic trajectories and strictly additive augmentation.
"""

import math
from dataclasses import replace

import numpy as np
import pytest

import cohort.simulate_cohort as sc
from cohort.models import (
    ARM_ORDER,
    DEFAULT_BIOMARKERS,
    SCENARIO_PRESETS,
    Arm,
    BiomarkerDefinition,
    Measurement,
    PatientRecord,
    SimulationConfig,
    Timepoint,
    records_from_dicts,
    records_to_dicts,
    validate_records,
)

# No noise, every active patient responds: trajectories are exact
EXACT = SimulationConfig(
    drug_effect_size=0.30,
    placebo_effect_size=0.05,
    variability=0.0,
    responder_rate=1.0,
    time_profile="linear",
    drift=0.0,
)


def _week24_pct(record, biomarker_id):
    return record.get(biomarker_id, Timepoint.WEEK_24).percent_change


class TestAllocation:
    """Arm assignment by index mod 3 and patient identifiers."""

    def test_600_patients_split_evenly(self):
        records = sc.generate_cohort(600, DEFAULT_BIOMARKERS[:2], seed=1)
        counts = sc.arm_counts(records)
        assert len(records) == 600
        for arm in ARM_ORDER:
            assert counts[arm] == 200, f"{arm.value}: {counts[arm]} patients"

    def test_arm_cycles_with_index(self):
        assert [sc.arm_for(i) for i in range(6)] == list(ARM_ORDER) * 2
        assert sc.arm_for(7) is Arm.DRUG_1MG

    def test_patient_ids(self):
        records = sc.generate_cohort(12, DEFAULT_BIOMARKERS[:1], seed=2)
        assert records[0].patient_id == "PT-0001"
        assert records[11].patient_id == "PT-0012"
        assert len({r.patient_id for r in records}) == 12

    def test_uneven_cohort_warns(self):
        with pytest.warns(UserWarning, match="not divisible"):
            records = sc.generate_cohort(10, DEFAULT_BIOMARKERS[:1], seed=2)
        counts = sc.arm_counts(records)
        assert counts[Arm.PLACEBO] == 4
        assert counts[Arm.DRUG_1MG] == 3

    def test_empty_cohort(self):
        assert sc.generate_cohort(0, seed=1) == []

    @pytest.mark.parametrize("bad", [-3, 2.5])
    def test_invalid_size_rejected(self, bad):
        with pytest.raises(ValueError):
            sc.generate_cohort(bad, seed=1)


class TestMeasurements:
    """Shape and derived metrics of simulated series."""

    def test_every_patient_has_full_series(self):
        records = sc.generate_cohort(30, seed=5)
        for rec in records:
            assert len(rec.measurements) == len(DEFAULT_BIOMARKERS) * 4
        validate_records(records)

    def test_baseline_percent_change_is_zero(self):
        records = sc.generate_cohort(60, seed=11)
        for rec in records:
            for m in rec.measurements:
                if m.timepoint is Timepoint.BASELINE:
                    assert m.percent_change == 0
                    assert m.change_from_baseline == 0

    def test_change_is_relative_to_own_baseline(self):
        records = sc.generate_cohort(9, DEFAULT_BIOMARKERS[:3], seed=8)
        for rec in records:
            for bio in DEFAULT_BIOMARKERS[:3]:
                base = rec.get(bio.id, Timepoint.BASELINE).value
                for tp in (Timepoint.WEEK_4, Timepoint.WEEK_12, Timepoint.WEEK_24):
                    m = rec.get(bio.id, tp)
                    assert m.change_from_baseline == pytest.approx(m.value - base)
                    assert m.percent_change == pytest.approx((m.value - base) / base * 100.0)

    def test_values_stay_positive_under_heavy_noise(self):
        noisy = replace(SCENARIO_PRESETS["Noisy Assay"], variability=3.0)
        records = sc.generate_cohort(90, DEFAULT_BIOMARKERS[:2], noisy, seed=4)
        assert all(m.value >= 0.01 for r in records for m in r.measurements)

    def test_placebo_never_responds(self):
        records = sc.generate_cohort(60, DEFAULT_BIOMARKERS[:1], seed=9)
        for rec in records:
            if rec.arm is Arm.PLACEBO:
                assert rec.is_responder is False
            else:
                assert rec.is_responder in (True, False)


class TestDeterministicTrajectories:
    """With zero noise and drift the model reduces to baseline * (1 + effect * multiplier)."""

    def test_dose_and_placebo_effects_at_week_24(self):
        records = sc.generate_cohort(3, DEFAULT_BIOMARKERS[:1], EXACT, seed=0)
        placebo, low, high = records
        assert _week24_pct(placebo, "hsCRP") == pytest.approx(-5.0)
        assert _week24_pct(low, "hsCRP") == pytest.approx(-21.0)
        assert _week24_pct(high, "hsCRP") == pytest.approx(-30.0)

    def test_baseline_equals_population_mean(self):
        records = sc.generate_cohort(3, DEFAULT_BIOMARKERS[:1], EXACT, seed=0)
        for rec in records:
            assert rec.get("hsCRP", Timepoint.BASELINE).value == pytest.approx(3.5)

    def test_higher_is_better_rises(self):
        gsh = next(b for b in DEFAULT_BIOMARKERS if b.id == "GSH")
        records = sc.generate_cohort(3, [gsh], EXACT, seed=0)
        assert _week24_pct(records[2], "GSH") == pytest.approx(30.0)

    def test_non_responders_get_placebo_effect(self):
        config = replace(EXACT, responder_rate=0.0)
        records = sc.generate_cohort(3, DEFAULT_BIOMARKERS[:1], config, seed=0)
        for rec in records:
            assert _week24_pct(rec, "hsCRP") == pytest.approx(-5.0)

    def test_time_profile_shapes_the_curve(self):
        config = replace(EXACT, time_profile="biphasic")
        high = sc.generate_cohort(3, DEFAULT_BIOMARKERS[:1], config, seed=0)[2]
        pcts = [high.get("hsCRP", tp).percent_change
                for tp in (Timepoint.WEEK_4, Timepoint.WEEK_12, Timepoint.WEEK_24)]
        assert pcts == pytest.approx([-21.0, -30.0, -6.0])


class TestSeeding:
    def test_same_seed_same_cohort(self):
        a = sc.generate_cohort(30, seed=42)
        b = sc.generate_cohort(30, seed=42)
        assert a == b

    def test_different_seed_different_cohort(self):
        a = sc.generate_cohort(30, seed=42)
        b = sc.generate_cohort(30, seed=43)
        assert a != b

    def test_seed_and_rng_are_exclusive(self):
        with pytest.raises(ValueError):
            sc.generate_cohort(3, seed=1, rng=np.random.default_rng(1))

    def test_box_muller_is_standard_normal(self):
        rng = np.random.default_rng(2024)
        draws = np.array([sc.box_muller(rng) for _ in range(20000)])
        assert abs(draws.mean()) < 0.05, f"mean {draws.mean():.3f}"
        assert abs(draws.std() - 1.0) < 0.05, f"sd {draws.std():.3f}"


class TestAugment:
    """Adding a biomarker is strictly additive."""

    NEW = BiomarkerDefinition.custom("Ferritin", unit="ng/mL", baseline_mean=100.0)

    def test_adds_four_measurements_and_keeps_originals(self):
        original = sc.generate_cohort(30, DEFAULT_BIOMARKERS[:3], seed=7)
        augmented = sc.augment_cohort(original, self.NEW, seed=8)
        assert len(augmented) == len(original)
        for before, after in zip(original, augmented):
            n = len(before.measurements)
            assert len(after.measurements) == n + 4
            assert after.measurements[:n] == before.measurements
            assert after.patient_id == before.patient_id
            assert after.arm is before.arm
            assert [m.biomarker_id for m in after.measurements[n:]] == ["ferritin"] * 4

    def test_original_list_untouched(self):
        original = sc.generate_cohort(9, DEFAULT_BIOMARKERS[:1], seed=7)
        snapshot = records_to_dicts(original)
        sc.augment_cohort(original, self.NEW, seed=8)
        assert records_to_dicts(original) == snapshot

    def test_responder_status_reused(self):
        original = sc.generate_cohort(60, DEFAULT_BIOMARKERS[:1], seed=7)
        augmented = sc.augment_cohort(original, self.NEW, seed=99)
        assert [r.is_responder for r in augmented] == [r.is_responder for r in original]

    def test_missing_responder_status_is_rolled(self):
        rows = [
            {
                "patientId": f"U{i}",
                "arm": arm.value,
                "measurements": [
                    {"biomarkerId": "hsCRP", "timepoint": tp.value, "value": 3.0 + j}
                    for j, tp in enumerate(Timepoint)
                ],
            }
            for i, arm in enumerate(ARM_ORDER)
        ]
        uploaded = records_from_dicts(rows)
        assert all(r.is_responder is None for r in uploaded)
        augmented = sc.augment_cohort(uploaded, self.NEW, seed=1)
        assert augmented[0].is_responder is False
        assert all(r.is_responder is not None for r in augmented)

    def test_duplicate_biomarker_rejected(self):
        original = sc.generate_cohort(3, DEFAULT_BIOMARKERS[:1], seed=7)
        with pytest.raises(ValueError, match="already has biomarker"):
            sc.augment_cohort(original, DEFAULT_BIOMARKERS[0], seed=1)

    def test_augmented_values_follow_new_biomarker(self):
        original = sc.generate_cohort(3, DEFAULT_BIOMARKERS[:1], EXACT, seed=0)
        augmented = sc.augment_cohort(original, self.NEW, EXACT, seed=0)
        high = augmented[2]
        assert high.get("ferritin", Timepoint.BASELINE).value == pytest.approx(100.0)
        assert math.isclose(high.get("ferritin", Timepoint.WEEK_24).percent_change, -30.0, abs_tol=1e-9)

    def test_malformed_records_rejected_before_simulation(self):
        base = Measurement("hsCRP", Timepoint.BASELINE, 3.0)
        cases = [
            (PatientRecord("P1", "Placebo", (base,)), "unknown arm 'Placebo'"),
            (PatientRecord("P1", Arm.PLACEBO, (base, replace(base, value=4.0))), "duplicate measurement"),
            (PatientRecord("P1", Arm.DRUG_2MG, (replace(base, value=-4.0),)), "finite number > 0"),
        ]
        for record, message in cases:
            with pytest.raises(ValueError, match=message):
                sc.augment_cohort([record], self.NEW, seed=0)

    def test_new_biomarker_must_be_a_definition(self):
        original = sc.generate_cohort(3, DEFAULT_BIOMARKERS[:1], seed=7)
        with pytest.raises(ValueError, match="BiomarkerDefinition"):
            sc.augment_cohort(original, "Ferritin", seed=1)


class TestNoiseModel:
    """Monte Carlo checks of the baseline, measurement-noise and drift SDs."""

    DRAWS = 20000
    MARKER = BiomarkerDefinition.custom("Marker", baseline_mean=10.0)

    def _trajectories(self, config, seed):
        rng = np.random.default_rng(seed)
        return [sc.simulate_trajectory(self.MARKER, Arm.PLACEBO, config, False, rng)
                for _ in range(self.DRAWS)]

    def test_baseline_sd_is_mean_times_variability(self):
        config = SimulationConfig(placebo_effect_size=0.0, variability=0.2, drift=0.0)
        baselines = np.array([t[0].value for t in self._trajectories(config, seed=101)])
        # SE of a sample SD is about sd / sqrt(2n) = 0.01
        assert baselines.mean() == pytest.approx(10.0, abs=0.07), f"mean {baselines.mean():.3f}"
        assert baselines.std() == pytest.approx(2.0, abs=0.05), f"sd {baselines.std():.3f}"

    def test_measurement_noise_is_damped(self):
        config = SimulationConfig(placebo_effect_size=0.0, variability=0.2, drift=0.0)
        trajectories = self._trajectories(config, seed=202)
        for idx in (1, 2, 3):
            # Without drift or effect, change / own baseline is the pure noise term
            rel = np.array([t[idx].percent_change / 100.0 for t in trajectories])
            assert abs(rel.mean()) < 0.003, f"timepoint {idx}: mean {rel.mean():.4f}"
            assert rel.std() == pytest.approx(0.2 * 0.4, rel=0.03), f"timepoint {idx}: sd {rel.std():.4f}"

    def test_drift_sd_grows_with_timepoint(self):
        config = SimulationConfig(placebo_effect_size=0.0, variability=0.0, drift=0.15)
        trajectories = self._trajectories(config, seed=303)
        assert all(t[0].value == 10.0 for t in trajectories[:100])
        sds = [np.std([t[idx].value for t in trajectories]) for idx in (1, 2, 3)]
        assert sds == pytest.approx([0.5, 1.0, 1.5], rel=0.03), f"follow-up SDs {sds}"
        assert sds[1] / sds[0] == pytest.approx(2.0, rel=0.04)
        assert sds[2] / sds[0] == pytest.approx(3.0, rel=0.04)
