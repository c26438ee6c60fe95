"""
Tests for record decoding and validation of uploaded cohorts.
"""

import math

import pytest

import cohort.models as cm
from cohort.models import Arm, Timepoint


def _patient(pid="P1", arm="Placebo", values=(10.0, 9.0, 8.0, 5.0), biomarker="hsCRP"):
    return {
        "patientId": pid,
        "arm": arm,
        "measurements": [
            {"biomarkerId": biomarker, "timepoint": tp.value, "value": v}
            for tp, v in zip(cm.TIMEPOINT_ORDER, values)
        ],
    }


class TestParsers:
    def test_arm_accepts_value_name_and_case(self):
        assert cm.parse_arm("Drug X 2mg") is Arm.DRUG_2MG
        assert cm.parse_arm("placebo") is Arm.PLACEBO
        assert cm.parse_arm("DRUG_1MG") is Arm.DRUG_1MG
        assert cm.parse_arm(Arm.PLACEBO) is Arm.PLACEBO

    def test_timepoint_accepts_value_and_case(self):
        assert cm.parse_timepoint("Week 12") is Timepoint.WEEK_12
        assert cm.parse_timepoint("week 24") is Timepoint.WEEK_24
        assert cm.parse_timepoint("BASELINE") is Timepoint.BASELINE

    @pytest.mark.parametrize("bad", ["Drug Y", "", "week 8"])
    def test_unknown_labels_rejected(self, bad):
        with pytest.raises(ValueError):
            cm.parse_arm(bad)
        with pytest.raises(ValueError):
            cm.parse_timepoint(bad)


class TestRecordsFromDicts:
    """Decoding the JSON upload shape."""

    def test_derived_metrics(self):
        (rec,) = cm.records_from_dicts([_patient()])
        base = rec.get("hsCRP", Timepoint.BASELINE)
        wk24 = rec.get("hsCRP", Timepoint.WEEK_24)
        assert base.percent_change == 0 and base.change_from_baseline == 0
        assert wk24.change_from_baseline == pytest.approx(-5.0)
        assert wk24.percent_change == pytest.approx(-50.0)
        assert rec.is_responder is None

    def test_case_insensitive_keys(self):
        row = {
            "PatientID": "P9",
            "ARM": "drug x 1mg",
            "Measurements": [
                {"BiomarkerId": "IL-6", "TimePoint": tp.value, "Value": str(4 + i)}
                for i, tp in enumerate(cm.TIMEPOINT_ORDER)
            ],
        }
        (rec,) = cm.records_from_dicts([row])
        assert rec.arm is Arm.DRUG_1MG
        assert rec.get("IL-6", Timepoint.WEEK_4).value == 5.0

    def test_responder_flag_is_kept(self):
        row = _patient(arm="Drug X 2mg")
        row["isResponder"] = True
        (rec,) = cm.records_from_dicts([row])
        assert rec.is_responder is True

    def test_non_numeric_value_reported(self):
        row = _patient()
        row["measurements"][2]["value"] = "n/a"
        with pytest.raises(ValueError, match="measurement 2.*not a valid number"):
            cm.records_from_dicts([row])

    def test_missing_field_reported(self):
        row = _patient()
        del row["arm"]
        with pytest.raises(ValueError, match="missing field 'arm'"):
            cm.records_from_dicts([row])

    def test_not_an_array(self):
        with pytest.raises(ValueError, match="array"):
            cm.records_from_dicts({"patientId": "P1"})

    def test_measurement_not_an_object(self):
        row = _patient()
        row["measurements"][1] = 5
        with pytest.raises(ValueError, match="measurement 1: expected an object, got int"):
            cm.records_from_dicts([row])

    def test_null_patient_id_is_missing(self):
        row = _patient()
        row["patientId"] = None
        with pytest.raises(ValueError, match="missing field 'patientId'"):
            cm.records_from_dicts([row])

    def test_responder_flag_key_is_case_insensitive(self):
        row = _patient(arm="Drug X 1mg")
        row["IsResponder"] = False
        (rec,) = cm.records_from_dicts([row])
        assert rec.is_responder is False

    def test_duplicate_patient_rejected(self):
        with pytest.raises(ValueError, match="Duplicate patientId"):
            cm.records_from_dicts([_patient("P1"), _patient("P1")])

    @pytest.mark.parametrize("bad", [0.0, -1.0, math.inf, math.nan])
    def test_non_positive_or_non_finite_rejected(self, bad):
        with pytest.raises(ValueError, match="finite number > 0"):
            cm.records_from_dicts([_patient(values=(10.0, bad, 8.0, 5.0))])

    def test_incomplete_series(self):
        row = _patient()
        row["measurements"] = row["measurements"][:3]
        with pytest.raises(ValueError, match="missing timepoints"):
            cm.records_from_dicts([row])
        (rec,) = cm.records_from_dicts([row], require_complete=False)
        assert len(rec.measurements) == 3

    def test_duplicate_timepoint_rejected(self):
        row = _patient()
        row["measurements"].append({"biomarkerId": "hsCRP", "timepoint": "Week 4", "value": 7.0})
        with pytest.raises(ValueError, match="duplicate measurement"):
            cm.records_from_dicts([row])

    def test_missing_baseline_leaves_zero_change(self):
        row = _patient()
        row["measurements"] = row["measurements"][1:]
        (rec,) = cm.records_from_dicts([row], require_complete=False)
        assert all(m.percent_change == 0 for m in rec.measurements)

    def test_dict_round_trip(self):
        rows = [_patient("P1"), _patient("P2", arm="Drug X 1mg", values=(4.0, 4.5, 5.0, 6.0))]
        records = cm.records_from_dicts(rows)
        again = cm.records_from_dicts(cm.records_to_dicts(records))
        assert again == records


class TestDefinitions:
    def test_custom_biomarker(self):
        bio = cm.BiomarkerDefinition.custom("Serum Ferritin", unit="ng/mL", direction="higher_is_better")
        assert bio.id == "serum-ferritin"
        assert bio.category is cm.BiomarkerCategory.CUSTOM
        assert bio.sign == 1.0
        assert bio.baseline_mean == 10.0

    def test_default_panel(self):
        ids = [b.id for b in cm.DEFAULT_BIOMARKERS]
        assert len(ids) == 10 and len(set(ids)) == 10
        gsh = next(b for b in cm.DEFAULT_BIOMARKERS if b.id == "GSH")
        assert gsh.sign == 1.0

    @pytest.mark.parametrize("kwargs", [
        {"variability": -0.1},
        {"responder_rate": 1.5},
        {"time_profile": "sawtooth"},
        {"drift": float("nan")},
    ])
    def test_invalid_config(self, kwargs):
        with pytest.raises(ValueError):
            cm.SimulationConfig(**kwargs)

    def test_presets_are_read_only(self):
        with pytest.raises(TypeError):
            cm.SCENARIO_PRESETS["Mine"] = cm.SimulationConfig()
        assert cm.SCENARIO_PRESETS["Low Responder Rate"].responder_rate == 0.30


class TestValidateRecords:
    """Direct validation of in-memory records."""

    def _record(self, *measurements, arm=Arm.PLACEBO):
        return cm.PatientRecord("P1", arm, tuple(measurements))

    @pytest.mark.parametrize("flag", [True, False])
    def test_boolean_value_rejected(self, flag):
        rec = self._record(cm.Measurement("hsCRP", Timepoint.BASELINE, flag))
        with pytest.raises(ValueError, match="finite number > 0"):
            cm.validate_records([rec], require_complete=False)

    def test_plain_string_arm_rejected(self):
        rec = self._record(cm.Measurement("hsCRP", Timepoint.BASELINE, 3.0), arm="Placebo")
        with pytest.raises(ValueError, match="unknown arm 'Placebo'"):
            cm.validate_records([rec], require_complete=False)

    def test_non_measurement_entry_rejected(self):
        rec = self._record({"biomarkerId": "hsCRP"})
        with pytest.raises(ValueError, match="expected Measurement, got dict"):
            cm.validate_records([rec], require_complete=False)
