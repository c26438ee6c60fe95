"""
Named calibration constants for the biomarker simulation and power models.

Every number that shapes a model's output but is not a user input lives here,
so the calibration can be audited in one place and perturbed in sensitivity
tests. Preset tables that bundle several of these values (assay, platform and
scenario presets) live next to the model that consumes them.
"""

from __future__ import annotations

from types import MappingProxyType

# ---------- Normal approximations ----------

# probit/cdf saturate here instead of returning +/-inf or diverging
PROBIT_CLAMP = 6.5
CDF_SERIES_TOL = 1e-23
# 1 / sqrt(2*pi)
INV_SQRT_2PI = 0.3989422804014327

# ---------- Patient trajectory simulator ----------

EPSILON_FLOOR = 0.01
DEFAULT_BASELINE_MEAN = 10.0
# Measurement noise SD as a fraction of baseline * variability
NOISE_DAMPING = 0.4

# Fraction of the full drug effect reached at each dose
DOSE_FACTOR_HIGH = 1.0
DOSE_FACTOR_LOW = 0.7

# (Week 4, Week 12, Week 24) multipliers of the plateau effect
TIME_PROFILE_MULTIPLIERS = MappingProxyType({
    "linear": (0.33, 0.66, 1.0),
    "immediate": (0.8, 0.9, 1.0),
    "delayed": (0.05, 0.4, 1.0),
    "biphasic": (0.7, 1.0, 0.2),
    "peak_drop": (1.0, 0.5, 0.1),
})

# ---------- Proteomic model ----------

SD_FLOOR = 1e-12
CURVE_MIN_N = 2
CURVE_MIN_SPAN = 50
CURVE_SPAN_NO_EFFECT = 100
CURVE_TARGET_POINTS = 50

# ---------- Single-cell pseudobulk model ----------

SC_DEFAULT_ICC = 0.5
# Longitudinal precision: 1 / (1 + (T - 2) * divisor)
SC_LONGITUDINAL_DIVISOR = 0.5
# Resolution heuristic: noise scales with reference_genes / mean_genes_per_cell
SC_RESOLUTION_REFERENCE_GENES = 500.0
SC_COUNTS_PER_GENE = 2.0
SC_MIN_EFFECTIVE_N = 3.0
SC_PATIENT_STEPS = (5, 10, 15, 20, 25, 30, 40, 50)
SC_ABUNDANCE_STEPS = (0.005, 0.01, 0.02, 0.05, 0.10, 0.20, 0.30, 0.50)
SC_RARE_ABUNDANCE = 0.02
SC_MEDIUM_ABUNDANCE = 0.10

# ---------- Spatial hierarchical model ----------

SPATIAL_ICC = 0.45
SPATIAL_CURVE_START = 4
SPATIAL_CURVE_STOP = 80
SPATIAL_CURVE_STEP = 4
# Cost reported in thousands
COST_UNIT = 1000.0
