"""
Paths, column maps and modelling defaults shared by the pipeline steps.
"""

import os

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

RAW_DIR = os.path.join(PROJECT_ROOT, "data", "raw")
DATA_DIR = os.path.join(PROJECT_ROOT, "data")
GEO_DIR = os.path.join(PROJECT_ROOT, "geospatial_data")
OUT_TBL = os.path.join(PROJECT_ROOT, "outputs", "tables")
OUT_FIG = os.path.join(PROJECT_ROOT, "outputs", "figures")
LOG_DIR = os.path.join(PROJECT_ROOT, "logs")


# ---------------- Raw inputs ---------------- #

MTPL1_FREQ_FILE = "freMTPLfreq.csv"
MTPL1_SEV_FILE = "freMTPLsev.csv"
MTPL2_FREQ_FILE = "freMTPL2freq.csv"
MTPL2_SEV_FILE = "freMTPL2sev.csv"

# freMTPL2freq / freMTPL2sev on OpenML
MTPL2_FREQ_OPENML_ID = 41214
MTPL2_SEV_OPENML_ID = 41215

MTPL1_KEY = "PolicyID"
MTPL2_KEY = "IDpol"

MTPL1_RENAME = {
    "PolicyID": "policy_id",
    "ClaimNb": "claim_nb_reported",
    "Exposure": "exposure",
    "Power": "vehicle_power",
    "CarAge": "vehicle_age",
    "DriverAge": "driver_age",
    "Brand": "vehicle_brand",
    "Gas": "fuel",
    "Region": "region",
    "Density": "density",
}

MTPL2_RENAME = {
    "IDpol": "policy_id",
    "ClaimNb": "claim_nb_reported",
    "Exposure": "exposure",
    "Area": "area",
    "VehPower": "vehicle_power",
    "VehAge": "vehicle_age",
    "DrivAge": "driver_age",
    "BonusMalus": "bonus_malus",
    "VehBrand": "vehicle_brand",
    "VehGas": "fuel",
    "Density": "density",
    "Region": "region",
}

NUMERIC_COLS = ["exposure", "claim_nb_reported", "vehicle_age", "driver_age", "bonus_malus", "density"]
CATEGORICAL_COLS = ["vehicle_power", "vehicle_brand", "fuel", "region", "area"]

# MTPL2 stores the pre-2016 French regions by INSEE code
REGION_CODE_NAMES = {
    "R11": "Ile-de-France",
    "R21": "Champagne-Ardenne",
    "R22": "Picardie",
    "R23": "Haute-Normandie",
    "R24": "Centre",
    "R25": "Basse-Normandie",
    "R26": "Bourgogne",
    "R31": "Nord-Pas-de-Calais",
    "R41": "Lorraine",
    "R42": "Alsace",
    "R43": "Franche-Comte",
    "R52": "Pays-de-la-Loire",
    "R53": "Bretagne",
    "R54": "Poitou-Charentes",
    "R72": "Aquitaine",
    "R73": "Midi-Pyrenees",
    "R74": "Limousin",
    "R82": "Rhone-Alpes",
    "R83": "Auvergne",
    "R91": "Languedoc-Roussillon",
    "R93": "Provence-Alpes-Cote-D'Azur",
    "R94": "Corse",
}


# ---------------- Merged tables ---------------- #

DATASET_FILES = {
    "mtpl1": os.path.join(DATA_DIR, "mtpl1_data.parquet"),
    "mtpl2": os.path.join(DATA_DIR, "mtpl2_data.parquet"),
}

# Claims with no policy record are patched in as policies with no history.
# A handful is a known data-quality issue, anything bigger is a broken join.
ORPHAN_EXPOSURE = 1.0
MAX_ORPHAN_POLICIES = 500


# ---------------- Exploration ---------------- #

REGION_SHAPE_FILE = "FRA_adm1.shp"
REGION_SHAPE_NAME_COL = "NAME_1"

MAX_CLAIM_COUNT_LABEL = 3
BOOTSTRAP_SAMPLES = 200
BOOTSTRAP_SEED = 421


# ---------------- Frequency model ---------------- #

STAN_SEED = 42
FIT_DRAWS = 250
FIT_TUNE = 250
FIT_CHAINS = 4

TRAIN_SAMPLE_SIZE = 50_000
EVAL_SAMPLE_SIZE = 1_000
SAMPLE_SEED = 4242

SUMMARY_QUANTILES = (0.10, 0.25, 0.50, 0.75, 0.90)

# Wide priors on unscaled predictors give means that overflow the count
# samplers; those draws are simulated as missing.
MAX_SIM_MEAN = 1e12

FREQ_FORMULA = "claim_count ~ vehicle_power + fuel + region + driver_age + vehicle_age"
