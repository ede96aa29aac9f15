import os
from pathlib import Path

# Track which parameters were overridden from environment
_overridden_params = []


def _env_int(key, default):
    """Get integer from environment variable."""
    val = os.environ.get(key)
    if val is not None:
        result = int(val)
        _overridden_params.append((key, default, result))
        return result
    return default


def _env_float(key, default):
    """Get float from environment variable."""
    val = os.environ.get(key)
    if val is not None:
        result = float(val)
        _overridden_params.append((key, default, result))
        return result
    return default


def _env_bool(key, default):
    """Get boolean from environment variable (accepts true/false/1/0/yes/no)."""
    val = os.environ.get(key)
    if val is None:
        return default
    result = val.lower() in ('true', '1', 'yes', 'on')
    _overridden_params.append((key, default, result))
    return result


def _env_str(key, default):
    """Get string from environment variable."""
    val = os.environ.get(key)
    if val is not None:
        _overridden_params.append((key, default, val))
        return val
    return default


def overridden_params():
    """(key, default, value) for every setting taken from the environment."""
    return list(_overridden_params)


# -------- WORKER POOL --------
MAX_WORKERS = _env_int('MAX_WORKERS', 4)
WORKER_INIT_TIMEOUT_S = _env_float('WORKER_INIT_TIMEOUT_S', 30.0)
TRIAL_TIMEOUT_S = _env_float('TRIAL_TIMEOUT_S', 0.0)  # 0 disables the per-trial limit
RESPAWN_ON_TIMEOUT = _env_bool('RESPAWN_ON_TIMEOUT', True)

# -------- GAME TRIALS --------
MAX_MOVES = _env_int('MAX_MOVES', 150)
TIME_PER_MOVE_MS = _env_int('TIME_PER_MOVE_MS', 100)
MIN_MOVE_TIME_MS = _env_int('MIN_MOVE_TIME_MS', 10)

MATERIAL_THRESHOLD_CP = _env_int('MATERIAL_THRESHOLD_CP', 1500)  # floor; a larger UI value wins
ADJUDICATION_MIN_PLY = _env_int('ADJUDICATION_MIN_PLY', 20)

REPETITION_LIMIT = _env_int('REPETITION_LIMIT', 3)
FIFTY_MOVE_PLIES = _env_int('FIFTY_MOVE_PLIES', 100)

# Texel sampling window (plies counted from the start position)
SAMPLE_MIN_PLY = _env_int('SAMPLE_MIN_PLY', 12)
SAMPLE_MAX_PLY = _env_int('SAMPLE_MAX_PLY', 120)
SAMPLE_EVERY = _env_int('SAMPLE_EVERY', 4)
SAMPLE_MIN_PIECES = _env_int('SAMPLE_MIN_PIECES', 4)  # strictly more pieces than this
MAX_SAMPLES_PER_GAME = _env_int('MAX_SAMPLES_PER_GAME', 32)

# -------- TEXEL TUNING --------
TEXEL_CP_SCALE = _env_float('TEXEL_CP_SCALE', 400.0)
TEXEL_ROUNDS = _env_int('TEXEL_ROUNDS', 2)
TEXEL_MIN_STEP_FRACTION = _env_float('TEXEL_MIN_STEP_FRACTION', 0.25)
TEXEL_MAX_ITERATIONS = _env_int('TEXEL_MAX_ITERATIONS', 8)
TEXEL_IMPROVEMENT_EPS = _env_float('TEXEL_IMPROVEMENT_EPS', 1e-6)
TEXEL_PROB_CLAMP = 1e-6

# -------- PATHS --------
DATA_DIR = Path(_env_str('DATA_DIR', 'data'))
SAMPLES_FILE = DATA_DIR / 'texel_samples.jsonl'
FEATURES_FILE = DATA_DIR / 'texel_features.jsonl'
TUNED_PARAMS_FILE = DATA_DIR / 'eval_params_tuned.json'
