import os


def _coerce_bool(value: str) -> bool:
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _coerce_mode(value: str) -> str:
    mode = str(value).strip().lower()
    if mode not in {"multi", "single"}:
        raise ValueError(f"unknown mode {value!r}")
    return mode


CONFIG_SCHEMA = {
    "TARGET_URL": ("http://localhost:8080", str),
    "ENDPOINT": ("/addToChat", str),
    "MODE": ("multi", _coerce_mode),
    "VUS": (100, int),
    "ITERATIONS": (10000, int),
    "DURATION": (0, int),  # seconds; 0 means bounded by ITERATIONS only
    "ROOMS_FILE": ("./test-data.json", str),
    "REQUEST_TIMEOUT": (100.0, float),
    "DELAY_BASE": (1.0, float),
    "DELAY_JITTER": (0.4, float),
    "SINGLE_ROOM_DELAY": (0.7, float),
    "SUCCESS_THRESHOLD": (0.95, float),
    "METRICS_PORT": (0, int),
    "OUTPUT_DIR": ("./load_test_results", str),
    "TENANT_ID": ("amura", str),
    "EVENT_NAME": ("chat-categorizer", str),
    "LOCALE": ("en_US", str),
    "CONTEXT_TYPE": ("@NOTES", str),
    "SAVE_REQUEST_LOG": (True, _coerce_bool),
    "SEED": (None, int),
}


def _cast_value(raw_value, caster, default):
    try:
        return caster(raw_value)
    except (TypeError, ValueError):
        return default


def load_config(environ=None):
    """Read CONFIG_SCHEMA keys from the environment, falling back to defaults."""
    environ = os.environ if environ is None else environ
    config = {}
    for key, (default, caster) in CONFIG_SCHEMA.items():
        raw = environ.get(key)
        if raw is None or raw == "":
            config[key] = default
        else:
            config[key] = _cast_value(raw, caster, default)
    return config
