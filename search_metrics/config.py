import os


def _coerce_list(value: str) -> list:
    items = [item.strip() for item in str(value).split(",") if item.strip()]
    if not items:
        raise ValueError("empty list")
    return items


CONFIG_SCHEMA = {
    "AWS_REGION": ("ap-south-1", str),
    "OPENSEARCH_URL_PARAMETER": ("pms-elastic-search-url", str),
    "METRICS_INDICES": (["pms_green_dot", "pms-user-rooms"], _coerce_list),
    "METRICS_OUTPUT_DIR": ("metrics-output", str),
    "CHECK_INTERVAL": (30, int),
    "REQUEST_TIMEOUT": (30, int),
}


def _cast_value(raw_value, caster, default):
    try:
        return caster(raw_value)
    except (TypeError, ValueError):
        return default


def load_config(environ=None):
    environ = os.environ if environ is None else environ
    config = {}
    for key, (default, caster) in CONFIG_SCHEMA.items():
        raw = environ.get(key)
        if raw is None or raw == "":
            config[key] = default
        else:
            config[key] = _cast_value(raw, caster, default)
    return config
