import yaml
from pathlib import Path
from .models import AppConfig

def load_config(config_path: Path) -> AppConfig:
    """Loads YAML config and parses it into AppConfig Pydantic model."""
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path, 'r') as f:
        data = yaml.safe_load(f) or {}

    # Stream keys are opaque strings; YAML may have read numeric keys as ints
    stream_keys = data.get("stream_keys")
    if isinstance(stream_keys, dict):
        data["stream_keys"] = {str(k): str(v) for k, v in stream_keys.items() if v is not None}

    return AppConfig(**data)
