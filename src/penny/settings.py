import json
from pathlib import Path

from penny.errors import PennyError

CONFIG_DIR = Path.home() / ".config" / "penny"
SETTINGS_PATH = CONFIG_DIR / "settings.json"

DEFAULT_DATA_DIR = Path.home() / "Documents" / "penny"

DEFAULTS = {
    "data_dir": str(DEFAULT_DATA_DIR),
    "use_classifier": True,
    "classifier_model": "gpt-4o-mini",
    "classifier_timeout": 60,
    "classifier_batch_size": 50,
    "dedup_date_tolerance_days": 0,
    "dedup_similarity_threshold": 0.8,
}


def load_settings() -> dict:
    """Saved settings merged over DEFAULTS; unknown keys are kept."""
    if not SETTINGS_PATH.exists():
        return dict(DEFAULTS)
    with open(SETTINGS_PATH) as f:
        try:
            saved = json.loads(f.read())
        except json.JSONDecodeError as e:
            raise PennyError(
                f"Settings file {SETTINGS_PATH} is not valid JSON: {e}",
                "Fix or delete the file, then run `penny init`.",
            ) from e
    if not isinstance(saved, dict):
        raise PennyError(f"Settings file {SETTINGS_PATH} must hold a JSON object")
    return {**DEFAULTS, **saved}


def save_settings(settings: dict) -> None:
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    with open(SETTINGS_PATH, "w") as f:
        f.write(json.dumps(settings, indent=2) + "\n")


def get_data_dir() -> Path:
    return Path(load_settings()["data_dir"])
