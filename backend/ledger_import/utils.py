# JSON file helpers shared by the file-backed stores
import json
import logging
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def load_json(path: Path, default: Any) -> Any:
    """Load JSON from file, returning default when missing or unreadable"""
    if path.exists():
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable JSON file %s", path)
            return default
    return default


def save_json(path: Path, data: Any):
    """Save JSON to file, creating the parent directory if needed"""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
