# respec_engine/settings.py
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict

import commentjson
from dotenv import load_dotenv

load_dotenv()

# Interpretation service. Leaving the model unset keeps the engine on its deterministic path.
LLM_MODEL = os.getenv("RESPEC_LLM_MODEL") or None
LLM_TIMEOUT = float(os.getenv("RESPEC_LLM_TIMEOUT", "20"))
VERTEX_PROJECT = os.getenv("VERTEX_PROJECT")
VERTEX_REGION = os.getenv("VERTEX_REGION", "us-central1")

# Resolution policy
CONFIDENCE_THRESHOLD = float(os.getenv("RESPEC_CONFIDENCE_THRESHOLD", "0.7"))
MAX_CONFLICT_CYCLES = int(os.getenv("RESPEC_MAX_CONFLICT_CYCLES", "3"))

# Token cap for the per-session resolution history
HISTORY_MAX_TOKENS = int(os.getenv("RESPEC_HISTORY_MAX_TOKENS", "4000"))

RULES_PATH = os.getenv("RESPEC_RULES_PATH") or None


def load_rules_config(path: str | Path | None = None) -> Dict[str, Any]:
    """
    Load mutex rules + extra unit conversions from a JSON-with-comments file.
    Fails fast if the file or the required top-level keys are missing.

    Returns an empty config when no path is given and RESPEC_RULES_PATH is unset.
    """
    path = path or RULES_PATH
    if not path:
        return {"UNIT_CONVERSIONS": {}, "MUTEX_RULES": []}

    cfg_path = Path(path)
    if not cfg_path.exists():
        raise FileNotFoundError(f"Conflict rules config file not found at '{cfg_path}'.")

    with cfg_path.open("r", encoding="utf-8") as f:
        data = commentjson.load(f)

    if not isinstance(data, dict):
        raise ValueError(f"Conflict rules config must be an object: {cfg_path}")

    conversions = data.get("UNIT_CONVERSIONS", {})
    if not isinstance(conversions, dict):
        raise ValueError("Conflict rules config has invalid key: UNIT_CONVERSIONS")
    for dimension, table in conversions.items():
        if not isinstance(table, dict) or not all(isinstance(v, (int, float)) for v in table.values()):
            raise ValueError(f"UNIT_CONVERSIONS.{dimension} must map unit -> numeric factor")

    rules = data.get("MUTEX_RULES", [])
    if not isinstance(rules, list):
        raise ValueError("Conflict rules config has invalid key: MUTEX_RULES")
    for i, rule in enumerate(rules):
        for key in ("id", "description", "conditions", "options"):
            if key not in rule:
                raise ValueError(f"MUTEX_RULES[{i}] missing key: {key}")
        if len(rule["conditions"]) < 2:
            raise ValueError(f"MUTEX_RULES[{i}] needs at least two conditions")
        if len(rule["options"]) != 2:
            raise ValueError(f"MUTEX_RULES[{i}] must declare exactly two options")

    return {"UNIT_CONVERSIONS": conversions, "MUTEX_RULES": rules}
