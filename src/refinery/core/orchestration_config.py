"""Layered orchestration configuration.

The effective configuration for a session is built from three layers,
later layers winning::

    DEFAULT_CONFIG  <-  persisted overrides (store)  <-  request overrides

Mappings merge key by key, recursively.  Any other value (lists included,
so ``variants`` is always replaced wholesale) is taken from the later layer.
"""
from __future__ import annotations

import copy
import logging
from typing import Any, Mapping, Optional

from refinery.core.errors import InvalidRequest

logger = logging.getLogger("refinery.orchestration_config")

CONFIG_KEY = "orchestration-config"

DEFAULT_CONFIG: dict[str, Any] = {
    "orchestration": {
        "parallelConcurrency": 3,
        "maxIterations": 3,
        "mode": "quality",
        "agentRetries": 2,
        "retryBaseDelay": 1.0,
        "enableReflectCritic": True,
    },
    "quality": {
        "threshold": 0.85,
        "passThreshold": 0.85,
        "scoreWeights": {
            "correctness": 0.4,
            "performance": 0.3,
            "style": 0.3,
        },
    },
    "testing": {
        "quickTestTimeout": 5.0,
        "enableQuickTests": True,
    },
    "agents": {
        "draft": {"model": "fast-small", "temperature": 0.7},
        "polish": {"model": "fast-precise", "temperature": 0.3},
        "critic": {"model": "fast-medium", "temperature": 0.5},
        "creative": {"model": "fast-medium", "temperature": 0.9},
    },
    "caching": {
        "enabled": True,
        "ttl": 86400,
    },
    "budget": {
        "maxTokensPerRequest": 4000,
    },
    "ux": {
        "progressUpdateInterval": 1.0,
    },
    "variants": [
        {"name": "default", "modifier": "", "agentConfig": "draft"},
        {"name": "creative", "modifier": "Be creative and innovative. Think outside the box.", "agentConfig": "creative"},
        {"name": "robust", "modifier": "Focus on correctness, edge cases, and defensive programming.", "agentConfig": "draft"},
        {"name": "efficient", "modifier": "Optimize for performance and resource efficiency.", "agentConfig": "draft"},
    ],
}

PLACEHOLDER_MESSAGES = [
    "Thinking deeply about your request...",
    "Exploring different approaches...",
    "Running quality checks...",
    "Refining the solution...",
    "Applying best practices...",
    "Testing edge cases...",
    "Optimizing the output...",
    "Polishing the final result...",
    "Almost there...",
    "Finalizing...",
]

SESSION_MODES = {"quality", "fast", "reflect"}


def deep_merge(*layers: Optional[Mapping[str, Any]]) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for layer in layers:
        if not layer:
            continue
        for key, value in layer.items():
            if isinstance(value, Mapping):
                base = result.get(key)
                result[key] = deep_merge(base if isinstance(base, Mapping) else {}, value)
            else:
                result[key] = copy.deepcopy(value)
    return result


_MAPPING_SECTIONS = ("orchestration", "quality", "testing", "agents", "caching", "budget", "ux")

# (section, key, kind, minimum); kind "int" or "number"
_NUMERIC_FIELDS = (
    ("orchestration", "parallelConcurrency", "int", 1),
    ("orchestration", "maxIterations", "int", 1),
    ("orchestration", "agentRetries", "int", 1),
    ("orchestration", "retryBaseDelay", "number", 0),
    ("quality", "threshold", "number", 0),
    ("quality", "passThreshold", "number", 0),
    ("testing", "quickTestTimeout", "number", 0),
    ("caching", "ttl", "number", 0),
    ("budget", "maxTokensPerRequest", "int", 0),
    ("ux", "progressUpdateInterval", "number", 0),
)

_BOOLEAN_FIELDS = (
    ("orchestration", "enableReflectCritic"),
    ("testing", "enableQuickTests"),
    ("caching", "enabled"),
)


def _is_number(value: Any, kind: str) -> bool:
    if isinstance(value, bool):
        return False
    if kind == "int":
        return isinstance(value, int)
    return isinstance(value, (int, float))


def validate_config(config: Mapping[str, Any]) -> None:
    """Raise ``InvalidRequest`` unless *config* has the shape the pipeline reads."""
    for section in _MAPPING_SECTIONS:
        if not isinstance(config.get(section), Mapping):
            raise InvalidRequest(f"config section {section!r} must be an object")

    for section, key, kind, minimum in _NUMERIC_FIELDS:
        if key not in config[section]:
            continue
        value = config[section][key]
        if not _is_number(value, kind) or value < minimum:
            expected = "an integer" if kind == "int" else "a number"
            raise InvalidRequest(f"{section}.{key} must be {expected} >= {minimum}")

    for section, key in _BOOLEAN_FIELDS:
        if key in config[section] and not isinstance(config[section][key], bool):
            raise InvalidRequest(f"{section}.{key} must be a boolean")

    mode = config["orchestration"].get("mode")
    if mode is not None and mode not in SESSION_MODES:
        raise InvalidRequest(f"orchestration.mode must be one of {sorted(SESSION_MODES)}")

    weights = config["quality"].get("scoreWeights")
    if weights is not None:
        if not isinstance(weights, Mapping) or not all(_is_number(w, "number") for w in weights.values()):
            raise InvalidRequest("quality.scoreWeights must map metric names to numbers")

    for name, profile in config["agents"].items():
        if not isinstance(profile, Mapping):
            raise InvalidRequest(f"agents.{name} must be an object")

    variants = config.get("variants")
    if not isinstance(variants, list):
        raise InvalidRequest("variants must be a list")
    for i, variant in enumerate(variants):
        if not isinstance(variant, Mapping):
            raise InvalidRequest(f"variants[{i}] must be an object")
        for key in ("name", "modifier", "agentConfig"):
            if key in variant and not isinstance(variant[key], str):
                raise InvalidRequest(f"variants[{i}].{key} must be a string")


def load_config(store: Any = None, overrides: Optional[Mapping[str, Any]] = None) -> dict[str, Any]:
    """Resolve the effective configuration: defaults <- store <- overrides.

    A persisted layer that is unreadable or fails ``validate_config`` is
    logged and skipped.  Overrides are merged as given; callers validate.
    """
    persisted: Any = {}
    if store is not None:
        try:
            persisted = store.get(CONFIG_KEY) or {}
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to load persisted config: %s", exc)
            persisted = {}
        if not isinstance(persisted, Mapping):
            logger.warning("Ignoring persisted config of type %s", type(persisted).__name__)
            persisted = {}
        elif persisted:
            try:
                validate_config(deep_merge(DEFAULT_CONFIG, persisted))
            except InvalidRequest as exc:
                logger.warning("Ignoring invalid persisted config: %s", exc)
                persisted = {}
    return deep_merge(DEFAULT_CONFIG, persisted, overrides)


def save_config(store: Any, config: Mapping[str, Any]) -> bool:
    """Persist the middle (stored) configuration layer."""
    if store is None:
        return False
    try:
        store.put(CONFIG_KEY, dict(config))
    except Exception as exc:  # noqa: BLE001
        logger.error("Failed to save config: %s", exc)
        return False
    return True
