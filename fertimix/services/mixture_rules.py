"""
Deterministic limits and defaults for mixture calculations.

This module centralizes constants so the solver and the query builder stay
deterministic, auditable, and consistent across services and tests.
"""
from typing import Dict, Optional
from pathlib import Path
import json
import logging

logger = logging.getLogger(__name__)

# Ceiling on candidate initial bases enumerated by the basis search
MAX_COMBINATIONS = 400000

# Ceiling on simplex pivots
MAX_STEPS = 1500

# Half-width of the window pinning phosphorus to unit weight
P_NEIGHBOR = 1e-9

# Concentration (%) of a phantom fertilizer when no real one supplies the nutrient
PHANTOM_FLOOR_PCT = 2e-3

# Default nutrient-to-phosphorus windows: (from, to)
DEFAULT_RATIOS = {
    "N": (1.75, 1.85),
    "K": (1.75, 1.85),
    "Mg": (0.25, 0.45),
}

# Default target mass of the mixture (kg)
DEFAULT_MASS = 10.0

SOLVER_LIMITS_PATH = Path(__file__).parent.parent / "data" / "solver_limits.json"


class SolverConfig:
    """Loads and provides access to solver limits."""

    _instance = None
    _config: Optional[Dict] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._load_config()
        return cls._instance

    @classmethod
    def _load_config(cls):
        """Load solver limits from JSON file."""
        try:
            with open(SOLVER_LIMITS_PATH, 'r', encoding='utf-8') as f:
                cls._config = json.load(f)
        except Exception as e:
            logger.error(f"Could not load solver limits: {e}")
            cls._config = {}

    @classmethod
    def reload(cls):
        """Drop the cached config so it is read again on next access."""
        cls._config = None

    @classmethod
    def _get_positive_int(cls, key: str, default: int) -> int:
        if cls._config is None:
            cls._load_config()
        value = cls._config.get(key, default)
        if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
            logger.warning(f"Invalid solver limit {key}={value!r}, using {default}")
            return default
        return value

    @classmethod
    def get_max_combinations(cls) -> int:
        """Maximum number of candidate bases the basis search may enumerate."""
        return cls._get_positive_int("max_combinations", MAX_COMBINATIONS)

    @classmethod
    def get_max_steps(cls) -> int:
        """Maximum number of simplex pivots."""
        return cls._get_positive_int("max_steps", MAX_STEPS)
