"""
Configuration Management for the Multiple-Imputation Regression Engine

This module provides centralized configuration for imputation, model fitting,
pooling, result display, logging and runtime options.

Usage:
    from config import CONFIG

    # Access config
    print(CONFIG.get('imputation.n_imputations'))

    # Update config (runtime)
    CONFIG.update('imputation.n_neighbors', 5)

    # Get with default
    value = CONFIG.get('some.nested.key', default='default_value')
"""

import copy
import json
import os
from pathlib import Path
from typing import Any, Optional, Dict
import warnings


class ConfigManager:
    """
    Centralized configuration management with hierarchical key access.

    Supports:
    - Nested dictionary access with dot notation
    - Environment variable overrides (MIREG_<SECTION>_<KEY>)
    - Config validation
    - Runtime updates
    """

    def __init__(self, config_dict: Optional[Dict] = None):
        """
        Create a ConfigManager from the given configuration (or the module defaults) and apply environment overrides.

        Parameters:
            config_dict (dict | None): Optional initial configuration dictionary used instead of the built-in defaults.
        """
        self._config = config_dict or self._get_default_config()
        self._env_prefix = "MIREG_"
        self._load_env_overrides()

    @staticmethod
    def _get_default_config() -> Dict[str, Any]:
        """
        Provide the default nested configuration.

        Returns:
            Dict[str, Any]: sections 'imputation', 'modeling', 'pooling',
            'analysis', 'logging' and 'performance'.
        """
        return {

            # ========== IMPUTATION SETTINGS ==========
            "imputation": {
                "n_imputations": 5,
                "n_iterations": 3,  # Outer passes over the target variables
                "random_state": 42,
                "n_neighbors": 3,  # PMM donor neighbourhood size
                "n_knots": 3,  # Spline knots for predictors (0 = linear)
                "match": "kclosest",  # 'kclosest', 'weighted'
                "weighted_scale": 0.2,  # Tricube scale for 'weighted' matching
                "bootstrap": True,  # Refit each conditional model on a bootstrap sample
                "max_bootstrap_draws": 20,  # Redraws allowed when a resample is rank-deficient
            },

            # ========== MODEL SETTINGS ==========
            "modeling": {
                "default_knots": 4,
                "ci_level": 0.95,
                "ordinal_method": "bfgs",
                "ordinal_max_iter": 500,
            },

            # ========== POOLING SETTINGS ==========
            "pooling": {
                "max_df": 1e7,  # Clamp for Rubin df when between variance ~ 0
            },

            # ========== DISPLAY SETTINGS ==========
            "analysis": {
                "table_decimal_places": 3,
                "pvalue_bounds_lower": 0.001,
                "pvalue_bounds_upper": 0.999,
                "pvalue_format_small": "<0.001",
                "pvalue_format_large": ">0.999",
            },

            # ========== LOGGING SETTINGS ==========
            "logging": {
                "enabled": True,
                "level": "INFO",  # DEBUG, INFO, WARNING, ERROR, CRITICAL
                "format": "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
                "date_format": "%Y-%m-%d %H:%M:%S",

                # File Logging
                "file_enabled": False,
                "log_dir": "logs",
                "log_file": "mireg.log",
                "max_log_size": 10485760,  # 10MB in bytes
                "backup_count": 5,

                # Console Logging
                "console_enabled": True,
                "console_level": "INFO",

                # What to Log
                "log_analysis_operations": True,
                "log_performance": True,
            },

            # ========== PERFORMANCE SETTINGS ==========
            "performance": {
                "n_jobs": 1,  # Threads used for per-replicate fits
            },
        }

    def _load_env_overrides(self) -> None:
        """
        Apply overrides from environment variables that start with the MIREG_ prefix.

        MIREG_IMPUTATION_N_NEIGHBORS=5 sets imputation.n_neighbors. Values are
        parsed as JSON when possible so numbers and booleans keep their type;
        unknown keys emit a warning and are skipped.
        """
        for key, value in os.environ.items():
            if not key.startswith(self._env_prefix):
                continue

            parts = key[len(self._env_prefix):].lower().split('_')
            if len(parts) < 2:
                continue

            section = parts[0]
            key_name = '_'.join(parts[1:])

            try:
                parsed = json.loads(value)
            except ValueError:
                parsed = value

            try:
                self.update(f"{section}.{key_name}", parsed)
            except (KeyError, ValueError, TypeError) as e:
                warnings.warn(f"Failed to set env override {key}={value}: {e}", stacklevel=2)

    def get(self, key: str, default: Any = None) -> Any:
        """
        Retrieve a configuration value using a dot-separated key path.

        Parameters:
            key (str): Dot-separated path (e.g., "imputation.n_imputations").
            default: Value returned if the path does not exist.
        """
        value = self._config

        for k in key.split('.'):
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default

        return value

    def update(self, key: str, value: Any) -> None:
        """
        Set an existing configuration value identified by a dot-separated path.

        Raises:
            KeyError: If any path segment or the final key does not exist.
        """
        keys = key.split('.')
        config = self._config

        for k in keys[:-1]:
            if k not in config:
                raise KeyError(f"Config path '{'.'.join(keys[:-1])}' does not exist")
            config = config[k]

        final_key = keys[-1]
        if final_key not in config:
            raise KeyError(f"Config key '{key}' does not exist")

        config[final_key] = value

    def set_nested(self, key: str, value: Any, create: bool = False) -> None:
        """
        Set a value using a dot-separated path, optionally creating missing intermediate dictionaries.
        """
        keys = key.split('.')
        config = self._config

        for k in keys[:-1]:
            if k not in config:
                if create:
                    config[k] = {}
                else:
                    raise KeyError(f"Config path '{k}' does not exist")
            config = config[k]

        config[keys[-1]] = value

    def get_section(self, section: str) -> Dict[str, Any]:
        """Return a deep copy of a top-level configuration section."""
        result = self.get(section, {})
        return copy.deepcopy(result) if isinstance(result, dict) else result

    def to_dict(self) -> Dict[str, Any]:
        """Get a deep copy of the entire configuration dictionary."""
        return copy.deepcopy(self._config)

    def to_json(self, filepath: Optional[str] = None, pretty: bool = True) -> str:
        """
        Serialize the current configuration to a JSON string, optionally writing it to `filepath`.
        """
        json_str = json.dumps(self._config, indent=2 if pretty else None)

        if filepath:
            Path(filepath).write_text(json_str)

        return json_str

    def validate(self) -> tuple[bool, list[str]]:
        """
        Validate key configuration constraints and collect any violations.

        Checks:
        - `imputation.n_imputations`, `imputation.n_iterations` and `imputation.n_neighbors` are >= 1.
        - `imputation.n_knots` is 0 (linear) or >= 3.
        - `imputation.match` is 'kclosest' or 'weighted'.
        - `modeling.ci_level` lies strictly between 0 and 1.
        - `pooling.max_df` is positive.
        - `logging.level` is a standard level name.

        Returns:
            tuple: (is_valid, errors)
        """
        errors = []

        for key in ("imputation.n_imputations", "imputation.n_iterations", "imputation.n_neighbors"):
            value = self.get(key)
            if not isinstance(value, int) or value < 1:
                errors.append(f"{key} must be an integer >= 1")

        n_knots = self.get('imputation.n_knots')
        if not isinstance(n_knots, int) or (n_knots != 0 and n_knots < 3):
            errors.append("imputation.n_knots must be 0 or an integer >= 3")

        valid_match = ['kclosest', 'weighted']
        if self.get('imputation.match') not in valid_match:
            errors.append(f"imputation.match must be one of {valid_match}")

        ci_level = self.get('modeling.ci_level')
        if ci_level is None or not (0 < ci_level < 1):
            errors.append("modeling.ci_level must be between 0 and 1")

        max_df = self.get('pooling.max_df')
        if max_df is None or max_df <= 0:
            errors.append("pooling.max_df must be positive")

        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if self.get('logging.level') not in valid_levels:
            errors.append(f"logging.level must be one of {valid_levels}")

        return len(errors) == 0, errors

    def __repr__(self) -> str:
        return f"ConfigManager({len(self._config)} sections)"


# Global config instance
CONFIG = ConfigManager()
