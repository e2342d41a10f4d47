"""
Centralized configuration manager.
Loads the YAML config over built-in defaults and provides typed access.

    - Schema validation for the fields the pipeline depends on
    - Dot-path access with defaults
    - Reset support for testing
"""

import copy
import os
import yaml
import logging

logger = logging.getLogger(__name__)

_BASE_DIR = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
_CONFIG_DIR = os.path.join(_BASE_DIR, "config")

MIN_TARGET_DIM = 64

_DEFAULTS = {
    "camera": {
        "use_webcam": True,
        "device": 0,
        "width": 1280,
        "height": 720,
        "fps": 60,
        "backend": "auto",
        "flip_horizontal": False,
        "warmup_frames": 5,
        "stall_timeout_ms": 2000,
        "reopen_interval_ms": 1000,
        "source_path": None,
    },
    "preprocessing": {
        "target_min_dim": 216,
        "use_gpu": True,
        "mean": [0.485, 0.456, 0.406],
        "std": [0.229, 0.224, 0.225],
    },
    "inference": {
        "model_path": "models/weights/asl_classifier.onnx",
        "execution_backend": "auto",
        "channel_order": "nchw",
        "output_layer_index": 0,
        "softmax_layer": "softmax_layer",
        "argmax_layer": "argmax_layer",
        "device_id": 0,
        "fp16": True,
    },
    "output": {
        "use_async_transfer": True,
        "labels_path": "config/labels.json",
    },
    "control": {
        "tick_hz": 50,
        "actions": {"B": "jump", "Stop": "quit"},
    },
    "visualization": {
        "enabled": True,
        "display_predicted_class": True,
        "window_name": "ASL Gesture Control",
        "text_color": [0, 0, 255],
        "font_scale": 50,
    },
    "debug": {
        "print_messages": False,
    },
    "logging": {
        "level": "INFO",
        "file": None,
    },
}

# Schema: required sections and their expected types
_CONFIG_SCHEMA = {
    "camera": {
        "use_webcam": bool,
        "width": int,
        "height": int,
        "fps": int,
    },
    "preprocessing": {
        "target_min_dim": int,
        "use_gpu": bool,
    },
    "inference": {
        "model_path": str,
        "execution_backend": str,
        "channel_order": str,
        "output_layer_index": int,
    },
    "output": {
        "use_async_transfer": bool,
        "labels_path": str,
    },
    "control": {
        "tick_hz": (int, float),
        "actions": dict,
    },
}


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base dict."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class Config:
    """Singleton configuration manager."""

    _instance = None
    _data = {}

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._data = copy.deepcopy(_DEFAULTS)
        return cls._instance

    def load(self, config_path=None):
        """Load configuration from YAML, merged over the defaults."""
        config_path = config_path or os.path.join(_CONFIG_DIR, "config.yaml")

        try:
            with open(config_path, "r") as f:
                loaded = yaml.safe_load(f) or {}
            logger.info("Loaded config from %s", config_path)
        except FileNotFoundError:
            logger.warning("Config file not found: %s, using defaults", config_path)
            loaded = {}

        if not isinstance(loaded, dict):
            logger.warning("Config root should be a mapping, got %s; using defaults",
                           type(loaded).__name__)
            loaded = {}

        self._data = _deep_merge(copy.deepcopy(_DEFAULTS), loaded)
        self._validate()
        self._clamp()
        return self

    def _validate(self):
        """Validate critical config fields against schema."""
        warnings = []
        for section_name, fields in _CONFIG_SCHEMA.items():
            section = self._data.get(section_name)
            if not isinstance(section, dict):
                warnings.append(f"Section '{section_name}' should be a dict, got {type(section).__name__}")
                continue
            for field_name, expected_type in fields.items():
                if field_name not in section:
                    continue
                value = section[field_name]
                # bool is an int subclass; don't accept it for numeric fields
                if isinstance(value, bool) and expected_type is not bool:
                    ok = False
                else:
                    ok = isinstance(value, expected_type)
                if not ok:
                    names = (expected_type.__name__ if isinstance(expected_type, type)
                             else "/".join(t.__name__ for t in expected_type))
                    warnings.append(
                        f"{section_name}.{field_name}: expected {names}, "
                        f"got {type(value).__name__} ({value!r})"
                    )

        if warnings:
            for w in warnings:
                logger.warning("Config validation: %s", w)
        else:
            logger.debug("Config validation passed")

    def _clamp(self):
        target = self.get("preprocessing.target_min_dim", MIN_TARGET_DIM)
        if isinstance(target, int) and target < MIN_TARGET_DIM:
            logger.warning("preprocessing.target_min_dim=%d raised to %d",
                           target, MIN_TARGET_DIM)
            self._data["preprocessing"]["target_min_dim"] = MIN_TARGET_DIM

    def get(self, key_path: str, default=None):
        """Get nested config value using dot notation: 'camera.width'."""
        keys = key_path.split(".")
        value = self._data
        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default
        return value

    def set(self, key_path: str, value):
        """Override a nested value (used for command-line flags)."""
        keys = key_path.split(".")
        section = self._data
        for key in keys[:-1]:
            section = section.setdefault(key, {})
        section[keys[-1]] = value

    def get_section(self, section: str) -> dict:
        """Get an entire config section."""
        return self._data.get(section, {})

    def resolve_path(self, path):
        """Resolve a config-relative path against the project root."""
        if path is None or os.path.isabs(path):
            return path
        return os.path.join(_BASE_DIR, path)

    @property
    def camera(self) -> dict:
        return self._data.get("camera", {})

    @property
    def preprocessing(self) -> dict:
        return self._data.get("preprocessing", {})

    @property
    def inference(self) -> dict:
        return self._data.get("inference", {})

    @property
    def output(self) -> dict:
        return self._data.get("output", {})

    @property
    def control(self) -> dict:
        return self._data.get("control", {})

    @property
    def visualization(self) -> dict:
        return self._data.get("visualization", {})

    @property
    def base_dir(self) -> str:
        return _BASE_DIR

    @classmethod
    def reset(cls):
        """Reset singleton instance (for testing)."""
        cls._instance = None
        cls._data = {}
