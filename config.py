"""
Configuration management for image2mesh
"""
import copy
import json
from pathlib import Path
from typing import Any, Dict
import logging

logger = logging.getLogger(__name__)


class Config:
    """Application configuration manager"""

    DEFAULT_CONFIG = {
        "app": {
            "name": "image2mesh",
            "version": "1.0.0",
            "output_dir": str(Path.home() / "Documents" / "image2mesh"),
        },
        "providers": {
            "huggingface": {
                "enabled": True,
                "priority": 1,
                "timeout_seconds": 60,
            },
            "rodin": {
                "enabled": True,
                "priority": 2,
                "timeout_seconds": 120,
            },
            "csm": {
                "enabled": True,
                "priority": 3,
                "timeout_seconds": 90,
                "poll_initial_seconds": 4.0,
                "poll_step_seconds": 0.0,
                "poll_max_seconds": 4.0,
            },
            "meshy": {
                "enabled": True,
                "priority": 4,
                "timeout_seconds": 180,
                "poll_initial_seconds": 2.0,
                "poll_step_seconds": 0.5,
                "poll_max_seconds": 6.0,
            },
        },
        "credentials": {
            "huggingface": "",
            "rodin": "",
            "csm": "",
            "meshy": "",
        },
        "reconstruction": {
            "grid_segments": 200,
            "plane_width": 3.0,
            "normal_strength": 4.0,
            "displacement_intensity": 2.0,
            "smoothing_passes": 1,
        },
        "normalizer": {
            "target_size": 2.5,
        },
        "http": {
            "timeout_seconds": 60.0,
        },
    }

    def __init__(self, config_path: str = None, persist: bool = True):
        """Initialize configuration

        Args:
            config_path: Path to config file. If None, uses default location.
            persist: Write the defaults out when no file exists yet.
        """
        if config_path is None:
            config_dir = Path.home() / ".image2mesh"
            self.config_path = config_dir / "config.json"
        else:
            self.config_path = Path(config_path)

        self.persist = persist
        self.config: Dict[str, Any] = {}
        self.load()

    def load(self):
        """Load configuration from file or create default"""
        if self.config_path.exists():
            try:
                with open(self.config_path, "r") as f:
                    self.config = json.load(f)
                logger.info("Loaded configuration from %s", self.config_path)
                self._merge_defaults()
            except (OSError, ValueError) as e:
                logger.error("Failed to load config: %s. Using defaults.", e)
                self.config = copy.deepcopy(self.DEFAULT_CONFIG)
        else:
            logger.info("No config file found. Using defaults.")
            self.config = copy.deepcopy(self.DEFAULT_CONFIG)
            if self.persist:
                self.save()

    def save(self):
        """Save configuration to file"""
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_path, "w") as f:
                json.dump(self.config, f, indent=2)
            logger.info("Saved configuration to %s", self.config_path)
        except OSError as e:
            logger.error("Failed to save config: %s", e)

    def get(self, key_path: str, default=None):
        """Get configuration value using dot notation

        Args:
            key_path: Dot-separated path (e.g., "providers.meshy.timeout_seconds")
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        value = self.config
        for key in key_path.split("."):
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default
        return value

    def set(self, key_path: str, value: Any):
        """Set configuration value using dot notation"""
        keys = key_path.split(".")
        target = self.config
        for key in keys[:-1]:
            target = target.setdefault(key, {})
        target[keys[-1]] = value

    def _merge_defaults(self):
        """Merge loaded config with defaults to ensure all keys exist"""

        def merge_dict(default: dict, loaded: dict) -> dict:
            result = copy.deepcopy(default)
            for key, value in loaded.items():
                if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                    result[key] = merge_dict(result[key], value)
                else:
                    result[key] = value
            return result

        self.config = merge_dict(self.DEFAULT_CONFIG, self.config)
