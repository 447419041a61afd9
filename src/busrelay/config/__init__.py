"""Configuration: YAML + env overlay + CLI overrides."""

from busrelay.config.loader import _deep_update, load_config, load_config_with_env
from busrelay.config.schema import BusSelector, ProxyConfig, render_template

__all__ = ["BusSelector", "ProxyConfig", "_deep_update", "load_config", "load_config_with_env", "render_template"]
