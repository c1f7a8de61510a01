"""
Trading Configuration Management Module

Provides YAML config file handling for the virtual grid bot.

Main Components:
- config_yaml: YAML file loading, saving, and validation utilities
"""

from .config_yaml import (
    save_config_to_yaml,
    load_config_document,
    load_config_from_yaml,
    load_yaml,
    validate_config_file,
    merge_configs,
    create_example_config
)

__all__ = [
    'save_config_to_yaml',
    'load_config_document',
    'load_config_from_yaml',
    'load_yaml',
    'validate_config_file',
    'merge_configs',
    'create_example_config'
]
