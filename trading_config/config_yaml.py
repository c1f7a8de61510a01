"""
YAML Configuration File Support

Handles loading and saving virtual grid bot configurations to/from YAML files.

Features:
- Load config from YAML into a validated BotConfig
- Save config to YAML
- Validation against the pydantic models
- Decimal/datetime serialization
- Config merging (file + CLI overrides)
"""

import yaml
from pathlib import Path
from typing import Dict, Any, Optional, Union
from decimal import Decimal
from datetime import datetime

from strategies.implementations.virtual_grid.config import BotConfig, build_config


STRATEGY_NAME = "virtual_grid"


# ============================================================================
# YAML Custom Representers (for Decimal serialization)
# ============================================================================

def decimal_representer(dumper, data):
    """Custom representer for Decimal type."""
    return dumper.represent_scalar('tag:yaml.org,2002:float', str(data))

def decimal_constructor(loader, node):
    """Custom constructor for Decimal type."""
    value = loader.construct_scalar(node)
    return Decimal(value.replace('_', ''))


class DecimalSafeLoader(yaml.SafeLoader):
    """Safe loader that reads YAML floats as Decimal."""


class DecimalSafeDumper(yaml.SafeDumper):
    """Safe dumper that writes Decimal as a plain YAML float."""


# Register custom handlers
DecimalSafeLoader.add_constructor('tag:yaml.org,2002:float', decimal_constructor)
DecimalSafeDumper.add_representer(Decimal, decimal_representer)


def load_yaml(file_path: Path) -> Any:
    """Read a YAML document with Decimal floats."""
    with open(file_path, 'r') as f:
        return yaml.load(f, Loader=DecimalSafeLoader)


# ============================================================================
# YAML Config Operations
# ============================================================================

def save_config_to_yaml(config: Union[BotConfig, Dict[str, Any]], file_path: Path) -> None:
    """
    Save configuration to YAML file.

    Args:
        config: BotConfig or plain configuration dictionary
        file_path: Path to save to
    """
    if isinstance(config, BotConfig):
        config = config.model_dump(mode="python", exclude_none=True)

    # Build complete config structure
    full_config = {
        "strategy": STRATEGY_NAME,
        "created_at": datetime.now().isoformat(),
        "version": "1.0",
        "config": config
    }

    # Write to YAML
    with open(file_path, 'w') as f:
        yaml.dump(
            full_config,
            f,
            Dumper=DecimalSafeDumper,
            default_flow_style=False,
            sort_keys=False,
            allow_unicode=True,
            indent=2
        )


def load_config_document(file_path: Path) -> Dict[str, Any]:
    """
    Load the raw configuration envelope from a YAML file.

    Returns:
        Dictionary with 'strategy', 'config' and 'metadata' keys

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If config structure is invalid
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    full_config = load_yaml(file_path)

    # Validate structure
    if not isinstance(full_config, dict):
        raise ValueError("Invalid config file: must be a YAML dictionary")

    strategy = full_config.get("strategy", STRATEGY_NAME)
    if strategy != STRATEGY_NAME:
        raise ValueError(f"Invalid config file: unknown strategy '{strategy}'")

    if "config" not in full_config:
        raise ValueError("Invalid config file: missing 'config' field")

    return {
        "strategy": strategy,
        "config": full_config["config"],
        "metadata": {
            "created_at": full_config.get("created_at"),
            "version": full_config.get("version", "1.0")
        }
    }


def load_config_from_yaml(file_path: Path, overrides: Optional[Dict[str, Any]] = None) -> BotConfig:
    """
    Load and validate a bot configuration.

    Raises:
        ConfigurationError: If any value fails validation
    """
    document = load_config_document(Path(file_path))
    data = document["config"]
    if overrides:
        data = merge_configs(data, overrides)
    return build_config(BotConfig, data)


def validate_config_file(file_path: Path) -> tuple[bool, Optional[str]]:
    """
    Validate a config file against the configuration models.

    Returns:
        (is_valid, error_message)
    """
    try:
        load_config_from_yaml(Path(file_path))
        return True, None
    except Exception as e:
        return False, str(e)


def merge_configs(base_config: Dict, overrides: Dict) -> Dict:
    """
    Merge two configurations (for CLI override support).

    Args:
        base_config: Base configuration (from file)
        overrides: Override values (from CLI args)

    Returns:
        Merged configuration
    """
    merged = base_config.copy()

    for key, value in overrides.items():
        if value is not None:  # Only override if value is provided
            merged[key] = value

    return merged


def create_example_config(file_path: Path = Path("configs/example_grid.yml")) -> Path:
    """
    Write an example virtual grid configuration.

    Useful for users to see the format and get started quickly.
    """
    file_path.parent.mkdir(parents=True, exist_ok=True)

    example = {
        "grids": [
            {
                "symbol": "BTC",
                "grid_spacing_pct": Decimal("1.0"),
                "total_investment_usd": Decimal("1000"),
                "leverage": 10,
                "max_positions": 4,
                "capital_reserve_ratio": Decimal("0.5"),
                "min_profit_after_fees_pct": Decimal("0.1"),
                "venue": "hyperliquid",
            },
        ],
        "signal_gate": {
            "min_signal_strength": Decimal("60"),
            "cooldown_ms": 30000,
        },
        "poll_interval_seconds": 1.0,
    }
    save_config_to_yaml(example, file_path)
    print(f"Created: {file_path}")
    return file_path


# ============================================================================
# Main Entry Point (for example generation)
# ============================================================================

if __name__ == "__main__":
    print("Creating example configuration file...\n")
    path = create_example_config()
    print("\nYou can use it as a template:")
    print(f"  python runbot.py --config {path}")
