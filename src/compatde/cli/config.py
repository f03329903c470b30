"""
Configuration file support for the compatde CLI.

Supports YAML and JSON config files with CLI argument override.

Example config (YAML):

    counts: data/counts.txt
    metadata: data/samples.csv
    sample_column: sample
    factors: [compatibility, pollen, stage]
    filter:
      min_cpm: 0.5
      min_samples: 12
    fdr:
      alpha: 0.05
    mds:
      color_by: compatibility
      shape_by: stage
    comparisons:
      - name: stage1
        subset: {stage: stage1}
        factors: [compatibility, pollen]
        contrasts:
          pollination: compatible.pollinated - compatible.unpollinated
          incompatibility: incompatible.pollinated - compatible.pollinated
    output: results
"""

import copy
import json
from argparse import Namespace
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from compatde.analysis import AnalysisConfig

# CLI argument -> (config section or None for top level, config key)
CLI_OVERRIDES: Dict[str, Tuple[Optional[str], str]] = {
    'counts': (None, 'counts'),
    'metadata': (None, 'metadata'),
    'sample_column': (None, 'sample_column'),
    'output': (None, 'output'),
    'plot_format': (None, 'plot_format'),
    'min_cpm': ('filter', 'min_cpm'),
    'min_samples': ('filter', 'min_samples'),
    'alpha': ('fdr', 'alpha'),
    'lfc': ('fdr', 'lfc'),
}


def load_config(config_path: Path) -> Dict[str, Any]:
    """
    Load configuration from YAML or JSON file.

    Parameters:
        config_path: Path to config file (.yaml, .yml, or .json)

    Returns:
        Dictionary with configuration values. Relative input/output paths
        are resolved against the config file's directory.

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If file format is unsupported or invalid
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    suffix = config_path.suffix.lower()

    try:
        with open(config_path, 'r') as f:
            if suffix in ('.yaml', '.yml'):
                config = yaml.safe_load(f)
            elif suffix == '.json':
                config = json.load(f)
            else:
                raise ValueError(
                    f"Unsupported config format: {suffix}. "
                    f"Use .yaml, .yml, or .json"
                )
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in config file: {e}") from e
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in config file: {e}") from e

    if config is None:
        return {}

    if not isinstance(config, dict):
        raise ValueError("Config file must contain a dictionary/mapping at top level")

    base = config_path.parent
    for key in ('counts', 'metadata', 'output'):
        value = config.get(key)
        if value is not None and not Path(value).is_absolute():
            config[key] = str(base / value)

    return config


def _merge_value(cli_value: Any, config_value: Any, was_explicitly_set: bool) -> Any:
    """
    Merge a single config value with a CLI argument.

    Rules:
    - CLI args ALWAYS override config if explicitly set
    - If CLI arg not set, use config value
    """
    if was_explicitly_set:
        return cli_value
    return config_value


def merge_config_with_args(config: Dict[str, Any], args: Namespace) -> Dict[str, Any]:
    """
    Merge config file values with CLI arguments.

    Priority (highest to lowest):
    1. Explicitly provided CLI arguments (override flags default to None)
    2. Config file values
    3. AnalysisConfig defaults

    Parameters:
        config: Configuration dictionary from load_config()
        args: Parsed CLI arguments

    Returns:
        New configuration dictionary; the input is not modified

    Examples:
        >>> config = load_config(Path("analysis.yaml"))
        >>> args = parser.parse_args(["run", "--config", "analysis.yaml", "--alpha", "0.01"])
        >>> merged = merge_config_with_args(config, args)
        >>> merged['fdr']['alpha']
        0.01
    """
    merged = copy.deepcopy(config)

    for arg_name, (section, key) in CLI_OVERRIDES.items():
        cli_value = getattr(args, arg_name, None)
        was_explicit = cli_value is not None
        if isinstance(cli_value, Path):
            cli_value = str(cli_value)

        if section is None:
            target = merged
        else:
            if was_explicit and not isinstance(merged.get(section), dict):
                merged[section] = {}
            target = merged[section] if isinstance(merged.get(section), dict) else {}

        value = _merge_value(cli_value, target.get(key), was_explicit)
        if value is not None:
            target[key] = value

    return merged


def validate_config(config: Dict[str, Any]) -> AnalysisConfig:
    """
    Validate configuration structure and values.

    Parameters:
        config: Configuration dictionary

    Returns:
        The validated AnalysisConfig

    Raises:
        ValueError: If configuration is invalid
    """
    analysis_config = AnalysisConfig.from_dict(config)
    analysis_config.validate()
    return analysis_config
