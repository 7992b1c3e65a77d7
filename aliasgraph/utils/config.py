"""
Configuration management for serialization policies.

A ``SerialConfig`` names how a module tree is persisted: which fields are
emptied and which element type the stored tensors get. Configs are plain
dataclasses and round-trip through YAML.

Example:
    >>> from aliasgraph.utils import SerialConfig, load_config
    >>>
    >>> # Load from YAML
    >>> config = load_config('configs/serial.yaml')
    >>>
    >>> # Create programmatically
    >>> config = SerialConfig(mode='light', dtype='float')
    >>> config.apply(model)
"""

import logging
import yaml
from dataclasses import dataclass, asdict, field
from typing import Optional, Dict, Any, List
from pathlib import Path

from ..core.interface import resolve_dtype
from ..core.module import Module

logger = logging.getLogger(__name__)


SERIAL_MODES = ('heavy', 'medium', 'light', 'custom')


@dataclass
class SerialConfig:
    """
    Serialization policy configuration.

    Args:
        mode: 'heavy' (keep everything), 'medium' (drop outputs and
            buffers), 'light' (also drop gradients) or 'custom'
        dtype: Element type name for stored tensors (default: None, keep)
        empty: Extra field names to empty; the whole set for 'custom'

    Example:
        >>> config = SerialConfig(mode='custom', empty=['output', 'cache'])
    """

    mode: str = 'heavy'
    dtype: Optional[str] = None
    empty: List[str] = field(default_factory=list)

    def __post_init__(self):
        """Validate configuration."""
        if self.mode not in SERIAL_MODES:
            raise ValueError(f"mode must be one of {SERIAL_MODES}, got '{self.mode}'")
        if isinstance(self.empty, str):
            raise ValueError(f"empty must be a list of field names, got '{self.empty}'")
        if self.mode == 'custom' and not self.empty:
            raise ValueError("mode 'custom' requires a non-empty 'empty' list")
        if self.dtype is not None:
            # fail at load time rather than at save time
            resolve_dtype(self.dtype)

    def empty_fields(self, module: Module) -> List[str]:
        """Field names emptied on ``module`` under this policy."""
        if self.mode == 'heavy':
            names = []
        elif self.mode == 'medium':
            names = list(module.medium_empty)
        elif self.mode == 'light':
            names = list(module.medium_empty) + list(module.grad_parameter_names)
        else:
            names = []
        for name in self.empty:
            if name not in names:
                names.append(name)
        return names

    def apply(self, module: Module) -> Module:
        """Set this policy on ``module`` and everything reachable from it."""
        module.serial_mode(self.empty_fields(module), self.dtype)
        logger.debug(f"Applied {self.mode} serial mode to {type(module).__name__}")
        return module

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> 'SerialConfig':
        """Create from dictionary, ignoring the optional 'serial' wrapper key."""
        config_dict = config_dict.get('serial', config_dict)
        return cls(
            mode=config_dict.get('mode', 'heavy'),
            dtype=config_dict.get('dtype'),
            empty=config_dict.get('empty') or [],
        )


# ============================================================================
# YAML UTILITIES
# ============================================================================

def load_config(config_path: str) -> SerialConfig:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to YAML config file

    Returns:
        SerialConfig instance

    Example:
        >>> config = load_config('configs/serial.yaml')
        >>> print(config.mode)  # light
    """
    with open(config_path, 'r') as f:
        config_dict = yaml.safe_load(f) or {}

    return SerialConfig.from_dict(config_dict)


def save_config(config: SerialConfig, config_path: str):
    """
    Save configuration to YAML file.

    Args:
        config: SerialConfig instance
        config_path: Path to save YAML file
    """
    config_dict = {'serial': config.to_dict()}

    # Create directory if needed
    Path(config_path).parent.mkdir(parents=True, exist_ok=True)

    with open(config_path, 'w') as f:
        yaml.dump(config_dict, f, default_flow_style=False, sort_keys=False)

    logger.info(f"Config saved to: {config_path}")
