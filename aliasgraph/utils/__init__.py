"""
Utilities: configuration, checkpoints, inspection and logging.

Components:
- Serialization policy configuration and YAML loading
- Saving/loading serial states with torch.save
- Parameter counts and aliasing-group inspection
- Logging setup

Example:
    >>> from aliasgraph.utils import load_config, save_serial_state
    >>>
    >>> config = load_config("configs/serial.yaml")
    >>> config.apply(model)
    >>> save_serial_state(model, "checkpoints/model.pt")
"""

from .config import (
    SerialConfig,
    load_config,
    save_config,
)

from .checkpoint import (
    save_serial_state,
    load_serial_state,
    get_checkpoint_info,
)

from .metrics import (
    count_parameters,
    count_parameters_by_kind,
    tensor_paths,
    aliasing_groups,
    storage_bytes,
)

from .logging import (
    setup_logging,
    ColoredFormatter,
    format_bytes,
)

__all__ = [
    # Config
    'SerialConfig',
    'load_config',
    'save_config',

    # Checkpoint
    'save_serial_state',
    'load_serial_state',
    'get_checkpoint_info',

    # Metrics
    'count_parameters',
    'count_parameters_by_kind',
    'tensor_paths',
    'aliasing_groups',
    'storage_bytes',

    # Logging
    'setup_logging',
    'ColoredFormatter',
    'format_bytes',
]
