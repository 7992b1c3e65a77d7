"""Checkpoint saving and loading of module serial states."""

import torch
from pathlib import Path
from typing import Optional, Dict, Any, Union
import logging

from ..core.module import Module
from ..transforms.serial import TYPENAME_FIELD, from_serial_state

logger = logging.getLogger(__name__)


def save_serial_state(
    module: Module,
    save_path: Union[str, Path] = "module.pt",
    metadata: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Save a module tree's serial state.

    The state follows the module's serial policy (see ``Module.serial_mode``).
    ``torch.save`` keeps storages shared between tensors shared on disk, so
    weight tying survives a save/load round trip.

    Args:
        module: Root of the tree to save
        save_path: Path to save checkpoint
        metadata: Additional metadata to save

    Returns:
        The checkpoint dict that was written

    Examples:
        >>> model.light_serial()
        >>> save_serial_state(model, "checkpoints/rnn.pt", metadata={'step': 5000})
    """
    save_path = Path(save_path)
    save_path.parent.mkdir(parents=True, exist_ok=True)

    checkpoint = {
        'state': module.get_serial_state(),
    }

    if metadata is not None:
        checkpoint['metadata'] = metadata

    torch.save(checkpoint, save_path)
    logger.info(f"Saved {type(module).__name__} serial state to {save_path}")
    return checkpoint


def load_serial_state(
    checkpoint_path: Union[str, Path],
    map_location: Optional[Union[str, torch.device]] = None,
    rebuild: bool = True,
    weights_only: bool = True,
) -> Dict[str, Any]:
    """Load a checkpoint written by ``save_serial_state``.

    Args:
        checkpoint_path: Path to checkpoint file
        map_location: Device to map tensors to (default: cpu)
        rebuild: Also rebuild the live module under the 'module' key
        weights_only: Passed to ``torch.load``; set False only for trusted
            files whose modules hold arbitrary Python objects

    Returns:
        Dictionary with 'state', 'metadata' (if saved) and 'module' (if
        ``rebuild``)

    Raises:
        FileNotFoundError: If the checkpoint does not exist
        ValueError: If the file holds no module state

    Examples:
        >>> checkpoint = load_serial_state("checkpoints/rnn.pt")
        >>> model = checkpoint['module']
    """
    checkpoint_path = Path(checkpoint_path)

    if not checkpoint_path.exists():
        raise FileNotFoundError(f"Checkpoint not found: {checkpoint_path}")

    logger.info(f"Loading serial state from {checkpoint_path}")

    if map_location is None:
        map_location = 'cpu'

    checkpoint = torch.load(checkpoint_path, map_location=map_location, weights_only=weights_only)

    state = checkpoint.get('state') if isinstance(checkpoint, dict) else None
    if not isinstance(state, dict) or TYPENAME_FIELD not in state:
        raise ValueError(f"{checkpoint_path} does not contain a module serial state")

    if rebuild:
        checkpoint['module'] = from_serial_state(state)
        logger.info(f"Rebuilt {state[TYPENAME_FIELD]} module")

    if 'metadata' in checkpoint:
        logger.info(f"Checkpoint metadata: {checkpoint['metadata']}")

    return checkpoint


def get_checkpoint_info(checkpoint_path: Union[str, Path]) -> Dict[str, Any]:
    """Get information about a checkpoint without rebuilding the module.

    Args:
        checkpoint_path: Path to checkpoint file

    Returns:
        Dictionary with path, size, root module kind and metadata

    Examples:
        >>> info = get_checkpoint_info("checkpoint.pt")
        >>> print(f"Kind: {info['typename']}")
    """
    checkpoint_path = Path(checkpoint_path)

    if not checkpoint_path.exists():
        raise FileNotFoundError(f"Checkpoint not found: {checkpoint_path}")

    checkpoint = torch.load(checkpoint_path, map_location='cpu', weights_only=True)

    state = checkpoint.get('state', {})
    info = {
        'path': str(checkpoint_path),
        'size_mb': checkpoint_path.stat().st_size / (1024 * 1024),
        'typename': state.get(TYPENAME_FIELD),
        'has_state': TYPENAME_FIELD in state,
    }

    if 'metadata' in checkpoint:
        info['metadata'] = checkpoint['metadata']

    return info
