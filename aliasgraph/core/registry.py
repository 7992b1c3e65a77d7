"""
Global module-kind registry with zero magic.

Module kinds register themselves via decorator. The registered name is what
serial states record under ``'_typename'``, so a state can be turned back
into a live module tree without importing anything by string path.
Lookup is explicit - no auto-discovery, no side effects.
"""

from typing import Callable, Dict, List, Optional, Type
import inspect

from .interface import ModuleBase


class ModuleRegistry:
    """
    Global registry for module kinds.

    Design principles:
    - Explicit registration (decorator)
    - Two-way lookup (name -> class for rebuilding, class -> name for states)
    - Clear errors (helpful messages)

    Example:
        >>> from aliasgraph.core import Module, register_module
        >>>
        >>> @register_module('my_layer')
        >>> class MyLayer(Module):
        ...     pass
        >>>
        >>> ModuleRegistry.get('my_layer')
        <class 'MyLayer'>
        >>> ModuleRegistry.name_of(MyLayer)
        'my_layer'
    """

    # Name -> Class
    _registry: Dict[str, Type[ModuleBase]] = {}

    # Track registration metadata for debugging
    _metadata: Dict[str, Dict] = {}

    @classmethod
    def register(cls, name: str, override: bool = False) -> Callable:
        """
        Register a module kind.

        Args:
            name: Unique kind name
            override: Allow overriding an existing registration (default: False)

        Returns:
            Decorator function

        Raises:
            ValueError: If the name is taken and override=False
            TypeError: If the decorated class is not a module
        """
        def decorator(module_cls: Type[ModuleBase]) -> Type[ModuleBase]:
            if not (inspect.isclass(module_cls) and issubclass(module_cls, ModuleBase)):
                raise TypeError(
                    f"Only module classes can be registered, got {module_cls!r}"
                )

            if name in cls._registry and not override:
                existing = cls._registry[name]
                raise ValueError(
                    f"Module kind '{name}' already registered. "
                    f"Existing: {existing.__module__}.{existing.__qualname__}. "
                    f"Use override=True to replace."
                )

            cls._registry[name] = module_cls
            cls._metadata[name] = {
                'module': module_cls.__module__,
                'class': module_cls.__qualname__,
                'doc': inspect.getdoc(module_cls),
            }
            return module_cls

        return decorator

    @classmethod
    def get(cls, name: str) -> Type[ModuleBase]:
        """
        Get a registered module class.

        Raises:
            ValueError: If no kind is registered under ``name``
        """
        if name not in cls._registry:
            available = sorted(cls._registry.keys())
            raise ValueError(
                f"Module kind '{name}' not found. "
                f"Available kinds: {available}"
            )
        return cls._registry[name]

    @classmethod
    def has(cls, name: str) -> bool:
        """Check if a module kind is registered."""
        return name in cls._registry

    @classmethod
    def name_of(cls, module_cls: Type[ModuleBase]) -> Optional[str]:
        """Registered name of ``module_cls``, or None if it was never registered."""
        for name, registered in cls._registry.items():
            if registered is module_cls:
                return name
        return None

    @classmethod
    def list_kinds(cls, include_metadata: bool = False) -> List[str] | Dict[str, Dict]:
        """
        List all registered module kinds.

        Args:
            include_metadata: If True, return dict with metadata
        """
        if include_metadata:
            return dict(cls._metadata)
        return sorted(cls._registry.keys())

    @classmethod
    def clear(cls, name: Optional[str] = None):
        """
        Clear registry (mainly for testing).

        Args:
            name: If provided, remove only this kind.
                  If None, clear everything.
        """
        if name:
            cls._registry.pop(name, None)
            cls._metadata.pop(name, None)
        else:
            cls._registry.clear()
            cls._metadata.clear()


# Convenience function (more readable than ModuleRegistry.register)
def register_module(name: str, override: bool = False) -> Callable:
    """
    Register a module kind (convenience wrapper).

    Example:
        >>> @register_module('gated_linear')
        >>> class GatedLinear(Linear):
        ...     parameter_names = ('weight', 'bias', 'gate')
        ...     grad_parameter_names = ('grad_weight', 'grad_bias', 'grad_gate')
    """
    return ModuleRegistry.register(name, override)


def get_module_class(name: str) -> Type[ModuleBase]:
    """Get module class (convenience wrapper)."""
    return ModuleRegistry.get(name)
