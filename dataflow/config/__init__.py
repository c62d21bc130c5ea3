"""
Config Module

Candle generator configuration loading and validation.
"""

from .loader import GeneratorConfig, load_config

__all__ = [
    "GeneratorConfig",
    "load_config",
]
