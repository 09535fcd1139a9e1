"""
hob - recipe-driven package builder

Resolves declarative recipes, fetches and verifies their sources, drives
build styles, replays install operations into a staging tree and splits it
into a main package and side packages.
"""

__version__ = "0.1.0"


__all__ = ["HobConfig", "load_config", "get_hob_home"]

from .config import HobConfig, load_config, get_hob_home
