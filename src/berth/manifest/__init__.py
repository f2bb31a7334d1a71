"""Manifest loading and mapping."""

from berth.manifest.normalizer import load_manifest
from berth.manifest.mapper import extract_owner_directives, map_service, map_to_configs

__all__ = [
    "load_manifest",
    "extract_owner_directives",
    "map_service",
    "map_to_configs",
]
