"""
Berth - declarative Docker container reconciliation.

Turns Compose-style manifests with owner-control labels into container
configs and keeps a Docker host converged on them.
"""

__version__ = "0.1.0"
__author__ = "Berth Development Team"

# Re-export key components for easier access
from berth.agent.engine import ReconciliationController
from berth.manifest import load_manifest, map_to_configs
from berth.utils.templates import resolve_templates

__all__ = [
    "ReconciliationController",
    "load_manifest",
    "map_to_configs",
    "resolve_templates",
]
