"""
Configuration sources for hook registrations.

Hooks are read per scope, lowest to highest specificity:
1. ~/.lifecycle_hooks/hooks.json (user level) - wrapped {"hooks": {...}} or bare
2. .claude/settings.json (project level) - "hooks" key
3. .claude/settings.local.json (local, uncommitted project overrides) - "hooks" key

Each scope is kept separate so the engine can order and deregister them
independently; ``merge_hook_configs`` concatenates them when a single view is
needed (validation, listings).
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from lifecycle_hooks.hook_engine.models import Scope

logger = logging.getLogger(__name__)

PROJECT_HOOKS_FILE = ".claude/settings.json"
LOCAL_HOOKS_FILE = ".claude/settings.local.json"
GLOBAL_HOOKS_FILE = os.path.expanduser("~/.lifecycle_hooks/hooks.json")


def merge_hook_configs(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    """
    Combine two hooks mappings into a new one.

    Groups registered for a kind in both mappings are concatenated, ``base``
    groups first. Underscore-prefixed metadata keys are taken from ``overlay``.
    Neither argument is modified.
    """
    merged = dict(base)

    for kind, groups in overlay.items():
        existing = merged.get(kind)
        if kind.startswith("_") or existing is None:
            merged[kind] = groups
        elif isinstance(existing, list) and isinstance(groups, list):
            merged[kind] = [*existing, *groups]
            logger.debug(f"Appended {len(groups)} group(s) to '{kind}'")
        else:
            logger.warning(f"Skipping '{kind}' from a later scope: expected a list of groups")

    return merged


def load_hooks_file(path: Path, allow_bare: bool = False) -> Dict[str, Any]:
    """
    Read the hooks section of one JSON file.

    Returns {} when the file is missing, unreadable or has no hooks.
    """
    if not path.exists():
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        logger.error(f"Invalid JSON in {path}: {e}")
        return {}
    except OSError as e:
        logger.error(f"Failed to load {path}: {e}", exc_info=True)
        return {}

    if not isinstance(data, dict):
        logger.warning(f"Ignoring {path}: top level must be an object")
        return {}
    hooks = data.get("hooks")
    if isinstance(hooks, dict):
        logger.info(f"Loaded hooks configuration from {path}")
        return hooks
    if allow_bare and "hooks" not in data:
        logger.info(f"Loaded hooks configuration (bare format) from {path}")
        return data
    logger.debug(f"No 'hooks' section found in {path}")
    return {}


def load_scoped_configs(project_dir: Optional[str] = None) -> Dict[Scope, Dict[str, Any]]:
    """Load every configuration source, keyed by the scope that owns it."""
    root = Path(project_dir or os.getcwd())
    scoped = {
        Scope.USER: load_hooks_file(Path(GLOBAL_HOOKS_FILE), allow_bare=True),
        Scope.PROJECT: load_hooks_file(root / PROJECT_HOOKS_FILE),
        Scope.LOCAL: load_hooks_file(root / LOCAL_HOOKS_FILE),
    }
    return {scope: config for scope, config in scoped.items() if config}


def load_hooks_config(project_dir: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """
    Load and merge every scope into one configuration.

    Returns:
        The merged mapping, or None when no scope defines any hooks.
    """
    merged: Dict[str, Any] = {}
    for config in load_scoped_configs(project_dir).values():
        merged = merge_hook_configs(merged, config)

    if not merged:
        logger.debug("No hook registrations in any scope")
        return None

    event_count = len([event for event in merged if not event.startswith("_")])
    logger.info(f"Hooks configuration ready ({event_count} event type(s))")
    return merged


def get_hooks_config_paths(project_dir: Optional[str] = None) -> List[str]:
    """Configuration paths, most specific first."""
    root = Path(project_dir or os.getcwd())
    return [
        str(root / LOCAL_HOOKS_FILE),
        str(root / PROJECT_HOOKS_FILE),
        GLOBAL_HOOKS_FILE,
    ]
