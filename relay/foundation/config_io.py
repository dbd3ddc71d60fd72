from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

DEFAULT_CONFIG_ENV_VAR = "RELAY_CONFIG"
CONFIG_FILENAME = "config.yaml"
LOCAL_OVERLAY_FILENAME = "config.local.yaml"
REPO_MARKERS = ("pyproject.toml", ".git")

# Lists of mappings under these key paths are merged entry-by-entry on `name`.
NAMED_LIST_PATHS = frozenset({"pipeline.steps"})


def find_repo_root(start: str | os.PathLike[str] | None = None) -> Path:
    here = Path(start or os.getcwd()).resolve()
    if here.is_file():
        here = here.parent

    for candidate in (here, *here.parents):
        if any((candidate / marker).exists() for marker in REPO_MARKERS):
            return candidate

    raise FileNotFoundError(
        f"Cannot locate repo root above {here} (looked for {' or '.join(REPO_MARKERS)})"
    )


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        payload = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ValueError(f"Invalid YAML in {path}: {exc}") from exc

    if payload is None:
        return {}
    if not isinstance(payload, Mapping):
        raise ValueError(f"Config file must contain a YAML mapping: {path}")
    return dict(payload)


def _mismatch(path: str, base: Any, overlay: Any) -> ValueError:
    return ValueError(
        f"Invalid config overlay merge at {path}: "
        f"base is {type(base).__name__} but overlay is {type(overlay).__name__}"
    )


def _merge_named_entries(base: list[Any], overlay: list[Any], *, path: str) -> list[Any]:
    merged = list(base)
    positions = {
        entry["name"]: idx
        for idx, entry in enumerate(merged)
        if isinstance(entry, Mapping) and isinstance(entry.get("name"), str)
    }
    for idx, entry in enumerate(overlay):
        entry_path = f"{path}[{idx}]"
        if not isinstance(entry, Mapping) or not isinstance(entry.get("name"), str):
            raise ValueError(f"Invalid config overlay merge at {entry_path}: entries need a name")
        name = entry["name"]
        if name in positions:
            at = positions[name]
            merged[at] = merge_overlay(merged[at], entry, path=f"{path}[{name}]")
        else:
            positions[name] = len(merged)
            merged.append(dict(entry))
    return merged


def merge_overlay(base: Any, overlay: Any, *, path: str = "") -> Any:
    """Apply a local overlay on top of the base config.

    Mappings merge key by key. Step lists merge by step name so an overlay can
    tweak one step without restating the pipeline. Other lists and scalars are
    replaced outright, and an explicit null clears the value.
    """

    if overlay is None or base is None:
        return overlay

    if isinstance(base, Mapping):
        if not isinstance(overlay, Mapping):
            raise _mismatch(path, base, overlay)
        merged = dict(base)
        for key, value in overlay.items():
            child = f"{path}.{key}" if path else str(key)
            merged[key] = merge_overlay(base[key], value, path=child) if key in base else value
        return merged

    if isinstance(base, list):
        if not isinstance(overlay, list):
            raise _mismatch(path, base, overlay)
        if path in NAMED_LIST_PATHS:
            return _merge_named_entries(base, overlay, path=path)
        return list(overlay)

    if isinstance(overlay, (Mapping, list)):
        raise _mismatch(path, base, overlay)
    return overlay


def load_config(
    *,
    config_path: str | os.PathLike[str] | None = None,
    env_var: str = DEFAULT_CONFIG_ENV_VAR,
    config_dir: str | os.PathLike[str] | None = None,
    start_dir: str | os.PathLike[str] | None = None,
) -> tuple[dict[str, Any], dict[str, Any]]:
    """
    Load the relay configuration mapping.

    An explicit path (argument or env var) loads exactly one file. Otherwise
    `config.yaml` is read from `config_dir` (default `<repo root>/config`) and a
    sibling `config.local.yaml`, when present, is merged on top.

    Returns `(cfg, meta)` where meta records the mode and the files that were read.
    """

    explicit = str(config_path).strip() if config_path is not None else ""
    mode = "explicit"
    if not explicit:
        explicit = os.environ.get(env_var, "").strip()
        mode = "env"

    if explicit:
        path = Path(os.path.abspath(os.path.expandvars(os.path.expanduser(explicit))))
        return _read_yaml(path), {
            "mode": mode,
            "paths": [str(path)],
            "env_var": env_var,
            "repo_root": None,
            "base_dir": str(path.parent),
        }

    repo_root: Path | None = None
    if config_dir is None:
        repo_root = find_repo_root(start_dir)
        directory = repo_root / "config"
    else:
        directory = Path(os.path.abspath(config_dir))

    base_path = directory / CONFIG_FILENAME
    if not base_path.is_file():
        raise FileNotFoundError(f"Missing base config file: {base_path}")

    cfg = _read_yaml(base_path)
    paths = [str(base_path)]
    local_path = directory / LOCAL_OVERLAY_FILENAME
    if local_path.is_file():
        cfg = merge_overlay(cfg, _read_yaml(local_path))
        paths.append(str(local_path))

    return cfg, {
        "mode": "base+local" if len(paths) > 1 else "base",
        "paths": paths,
        "env_var": env_var,
        "repo_root": str(repo_root) if repo_root is not None else None,
        "base_dir": str(repo_root if repo_root is not None else directory.parent),
    }
