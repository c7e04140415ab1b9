"""Load benchmark and runtime descriptors into typed models."""

from __future__ import annotations

import json
import logging
import os
import tomllib
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml
from pydantic import ValidationError

from dl_common.config import parse_float_env
from dl_common.errors import ConfigurationError, TopologyError
from dl_controller.models.run_config import RunConfig
from dl_controller.models.topology import Topology

logger = logging.getLogger(__name__)

LAUNCHER_TABLE = "launcher"


def read_descriptor(path: Path) -> Dict[str, Any]:
    """Parse a TOML, YAML or JSON descriptor into a mapping.

    The format is chosen from the file suffix; anything other than
    ``.toml``/``.yml``/``.yaml`` is read as JSON.
    """
    if not path.is_file():
        raise ConfigurationError(f"descriptor not found: {path}", context={"path": path})
    suffix = path.suffix.lower()
    try:
        text = path.read_text(encoding="utf-8")
        if suffix == ".toml":
            data = tomllib.loads(text)
        elif suffix in (".yml", ".yaml"):
            data = yaml.safe_load(text) or {}
        else:
            data = json.loads(text)
    except (OSError, tomllib.TOMLDecodeError, yaml.YAMLError, json.JSONDecodeError) as exc:
        raise ConfigurationError(
            f"cannot parse descriptor {path}: {exc}", context={"path": path}, cause=exc
        ) from exc
    if not isinstance(data, dict):
        raise ConfigurationError(
            f"descriptor {path} must contain a mapping at the top level",
            context={"path": path},
        )
    return data


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(item) for item in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts)


def _resolve_local(value: Any, base_dir: Path) -> Any:
    if not isinstance(value, str) or not value:
        return value
    path = Path(value).expanduser()
    return str(path if path.is_absolute() else base_dir / path)


def _resolve_local_paths(data: Dict[str, Any], base_dir: Path) -> Dict[str, Any]:
    """Make local file references relative to the descriptor's directory."""
    resolved = dict(data)
    services = []
    for entry in data.get("services") or []:
        if isinstance(entry, dict):
            entry = dict(entry)
            if "config" in entry:
                entry["config"] = _resolve_local(entry["config"], base_dir)
            if isinstance(entry.get("uploads"), list):
                entry["uploads"] = [
                    {**item, "source": _resolve_local(item.get("source"), base_dir)}
                    if isinstance(item, dict)
                    else item
                    for item in entry["uploads"]
                ]
        services.append(entry)
    if "services" in data:
        resolved["services"] = services
    hosts = []
    for entry in data.get("hosts") or []:
        if isinstance(entry, dict) and "ssh_key" in entry:
            entry = {**entry, "ssh_key": _resolve_local(entry["ssh_key"], base_dir)}
        hosts.append(entry)
    if "hosts" in data:
        resolved["hosts"] = hosts
    return resolved


def load_topology(path: Path) -> Topology:
    """Load and validate a benchmark descriptor."""
    data = _resolve_local_paths(read_descriptor(path), path.parent.resolve())
    data.setdefault("name", path.stem)
    try:
        topology = Topology.model_validate(data)
    except ValidationError as exc:
        raise TopologyError(
            f"invalid benchmark descriptor {path}: {_format_validation_error(exc)}",
            context={"path": path},
            cause=exc,
        ) from exc
    logger.debug("Loaded topology %s with roles %s", topology.name, topology.roles)
    return topology


def load_run_config(path: Optional[Path] = None) -> RunConfig:
    """Load the runtime descriptor; defaults apply when ``path`` is None.

    Settings may live at the top level or inside a ``[launcher]`` table.
    ``DL_TIMEOUT`` overrides the measurement window.
    """
    data: Dict[str, Any] = {}
    if path is not None:
        raw = read_descriptor(path)
        if LAUNCHER_TABLE in raw:
            table = raw[LAUNCHER_TABLE]
            others = sorted(key for key in raw if key != LAUNCHER_TABLE)
            if others:
                raise ConfigurationError(
                    f"unexpected keys next to [{LAUNCHER_TABLE}] in {path}: {others}",
                    context={"path": path},
                )
            if not isinstance(table, dict):
                raise ConfigurationError(
                    f"[{LAUNCHER_TABLE}] in {path} must be a table", context={"path": path}
                )
            data = dict(table)
        else:
            data = raw
        if isinstance(data.get("output_dir"), str):
            data["output_dir"] = _resolve_local(data["output_dir"], path.parent.resolve())

    env_timeout = parse_float_env(os.environ.get("DL_TIMEOUT"))
    if env_timeout is not None:
        data["timeout"] = env_timeout

    try:
        return RunConfig.model_validate(data)
    except ValidationError as exc:
        source = path if path is not None else "defaults"
        raise ConfigurationError(
            f"invalid runtime configuration {source}: {_format_validation_error(exc)}",
            context={"path": source},
            cause=exc,
        ) from exc


class ConfigService:
    """Resolve both descriptors and apply command-line overrides."""

    def load(
        self,
        benchmark: Path,
        configfile: Optional[Path] = None,
        **overrides: Any,
    ) -> Tuple[Topology, RunConfig]:
        topology = load_topology(benchmark)
        config = load_run_config(configfile)
        if any(value is not None for value in overrides.values()):
            try:
                config = config.with_overrides(**overrides)
            except ValidationError as exc:
                raise ConfigurationError(
                    f"invalid override: {_format_validation_error(exc)}", cause=exc
                ) from exc
        missing = [
            str(svc.config)
            for svc in topology.services
            if svc.config is not None and not svc.config.is_file()
        ]
        missing += [
            str(upload.source)
            for svc in topology.services
            for upload in svc.uploads
            if not upload.source.exists()
        ]
        if missing:
            raise ConfigurationError(
                f"local files referenced by {benchmark} do not exist: {missing}",
                context={"files": missing},
            )
        return topology, config
