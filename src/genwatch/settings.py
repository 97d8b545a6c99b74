"""Configuration loading.

Resolution order for monitor settings, lowest to highest priority:
defaults, then a YAML/JSON file, then ``GENWATCH_*`` environment variables.
``.env`` files are loaded into the environment first and never override
variables that are already set.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import ValidationError

from genwatch.cdp.browser import DEFAULT_CDP_PORTS
from genwatch.schemas import InspectionScripts, MonitorConfig, RequestFilter

logger = logging.getLogger(__name__)

ENV_PREFIX = "GENWATCH_"
FILTER_ENV_PREFIX = ENV_PREFIX + "REQUEST_FILTER_"


def load_dotenv_files() -> Path | None:
    """Load .env from cwd, its parent, or the project root; return the file used."""
    project_root = Path(__file__).resolve().parent.parent.parent
    for dir_ in (Path.cwd(), Path.cwd().parent, project_root):
        env_file = dir_ / ".env"
        if env_file.is_file():
            load_dotenv(env_file)
            logger.debug("Loaded environment from %s", env_file)
            return env_file
    return None


def _read_mapping(path: Path) -> dict[str, Any]:
    """Parse a YAML or JSON file into a mapping."""
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ValueError(f"Cannot read {path}: {exc}") from exc
    try:
        if path.suffix.lower() == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise ValueError(f"Cannot parse {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain a mapping at the top level")
    return data


def _section(data: Mapping[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name, data)
    return dict(section) if isinstance(section, Mapping) else {}


def _env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for field_name in MonitorConfig.model_fields:
        if field_name == "request_filter":
            continue
        raw = environ.get(ENV_PREFIX + field_name.upper())
        if raw is not None and raw.strip():
            overrides[field_name] = raw.strip()
    filter_overrides: dict[str, Any] = {}
    for field_name in RequestFilter.model_fields:
        raw = environ.get(FILTER_ENV_PREFIX + field_name.upper())
        if raw is not None and raw.strip():
            filter_overrides[field_name] = raw.strip()
    if filter_overrides:
        overrides["request_filter"] = filter_overrides
    return overrides


def load_monitor_config(
    path: Path | str | None = None,
    environ: Mapping[str, str] | None = None,
) -> MonitorConfig:
    """Build the effective :class:`MonitorConfig`.

    The file may hold the settings at top level or under a ``monitor`` key.
    """
    env = os.environ if environ is None else environ
    payload: dict[str, Any] = {}
    source = "defaults"
    if path:
        file_path = Path(path).expanduser()
        payload = _section(_read_mapping(file_path), "monitor")
        source = str(file_path)

    overrides = _env_overrides(env)
    file_filter = payload.get("request_filter")
    env_filter = overrides.pop("request_filter", None)
    payload.update(overrides)
    if env_filter:
        merged_filter = dict(file_filter) if isinstance(file_filter, Mapping) else {}
        merged_filter.update(env_filter)
        payload["request_filter"] = merged_filter

    try:
        config = MonitorConfig.model_validate(payload)
    except ValidationError as exc:
        raise ValueError(f"Invalid monitor configuration ({source}): {exc}") from exc
    if overrides or env_filter:
        logger.debug("Applied environment overrides: %s", sorted(overrides))
    return config


def load_inspection_scripts(path: Path | str) -> InspectionScripts:
    """Load inspection expressions from YAML/JSON (top level or ``scripts`` key)."""
    file_path = Path(path).expanduser()
    payload = _section(_read_mapping(file_path), "scripts")
    try:
        return InspectionScripts.model_validate(payload)
    except ValidationError as exc:
        raise ValueError(f"Invalid inspection scripts ({file_path}): {exc}") from exc


def cdp_ports_from_env(environ: Mapping[str, str] | None = None) -> tuple[int, ...]:
    """Ports from ``GENWATCH_CDP_PORTS`` (comma separated), else the defaults."""
    env = os.environ if environ is None else environ
    raw = str(env.get(ENV_PREFIX + "CDP_PORTS", "") or "")
    ports: list[int] = []
    for token in raw.split(","):
        token = token.strip()
        if not token:
            continue
        try:
            port = int(token)
        except ValueError:
            logger.warning("Ignoring invalid CDP port %r", token)
            continue
        if 0 < port < 65536 and port not in ports:
            ports.append(port)
    return tuple(ports) or DEFAULT_CDP_PORTS
