"""Configuration loading and validation for the site pipeline."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

from loguru import logger
from pydantic import BaseModel, Field, ValidationError, validator

from .models import ProjectLayout


class BuildConfig(BaseModel):
    """General build settings read from ``config.json``."""

    script_sources: List[str] = Field(default_factory=list, alias="js")
    style_sources: List[str] = Field(default_factory=list, alias="css")
    font_globs: List[str] = Field(default_factory=list, alias="font")
    minify: bool = False
    source_maps: bool = Field(default=True, alias="sourceMaps")


class PageEntry(BaseModel):
    """A page template and whether it should be rendered."""

    src: str
    enabled: bool = False
    title: Optional[str] = None
    body_class: Optional[str] = Field(default=None, alias="bodyClass")


class PagesManifest(BaseModel):
    """Page enablement list read from ``pages.json``."""

    build_all: bool = Field(default=False, alias="all")
    pages: List[PageEntry] = Field(default_factory=list)


class ConnectionConfig(BaseModel):
    host: str
    user: str
    password: str = ""
    secure: bool = False
    port: int = 21


class MappingConfig(BaseModel):
    """Pairs a local output subpath with a remote subpath."""

    local: str
    remote: str
    exclude: List[str] = Field(default_factory=list)
    description: str = ""


class DeploymentConfig(BaseModel):
    local_folder: str = Field(default="dist", alias="localFolder")
    base_path: str = Field(default="/", alias="basePath")
    mappings: Dict[str, MappingConfig] = Field(default_factory=dict)


class ShortcutConfig(BaseModel):
    action: str
    description: str = ""


class DeployConfig(BaseModel):
    """Optional FTP deployment settings read from ``config-ftp.json``."""

    connection: ConnectionConfig
    deployment: DeploymentConfig
    shortcuts: Dict[str, ShortcutConfig] = Field(default_factory=dict)

    @validator("shortcuts")
    def _normalize_shortcut_keys(cls, value: Dict[str, ShortcutConfig]) -> Dict[str, ShortcutConfig]:
        normalized: Dict[str, ShortcutConfig] = {}
        for key, shortcut in value.items():
            key = key.strip().lower()
            if len(key) != 1:
                raise ValueError(f"Shortcut key '{key}' must be a single character")
            normalized[key] = shortcut
        return normalized


class ConfigError(Exception):
    """Raised when a configuration file is missing or invalid."""


def _read_json(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ConfigError(f"Configuration file not found: {path}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Failed to parse JSON in {path.name}: {exc}") from exc


def _parse(model: type[BaseModel], data: Any, path: Path) -> Any:
    try:
        return model.parse_obj(data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration in {path.name}: {exc}") from exc


def load_build_config(path: Path) -> BuildConfig:
    """Load ``config.json``."""

    return _parse(BuildConfig, _read_json(path), path)


def load_pages_manifest(path: Path) -> PagesManifest:
    """Load ``pages.json``."""

    return _parse(PagesManifest, _read_json(path), path)


def load_deploy_config(path: Path) -> DeployConfig | None:
    """Load ``config-ftp.json``; ``None`` when the file does not exist."""

    if not path.exists():
        return None
    return _parse(DeployConfig, _read_json(path), path)


def save_pages_manifest(manifest: PagesManifest, path: Path) -> None:
    """Persist the pages manifest using its on-disk key names."""

    rendered = manifest.dict(by_alias=True, exclude_none=True)
    path.write_text(json.dumps(rendered, indent=2) + "\n", encoding="utf-8")


def refresh_model(target: BaseModel, fresh: BaseModel) -> None:
    """Replace every field of ``target`` with the value from ``fresh``."""

    for name in type(fresh).__fields__:
        setattr(target, name, getattr(fresh, name))


class ConfigStore:
    """Holds the loaded configuration documents for the process lifetime."""

    def __init__(
        self,
        layout: ProjectLayout,
        build: BuildConfig,
        pages: PagesManifest,
        deploy: DeployConfig | None = None,
    ) -> None:
        self.layout = layout
        self.build = build
        self.pages = pages
        self.deploy = deploy

    @classmethod
    def load(cls, layout: ProjectLayout) -> "ConfigStore":
        build = load_build_config(layout.build_config)
        pages = load_pages_manifest(layout.pages_manifest)
        deploy = load_deploy_config(layout.deploy_config)
        if deploy is None:
            logger.warning("FTP config not found. FTP deployment disabled.")
        return cls(layout, build, pages, deploy)

    def reload(self) -> None:
        """Re-read the build config and pages manifest, merging in place."""

        build = load_build_config(self.layout.build_config)
        pages = load_pages_manifest(self.layout.pages_manifest)
        refresh_model(self.build, build)
        refresh_model(self.pages, pages)
        logger.debug("Configuration reloaded from {} and {}", self.layout.build_config.name, self.layout.pages_manifest.name)


__all__ = [
    "BuildConfig",
    "ConfigError",
    "ConfigStore",
    "DeployConfig",
    "MappingConfig",
    "PageEntry",
    "PagesManifest",
    "ShortcutConfig",
    "load_build_config",
    "load_deploy_config",
    "load_pages_manifest",
    "refresh_model",
    "save_pages_manifest",
]
