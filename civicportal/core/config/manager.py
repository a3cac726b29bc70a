from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional

from pydantic import BaseModel, ValidationError

from civicportal.core.config.io import atomic_write_json, read_json_file
from civicportal.core.config.models import (
    AppConfig,
    AppFileConfig,
    IdentityConfig,
    LoggingConfig,
    StoreConfig,
)
from civicportal.core.config.paths import ConfigFsPaths
from civicportal.core.errors import ConfigError
from civicportal.core.events.bus import EventBusConfig


# file name -> (section, model)
CONFIG_FILES: Dict[str, tuple[str, type[BaseModel]]] = {
    "app.json": ("app", AppFileConfig),
    "identity.json": ("identity", IdentityConfig),
    "events.json": ("events", EventBusConfig),
    "store.json": ("store", StoreConfig),
    "logging.json": ("logging", LoggingConfig),
}


class ConfigManager:
    """
    Loads config/*.json into AppConfig.

    Missing files are written with defaults; a corrupt or invalid file is a
    hard error (ConfigError) rather than a silent fallback.
    """

    def __init__(self, *, fs: Optional[ConfigFsPaths] = None, logger=None, read_only: bool = False):
        self.fs = fs or ConfigFsPaths(".")
        self.logger = logger or logging.getLogger("civicportal.config")
        self.read_only = read_only
        self._cfg: Optional[AppConfig] = None

    def load_all(self) -> AppConfig:
        os.makedirs(self.fs.config_dir, exist_ok=True)
        sections: Dict[str, Any] = {}
        for name, (section, model) in CONFIG_FILES.items():
            sections[section] = self._load_file(name, model)
        try:
            self._cfg = AppConfig.model_validate(sections)
        except ValidationError as e:
            raise ConfigError("Configuration is invalid.", errors=str(e)) from e
        return self._cfg

    def get(self) -> AppConfig:
        if self._cfg is None:
            raise ConfigError("Config not loaded.")
        return self._cfg

    def _load_file(self, name: str, model: type[BaseModel]) -> Dict[str, Any]:
        path = self.fs.file(name)
        rr = read_json_file(path)
        if not rr.ok and rr.error == "missing":
            data = model().model_dump(mode="json")
            if not self.read_only:
                atomic_write_json(path, data)
                self.logger.info("Created default config %s", name)
            return data
        if not rr.ok:
            raise ConfigError(f"{name} could not be read.", file=name, error=rr.error)
        try:
            return model.model_validate(rr.data).model_dump(mode="json")
        except ValidationError as e:
            raise ConfigError(f"{name} is invalid.", file=name, errors=str(e)) from e


_config: Optional[ConfigManager] = None


def get_config(*, root: str = ".", logger=None) -> ConfigManager:
    global _config
    if _config is None:
        _config = ConfigManager(fs=ConfigFsPaths(root), logger=logger)
        _config.load_all()
    return _config
