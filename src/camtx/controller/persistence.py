# pyright: strict
"""On-disk persistence of the desired stream configuration."""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any

from loguru import logger

from camtx.models import StreamConfig

from .store import validate_document

CONFIG_PATH_ENV = "CAMTX_CONFIG_PATH"
CONFIG_DIR_NAME = "camtx"
LEGACY_DIR_NAME = ".camtx"
CONFIG_FILE_NAME = "config.json"
CONFIG_DIR_MODE = 0o700


def candidate_paths() -> list[Path]:
    """Return configuration file locations in order of preference."""
    paths: list[Path] = []

    explicit = os.getenv(CONFIG_PATH_ENV)
    if explicit:
        paths.append(Path(explicit).expanduser())

    home = Path.home()
    xdg = os.getenv("XDG_CONFIG_HOME")
    config_home = Path(xdg).expanduser() if xdg else home / ".config"
    paths.append(config_home / CONFIG_DIR_NAME / CONFIG_FILE_NAME)
    paths.append(home / LEGACY_DIR_NAME / CONFIG_FILE_NAME)
    paths.append(Path.cwd() / CONFIG_FILE_NAME)
    return paths


def resolve_config_path() -> Path:
    """Pick the configuration file to use.

    An explicit ``CAMTX_CONFIG_PATH`` always wins. Otherwise the first existing
    file is used, and if none exists the first location whose directory can be
    created is chosen.
    """
    paths = candidate_paths()
    if os.getenv(CONFIG_PATH_ENV):
        return paths[0]

    for path in paths:
        if path.is_file():
            return path

    for path in paths:
        try:
            path.parent.mkdir(mode=CONFIG_DIR_MODE, parents=True, exist_ok=True)
        except OSError as e:
            logger.debug("Config directory not usable", path=str(path.parent), error=str(e))
            continue
        return path

    return paths[-1]


class ConfigFile:
    """JSON configuration file with atomic writes."""

    def __init__(self, path: Path | str | None = None) -> None:
        self.path = Path(path) if path is not None else resolve_config_path()

    def ensure_directory(self) -> None:
        self.path.parent.mkdir(mode=CONFIG_DIR_MODE, parents=True, exist_ok=True)

    def load(self) -> dict[str, Any] | None:
        """Read the raw JSON object, or None if the file is missing or unreadable."""
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning("Cannot read configuration file", path=str(self.path), error=str(e))
            return None

        try:
            document = json.loads(text)
        except json.JSONDecodeError as e:
            logger.warning("Configuration file is not valid JSON", path=str(self.path), error=str(e))
            return None

        if not isinstance(document, dict):
            logger.warning("Configuration file is not a JSON object", path=str(self.path))
            return None
        return document  # type: ignore[return-value]

    def load_or_init(self, defaults: StreamConfig | None = None) -> StreamConfig:
        """Load the stored configuration, writing defaults when there is none.

        Invalid fields are dropped with a warning and replaced by defaults.
        """
        base = defaults or StreamConfig()
        document = self.load()
        if document is None:
            logger.info("No stored configuration, writing defaults", path=str(self.path))
            self.save(base)
            return base

        accepted, rejections = validate_document(document)
        for rejection in rejections:
            logger.warning(
                "Ignoring invalid stored setting",
                field=rejection.field,
                reason=rejection.reason,
            )
        config = base.model_copy(update=accepted)
        logger.info("Loaded stored configuration", path=str(self.path))
        return config

    def save(self, config: StreamConfig) -> bool:
        """Write the configuration atomically.

        Returns:
            True on success. Failures are logged, the in-memory configuration
            stays authoritative.

        """
        try:
            self.ensure_directory()
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self.path.name}.",
                suffix=".tmp",
                dir=self.path.parent,
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(config.to_dict(), f, indent=2)
                    f.write("\n")
                os.replace(tmp_name, self.path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            logger.error("Failed to save configuration", path=str(self.path), error=str(e))
            return False

        logger.debug("Configuration saved", path=str(self.path))
        return True
