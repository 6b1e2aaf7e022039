from __future__ import annotations

import importlib
import importlib.util
import logging
from dataclasses import fields, is_dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Tuple

if importlib.util.find_spec("tomllib"):
    tomllib = importlib.import_module("tomllib")  # type: ignore
else:  # pragma: no cover
    tomllib = importlib.import_module("tomli")  # type: ignore

from .config_struct import StemsplitConfig, validate_config

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path(__file__).resolve().parent.parent / "config"

_TRUE = {"1", "true", "yes", "y", "on"}
_FALSE = {"0", "false", "no", "n", "off"}


class UnknownConfigKeyError(ValueError):
    """Raised when a configuration key is not present in the schema."""


def nest_dotted(pairs: Iterable[Tuple[str, Any]]) -> Dict[str, Any]:
    """``[("io.sample_rate", 8000)]`` -> ``{"io": {"sample_rate": 8000}}``."""
    nested: Dict[str, Any] = {}
    for dotted, value in pairs:
        *sections, leaf = dotted.split(".")
        node = nested
        for section in sections:
            node = node.setdefault(section, {})
            if not isinstance(node, dict):
                raise UnknownConfigKeyError(dotted)
        node[leaf] = value
    return nested


def _coerce(current: Any, value: Any, path: str) -> Any:
    """Convert ``value`` to the type of the schema default it replaces.

    Overrides often arrive as strings from the CLI or environment.
    """
    if isinstance(current, bool):
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in _TRUE:
                return True
            if lowered in _FALSE:
                return False
            raise ValueError(f"{path}: expected a boolean, got {value!r}")
        return bool(value)
    if isinstance(current, int) and not isinstance(value, bool):
        try:
            as_float = float(value)
        except (TypeError, ValueError):
            raise ValueError(f"{path}: expected an integer, got {value!r}") from None
        if not as_float.is_integer():
            raise ValueError(f"{path}: expected an integer, got {value!r}")
        return int(as_float)
    if isinstance(current, float) and not isinstance(value, bool):
        try:
            return float(value)
        except (TypeError, ValueError):
            raise ValueError(f"{path}: expected a number, got {value!r}") from None
    if isinstance(current, list):
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return list(value)
    if isinstance(current, str):
        return str(value)
    return value


class ConfigLoader:
    """
    Strict, provenance-tracking config loader.

    Layers merge in order: ``default.toml``, ``presets/<preset>.toml``, then
    dotted-key overrides.  Every layer goes through the same recursive merge,
    so an unknown key is an error wherever it appears and each leaf records
    the layer that set it last.
    """

    def __init__(self) -> None:
        self.provenance: Dict[str, str] = {}

    def load(
        self,
        base_dir: str | Path | None = None,
        preset: str | None = None,
        overrides: Iterable[Tuple[str, Any]] | None = None,
    ) -> StemsplitConfig:
        base = Path(base_dir) if base_dir is not None else DEFAULT_CONFIG_DIR
        config = StemsplitConfig()

        default_path = base / "default.toml"
        if default_path.exists():
            self._merge(config, self._read(default_path), "default")

        if preset:
            preset_path = base / "presets" / f"{preset}.toml"
            if not preset_path.exists():
                raise FileNotFoundError(f"Preset '{preset}' not found at {preset_path}")
            self._merge(config, self._read(preset_path), f"preset:{preset}")

        if overrides:
            self._merge(config, nest_dotted(overrides), "override")

        logger.debug("Loaded config from %s (preset=%s, %d keys set)", base, preset, len(self.provenance))
        return validate_config(config)

    @staticmethod
    def _read(path: Path) -> Dict[str, Any]:
        with path.open("rb") as f:
            return tomllib.load(f)

    def _merge(self, section: Any, data: Dict[str, Any], source: str, prefix: str = "") -> None:
        known = {f.name for f in fields(section)}
        for key, value in data.items():
            path = f"{prefix}.{key}" if prefix else key
            if key not in known:
                raise UnknownConfigKeyError(path)
            current = getattr(section, key)
            if is_dataclass(current):
                if not isinstance(value, dict):
                    raise TypeError(f"Expected mapping at {path}")
                self._merge(current, value, source, prefix=path)
                continue
            if isinstance(value, dict):
                raise UnknownConfigKeyError(f"{path}.{next(iter(value), '')}")
            setattr(section, key, _coerce(current, value, path))
            self.provenance[path] = source


def load_config(
    preset: str | None = None,
    overrides: Iterable[Tuple[str, Any]] | None = None,
    base_dir: str | Path | None = None,
) -> Tuple[StemsplitConfig, Dict[str, str]]:
    loader = ConfigLoader()
    config = loader.load(base_dir, preset=preset, overrides=overrides)
    return config, loader.provenance
