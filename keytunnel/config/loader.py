"""YAML configuration loader and per-service record store."""

import os
import tempfile
from pathlib import Path
from typing import Optional, Union

import yaml

from keytunnel.config.schema import Settings, TunnelConfig
from keytunnel.errors import ConfigNotFound

DEFAULT_SETTINGS_PATH = "/etc/keytunnel/keytunnel.yaml"


def resolve_settings_path(path: Optional[Union[str, Path]] = None) -> Path:
    """The settings file in effect: ``path``, else $KEYTUNNEL_CONFIG, else the /etc default."""
    return Path(path or os.environ.get("KEYTUNNEL_CONFIG", DEFAULT_SETTINGS_PATH))


def load_settings(path: Optional[Union[str, Path]] = None) -> Settings:
    """Load keytunnel host settings (directories, ssh client, retry knobs).

    Args:
        path: Settings file. If None, resolved through resolve_settings_path().

    Raises:
        FileNotFoundError: If the resolved file doesn't exist
        yaml.YAMLError: If it is not valid YAML
        pydantic.ValidationError: If it doesn't match the Settings schema
    """
    path = resolve_settings_path(path)

    if not path.exists():
        raise FileNotFoundError(f"Settings file not found: {path}")

    with open(path) as f:
        data = yaml.safe_load(f)

    if data is None:
        data = {}

    return Settings.model_validate(data)


def load_settings_or_default(path: Optional[Union[str, Path]] = None) -> Settings:
    """Load keytunnel settings; a host with no settings file runs on the built-in defaults."""
    try:
        return load_settings(path)
    except FileNotFoundError:
        return Settings()


def atomic_write(path: Path, text: Union[str, bytes], mode: int = 0o600) -> None:
    """Replace ``path`` with ``text`` in one step.

    The content is written to a temporary file in the same directory,
    flushed to disk and renamed over the target, so readers see either
    the old record or the new one.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "wb" if isinstance(text, bytes) else "w") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp, mode)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


class ConfigStore:
    """Per-service TunnelConfig records, one YAML document each.

    Usage:
        store = ConfigStore("/etc/keytunnel")
        store.save(config)
        config = store.load("edge-tunnel")
    """

    def __init__(self, config_dir: Union[str, Path]):
        self.config_dir = Path(config_dir)

    def path_for(self, service_name: str) -> Path:
        return self.config_dir / f"{service_name}.yaml"

    def exists(self, service_name: str) -> bool:
        return self.path_for(service_name).exists()

    def load(self, service_name: str) -> TunnelConfig:
        path = self.path_for(service_name)
        if not path.exists():
            raise ConfigNotFound("tunnel record not found", service=service_name, path=path)
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return TunnelConfig.model_validate(data)

    def save(self, config: TunnelConfig) -> Path:
        path = self.path_for(config.service_name)
        text = yaml.safe_dump(config.model_dump(mode="json"), sort_keys=False)
        atomic_write(path, f"# keytunnel record for {config.service_name}\n{text}")
        return path

    def list_services(self) -> list[str]:
        if not self.config_dir.is_dir():
            return []
        return sorted(
            p.stem for p in self.config_dir.glob("*.yaml")
            if p.name != Path(DEFAULT_SETTINGS_PATH).name
        )
