"""Connection settings and their on-disk form.

Settings are stored as JSON in ``~/.config/enoslink/config.json``.  Access
tokens are never written; they live only in memory for the lifetime of a
:class:`~enoslink.client.Connection`.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, fields
from pathlib import Path

from enoslink import _constants


@dataclass
class ConnectionConfig:
    """Everything needed to talk to one broker on behalf of one application."""

    broker_url: str
    token_server_url: str
    app_key: str
    app_secret: str
    org_id: str
    use_lark: bool = False
    """Default to indirect (presigned-URL) file transfer."""

    auto_upload: bool = True
    """Upload files to presigned URLs automatically in indirect mode."""

    def __post_init__(self) -> None:
        self.broker_url = self.broker_url.rstrip("/")
        self.token_server_url = self.token_server_url.rstrip("/")

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> ConnectionConfig:
        known = {f.name for f in fields(cls)}
        missing = {f.name for f in fields(cls) if f.name not in data} - {
            "use_lark",
            "auto_upload",
        }
        if missing:
            raise ValueError(f"Config is missing: {', '.join(sorted(missing))}")
        return cls(**{k: v for k, v in data.items() if k in known})  # type: ignore[arg-type]


def load_config(path: Path | None = None) -> ConnectionConfig:
    """Load settings from *path* (default ``~/.config/enoslink/config.json``).

    Raises :class:`FileNotFoundError` if no config file exists.
    """
    path = path or _constants.CONFIG_FILE
    if not path.exists():
        raise FileNotFoundError(f"No saved config at {path}. Run `enoslink configure` first.")
    return ConnectionConfig.from_dict(json.loads(path.read_text()))


def save_config(config: ConnectionConfig, path: Path | None = None) -> Path:
    """Persist *config*, readable only by the current user."""
    path = path or _constants.CONFIG_FILE
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(asdict(config), indent=2))
    path.chmod(0o600)
    return path
