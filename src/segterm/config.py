"""Configuration management for segterm."""

import json
import os
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any


def _default_config_dir() -> Path:
    """Get the default configuration directory."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        base = Path(xdg)
    else:
        base = Path.home() / ".config"
    return base / "segterm"


@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 7930
    max_sessions: int = 16
    password_hash: str = ""
    totp_secret: str = ""
    totp_enabled: bool = False
    cert_fingerprint: str = ""

    # Rate-limiting for failed auth attempts
    max_auth_failures: int = 5
    auth_lockout_seconds: int = 300

    # Outbound events buffered per connection before it is dropped
    client_queue_size: int = 1024


@dataclass
class TerminalConfig:
    rows: int = 24
    cols: int = 80
    shell: str = ""  # empty: $SHELL, then fallback_shell
    fallback_shell: str = "/bin/bash"
    term: str = "xterm-256color"
    read_chunk_size: int = 8192
    backlog_bytes: int = 1024 * 1024
    close_grace_seconds: float = 1.0


@dataclass
class ClientConfig:
    server_host: str = "localhost"
    server_port: int = 7930
    cert_fingerprint: str = ""
    ca_cert_path: str = ""


def _known_fields(cls: type, data: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in data.items() if k in cls.__dataclass_fields__}


@dataclass
class Config:
    server: ServerConfig = field(default_factory=ServerConfig)
    terminal: TerminalConfig = field(default_factory=TerminalConfig)
    client: ClientConfig = field(default_factory=ClientConfig)

    @classmethod
    def load(cls, config_dir: Path | None = None) -> "Config":
        """Load configuration from disk, or return defaults."""
        config_dir = config_dir or _default_config_dir()
        config_file = config_dir / "config.json"
        if not config_file.exists():
            return cls()
        data = json.loads(config_file.read_text())
        return cls(
            server=ServerConfig(**_known_fields(ServerConfig, data.get("server", {}))),
            terminal=TerminalConfig(
                **_known_fields(TerminalConfig, data.get("terminal", {}))
            ),
            client=ClientConfig(**_known_fields(ClientConfig, data.get("client", {}))),
        )

    def save(self, config_dir: Path | None = None) -> Path:
        """Save configuration to disk, readable by the owner only."""
        config_dir = config_dir or _default_config_dir()
        config_dir.mkdir(parents=True, exist_ok=True)
        config_file = config_dir / "config.json"
        data: dict[str, Any] = {
            "server": asdict(self.server),
            "terminal": asdict(self.terminal),
            "client": asdict(self.client),
        }
        config_file.write_text(json.dumps(data, indent=2) + "\n")
        config_file.chmod(0o600)
        return config_file

    @staticmethod
    def config_dir(override: Path | None = None) -> Path:
        return override or _default_config_dir()

    @staticmethod
    def cert_path(config_dir: Path | None = None) -> Path:
        return (config_dir or _default_config_dir()) / "server.crt"

    @staticmethod
    def key_path(config_dir: Path | None = None) -> Path:
        return (config_dir or _default_config_dir()) / "server.key"
