"""Configuration management for Lucy."""

from dataclasses import dataclass, field, fields
import os
import re


@dataclass
class ProxyConfig:
    """Proxy server configuration."""
    host: str = "0.0.0.0"
    port: int = 8080
    request_timeout: float = 30.0     # seconds, outbound round trip
    server_timeout: float = 30.0      # seconds, client reads/writes
    max_body_size: int = 10 * 1024 * 1024


@dataclass
class LogConfig:
    """Observability output configuration."""
    format: str = "pretty"            # pretty | json
    body_preview: int = 500           # characters of body shown per record


@dataclass
class TunnelConfig:
    """CONNECT tunnel configuration."""
    wait_both_directions: bool = False  # half-close instead of closing on first EOF


@dataclass
class Config:
    """Main configuration."""
    proxy: ProxyConfig = field(default_factory=ProxyConfig)
    log: LogConfig = field(default_factory=LogConfig)
    tunnel: TunnelConfig = field(default_factory=TunnelConfig)

    @classmethod
    def from_yaml(cls, path: str) -> "Config":
        """Load config from a YAML file.

        YAML structure mirrors the dataclass hierarchy:
            proxy:
              port: 8080
              request_timeout: 30s
              max_body_size: 10485760
            log:
              format: json
        """
        import yaml
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        config = cls()

        section_map = {f.name: f for f in fields(cls)}
        for section_name in section_map:
            section_data = data.get(section_name)
            if not section_data or not isinstance(section_data, dict):
                continue
            sub_obj = getattr(config, section_name)
            for key, value in section_data.items():
                if hasattr(sub_obj, key):
                    setattr(sub_obj, key, _coerce(getattr(sub_obj, key), value))

        return config

    @classmethod
    def from_env(cls) -> "Config":
        """Load config from environment variables."""
        config = cls()

        # Proxy
        if host := os.getenv("LUCY_HOST"):
            config.proxy.host = host
        if port := os.getenv("LUCY_PORT"):
            config.proxy.port = int(port)
        if timeout := os.getenv("LUCY_TIMEOUT"):
            config.proxy.request_timeout = parse_duration(timeout)
        if server_timeout := os.getenv("LUCY_SERVER_TIMEOUT"):
            config.proxy.server_timeout = parse_duration(server_timeout)
        if max_body := os.getenv("LUCY_MAX_BODY_SIZE"):
            config.proxy.max_body_size = int(max_body)

        # Log
        if log_format := os.getenv("LUCY_LOG_FORMAT"):
            config.log.format = log_format
        if preview := os.getenv("LUCY_BODY_PREVIEW"):
            config.log.body_preview = int(preview)

        # Tunnel
        if wait_both := os.getenv("LUCY_TUNNEL_WAIT_BOTH"):
            config.tunnel.wait_both_directions = wait_both.lower() in ("1", "true", "yes")

        return config


_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}
_RE_DURATION = re.compile(r"^\s*([0-9]*\.?[0-9]+)\s*(ms|s|m|h)?\s*$")


def parse_duration(value) -> float:
    """Parse a duration such as ``30``, ``30s``, ``500ms`` or ``2m`` into seconds."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    match = _RE_DURATION.match(str(value))
    if not match:
        raise ValueError(f"invalid duration: {value!r}")
    number, unit = match.groups()
    return float(number) * _DURATION_UNITS[unit or "s"]


def _coerce(current, value):
    """Coerce a YAML value to the type of the field's default."""
    expected = type(current)
    if expected is bool and not isinstance(value, bool):
        return str(value).lower() in ("1", "true", "yes")
    if expected is float:
        return parse_duration(value)
    if expected is int and not isinstance(value, int):
        return int(value)
    if expected is str and not isinstance(value, str):
        return str(value)
    return value
