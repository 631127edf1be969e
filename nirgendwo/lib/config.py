"""
Shared configuration loader for the relay.

Loads a single JSON config file.  Search order:
  1. $NIRGENDWO_CONFIG               (explicit override)
  2. /etc/nirgendwo/config.json      (deployed)
  3. config.json                     (CWD — handy for local dev)
  4. ../../config/default.json       (repo fallback)

Usage:
    from .config import cfg

    address   = cfg("device", "address", default="127.0.0.1:33333")
    interval  = cfg("poll", "interval", default=1.0)
    http      = cfg("http")  # returns the whole dict
"""

import json
import logging
import os

logger = logging.getLogger(__name__)

_config: dict | None = None
_source: str | None = None

DEFAULT_DEVICE_ADDRESS = "127.0.0.1:33333"


def _search_paths() -> list[str]:
    paths = []
    override = os.environ.get("NIRGENDWO_CONFIG")
    if override:
        paths.append(override)
    paths += [
        "/etc/nirgendwo/config.json",
        "config.json",
        os.path.join(os.path.dirname(__file__), "..", "..", "config", "default.json"),
    ]
    return paths


def _validate(config: dict, path: str) -> None:
    """Warn about missing or suspicious config values."""
    device = config.get("device") or {}
    address = device.get("address")
    if not address:
        logger.warning("Config %s: missing device.address — using %s", path, DEFAULT_DEVICE_ADDRESS)
    else:
        try:
            parse_address(address)
        except ValueError as e:
            logger.error("Config %s: %s", path, e)
    poll = config.get("poll") or {}
    interval = poll.get("interval", 1.0)
    if not isinstance(interval, (int, float)) or interval <= 0:
        logger.warning("Config %s: poll.interval must be a positive number (got %r)", path, interval)
    save = config.get("save") or {}
    cooldown = save.get("cooldown", 300)
    if isinstance(cooldown, (int, float)) and cooldown < 1:
        logger.warning("Config %s: save.cooldown %.2fs is very short — playlists will be saved on every change",
                       path, cooldown)


def _read(path: str) -> dict | None:
    """Parse one candidate file; None if it is absent or unusable."""
    try:
        with open(path) as f:
            data = json.load(f)
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError) as e:
        logger.error("Skipping config %s: %s", path, e)
        return None
    if not isinstance(data, dict):
        logger.error("Skipping config %s: top level must be an object", path)
        return None
    return data


def load_config() -> dict:
    """Return the relay config, reading it on first use.

    The first readable candidate from the search order wins; an unusable
    file is skipped, not fatal.
    """
    global _config, _source
    if _config is not None:
        return _config

    for path in _search_paths():
        data = _read(path)
        if data is None:
            continue
        logger.info("Config loaded from %s", os.path.abspath(path))
        _validate(data, path)
        _config, _source = data, os.path.abspath(path)
        return _config

    logger.warning("No relay config found, running on built-in defaults")
    _config, _source = {}, None
    return _config


def config_source() -> str | None:
    """Absolute path of the loaded config file, None when on defaults."""
    load_config()
    return _source


def cfg(section: str, key: str | None = None, *, default=None):
    """Look up ``section`` or ``section.key``.

    cfg("http")                           → the whole http section
    cfg("device", "address")              → "127.0.0.1:33333"
    cfg("save", "cooldown", default=300)  → 300 when unset

    A section that is not an object has no keys, so *default* is returned.
    """
    section_val = load_config().get(section)
    if key is None:
        return default if section_val is None else section_val
    if not isinstance(section_val, dict):
        return default
    return section_val.get(key, default)


def reload_config() -> dict:
    """Drop the cached config and read it again."""
    global _config, _source
    _config = _source = None
    return load_config()


def parse_address(address: str) -> tuple[str, int]:
    """Split ``host:port`` into its parts.

    The port is taken after the last colon so bracketed IPv6 literals
    (``[::1]:33333``) work as well.
    """
    host, sep, port = address.rpartition(":")
    if not sep or not host:
        raise ValueError(f"device address {address!r} is not of the form host:port")
    try:
        port_num = int(port)
    except ValueError:
        raise ValueError(f"device address {address!r} has a non-numeric port") from None
    if not 0 < port_num < 65536:
        raise ValueError(f"device address {address!r} has an out-of-range port")
    return host.strip("[]"), port_num
