"""Minimal KEY=VALUE config loader with typed accessors and env overrides."""

import os
from pathlib import Path

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


class WebConfig:
    """Read a dotenv-like config file and expose typed getters.

    Process environment variables with the same name win over file values,
    so container and systemd deployments can override single keys.
    """

    def __init__(self, config_path, base_dir, environ=None):
        self.config_path = Path(config_path)
        self.base_dir = Path(base_dir)
        self.environ = os.environ if environ is None else environ
        self.values = self._load()

    def _load(self):
        """Parse config lines and return a key/value mapping."""
        values = {}
        try:
            lines = self.config_path.read_text(encoding="utf-8").splitlines()
        except OSError:
            return values
        for raw in lines:
            line = raw.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, value = line.split("=", 1)
            key = key.strip()
            value = value.strip()
            if not key:
                continue
            if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
                value = value[1:-1]
            values[key] = value
        return values

    def _raw(self, name):
        """Return the environment value, then the file value, or None."""
        env_value = self.environ.get(name)
        if env_value is not None and env_value.strip():
            return env_value
        return self.values.get(name)

    def get_str(self, name, default):
        """Read a string setting and fall back when missing/blank."""
        value = self._raw(name)
        if value is None:
            return default
        value = value.strip()
        return value if value else default

    def get_int(self, name, default, minimum=None):
        """Read an integer setting with optional lower-bound clamping."""
        raw = self._raw(name)
        if raw is None:
            return default
        try:
            parsed = int(str(raw).strip())
        except (TypeError, ValueError):
            return default
        if minimum is not None and parsed < minimum:
            return minimum
        return parsed

    def get_float(self, name, default, minimum=None):
        """Read a float setting with optional lower-bound clamping."""
        raw = self._raw(name)
        if raw is None:
            return default
        try:
            parsed = float(str(raw).strip())
        except (TypeError, ValueError):
            return default
        if minimum is not None and parsed < minimum:
            return minimum
        return parsed

    def get_bool(self, name, default):
        """Read a yes/no style flag; unknown spellings keep the default."""
        raw = self._raw(name)
        if raw is None:
            return default
        lowered = str(raw).strip().lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
        return default

    def get_int_list(self, name, default):
        """Read a comma-separated list of non-negative integers."""
        raw = self._raw(name)
        if raw is None:
            return list(default)
        parsed = []
        for part in str(raw).split(","):
            part = part.strip()
            if not part:
                continue
            try:
                value = int(part)
            except ValueError:
                return list(default)
            if value < 0:
                return list(default)
            parsed.append(value)
        return parsed or list(default)

    def get_path(self, name, default):
        """Read a path setting and resolve relative values from ``base_dir``."""
        raw = self._raw(name)
        if raw is None:
            return Path(default)
        candidate = Path(str(raw).strip()).expanduser()
        if not str(raw).strip():
            return Path(default)
        if candidate.is_absolute():
            return candidate
        return self.base_dir / candidate
