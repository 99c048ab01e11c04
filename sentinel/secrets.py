"""Exchange API credentials for the bots.

Each field is resolved on its own, environment first:
1. CB_API_KEY, CB_API_SECRET, CB_API_PASSPHRASE
2. JSON file at ``config_path``, else $CB_CONFIG_PATH, else ~/.coinbase_config.json
   with keys api_key, api_secret, passphrase
"""
import json
import os
from pathlib import Path
from typing import Dict, List, NamedTuple, Optional

ENV_VARS = {
    "api_key": "CB_API_KEY",
    "api_secret": "CB_API_SECRET",
    "passphrase": "CB_API_PASSPHRASE",
}


class ExchangeCredentials(NamedTuple):
    """Opaque to the engine; only checked for presence before use."""
    api_key: str
    api_secret: str
    passphrase: str

    def missing_fields(self) -> List[str]:
        return [name for name in self._fields if not getattr(self, name)]

    def __repr__(self) -> str:
        masked = f"{self.api_key[:4]}***" if self.api_key else "''"
        return f"ExchangeCredentials(api_key={masked}, api_secret=***, passphrase=***)"


def default_config_path() -> Path:
    return Path(os.getenv("CB_CONFIG_PATH") or Path.home() / ".coinbase_config.json")


def _read_config_file(path: Path) -> Dict[str, str]:
    if not path.exists():
        return {}
    try:
        with path.open("r") as f:
            return json.load(f)
    except (OSError, ValueError) as e:
        raise ValueError(f"Failed to load config from {path}: {e}")


def load_credentials(config_path: Optional[str] = None) -> ExchangeCredentials:
    """Resolve credentials from the environment and the config file.

    Raises:
        ValueError: a field is missing everywhere, or the file is unreadable
    """
    values = {name: os.getenv(var) for name, var in ENV_VARS.items()}
    path = Path(config_path) if config_path else default_config_path()
    if not all(values.values()):
        from_file = _read_config_file(path)
        values = {name: value or from_file.get(name) for name, value in values.items()}

    if not all(values.values()):
        raise ValueError(
            "Missing Coinbase credentials. Provide via:\n"
            f"  - Environment: {', '.join(ENV_VARS.values())}\n"
            f"  - Config file: {path}\n"
            "  - CB_CONFIG_PATH env var to override config location"
        )
    return ExchangeCredentials(**values)


def save_config(config_path: str, api_key: str, api_secret: str, passphrase: str) -> None:
    """Write credentials as JSON, readable by the owner only.

    WARNING: plaintext. Prefer environment variables in production.
    """
    cfg_file = Path(config_path)
    cfg_file.parent.mkdir(parents=True, exist_ok=True)
    with cfg_file.open("w") as f:
        json.dump({"api_key": api_key, "api_secret": api_secret, "passphrase": passphrase}, f, indent=2)
    try:
        cfg_file.chmod(0o600)
    except OSError:
        pass  # Windows doesn't support chmod
