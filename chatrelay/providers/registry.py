"""Model catalog and TOML configuration loader.

Loads model definitions from models.toml and relay defaults from
defaults.toml. The ModelCatalog answers context-window lookups for the
orchestrator; it is read-only after construction and safe to share
between concurrent requests.
"""

from __future__ import annotations

import logging
import os
import tomllib
from pathlib import Path

from chatrelay.schemas.completion import ModelConfig, RelayConfig

logger = logging.getLogger(__name__)

# Default config directory relative to the chatrelay package
_CONFIG_DIR = Path(__file__).parent.parent / "config"

# Environment variables that override [upstream] settings
_UPSTREAM_ENV_OVERRIDES: dict[str, str] = {
    "OPENAI_BASE_URL": "base_url",
    "ONEAPI_URL": "gateway_url",
}


def load_models(config_path: Path | None = None) -> dict[str, ModelConfig]:
    """Load the model catalog from a TOML file.

    Args:
        config_path: Path to models.toml. Defaults to chatrelay/config/models.toml.

    Returns:
        Dictionary mapping catalog keys to ModelConfig instances.

    Raises:
        FileNotFoundError: If the config file does not exist.
        ValueError: If the TOML structure is invalid.
    """
    path = config_path or _CONFIG_DIR / "models.toml"
    if not path.exists():
        raise FileNotFoundError(f"Model catalog not found: {path}")

    with open(path, "rb") as f:
        raw = tomllib.load(f)

    models_section = raw.get("models")
    if not models_section or not isinstance(models_section, dict):
        raise ValueError(f"No [models] section found in {path}")

    catalog: dict[str, ModelConfig] = {}
    for key, entry in models_section.items():
        if not isinstance(entry, dict):
            continue
        entry.setdefault("model", key)
        entry.setdefault("display_name", key)
        catalog[key] = ModelConfig(**entry)

    return catalog


def load_relay_config(config_path: Path | None = None) -> RelayConfig:
    """Load relay defaults from a TOML file.

    OPENAI_BASE_URL and ONEAPI_URL, when set, override the upstream
    base URL and gateway URL from the file.

    Args:
        config_path: Path to defaults.toml. Defaults to chatrelay/config/defaults.toml.

    Returns:
        RelayConfig with values from the TOML file.

    Raises:
        FileNotFoundError: If the config file does not exist.
    """
    path = config_path or _CONFIG_DIR / "defaults.toml"
    if not path.exists():
        raise FileNotFoundError(f"Relay config not found: {path}")

    with open(path, "rb") as f:
        raw = tomllib.load(f)

    upstream = dict(raw.get("upstream", {}))
    for env_var, field in _UPSTREAM_ENV_OVERRIDES.items():
        value = os.environ.get(env_var)
        if value:
            upstream[field] = value

    return RelayConfig(
        relay=raw.get("relay", {}),
        upstream=upstream,
        server=raw.get("server", {}),
    )


class ModelCatalog:
    """Read-only lookup of model context limits.

    Models can be found by catalog key or by their upstream model id.
    Unknown models resolve to a synthetic entry with the default context
    window rather than failing the request.
    """

    def __init__(
        self,
        models: dict[str, ModelConfig],
        *,
        default_context_window: int = 4000,
    ) -> None:
        self._models = dict(models)
        self._by_model_id = {cfg.model: cfg for cfg in models.values()}
        self._default_context_window = default_context_window

    @classmethod
    def from_config(
        cls,
        config_path: Path | None = None,
        *,
        default_context_window: int = 4000,
    ) -> ModelCatalog:
        """Build a catalog from models.toml."""
        return cls(load_models(config_path), default_context_window=default_context_window)

    def lookup(self, model_id: str) -> ModelConfig:
        """Return the catalog entry for a model key or upstream model id."""
        found = self._models.get(model_id) or self._by_model_id.get(model_id)
        if found is not None:
            return found

        logger.warning(
            "Model %s not in catalog, assuming a %d-token context window",
            model_id, self._default_context_window,
        )
        return ModelConfig(
            model=model_id,
            display_name=model_id,
            context_window=self._default_context_window,
        )

    def __contains__(self, model_id: object) -> bool:
        return model_id in self._models or model_id in self._by_model_id

    def items(self) -> list[tuple[str, ModelConfig]]:
        """All catalog entries as (key, config) pairs, in file order."""
        return list(self._models.items())
