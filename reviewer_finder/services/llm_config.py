"""Versioned LLM settings from YAML under reviewer_finder/llm_configs/.

A config names a registered provider plus its model, generation ``options`` and
a provider section (``anthropic`` / ``openai``). ``"***"`` as an ``api_key``
means the key comes from the environment; the registered factory resolves it.
"""
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from reviewer_finder.services.llm_provider import LLMProvider

logger = logging.getLogger(__name__)

LLM_CONFIGS_DIR = Path(__file__).resolve().parent.parent / "llm_configs"
_SECTION_KEYS = ("options", "anthropic", "openai")


def _normalize(data: Dict[str, Any], name: str) -> Dict[str, Any]:
    config = dict(data)
    config["provider"] = str(config.get("provider") or "").lower().strip()
    config.setdefault("version", name)
    for key in _SECTION_KEYS:
        if not isinstance(config.get(key), dict):
            config[key] = {}
    return config


def load_llm_config(path: Path) -> Optional[Dict[str, Any]]:
    """Parse one YAML config; unreadable files and non-mappings give None."""
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        logger.warning("[llm_config] could not read %s: %s", path.name, e)
        return None
    if not isinstance(data, dict):
        logger.warning("[llm_config] %s is not a mapping, ignoring", path.name)
        return None
    return _normalize(data, path.stem)


def get_llm_config(name: str, configs_dir: Optional[Path] = None) -> Optional[Dict[str, Any]]:
    path = (configs_dir or LLM_CONFIGS_DIR) / f"{name}.yaml"
    if not path.is_file():
        return None
    return load_llm_config(path)


def list_llm_config_names(configs_dir: Optional[Path] = None) -> List[str]:
    directory = configs_dir or LLM_CONFIGS_DIR
    if not directory.is_dir():
        return []
    return sorted(p.stem for p in directory.glob("*.yaml"))


def resolve_llm_config(
    name: Optional[str],
    provider: Optional[str] = None,
    configs_dir: Optional[Path] = None,
) -> Dict[str, Any]:
    """Config *name* when it targets *provider* (or no provider is forced).

    Otherwise a bare ``{"provider": provider}`` config, so the provider's
    factory falls back to its environment defaults.
    """
    provider = (provider or "").lower().strip()
    config = get_llm_config(name, configs_dir) if name else None
    if config and (not provider or config["provider"] == provider):
        return config
    if config:
        logger.info(
            "[llm_config] %s targets %s but LLM_PROVIDER=%s, using provider defaults",
            name, config["provider"], provider,
        )
    return _normalize({"provider": provider}, provider or "env")


def get_llm_provider_from_config(config: Dict[str, Any]) -> LLMProvider:
    """Build the provider named by ``config["provider"]`` through the registry."""
    from reviewer_finder.services.llm_provider import _PROVIDER_REGISTRY, list_providers

    provider = (config.get("provider") or "").lower().strip()
    if not provider:
        raise ValueError("LLM config has no provider (expected one of %s)" % list_providers())
    factory = _PROVIDER_REGISTRY.get(provider)
    if not factory:
        raise ValueError(f"Unknown LLM provider: {provider}. Registered: {list_providers()}")
    return factory(config)
