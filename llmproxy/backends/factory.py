"""Construction-time backend selection.

To add a provider:
1. Create backends/<provider>.py with an HTTPBackend subclass
2. Add a builder to BUILDERS below and its settings to config.Settings
3. Set BACKEND=<provider> (or just configure it)
"""

import logging
from typing import Callable, Dict, Optional

from ..config import Settings, get_settings
from .base import Backend, BackendOptions
from .deepseek import DeepSeekBackend
from .ollama import DEFAULT_ENDPOINT as OLLAMA_DEFAULT_ENDPOINT, OllamaBackend
from .openrouter import OpenRouterBackend

logger = logging.getLogger(__name__)


class BackendConfigurationError(Exception):
    """No usable backend could be built from the configuration."""


def _deepseek(settings: Settings, **kwargs) -> Backend:
    if not settings.DEEPSEEK_API_KEY:
        raise BackendConfigurationError("DEEPSEEK_API_KEY is required for the deepseek backend")
    options = BackendOptions(
        endpoint=settings.DEEPSEEK_ENDPOINT,
        api_key=settings.DEEPSEEK_API_KEY,
        default_model=settings.DEEPSEEK_DEFAULT_MODEL,
        models=settings.DEEPSEEK_MODELS,
        timeout=settings.UPSTREAM_TIMEOUT,
    )
    return DeepSeekBackend(options, gateway_api_key=settings.GATEWAY_API_KEY, **kwargs)


def _openrouter(settings: Settings, **kwargs) -> Backend:
    if not settings.OPENROUTER_API_KEY:
        raise BackendConfigurationError("OPENROUTER_API_KEY is required for the openrouter backend")
    options = BackendOptions(
        endpoint=settings.OPENROUTER_ENDPOINT,
        api_key=settings.OPENROUTER_API_KEY,
        default_model=settings.OPENROUTER_DEFAULT_MODEL,
        models=settings.OPENROUTER_MODELS,
        timeout=settings.UPSTREAM_TIMEOUT,
    )
    return OpenRouterBackend(
        options,
        gateway_api_key=settings.GATEWAY_API_KEY,
        referer=settings.OPENROUTER_REFERER,
        title=settings.OPENROUTER_TITLE,
        **kwargs,
    )


def _ollama(settings: Settings, **kwargs) -> Backend:
    # Selected explicitly without an endpoint: assume a local install
    options = BackendOptions(
        endpoint=settings.OLLAMA_ENDPOINT or OLLAMA_DEFAULT_ENDPOINT,
        api_key=settings.OLLAMA_API_KEY,
        default_model=settings.OLLAMA_DEFAULT_MODEL,
        models=settings.OLLAMA_MODELS,
        timeout=settings.UPSTREAM_TIMEOUT,
    )
    return OllamaBackend(options, gateway_api_key=settings.GATEWAY_API_KEY, allow_anonymous=True, **kwargs)


BUILDERS: Dict[str, Callable[..., Backend]] = {
    "deepseek": _deepseek,
    "openrouter": _openrouter,
    "ollama": _ollama,
}


def select_backend_name(settings: Settings) -> str:
    if settings.BACKEND:
        return settings.BACKEND
    if settings.DEEPSEEK_API_KEY:
        return "deepseek"
    if settings.OPENROUTER_API_KEY:
        return "openrouter"
    if settings.OLLAMA_ENDPOINT:
        return "ollama"
    raise BackendConfigurationError(
        "Unable to determine backend. Set BACKEND, or configure DEEPSEEK_API_KEY, "
        "OPENROUTER_API_KEY or OLLAMA_ENDPOINT."
    )


def build_backend(settings: Optional[Settings] = None, **kwargs) -> Backend:
    """
    Factory: return the configured backend.

    Extra keyword arguments (client, id_factory, clock) go to the backend constructor.
    """
    s = settings or get_settings()
    name = select_backend_name(s)
    kwargs.setdefault("heartbeat_interval", s.HEARTBEAT_INTERVAL)
    backend = BUILDERS[name](s, **kwargs)
    logger.info(f"Using {backend.name} backend at {backend.endpoint}")
    return backend
