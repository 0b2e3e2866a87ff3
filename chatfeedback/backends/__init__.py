"""
Upstream provider backends.

Usage:
    from chatfeedback.backends import make_backend
    backend = make_backend(cfg["backend"])

Adding a provider:
    1. Subclass BaseBackend (or OpenAICompatibleBackend) in this package.
    2. Add it to PROVIDERS below.
    3. Set  backend.provider: <name>  in config.yaml.
"""

from chatfeedback.backends.base import BaseBackend, BackendError, StreamChunk
from chatfeedback.backends.openai_compat import OpenAICompatibleBackend
from chatfeedback.backends.openrouter import OpenRouterBackend

PROVIDERS: dict[str, type[BaseBackend]] = {
    "openrouter": OpenRouterBackend,
    "openai_compat": OpenAICompatibleBackend,
}


def make_backend(backend_cfg: dict, **kwargs) -> BaseBackend:
    """
    Instantiate the configured provider.

    Raises:
        ValueError: If the provider name is not registered.
    """
    provider = backend_cfg.get("provider", "openrouter")
    cls = PROVIDERS.get(provider)
    if cls is None:
        available = ", ".join(PROVIDERS)
        raise ValueError(f"Unknown backend provider: '{provider}'. Available: {available}")
    return cls(
        name=backend_cfg.get("name", provider),
        url=backend_cfg.get("url", ""),
        api_key=backend_cfg.get("api_key", ""),
        timeout=backend_cfg.get("timeout", 120),
        **kwargs,
    )


__all__ = [
    "BaseBackend",
    "BackendError",
    "StreamChunk",
    "OpenAICompatibleBackend",
    "OpenRouterBackend",
    "PROVIDERS",
    "make_backend",
]
