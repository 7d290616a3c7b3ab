"""
Channel credential references.

Credentials never appear in configuration: the webhook signing key, the SMS
gateway token and the SMTP password are configured as "<scheme>:<key>"
references and resolved once, when the adapter is built.

Schemes:
- env:VAR_NAME     environment variable
- file:/run/x/key  file contents with trailing newlines stripped (mounted secrets)
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Protocol

from .errors import ConfigError


class SecretsProvider(Protocol):
    def supports(self, ref: str) -> bool:
        ...

    def get(self, ref: str) -> str | None:
        """Value for ``ref``, or None if it is not set."""
        ...


class EnvSecretsProvider:
    SCHEME = "env:"

    def supports(self, ref: str) -> bool:
        return ref.startswith(self.SCHEME)

    def get(self, ref: str) -> str | None:
        name = ref.removeprefix(self.SCHEME)
        return os.environ.get(name) if name else None


class FileSecretsProvider:
    SCHEME = "file:"

    def supports(self, ref: str) -> bool:
        return ref.startswith(self.SCHEME)

    def get(self, ref: str) -> str | None:
        path = Path(ref.removeprefix(self.SCHEME))
        try:
            return path.read_text(encoding="utf-8").rstrip("\r\n")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise ConfigError(f"cannot read secret {ref}: {e.strerror}") from e


class ChainedSecretsProvider:
    """First provider that supports a reference answers for it."""

    def __init__(self, providers: list[SecretsProvider] | None = None):
        self.providers = providers or [EnvSecretsProvider(), FileSecretsProvider()]

    def supports(self, ref: str) -> bool:
        return any(p.supports(ref) for p in self.providers)

    def get(self, ref: str) -> str | None:
        for provider in self.providers:
            if provider.supports(ref):
                return provider.get(ref)
        return None


def resolve_secret(ref: str | None, provider: SecretsProvider | None = None) -> str | None:
    """
    Resolve an optional credential reference.

    No reference means no credential. A reference that cannot be resolved is
    a ConfigError; the message carries the reference only.
    """
    if ref is None:
        return None
    provider = provider or ChainedSecretsProvider()
    if not provider.supports(ref):
        raise ConfigError(f"unsupported secret reference: {ref}")
    value = provider.get(ref)
    if not value:
        raise ConfigError(f"secret not found: {ref}")
    return value
