# secrets.py
from __future__ import annotations

import os
from typing import Dict, Iterable, Mapping, Optional

MASK = "***"


class SecretStore:
    """Supplies named secret values. Values are never written to disk by pipewright."""

    def get(self, name: str) -> Optional[str]:
        raise NotImplementedError

    def resolve(self, names: Iterable[str]) -> Dict[str, str]:
        """Resolve every known name once; unknown names are left out."""
        out: Dict[str, str] = {}
        for name in names:
            value = self.get(name)
            if value is not None:
                out[name] = value
        return out


class EnvSecretStore(SecretStore):
    """Reads secrets from environment variables: NAME -> <prefix>NAME."""

    def __init__(self, prefix: str = "PIPEWRIGHT_SECRET_", environ: Mapping[str, str] | None = None):
        self.prefix = prefix
        self.environ = environ if environ is not None else os.environ

    def get(self, name: str) -> Optional[str]:
        return self.environ.get(f"{self.prefix}{name}")


class MappingSecretStore(SecretStore):
    def __init__(self, values: Mapping[str, str] | None = None):
        self.values = dict(values or {})

    def get(self, name: str) -> Optional[str]:
        return self.values.get(name)


class Masker:
    """Replaces secret values in log text."""

    def __init__(self, secrets: Iterable[str] = ()):
        # longest first so a secret containing another is masked whole
        self._values = sorted({s for s in secrets if s}, key=len, reverse=True)

    def mask(self, text: str) -> str:
        for value in self._values:
            text = text.replace(value, MASK)
        return text
