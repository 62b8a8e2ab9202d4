from __future__ import annotations

import os
import re
from typing import Mapping, Optional, Protocol


class SecretProvider(Protocol):
    def get_secret(self, role: str) -> str:
        ...


class SecretNotFound(KeyError):
    pass


class EnvSecretProvider:
    """Secrets from HOSTSETUP_SECRET_<ROLE> environment variables."""

    prefix = "HOSTSETUP_SECRET_"

    def __init__(self, environ: Optional[Mapping[str, str]] = None) -> None:
        self._environ = environ if environ is not None else os.environ

    def var_name(self, role: str) -> str:
        return self.prefix + re.sub(r"[^A-Za-z0-9]", "_", role).upper()

    def get_secret(self, role: str) -> str:
        name = self.var_name(role)
        value = self._environ.get(name)
        if not value:
            raise SecretNotFound(f"No secret for role {role!r} (set {name})")
        return value
