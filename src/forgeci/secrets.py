# secrets.py
from __future__ import annotations

import os
from typing import Dict, Iterable, Mapping, Optional

from .errors import SecretResolutionError
from .model import Secret

MASK = "***"


def resolve_secrets(
    secrets: Iterable[Secret],
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    """
    Resolve every declared secret from the host environment, once per run.

    Returns {container_name: value}. A host variable that is not set raises
    SecretResolutionError; an empty value counts as set.
    """
    env = os.environ if environ is None else environ
    resolved: Dict[str, str] = {}
    for secret in secrets:
        if secret.env_var not in env:
            raise SecretResolutionError(secret=secret.name, env_var=secret.env_var)
        resolved[secret.name] = env[secret.env_var]
    return resolved


def mask_secrets(text: str, values: Iterable[str]) -> str:
    """Replace every non-empty secret value in `text` with MASK."""
    # longest first so a value containing another is masked whole
    for value in sorted((v for v in values if v), key=len, reverse=True):
        text = text.replace(value, MASK)
    return text
