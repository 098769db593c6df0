from __future__ import annotations

import os
import re
from collections.abc import Mapping
from dataclasses import dataclass

from esgflow.core.errors import ConfigurationError
from esgflow.domain.connector_configs import ConnectorConfigBase


SECRET_ENV_PREFIX = "ESGFLOW_SECRET"
_ENV_SAFE = re.compile(r"[^A-Z0-9]+")


@dataclass(frozen=True)
class ResolvedSecrets:
    values: dict[str, str]

    def get(self, name: str) -> str:
        return self.values[name]

    def optional(self, name: str) -> str | None:
        return self.values.get(name)

    def all_values(self) -> list[str]:
        return list(self.values.values())

    def __repr__(self) -> str:
        # Never render secret values, even in debug output.
        return f"ResolvedSecrets(names={sorted(self.values)})"


def _env_segment(value: str) -> str:
    return _ENV_SAFE.sub("_", value.upper()).strip("_")


def secret_env_name(organization_id: str, connector_id: str, key: str) -> str:
    """Environment variable holding one connector secret.

    Names are always ``ESGFLOW_SECRET_<ORG>_<CONNECTOR>_<KEY>``; a tenant can
    only reach variables under its own organization and connector.
    """
    return "_".join(
        [SECRET_ENV_PREFIX, _env_segment(organization_id), _env_segment(connector_id), _env_segment(key)]
    )


class SecretResolver:
    """Resolve connector secrets from the process environment.

    Only namespaced variables are read; there is no shared fallback.
    """

    def __init__(self, environ: Mapping[str, str] | None = None) -> None:
        self._environ = environ if environ is not None else os.environ

    def lookup(self, organization_id: str, connector_id: str, key: str) -> str | None:
        value = self._environ.get(secret_env_name(organization_id, connector_id, key))
        return value or None

    def resolve(self, config: ConnectorConfigBase, organization_id: str, connector_id: str) -> ResolvedSecrets:
        # Fail before any network call when a declared secret is missing.
        values: dict[str, str] = {}
        missing: list[str] = []
        for logical_name, key in config.secret_names().items():
            value = self.lookup(organization_id, connector_id, key)
            if value is None:
                missing.append(secret_env_name(organization_id, connector_id, key))
            else:
                values[logical_name] = value
        if missing:
            raise ConfigurationError(
                f"Credentials not configured for {config.connector_type}: missing {', '.join(sorted(missing))}"
            )
        return ResolvedSecrets(values)


def get_secret_resolver() -> SecretResolver:
    return SecretResolver()
