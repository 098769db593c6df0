from __future__ import annotations

from esgflow.core.errors import ConfigurationError


def require_organization_id(organization_id: str | None) -> None:
    # Every tenant-scoped query needs a non-empty organization identifier.
    if not organization_id:
        raise ConfigurationError("Organization predicate required but organization_id is missing")


def tenant_predicate(model, organization_id: str) -> object:
    # Build organization predicates through a single helper to guarantee guard coverage.
    require_organization_id(organization_id)
    return model.organization_id == organization_id
