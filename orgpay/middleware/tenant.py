"""Tenant middleware — resolves org_slug to organization context.

Runs before every request to organization routes (/<org_slug>/*).
Sets g.organization, g.organization_id, g.subscription.
"""

from flask import abort, g, request
from sqlalchemy.orm import joinedload

from orgpay.models.organization import Organization


def resolve_tenant():
    """Before-request hook for organization routes.

    Only runs on routes that have an `org_slug` URL parameter.
    Skips webhooks.
    """
    if request.view_args is None:
        return
    org_slug = request.view_args.get("org_slug")
    if org_slug is None:
        return

    if request.path.startswith("/stripe/"):
        return

    # Single query: organization + subscription in one JOIN
    organization = (
        Organization.query
        .options(joinedload(Organization.subscription))
        .filter_by(slug=org_slug)
        .first()
    )
    if organization is None:
        abort(404)

    g.organization = organization
    g.organization_id = organization.id
    g.subscription = organization.subscription


def init_tenant_middleware(app):
    """Register the tenant resolver as a before_request hook."""
    app.before_request(resolve_tenant)
