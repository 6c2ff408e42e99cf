"""Tenant Gateway Manager (GWM).

Per-tenant PostgREST lifecycle manager that:
 - renders each tenant's gateway config from its project record and secrets
 - keeps the shared PgBouncer registry (databases + userlist) in sync
 - spawns, reloads and tears down one gateway container per tenant
 - converges idempotently on every call, even after partial failures

There is no background loop: convergence happens when an operation targets a tenant.
"""
