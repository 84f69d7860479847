"""
Entitlements Service package.

Decides whether a customer may use a product, based on the subscriptions
the payments platform reports for that customer. It provides:

- app.main: API surface for access checks, invalidation and webhooks.
- app.cache: In-memory entitlement cache with single-flight refresh.
- app.fetchers: Fetcher contract and the platform REST implementation.
- app.webhooks: Webhook receiver that invalidates cached records.

Guidelines:
- Never grant on uncertainty; fall back only to records within the hard ceiling.
- Errors are surfaced to the caller, who owns retry policy.
"""
