"""
connectors — integration connection & credential lifecycle.

Handles:
  • Encrypted, expiry-aware token storage (TokenVault)
  • Connection listing & status normalization (ConnectionRegistry)
  • Catalog enrichment (CatalogService)
  • Health probes, metrics & usage (HealthMonitor)
  • Authorization-gated action execution (ActionGateway)
  • Composed per-integration views (Aggregator)

The upstream connector provider is reached through ConnectorProvider.
"""
