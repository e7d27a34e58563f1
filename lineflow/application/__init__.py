"""Application layer - use cases composing the purchase session aggregate.

Services:
- PurchaseFlowService: session-scoped mutations and reads
- CatalogService: normalised plans, devices, protection and SIM types
- SessionRegistry: resolves which session a tool call belongs to
"""
