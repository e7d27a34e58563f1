"""LineFlow MCP Server.

Conversational purchase flow for multi-line mobile service, exposed
as MCP tools. An agent walks the user through line count, plans,
devices, protection and SIM types, then collects shipping details.

This package provides:
- A per-session purchase aggregate keeping flow progress and cart in sync
- Prerequisite gating, line assignment and selection-mode handling
- A thin async client for the upstream carrier API
"""

__version__ = "1.0.0"
