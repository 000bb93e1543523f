# =============================================================================
# tools/__init__.py
# =============================================================================
# This package is the protocol side of the server.
#
# ARCHITECTURAL ROLE:
#   tools/ is the "translation layer" between MCP and core/:
#     mcp_server.py  FastMCP tool wrappers (one fresh server per session)
#     formatting.py  markdown text for tool results
#     sessions.py    the session registry shared by every transport
#     http_app.py    Streamable HTTP + SSE bindings, /health, /info
#
# WHAT TOOLS DO NOT DO:
#   - They do NOT contain domain logic (that's in core/)
#   - They do NOT read the environment directly (ConfigManager does)
# =============================================================================
