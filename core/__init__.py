# =============================================================================
# core/__init__.py
# =============================================================================
# This package contains ALL the domain logic of the document extractor:
# configuration lifecycle, extraction, the store clients and ingestion.
#
# CRITICAL ARCHITECTURAL RULE:
#   Nothing in this package imports FastMCP, the MCP transports or Starlette.
#   core/ speaks in dataclasses (core/models.py) and raises ExtractorError
#   subclasses (core/errors.py).  Turning those into tool results and
#   JSON-RPC errors is the job of tools/.
# =============================================================================
