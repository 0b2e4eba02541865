"""Core (UI-agnostic) data-grid engine.

This package contains:
- record collection and field sampling
- merge-key inference and record reconciliation
- pivot aggregation (pandas group-by) with row/column/sub/grand totals
- calculated fields (formula parse -> validate -> evaluate)
- grid filters and value formatting
- the end-to-end ``build_view`` pipeline (JSON-serializable payloads)
"""
