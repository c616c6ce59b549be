"""Small HTTP-related constants shared across toolstream.

This module is intentionally tiny to avoid circular imports and drift.
"""

from __future__ import annotations

# Retryable status codes shared by provider error mapping and core retry.
# Client errors other than 429 are never retried.
RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({429, 500, 502, 503, 504})

AUTH_STATUS_CODES: frozenset[int] = frozenset({401, 403})
