"""
Shared exception definitions for the document store port.

Hierarchy:
- StoreError (base for all store exceptions)
  - DocumentNotFound
  - WriteError
  - SubscriptionError
"""


class StoreError(Exception):
    """Base exception for all store-related errors."""
    retryable: bool = True


class DocumentNotFound(StoreError):
    retryable = False


class WriteError(StoreError):
    retryable = True


class SubscriptionError(StoreError):
    """A live query was rejected or revoked by the store."""
    retryable = False
