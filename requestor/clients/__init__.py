"""HTTP clients for the admin, market and activity APIs."""

from .activity import ActivityApiClient
from .admin import KeyStoreClient, NodeIdentity
from .market import MarketApiClient
from .rest import RestClient

__all__ = [
    "ActivityApiClient",
    "KeyStoreClient",
    "MarketApiClient",
    "NodeIdentity",
    "RestClient",
]
