"""
vendor_marketplace/services/marketplace

Marketplace Service
"""

from .marketplace import Marketplace
from .service import MarketplaceService

__all__ = [
    "Marketplace",
    "MarketplaceService",
]
