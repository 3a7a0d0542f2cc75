"""Platform transformers and the default registry.

Exports:
    Transformer: ABC for one (platform, entity_type) mapping.
    TransformerRegistry: Lookup by pair and by webhook topic alias.
    default_registry(): Registry with every shipped transformer.
"""

from __future__ import annotations

from src.cms_bridge.sync.transformers.base import StatusMap, Transformer, TransformerRegistry
from src.cms_bridge.sync.transformers.drupal import (
    DrupalNodeTransformer,
    DrupalTermTransformer,
    DrupalUserTransformer,
)
from src.cms_bridge.sync.transformers.optimizely import OptimizelyContentTransformer
from src.cms_bridge.sync.transformers.shopify import (
    ShopifyCustomerTransformer,
    ShopifyOrderTransformer,
    ShopifyProductTransformer,
)
from src.cms_bridge.sync.transformers.wix import WixContentTransformer
from src.cms_bridge.sync.transformers.wordpress import WordPressContentTransformer

__all__ = [
    "StatusMap",
    "Transformer",
    "TransformerRegistry",
    "default_registry",
]


def default_registry() -> TransformerRegistry:
    """Build a registry holding every shipped transformer."""
    return TransformerRegistry(
        [
            WordPressContentTransformer(),
            ShopifyProductTransformer(),
            ShopifyOrderTransformer(),
            ShopifyCustomerTransformer(),
            DrupalNodeTransformer(),
            DrupalUserTransformer(),
            DrupalTermTransformer(),
            OptimizelyContentTransformer(),
            WixContentTransformer(),
        ]
    )
