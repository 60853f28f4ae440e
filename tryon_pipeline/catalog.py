# Module: catalog
# License: MIT (WalVerse project)
# Description: Try-on product catalog, product image loading and in-memory cart.
# Platform: Both
# Dependencies: yaml, requests, Pillow

"""
Product Catalog
===============
Products are read from a YAML file:

    products:
      - id: "3"
        name: Stylish Sunglasses
        price: 1599
        image: sunglasses.png      # file under image_dir, or an http(s) URL
        category: glasses          # glasses | clothing | jewelry
"""

import io
import logging
import threading
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

import requests
import yaml
from PIL import Image, UnidentifiedImageError

from tryon_pipeline.schema import DecodeError, ProductCategory

logger = logging.getLogger("walverse.catalog")


@dataclass(frozen=True)
class Product:
    id: str
    name: str
    price: float
    image_ref: str
    category: ProductCategory

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Product":
        return cls(
            id=str(raw["id"]),
            name=str(raw["name"]),
            price=float(raw["price"]),
            image_ref=str(raw.get("image") or raw.get("image_ref") or ""),
            category=ProductCategory(raw["category"]),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "price": self.price,
            "image": self.image_ref,
            "category": self.category.value,
            "try_on": self.category.supports_tryon,
        }


class Catalog:
    """Ordered, id-indexed product list."""

    def __init__(self, products: List[Product]):
        self._products: Dict[str, Product] = {}
        for product in products:
            if product.id in self._products:
                raise ValueError(f"Duplicate product id: {product.id}")
            self._products[product.id] = product

    def __iter__(self) -> Iterator[Product]:
        return iter(self._products.values())

    def __len__(self) -> int:
        return len(self._products)

    def get(self, product_id: str) -> Product:
        try:
            return self._products[str(product_id)]
        except KeyError:
            raise KeyError(f"Unknown product: {product_id}") from None

    def tryon_products(self) -> List[Product]:
        return [p for p in self if p.category.supports_tryon]


def load_catalog(path: Union[str, Path]) -> Catalog:
    """
    Load a catalog YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If an entry is malformed.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Catalog not found: {path}")

    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}

    products = []
    for i, entry in enumerate(raw.get("products") or []):
        try:
            products.append(Product.from_dict(entry))
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"Invalid catalog entry #{i} in {path}: {e}") from e

    logger.info("Catalog loaded: %d products (%s)", len(products), path.name)
    return Catalog(products)


def load_product_image(
    product: Product,
    image_dir: Optional[Union[str, Path]] = None,
    timeout: int = 30,
) -> Image.Image:
    """
    Load a product's overlay image as RGBA.

    Args:
        product: Catalog product.
        image_dir: Directory that relative image references resolve against.
        timeout: Download timeout in seconds for URL references.

    Raises:
        DecodeError: If the image cannot be fetched or decoded.
    """
    ref = product.image_ref
    if ref.startswith(("http://", "https://")):
        try:
            response = requests.get(ref, timeout=timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise DecodeError(f"Download failed for {product.id}: {e}") from e
        data = response.content
    else:
        path = Path(image_dir) / ref if image_dir else Path(ref)
        if not path.is_file():
            raise DecodeError(f"Product image not found: {path}")
        data = path.read_bytes()

    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except (UnidentifiedImageError, OSError) as e:
        raise DecodeError(f"Cannot decode image for product {product.id}: {e}") from e
    return image.convert("RGBA")


class Cart:
    """In-memory cart; add() matches the on_add_to_cart(product_id) callback."""

    def __init__(self, catalog: Catalog):
        self._catalog = catalog
        self._items: Counter = Counter()
        self._lock = threading.Lock()

    def add(self, product_id: str) -> int:
        product = self._catalog.get(product_id)
        with self._lock:
            self._items[product.id] += 1
            quantity = self._items[product.id]
        logger.info("Added to cart: %s (qty %d)", product.name, quantity)
        return quantity

    __call__ = add

    def quantity(self, product_id: str) -> int:
        return self._items.get(str(product_id), 0)

    def total(self) -> float:
        return sum(self._catalog.get(pid).price * qty for pid, qty in self._items.items())
