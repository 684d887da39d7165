"""Normalise the supplier's product payloads.

CJ returns a product in at least three shapes depending on the endpoint:

* ``/product/list``: ``pid``, ``productNameEn``, ``productImage``, ``sellPrice``
* ``/product/query``: ``pid``/``productId``, ``productNameEn``/``nameEn``,
  ``bigImage``, ``imageList`` (sometimes a JSON-encoded string), ``variants``
* ``/product/myProduct/query``: ``id``, ``name``/``title``, ``skuList``

``map_cj_item`` folds all of them into a ``MappedProduct``. It returns None
when the item has no supplier id or no title and never raises.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field

_NUMBER_RE = re.compile(r'\d+(?:\.\d+)?')


@dataclass(frozen=True)
class MappedVariant:
    cj_sku: str | None
    cj_variant_id: str | None
    option_value: str | None
    price: float | None
    stock: int | None
    weight_grams: int | None = None


@dataclass(frozen=True)
class MappedProduct:
    cj_product_id: str
    title: str
    price: float | None
    images: list[str] = field(default_factory=list)
    video_url: str | None = None
    category: str | None = None
    description: str | None = None
    variants: list[MappedVariant] = field(default_factory=list)
    origin_country_code: str | None = None
    delivery_time_hours: float | None = None

    @property
    def total_stock(self) -> int:
        return sum(v.stock or 0 for v in self.variants)

    @property
    def min_variant_price(self) -> float | None:
        prices = [v.price for v in self.variants if v.price is not None]
        if prices:
            return min(prices)
        return self.price


def parse_price(value) -> float | None:
    """Numbers, numeric strings and ranges such as ``"3.10 -- 5.20"`` (lowest wins)."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if value >= 0 else None
    if isinstance(value, str):
        found = [float(m) for m in _NUMBER_RE.findall(value.replace(',', ''))]
        return min(found) if found else None
    return None


def _first(item: dict, *keys):
    for key in keys:
        value = item.get(key)
        if value not in (None, ''):
            return value
    return None


def _text(value) -> str | None:
    return None if value is None else str(value)


def _as_int(value) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def _image_list(raw) -> list[str]:
    if isinstance(raw, str):
        text = raw.strip()
        if text.startswith('['):
            try:
                raw = json.loads(text)
            except json.JSONDecodeError:
                return []
        else:
            return [text] if text else []
    if not isinstance(raw, list):
        return []
    return [u for u in raw if isinstance(u, str) and u.strip()]


def _video_url(item: dict) -> str | None:
    value = _first(item, 'productVideo', 'videoUrl', 'video')
    if isinstance(value, list):
        value = next((v for v in value if isinstance(v, str) and v), None)
    return value if isinstance(value, str) else None


def map_cj_variant(raw: dict, fallback_price: float | None) -> MappedVariant | None:
    if not isinstance(raw, dict):
        return None
    price = parse_price(_first(raw, 'variantSellPrice', 'sellPrice', 'price', 'discountPrice'))
    return MappedVariant(
        cj_sku=_text(_first(raw, 'variantSku', 'cjSku', 'sku', 'skuId', 'barcode')),
        cj_variant_id=_text(_first(raw, 'vid', 'variantId')),
        option_value=_text(_first(raw, 'variantKey', 'variantNameEn', 'size', 'attributeValue', 'optionValue')),
        price=price if price is not None else fallback_price,
        stock=_as_int(_first(raw, 'variantStock', 'stock', 'quantity', 'inventory')),
        weight_grams=_as_int(_first(raw, 'variantWeight', 'weight', 'packWeight')),
    )


def map_cj_item(item) -> MappedProduct | None:
    if not isinstance(item, dict):
        return None

    pid = _first(item, 'pid', 'productId', 'id')
    title = _first(item, 'productNameEn', 'nameEn', 'name', 'title')
    if pid is None or not isinstance(title, (str, int, float)) or not str(title).strip():
        return None

    price = parse_price(_first(item, 'sellPrice', 'productSellPrice', 'price'))

    images: list[str] = []
    for candidate in (
        _image_list(_first(item, 'bigImage', 'productImage', 'image')),
        _image_list(item.get('imageList')),
        _image_list(item.get('productImageSet')),
    ):
        for url in candidate:
            if url not in images:
                images.append(url)

    raw_variants = _first(item, 'variants', 'variantList', 'skuList', 'productSkuList') or []
    variants = []
    if isinstance(raw_variants, list):
        for raw in raw_variants:
            mapped = map_cj_variant(raw, price)
            if mapped is not None:
                variants.append(mapped)

    delivery = item.get('deliveryTime')
    return MappedProduct(
        cj_product_id=str(pid),
        title=str(title).strip(),
        price=price,
        images=images,
        video_url=_video_url(item),
        category=_text(_first(item, 'categoryName', 'category')),
        description=_text(_first(item, 'description', 'productDescription')),
        variants=variants,
        origin_country_code=_first(item, 'areaCountryCode', 'countryCode'),
        delivery_time_hours=float(delivery) if isinstance(delivery, (int, float)) and not isinstance(delivery, bool) else None,
    )
