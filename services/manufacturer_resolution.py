"""
Manufacturer Resolution Engine

Priority, first match wins:
  1. manufacturer name written in the source file
  2. (product code, option name) option mapping
  3. product code mapping
  4. unresolved (None)
"""
import re
from typing import Optional, Protocol

from settings import UNSPECIFIED_MANUFACTURER_NAMES
from services.lookup_maps import LookupMaps

_WHITESPACE = re.compile(r"\s+")


class Resolvable(Protocol):
    manufacturer_name: Optional[str]
    product_code: str
    option_name: Optional[str]


def normalize_manufacturer_name(raw: Optional[str]) -> Optional[str]:
    """Trim and collapse whitespace; placeholder names such as "미지정" mean unspecified."""
    if raw is None:
        return None
    name = _WHITESPACE.sub(" ", str(raw)).strip()
    if not name or name.lower() in UNSPECIFIED_MANUFACTURER_NAMES:
        return None
    return name


def resolve_manufacturer_id(
    order: Resolvable,
    maps: LookupMaps,
    use_product_mapping: bool = True,
) -> Optional[int]:
    if order.manufacturer_name:
        found = maps.manufacturer(order.manufacturer_name)
        if found is not None:
            return found.id

    if order.product_code and order.option_name:
        mapping = maps.option(order.product_code, order.option_name)
        if mapping is not None and mapping.manufacturer_id is not None:
            return mapping.manufacturer_id

    if use_product_mapping and order.product_code:
        product = maps.product(order.product_code)
        if product is not None and product.manufacturer_id is not None:
            return product.manufacturer_id

    return None
