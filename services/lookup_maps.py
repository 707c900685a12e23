"""
Lookup Map Builder
In-memory, case-insensitive indexes over manufacturers, products and option
mappings. Built once per ingestion run from already-fetched snapshots.
"""
from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional


def normalize_key(value: Optional[str]) -> str:
    """Natural-key normalization shared by every map."""
    return (value or "").strip().lower()


@dataclass(frozen=True)
class OptionKey:
    product_code: str
    option_name: str

    @classmethod
    def of(cls, product_code: Optional[str], option_name: Optional[str]) -> "OptionKey":
        return cls(normalize_key(product_code), normalize_key(option_name))

    def __bool__(self) -> bool:
        return bool(self.product_code and self.option_name)


@dataclass(frozen=True)
class ManufacturerInfo:
    id: int
    name: str


@dataclass(frozen=True)
class ProductInfo:
    product_code: str
    manufacturer_id: Optional[int] = None


@dataclass(frozen=True)
class OptionMappingInfo:
    product_code: str
    option_name: str
    manufacturer_id: Optional[int] = None


@dataclass
class LookupMaps:
    manufacturers: Dict[str, ManufacturerInfo] = field(default_factory=dict)
    products: Dict[str, ProductInfo] = field(default_factory=dict)
    options: Dict[OptionKey, OptionMappingInfo] = field(default_factory=dict)

    def manufacturer(self, name: Optional[str]) -> Optional[ManufacturerInfo]:
        key = normalize_key(name)
        return self.manufacturers.get(key) if key else None

    def product(self, product_code: Optional[str]) -> Optional[ProductInfo]:
        key = normalize_key(product_code)
        return self.products.get(key) if key else None

    def option(self, product_code: Optional[str], option_name: Optional[str]) -> Optional[OptionMappingInfo]:
        key = OptionKey.of(product_code, option_name)
        return self.options.get(key) if key else None

    def copy(self) -> "LookupMaps":
        """Independent maps over the same (immutable) entries, for one transaction attempt."""
        return LookupMaps(dict(self.manufacturers), dict(self.products), dict(self.options))

    def add_manufacturers(self, infos: Iterable[ManufacturerInfo]) -> None:
        for info in infos:
            self.manufacturers.setdefault(normalize_key(info.name), info)


def build_lookup_maps(
    manufacturers: Iterable[ManufacturerInfo],
    products: Iterable[ProductInfo],
    option_mappings: Iterable[OptionMappingInfo],
) -> LookupMaps:
    maps = LookupMaps()
    maps.add_manufacturers(m for m in manufacturers if normalize_key(m.name))
    for p in products:
        key = normalize_key(p.product_code)
        if key:
            maps.products.setdefault(key, p)
    for o in option_mappings:
        key = OptionKey.of(o.product_code, o.option_name)
        if key:
            maps.options.setdefault(key, o)
    return maps
