"""Asset selection for a trade cycle.

Bots store their tradable assets either as bare symbol strings or as
structured dicts. ``normalize_assets`` resolves both shapes once into
``AssetDescriptor`` so nothing downstream branches on the raw shape.
``select_asset`` then draws one asset using the bot's symbol -> weight map.
"""

from __future__ import annotations

import random
from typing import Any, Mapping, Sequence

from tradesim.config import AssetDescriptor

DEFAULT_ASSET = AssetDescriptor(id="bitcoin", symbol="BTC", name="Bitcoin", logo_url="")


def normalize_asset(entry: Any) -> AssetDescriptor | None:
    """Coerce one configured entry into an ``AssetDescriptor``.

    Returns None for entries that carry no usable identifier.
    """
    if isinstance(entry, AssetDescriptor):
        return entry
    if isinstance(entry, str):
        value = entry.strip()
        if not value:
            return None
        return AssetDescriptor(id=value, symbol=value, name=value, logo_url="")
    if isinstance(entry, Mapping):
        symbol = str(entry.get("symbol") or "").strip()
        asset_id = str(entry.get("id") or "").strip()
        if not symbol and not asset_id:
            return None
        symbol = symbol or asset_id
        return AssetDescriptor(
            id=asset_id or symbol.lower(),
            symbol=symbol,
            name=str(entry.get("name") or symbol),
            logo_url=str(entry.get("logoUrl") or entry.get("logo_url") or entry.get("logo") or ""),
        )
    return None


def normalize_assets(entries: Sequence[Any] | None) -> list[AssetDescriptor]:
    assets = []
    for entry in entries or []:
        asset = normalize_asset(entry)
        if asset is not None:
            assets.append(asset)
    return assets


def lookup_weight(distribution: Mapping[str, Any], symbol: str) -> float:
    """Weight for ``symbol``: exact key, then lowercase, then uppercase; 0 if absent."""
    for key in (symbol, symbol.lower(), symbol.upper()):
        if key in distribution:
            try:
                weight = float(distribution[key])
            except (TypeError, ValueError):
                return 0.0
            return weight if weight > 0 else 0.0
    return 0.0


def select_asset(
    assets: Sequence[Any] | None,
    distribution: Mapping[str, Any] | None,
    rng: random.Random | None = None,
    default: AssetDescriptor = DEFAULT_ASSET,
) -> AssetDescriptor:
    """Pick the asset a trade is attributed to.

    Weights are read against a 0-100 scale: a uniform draw in [0, 100) is
    compared with the running sum of weights in configured order. When the
    weights sum to less than the draw the last asset is returned, so every
    draw resolves to some configured asset.
    """
    rng = rng or random.Random()
    normalized = normalize_assets(assets)
    if not normalized:
        return default

    if not distribution:
        return normalized[rng.randrange(len(normalized))]

    draw = rng.random() * 100
    cumulative = 0.0
    for asset in normalized:
        cumulative += lookup_weight(distribution, asset.symbol)
        if draw <= cumulative:
            return asset
    return normalized[-1]
