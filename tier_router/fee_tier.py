"""
Fee Tier table for cl-fee-tiers

A static, ordered set of volume bands (fiat, USD) mapped to a routing fee
percentage. Peers that forward more volume through us move to cheaper bands.

Boundary rule:
    band i contains amount a  <=>  min_i <= a < min_(i+1)

The last band is unbounded. `max` is kept for display and equals
min_(i+1) - 1, so integer amounts behave exactly like an inclusive
`min <= a <= max` check while fractional amounts (4999.50) still land in
exactly one band.

All arithmetic is Decimal. Floats are converted through str() so that a
value on a band boundary classifies the same way on every call.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional, Tuple

from .errors import ClassificationError


# 1% == 10_000 ppm
PPM_PER_PERCENT = Decimal(10000)


@dataclass(frozen=True)
class FeeTierBand:
    """
    One volume band.

    Attributes:
        min: Lowest USD volume in the band (inclusive)
        max: Highest whole USD volume in the band, None for the last band
        fee_percent: Routing fee charged to peers in this band
    """
    min: int
    max: Optional[int]
    fee_percent: Decimal

    def contains(self, amount: Decimal) -> bool:
        if amount < self.min:
            return False
        return self.max is None or amount < self.max + 1

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "min": self.min,
            "max": self.max,
            "fee_percent": str(self.fee_percent),
            "fee_ppm": percent_to_ppm(self.fee_percent),
        }


def _band(min_usd: int, next_min: Optional[int], fee_percent: str) -> FeeTierBand:
    return FeeTierBand(
        min=min_usd,
        max=None if next_min is None else next_min - 1,
        fee_percent=Decimal(fee_percent),
    )


FEE_TIERS: Tuple[FeeTierBand, ...] = (
    _band(0, 5000, "1"),
    _band(5000, 250000, "0.8"),
    _band(250000, 500000, "0.6"),
    _band(500000, 750000, "0.4"),
    _band(750000, 1000000, "0.2"),
    _band(1000000, None, "0.01"),
)

STARTING_TIER = FEE_TIERS[0]


def to_decimal(value) -> Decimal:
    """Convert int/str/float/Decimal to Decimal without binary float noise."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    try:
        return Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ClassificationError(value)


def classify(amount, tiers: Tuple[FeeTierBand, ...] = FEE_TIERS) -> FeeTierBand:
    """
    Return the unique band containing `amount`.

    Raises:
        ClassificationError: if no band matches (negative, NaN or infinite
            input). With a fully covering table this is an invariant
            violation, not a user error.
    """
    value = to_decimal(amount)
    if not value.is_finite():
        raise ClassificationError(amount)
    for band in tiers:
        if band.contains(value):
            return band
    raise ClassificationError(amount)


def same_band(b1: Optional[FeeTierBand], b2: Optional[FeeTierBand]) -> bool:
    """Structural equality on (min, max, fee_percent)."""
    if b1 is None or b2 is None:
        return b1 is b2
    return (b1.min, b1.max, b1.fee_percent) == (b2.min, b2.max, b2.fee_percent)


def band_index(band: FeeTierBand, tiers: Tuple[FeeTierBand, ...] = FEE_TIERS) -> int:
    """Position of `band` in the ordered table."""
    for i, candidate in enumerate(tiers):
        if same_band(candidate, band):
            return i
    raise ValueError(f"Band {band} is not part of the fee tier table")


def next_threshold(amount, tiers: Tuple[FeeTierBand, ...] = FEE_TIERS) -> Optional[int]:
    """
    Smallest volume strictly greater than `amount` that moves the
    classification to the next band, or None when already in the last band.
    """
    current = classify(amount, tiers)
    idx = band_index(current, tiers)
    if idx + 1 >= len(tiers):
        return None
    return tiers[idx + 1].min


def amount_to_next_tier(amount, tiers: Tuple[FeeTierBand, ...] = FEE_TIERS) -> Optional[Decimal]:
    """Volume still missing before the next band, None in the last band."""
    threshold = next_threshold(amount, tiers)
    if threshold is None:
        return None
    return Decimal(threshold) - to_decimal(amount)


def percent_to_ppm(percent) -> int:
    """Scale a fee percentage into parts-per-million (1% == 10000 ppm)."""
    ppm = to_decimal(percent) * PPM_PER_PERCENT
    return int(ppm.to_integral_value())


def ppm_to_percent(ppm: int) -> Decimal:
    """Inverse of percent_to_ppm for whole ppm values."""
    return Decimal(int(ppm)) / PPM_PER_PERCENT


def band_fee_ppm(band: FeeTierBand) -> int:
    return percent_to_ppm(band.fee_percent)


def band_from_row(min_usd, max_usd, fee_percent) -> FeeTierBand:
    """Rebuild a band from its stored columns."""
    return FeeTierBand(
        min=int(min_usd),
        max=None if max_usd is None else int(max_usd),
        fee_percent=Decimal(str(fee_percent)),
    )


def validate_table(tiers: Tuple[FeeTierBand, ...] = FEE_TIERS) -> None:
    """
    Check that the table starts at 0, is contiguous and ends unbounded.

    Raises ValueError describing the first gap or overlap found.
    """
    if not tiers:
        raise ValueError("Fee tier table is empty")
    if tiers[0].min != 0:
        raise ValueError("First fee tier must start at 0")
    for prev, cur in zip(tiers, tiers[1:]):
        if prev.max is None or prev.max + 1 != cur.min:
            raise ValueError(f"Fee tiers {prev} and {cur} are not contiguous")
    if tiers[-1].max is not None:
        raise ValueError("Last fee tier must be unbounded")
