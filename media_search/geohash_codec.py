"""Geohash encoding: base-32 strings naming nested lat/lon rectangles."""

BASE32 = "0123456789bcdefghjkmnpqrstuvwxyz"
_DECODE_MAP = {c: i for i, c in enumerate(BASE32)}

# (upper bound in km, precision); anything wider gets 3.
_RADIUS_PRECISION = [(0.1, 7), (1.0, 6), (5.0, 5), (40.0, 4)]


def encode(lat: float, lon: float, precision: int = 6) -> str:
    if not -90 <= lat <= 90 or not -180 <= lon <= 180:
        raise ValueError(f"Coordinate out of range: ({lat}, {lon})")
    lat_lo, lat_hi = -90.0, 90.0
    lon_lo, lon_hi = -180.0, 180.0
    chars = []
    bits = 0
    bit_count = 0
    even = True  # longitude first
    while len(chars) < precision:
        if even:
            mid = (lon_lo + lon_hi) / 2
            if lon >= mid:
                bits = (bits << 1) | 1
                lon_lo = mid
            else:
                bits <<= 1
                lon_hi = mid
        else:
            mid = (lat_lo + lat_hi) / 2
            if lat >= mid:
                bits = (bits << 1) | 1
                lat_lo = mid
            else:
                bits <<= 1
                lat_hi = mid
        even = not even
        bit_count += 1
        if bit_count == 5:
            chars.append(BASE32[bits])
            bits = 0
            bit_count = 0
    return "".join(chars)


def decode_bounds(geohash: str) -> tuple[float, float, float, float]:
    """Return (lat_min, lat_max, lon_min, lon_max) of the cell."""
    lat_lo, lat_hi = -90.0, 90.0
    lon_lo, lon_hi = -180.0, 180.0
    even = True
    for ch in geohash.lower():
        try:
            value = _DECODE_MAP[ch]
        except KeyError:
            raise ValueError(f"Invalid geohash character {ch!r} in {geohash!r}") from None
        for shift in range(4, -1, -1):
            bit = (value >> shift) & 1
            if even:
                mid = (lon_lo + lon_hi) / 2
                if bit:
                    lon_lo = mid
                else:
                    lon_hi = mid
            else:
                mid = (lat_lo + lat_hi) / 2
                if bit:
                    lat_lo = mid
                else:
                    lat_hi = mid
            even = not even
    return lat_lo, lat_hi, lon_lo, lon_hi


def decode(geohash: str) -> tuple[float, float]:
    """Center (lat, lon) of the cell."""
    lat_lo, lat_hi, lon_lo, lon_hi = decode_bounds(geohash)
    return (lat_lo + lat_hi) / 2, (lon_lo + lon_hi) / 2


def cell_size(precision: int) -> tuple[float, float]:
    """(lat span, lon span) in degrees of a cell at this precision."""
    total_bits = 5 * precision
    lon_bits = (total_bits + 1) // 2
    lat_bits = total_bits // 2
    return 180.0 / (1 << lat_bits), 360.0 / (1 << lon_bits)


def neighbors(geohash: str) -> list[str]:
    """The up-to-8 cells surrounding geohash at the same precision.

    Latitude is clamped at the poles, so polar cells have fewer neighbors.
    """
    precision = len(geohash)
    lat, lon = decode(geohash)
    dlat, dlon = cell_size(precision)
    result = []
    for i in (-1, 0, 1):
        for j in (-1, 0, 1):
            if i == 0 and j == 0:
                continue
            nlat = min(max(lat + i * dlat, -90.0), 90.0)
            nlon = lon + j * dlon
            if nlon >= 180.0:
                nlon -= 360.0
            elif nlon < -180.0:
                nlon += 360.0
            cell = encode(nlat, nlon, precision)
            if cell != geohash and cell not in result:
                result.append(cell)
    return result


def precision_for_radius(radius_km: float) -> int:
    for bound, precision in _RADIUS_PRECISION:
        if radius_km < bound:
            return precision
    return 3
