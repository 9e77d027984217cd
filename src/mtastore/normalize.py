"""Normalization of raw GTFS route and stop identifiers."""

from typing import Optional, Tuple

NORTH = "North"
SOUTH = "South"

# Platform stop IDs end in a direction letter: "127N" is the northbound platform of "127"
_DIRECTION_SUFFIXES = {"N": NORTH, "S": SOUTH}


def extract_route_from_id(route_id: str) -> str:
    """
    Reduce a raw GTFS route ID to its rider-facing route code.

    MTA route IDs may carry a version suffix, e.g. "A20241201" -> "A" and
    "123_20241201" -> "123_". Plain codes such as "1" or "SIR" are returned unchanged.
    """
    # Trailing YYYYMMDD date
    if len(route_id) >= 8 and route_id[-8:].isdigit():
        return route_id[:-8]

    # Otherwise cut at the first run of 4+ digits that does not start the ID
    for i in range(1, len(route_id)):
        if not route_id[i].isdigit():
            continue
        run = i
        while run < len(route_id) and route_id[run].isdigit():
            run += 1
        if run - i >= 4:
            return route_id[:i]

    return route_id


def split_stop_id(stop_id: str) -> Tuple[str, Optional[str]]:
    """
    Split a platform stop ID into its parent station ID and direction.

    Returns (parent_id, "North" | "South"), or (stop_id, None) when the ID has no
    direction suffix.
    """
    direction = _DIRECTION_SUFFIXES.get(stop_id[-1:])
    if direction is None:
        return stop_id, None
    return stop_id[:-1], direction


def parent_stop_id(stop_id: str) -> str:
    """Strip a trailing N/S direction suffix from a stop ID."""
    return split_stop_id(stop_id)[0]
