"""Provider ``notes`` metadata as an explicit string-to-scalar map."""

import logging
from typing import Any, TypeAlias

logger = logging.getLogger(__name__)

Scalar: TypeAlias = str | int | float | bool | None
Notes: TypeAlias = dict[str, Scalar]


def coerce_notes(raw: Any) -> Notes:
    """Normalize a Razorpay ``notes`` value.

    Razorpay serializes empty notes as ``[]``; a JSON object keeps only its
    scalar values. Anything else yields an empty map.
    """
    if not isinstance(raw, dict):
        if raw not in (None, []):
            logger.debug("Ignoring non-object notes value of type %s", type(raw).__name__)
        return {}

    notes: Notes = {}
    for key, value in raw.items():
        if value is None or isinstance(value, (str, int, float, bool)):
            notes[str(key)] = value
        else:
            logger.debug("Dropping non-scalar note %r", key)
    return notes
