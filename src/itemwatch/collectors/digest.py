"""Digestion of raw values into numeric measurements.

Digestion never fails a tick. In the worst case the returned mapping is
empty and only the raw text is written to the outputs as a fallback.
"""

import logging
import math

from itemwatch.models import Item, RawDigest, RegexDigest

logger = logging.getLogger(__name__)


def parse_float(text: str) -> float | None:
    """Parse text as a float, or return None if it is not a number.

    Plain decimal and scientific notation as well as ``inf`` and ``nan``
    are accepted. Digit separators (``1_000``) and surrounding whitespace
    are not.
    """
    if "_" in text or text != text.strip():
        return None
    try:
        return float(text)
    except ValueError:
        return None


def digest_value(item: Item, raw: str) -> tuple[str, dict[str, float]]:
    """Digest a raw value as specified by the item.

    Args:
        item: The item that produced the value
        raw: Raw text from acquisition

    Returns:
        Tuple of (trimmed raw text, measurements by name)
    """
    values: dict[str, float] = {}
    text = raw.strip()
    digest = item.digest

    if isinstance(digest, RawDigest):
        # Output that is not a number is a valid use case; the raw text is kept
        value = parse_float(text)
        if value is None:
            logger.debug("Value of '%s' could not be parsed as float: %s", item.key, text)
        else:
            values[f"{item.key}.parsed"] = value

    elif isinstance(digest, RegexDigest):
        match = digest.regex.search(text)
        if match is None:
            logger.error(
                "Regex of '%s' did not match the output: %s\n%s",
                item.key,
                digest.regex.pattern,
                text,
            )
        else:
            for name in digest.group_names:
                captured = match.group(name)
                value = parse_float(captured) if captured is not None else None
                values[f"{item.key}.{name}"] = math.nan if value is None else value

    return text, values
