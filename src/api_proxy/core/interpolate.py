"""Placeholder token substitution for strings and mappings."""

import logging
import re
from functools import lru_cache
from typing import Any, Callable, Mapping

logger = logging.getLogger(__name__)

Resolve = Callable[[str], Any]


class Interpolator:
    """
    Replace ``<left>NAME<right>`` tokens using a caller supplied resolver.

    NAME is one or more ASCII letters or underscores, matched case-insensitively.
    Delimiters are literal text, whatever characters they contain.
    """

    def __init__(self, left_delimiter: str = "${", right_delimiter: str = "}"):
        if not left_delimiter or not right_delimiter:
            raise ValueError("Interpolation delimiters must not be empty")
        self.left_delimiter = left_delimiter
        self.right_delimiter = right_delimiter
        self._pattern = re.compile(
            re.escape(left_delimiter) + "([a-z_]+)" + re.escape(right_delimiter),
            re.IGNORECASE | re.ASCII,
        )

    def __call__(self, value: Any, resolve: Resolve) -> Any:
        return self.interpolate(value, resolve)

    def interpolate(self, value: Any, resolve: Resolve) -> Any:
        """
        Substitute tokens in ``value``.

        Mappings are processed recursively into a new dict; anything that is
        neither a string nor a mapping is returned unchanged. Errors raised by
        ``resolve`` propagate and no partial result is produced.
        """
        if isinstance(value, Mapping):
            return {key: self.interpolate(item, resolve) for key, item in value.items()}
        if isinstance(value, str):
            return self._pattern.sub(lambda match: self._substitute(match, resolve), value)
        return value

    def has_tokens(self, value: str) -> bool:
        return bool(self._pattern.search(value))

    def _substitute(self, match: "re.Match[str]", resolve: Resolve) -> str:
        key = match.group(1)
        substitute = resolve(key)
        logger.debug("Substituting placeholder token", extra={"token": key})
        return str(substitute)


@lru_cache(maxsize=32)
def get_interpolator(left_delimiter: str = "${", right_delimiter: str = "}") -> Interpolator:
    """Shared interpolator per delimiter pair."""
    return Interpolator(left_delimiter, right_delimiter)
