"""Expo push token address validation."""

import re

EXPO_TOKEN_PREFIX = "ExponentPushToken["
EXPO_TOKEN_SUFFIX = "]"

_EXPO_TOKEN_PATTERN = re.compile(
    re.escape(EXPO_TOKEN_PREFIX) + r"[A-Za-z0-9_-]+" + re.escape(EXPO_TOKEN_SUFFIX)
)


def is_valid_address(address: object) -> bool:
    """Check whether a string is a well-formed Expo push token.

    Registration, dispatch and the gateway client all call this, so the three
    never disagree about what a deliverable address looks like.
    """
    if not isinstance(address, str):
        return False
    return _EXPO_TOKEN_PATTERN.fullmatch(address) is not None


def mask_address(address: str) -> str:
    """Shorten a push address for log output."""
    if len(address) <= 24:
        return address
    return f"{address[:24]}..."
