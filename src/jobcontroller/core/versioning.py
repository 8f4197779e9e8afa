"""Controller version codec.

Jobs are stamped with the semantic version of the controller that created
them. Label values only allow ``[A-Za-z0-9._-]`` (max 63 chars) and some
runtimes reject dots, so the version is encoded into a dash-separated token:

    1.0.0            ->  1-0-0
    1.2.0-rc.1       ->  1-2-0_rc-1
    1.2.0+build.7    ->  1-2-0__build-7

``decode_version`` is the exact inverse of ``encode_version`` for every
valid semantic version.
"""

from __future__ import annotations

import re

from .errors import InvalidVersionError

SEMVER_PATTERN = re.compile(
    r"^(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(?:-([0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?"
    r"(?:\+([0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?$"
)

LABEL_PATTERN = re.compile(r"^[0-9A-Za-z][0-9A-Za-z_-]*$")
MAX_LABEL_LENGTH = 63


def validate_version(version: str) -> str:
    """Return *version* unchanged if it is a semantic version."""
    match = SEMVER_PATTERN.match(version or "")
    if not match:
        raise InvalidVersionError(f"Not a semantic version: {version!r}")
    # '-' inside prerelease/build identifiers cannot round-trip through the codec
    for part in (match.group(4), match.group(5)):
        if part and "-" in part:
            raise InvalidVersionError(
                f"Hyphens inside prerelease/build identifiers are not label-safe: {version!r}"
            )
    return version


def encode_version(version: str) -> str:
    """Encode a semantic version into a label-safe token."""
    validate_version(version)
    core, plus, build = version.partition("+")
    release, dash, prerelease = core.partition("-")

    token = release.replace(".", "-")
    if dash:
        token += "_" + prerelease.replace(".", "-")
    if plus:
        token += "__" + build.replace(".", "-")

    if len(token) > MAX_LABEL_LENGTH:
        raise InvalidVersionError(f"Encoded version exceeds {MAX_LABEL_LENGTH} chars: {token}")
    return token


def decode_version(token: str) -> str:
    """Decode a label token produced by :func:`encode_version`."""
    if not token or not LABEL_PATTERN.match(token):
        raise InvalidVersionError(f"Not a version label: {token!r}")

    head, sep, build = token.partition("__")
    release, dash, prerelease = head.partition("_")

    version = release.replace("-", ".")
    if dash:
        version += "-" + prerelease.replace("-", ".")
    if sep:
        version += "+" + build.replace("-", ".")
    return validate_version(version)
