"""Decode webtask tokens and derive the container they are scoped to."""

from __future__ import annotations

import re
from dataclasses import dataclass

from jose import jwt
from jose.exceptions import JOSEError

from webtask_sandbox.claims import Claims
from webtask_sandbox.errors import ContainerDerivationError, InvalidTokenError
from webtask_sandbox.regex_sample import lowest_match

_REGEX_CLAIM = re.compile(r"^/(.+)/$", re.DOTALL)


@dataclass(frozen=True, slots=True)
class TokenProfile:
    """Container and credential derived from a single token."""

    container: str
    token: str


def decode_claims(token: str) -> Claims:
    """Decode a token's payload without verifying its signature."""

    try:
        payload = jwt.get_unverified_claims(token)
    except (JOSEError, AttributeError, TypeError) as exc:
        raise InvalidTokenError(f"Unable to decode token: {exc}") from exc
    return Claims.from_payload(payload)


def resolve_container(ten: object) -> str:
    """Turn a raw `ten` claim into a concrete container name.

    Lists resolve to their first entry. Strings wrapped in slashes are treated
    as regular expressions and resolve to their lowest matching string.
    """

    if isinstance(ten, list):
        ten = ten[0] if ten else None
    elif isinstance(ten, str):
        match = _REGEX_CLAIM.match(ten)
        if match is not None:
            claim = ten
            try:
                compiled = re.compile(match.group(1))
                ten = lowest_match(match.group(1))
            except (re.error, ValueError) as exc:
                raise ContainerDerivationError(claim, exc) from exc
            if compiled.fullmatch(ten) is None:
                raise ContainerDerivationError(
                    claim, ValueError(f"generated name `{ten}` does not match the pattern")
                )
    if not isinstance(ten, str) or not ten:
        raise InvalidTokenError(
            f"Expecting `ten` claim to be a non-blank string, got `{type(ten).__name__}`, "
            f"with value `{ten}`"
        )
    return ten


def granted_container(ten: object, preferred: str) -> str:
    """Return `preferred` when the `ten` claim grants it, else the claim's own container."""

    if isinstance(ten, list):
        if preferred in ten:
            return preferred
    elif isinstance(ten, str):
        if ten == preferred:
            return preferred
        match = _REGEX_CLAIM.match(ten)
        if match is not None:
            try:
                if re.fullmatch(match.group(1), preferred) is not None:
                    return preferred
            except re.error as exc:
                raise ContainerDerivationError(ten, exc) from exc
    return resolve_container(ten)


def from_claims(token: str) -> TokenProfile:
    """Derive the container a token grants access to."""

    claims = decode_claims(token)
    if claims.ten is None:
        raise InvalidTokenError("Invalid token, missing `ten` claim")
    return TokenProfile(container=resolve_container(claims.ten), token=token)


__all__ = [
    "TokenProfile",
    "decode_claims",
    "from_claims",
    "granted_container",
    "resolve_container",
]
