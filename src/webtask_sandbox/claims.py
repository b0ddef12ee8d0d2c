"""Token options, claim records and the options-to-claims mapping."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from enum import IntEnum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from webtask_sandbox.errors import (
    InvalidScheduleWindow,
    UnsupportedLimitType,
    UnsupportedLimitValue,
    ValidationError,
)


class ParseMode(IntEnum):
    """How the runtime parses request bodies before handing them to the webtask."""

    NEVER = 0
    ALWAYS = 1
    ON_ARITY = 2


CONTAINER_LIMITS: Mapping[str, str] = {
    "second": "ls",
    "minute": "lm",
    "hour": "lh",
    "day": "ld",
    "week": "lw",
    "month": "lo",
}

TOKEN_LIMITS: Mapping[str, str] = {
    "second": "lts",
    "minute": "ltm",
    "hour": "lth",
    "day": "ltd",
    "week": "ltw",
    "month": "lto",
}

# Claims carried over verbatim when a named webtask is re-issued.
PRESERVED_CLAIMS: tuple[str, ...] = (
    "nbf",
    "exp",
    "dd",
    "dr",
    *CONTAINER_LIMITS.values(),
    *TOKEN_LIMITS.values(),
)


class TokenOptions(BaseModel):
    """Caller-facing options for issuing a webtask token.

    Both snake_case field names and the camelCase / short aliases used by the
    platform's other clients are accepted when validating a mapping.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    container: str | None = None
    name: str | None = None
    code: str | None = None
    code_url: str | None = Field(default=None, validation_alias=AliasChoices("code_url", "codeUrl"))
    secrets: dict[str, Any] | None = Field(
        default=None, validation_alias=AliasChoices("secrets", "secret")
    )
    params: dict[str, Any] | None = Field(
        default=None, validation_alias=AliasChoices("params", "param")
    )
    meta: dict[str, Any] | None = None
    host: str | None = None
    nbf: int | None = None
    exp: int | None = None
    issuance_depth: int = Field(
        default=0, ge=0, validation_alias=AliasChoices("issuance_depth", "issuanceDepth")
    )
    merge_body: bool | None = Field(
        default=None, validation_alias=AliasChoices("merge_body", "mergeBody", "merge")
    )
    parse_body: bool | ParseMode | None = Field(
        default=None, validation_alias=AliasChoices("parse_body", "parseBody", "parse")
    )
    self_revoke: bool = Field(
        default=False, validation_alias=AliasChoices("self_revoke", "selfRevoke")
    )
    token_limit: dict[str, Any] | None = Field(
        default=None, validation_alias=AliasChoices("token_limit", "tokenLimit")
    )
    container_limit: dict[str, Any] | None = Field(
        default=None, validation_alias=AliasChoices("container_limit", "containerLimit")
    )


@dataclass(frozen=True, slots=True)
class Claims:
    """Short-key claim set of a webtask token.

    `ten` stays as decoded (string, list or `/regex/` string); use
    `webtask_sandbox.tokens.resolve_container` to turn it into a container name.
    """

    ten: str | list[str] | None = None
    dd: int | None = None
    jtn: str | None = None
    url: str | None = None
    code: str | None = None
    ectx: dict[str, Any] | None = None
    pctx: dict[str, Any] | None = None
    meta: dict[str, Any] | None = None
    host: str | None = None
    nbf: int | None = None
    exp: int | None = None
    mb: int | None = None
    pb: int | None = None
    dr: int | None = None
    ls: int | None = None
    lm: int | None = None
    lh: int | None = None
    ld: int | None = None
    lw: int | None = None
    lo: int | None = None
    lts: int | None = None
    ltm: int | None = None
    lth: int | None = None
    ltd: int | None = None
    ltw: int | None = None
    lto: int | None = None
    extra: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> Claims:
        values = {key: value for key, value in payload.items() if key in _CLAIM_KEYS}
        extra = {key: value for key, value in payload.items() if key not in _CLAIM_KEYS}
        return cls(**values, extra=extra)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        for key in _CLAIM_KEYS:
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        for key, value in self.extra.items():
            payload.setdefault(key, value)
        return payload

    def get(self, key: str) -> Any:
        if key in _CLAIM_KEYS:
            return getattr(self, key)
        return self.extra.get(key)


_CLAIM_KEYS: tuple[str, ...] = tuple(f.name for f in fields(Claims) if f.name != "extra")


def coerce_options(options: TokenOptions | Mapping[str, Any] | None) -> TokenOptions:
    if options is None:
        return TokenOptions()
    if isinstance(options, TokenOptions):
        return options
    try:
        return TokenOptions.model_validate(dict(options))
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid token options: {exc}") from exc


def classify_code(code_or_url: str) -> dict[str, str]:
    """Return `{"code_url": ...}` for http(s) URLs and `{"code": ...}` otherwise."""

    lowered = code_or_url.lower()
    if lowered.startswith("http://") or lowered.startswith("https://"):
        return {"code_url": code_or_url}
    return {"code": code_or_url}


def with_code_source(options: TokenOptions, code_or_url: str) -> TokenOptions:
    return options.model_copy(update=classify_code(code_or_url))


def to_claims(options: TokenOptions, *, container: str) -> Claims:
    """Map token options onto the claim set the issue endpoint expects."""

    if options.exp is not None and options.nbf is not None and options.exp <= options.nbf:
        raise InvalidScheduleWindow("The `nbf` parameter cannot be set to a later time than `exp`.")
    if options.code and options.code_url:
        raise ValidationError("Either `code` or `code_url` can be specified, but not both")

    limits: dict[str, int] = {}
    if options.token_limit:
        limits.update(_limit_claims(options.token_limit, TOKEN_LIMITS))
    if options.container_limit:
        limits.update(_limit_claims(options.container_limit, CONTAINER_LIMITS))

    return Claims(
        ten=options.container or container,
        dd=options.issuance_depth or 0,
        jtn=options.name or None,
        url=options.code_url or None,
        code=options.code or None,
        ectx=dict(options.secrets) if options.secrets else None,
        pctx=dict(options.params) if options.params else None,
        meta=dict(options.meta) if options.meta else None,
        host=options.host or None,
        nbf=options.nbf,
        exp=options.exp,
        mb=1 if options.merge_body else None,
        pb=int(options.parse_body) if options.parse_body is not None else None,
        dr=None if options.self_revoke else 1,
        **limits,
    )


def _limit_claims(limits: Mapping[str, Any], spec: Mapping[str, str]) -> dict[str, int]:
    claims: dict[str, int] = {}
    for unit, value in limits.items():
        claim = spec.get(unit)
        if claim is None:
            raise UnsupportedLimitType(
                f"Unsupported limit type `{unit}`. Supported limits are: {', '.join(spec)}."
            )
        claims[claim] = _limit_value(unit, value)
    return claims


def _limit_value(unit: str, value: object) -> int:
    number: int | None = None
    if isinstance(value, bool):
        number = None
    elif isinstance(value, int):
        number = value
    elif isinstance(value, float) and value.is_integer():
        number = int(value)
    elif isinstance(value, str) and value.strip().isdigit():
        number = int(value.strip())
    if number is None or number < 1:
        raise UnsupportedLimitValue(
            f"Unsupported limit value for `{unit}` limit. All limits must be positive integers."
        )
    return number


__all__ = [
    "CONTAINER_LIMITS",
    "PRESERVED_CLAIMS",
    "TOKEN_LIMITS",
    "Claims",
    "ParseMode",
    "TokenOptions",
    "classify_code",
    "coerce_options",
    "to_claims",
    "with_code_source",
]
