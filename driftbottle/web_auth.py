"""Telegram Mini App initData HMAC-SHA256 validation.

Validates the initData string sent by the Telegram WebApp SDK to ensure
the request is authentic and not replayed. Pure functions, no I/O.

Every failure is reported as an Invalid result carrying an ErrorKind, so
the HTTP layer can map it to a precise status code.

Reference: https://core.telegram.org/bots/webapps#validating-data-received-via-the-mini-app
"""

import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from enum import Enum
from urllib.parse import unquote_plus, urlencode


# Fields never included in the data-check-string.
EXCLUDED_KEYS = frozenset({"hash", "signature"})

# How far auth_date may sit in the future before it is rejected.
FUTURE_SKEW_SECONDS = 60

# Unix seconds fit in 12 digits until the year 33658.
MAX_AUTH_DATE_DIGITS = 12

_INT64_MIN = -(2 ** 63)
_INT64_MAX = 2 ** 63 - 1

_OPTIONAL_STR_FIELDS = ("last_name", "username", "language_code", "photo_url")
_OPTIONAL_BOOL_FIELDS = ("is_premium", "allows_write_to_pm")


class ErrorKind(str, Enum):
    MALFORMED_INPUT = "malformed_input"
    MISSING_HASH = "missing_hash"
    INVALID_SIGNATURE = "invalid_signature"
    EXPIRED = "expired"
    INVALID_TIMESTAMP = "invalid_timestamp"
    MISSING_USER = "missing_user"
    INVALID_USER_PAYLOAD = "invalid_user_payload"
    MISSING_SERVER_CONFIG = "missing_server_config"


ERROR_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.MALFORMED_INPUT: "initData is malformed",
    ErrorKind.MISSING_HASH: "initData has no hash",
    ErrorKind.INVALID_SIGNATURE: "invalid signature",
    ErrorKind.EXPIRED: "initData has expired",
    ErrorKind.INVALID_TIMESTAMP: "auth_date is in the future",
    ErrorKind.MISSING_USER: "initData has no user",
    ErrorKind.INVALID_USER_PAYLOAD: "invalid user payload",
    ErrorKind.MISSING_SERVER_CONFIG: "bot token is not configured",
}


@dataclass(frozen=True)
class TelegramUser:
    id: int
    first_name: str
    last_name: str | None = None
    username: str | None = None
    language_code: str | None = None
    is_premium: bool | None = None
    allows_write_to_pm: bool | None = None
    photo_url: str | None = None

    def to_dict(self) -> dict:
        """Serialize to a JSON-friendly dict, omitting unset optional fields."""
        d = {"id": self.id, "first_name": self.first_name}
        for name in _OPTIONAL_STR_FIELDS + _OPTIONAL_BOOL_FIELDS:
            value = getattr(self, name)
            if value is not None:
                d[name] = value
        return d


@dataclass(frozen=True)
class Valid:
    user: TelegramUser
    auth_date: int

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Invalid:
    reason: ErrorKind

    @property
    def ok(self) -> bool:
        return False

    @property
    def message(self) -> str:
        return ERROR_MESSAGES[self.reason]


VerificationResult = Valid | Invalid


def verify(
    init_data: str,
    bot_token: str,
    max_age_seconds: int | None = None,
    now: float | None = None,
) -> VerificationResult:
    """Verify Telegram initData and return Valid(user, auth_date) or Invalid(reason).

    When max_age_seconds is given, payloads older than that are EXPIRED.
    auth_date more than FUTURE_SKEW_SECONDS ahead of now is always rejected.
    """
    if not bot_token or not _is_utf8(bot_token):
        return Invalid(ErrorKind.MISSING_SERVER_CONFIG)
    if not init_data:
        return Invalid(ErrorKind.MALFORMED_INPUT)

    try:
        params = parse_init_data(init_data)
    except ValueError:
        return Invalid(ErrorKind.MALFORMED_INPUT)

    received_hash = params.get("hash", "")
    if not received_hash:
        return Invalid(ErrorKind.MISSING_HASH)

    data_check_string = build_data_check_string(params)
    expected_hash = compute_signature(bot_token, data_check_string)

    if not hmac.compare_digest(received_hash.lower().encode(), expected_hash.encode()):
        return Invalid(ErrorKind.INVALID_SIGNATURE)

    auth_date_str = params.get("auth_date", "")
    if not (auth_date_str.isascii() and auth_date_str.isdigit()):
        return Invalid(ErrorKind.MALFORMED_INPUT)
    if len(auth_date_str) > MAX_AUTH_DATE_DIGITS:
        return Invalid(ErrorKind.MALFORMED_INPUT)
    auth_date = int(auth_date_str)

    if now is None:
        now = time.time()
    age = now - auth_date
    if age < -FUTURE_SKEW_SECONDS:
        return Invalid(ErrorKind.INVALID_TIMESTAMP)
    if max_age_seconds is not None and age > max_age_seconds:
        return Invalid(ErrorKind.EXPIRED)

    if "user" not in params:
        return Invalid(ErrorKind.MISSING_USER)

    try:
        user = parse_user(params["user"])
    except ValueError:
        return Invalid(ErrorKind.INVALID_USER_PAYLOAD)

    return Valid(user=user, auth_date=auth_date)


def _is_utf8(text: str) -> bool:
    try:
        text.encode("utf-8")
    except UnicodeEncodeError:
        return False
    return True


def parse_init_data(init_data: str) -> dict[str, str]:
    """Parse the initData query string into a flat dict of decoded fields.

    Raises ValueError for a token without '=', undecodable percent-escapes,
    text that cannot be encoded as UTF-8 (lone surrogates) or a repeated key.
    """
    result: dict[str, str] = {}
    if not init_data:
        return result
    for token in init_data.split("&"):
        if "=" not in token:
            raise ValueError(f"token without '=': {token[:32]!r}")
        raw_key, raw_value = token.split("=", 1)
        key = unquote_plus(raw_key, errors="strict")
        value = unquote_plus(raw_value, errors="strict")
        if not (_is_utf8(key) and _is_utf8(value)):
            raise ValueError(f"field is not valid UTF-8 text: {key[:32]!a}")
        if key in result:
            raise ValueError(f"duplicate key: {key!r}")
        result[key] = value
    return result


def parse_user(user_json: str) -> TelegramUser:
    """Decode the `user` field into a TelegramUser. Raises ValueError on bad shape."""
    try:
        raw = json.loads(user_json)
    except json.JSONDecodeError as e:
        raise ValueError(f"user is not valid JSON: {e}") from e
    if not isinstance(raw, dict):
        raise ValueError("user is not a JSON object")

    user_id = raw.get("id")
    # bool is an int subclass
    if not isinstance(user_id, int) or isinstance(user_id, bool):
        raise ValueError("user.id must be an integer")
    if not _INT64_MIN <= user_id <= _INT64_MAX:
        raise ValueError("user.id out of 64-bit range")

    first_name = raw.get("first_name")
    if not isinstance(first_name, str):
        raise ValueError("user.first_name must be a string")

    optional = {}
    for name in _OPTIONAL_STR_FIELDS:
        value = raw.get(name)
        if value is not None and not isinstance(value, str):
            raise ValueError(f"user.{name} must be a string")
        optional[name] = value
    for name in _OPTIONAL_BOOL_FIELDS:
        value = raw.get(name)
        if value is not None and not isinstance(value, bool):
            raise ValueError(f"user.{name} must be a boolean")
        optional[name] = value

    return TelegramUser(id=user_id, first_name=first_name, **optional)


def build_data_check_string(params: dict[str, str]) -> str:
    """Build the sorted newline-separated data-check-string for HMAC."""
    return "\n".join(
        f"{k}={v}" for k, v in sorted(params.items()) if k not in EXCLUDED_KEYS
    )


def derive_secret_key(bot_token: str) -> bytes:
    """The secret key is HMAC-SHA256("WebAppData", bot_token)."""
    return hmac.new(b"WebAppData", bot_token.encode(), hashlib.sha256).digest()


def compute_signature(bot_token: str, data_check_string: str) -> str:
    """Compute the lowercase hex HMAC-SHA256 of the data-check-string."""
    return hmac.new(
        derive_secret_key(bot_token), data_check_string.encode(), hashlib.sha256,
    ).hexdigest()


def sign_init_data(params: dict[str, str], bot_token: str) -> str:
    """Return a URL-encoded initData string for params, with a valid hash appended."""
    fields = {k: v for k, v in params.items() if k != "hash"}
    fields["hash"] = compute_signature(bot_token, build_data_check_string(fields))
    return urlencode(fields)


def redact_token(bot_token: str) -> str:
    """Shorten a bot token to `<bot-id>:<4 chars>...` for diagnostics."""
    if not bot_token:
        return "<missing>"
    bot_id, sep, secret = bot_token.partition(":")
    if not sep:
        return f"{bot_token[:4]}..."
    return f"{bot_id}:{secret[:4]}..."


def explain(
    init_data: str,
    bot_token: str,
    max_age_seconds: int | None = None,
    now: float | None = None,
    include_expected_hash: bool = False,
) -> dict:
    """Diagnostic breakdown of a verification: data-check-string, hashes and outcome.

    The expected hash is a valid signature for the fields sent. Include it
    only for local use, never in an HTTP response.
    """
    result = verify(init_data, bot_token, max_age_seconds=max_age_seconds, now=now)
    report = {
        "result": "valid" if result.ok else result.reason.value,
        "bot_token": redact_token(bot_token),
        "init_data_length": len(init_data or ""),
    }
    try:
        params = parse_init_data(init_data or "")
    except ValueError as e:
        report["parse_error"] = str(e)
        return report

    data_check_string = build_data_check_string(params)
    received_hash = params.get("hash", "").lower()
    report["fields"] = sorted(params)
    report["data_check_string"] = data_check_string
    report["received_hash"] = received_hash
    if bot_token and _is_utf8(bot_token):
        expected_hash = compute_signature(bot_token, data_check_string)
        if include_expected_hash:
            report["expected_hash"] = expected_hash
        report["match"] = hmac.compare_digest(received_hash.encode(), expected_hash.encode())
    return report
