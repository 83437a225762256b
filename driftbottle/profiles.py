"""Per-user profiles, keyed by Telegram user ID and stored as one JSON file."""

import json
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from urllib.parse import urlparse

from .web_auth import TelegramUser


FIRST_NAME_MAX = 32
LAST_NAME_MAX = 32
BIO_MAX = 200
AVATAR_URL_MAX = 512

EDITABLE_FIELDS = ("first_name", "last_name", "bio", "avatar_url")


@dataclass
class Profile:
    telegram_id: int
    first_name: str
    last_name: str | None = None
    username: str | None = None
    language_code: str | None = None
    is_premium: bool | None = None
    photo_url: str | None = None
    bio: str = ""
    avatar_url: str | None = None
    created_at: int = 0
    updated_at: int = 0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Profile":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


def load_profiles(path: Path) -> dict[int, Profile]:
    """Load profiles from a JSON file. A missing file means no profiles yet."""
    if not path.exists():
        return {}
    data = json.loads(path.read_text())
    return {int(k): Profile.from_dict(v) for k, v in data.items()}


def save_profiles(path: Path, profiles: dict[int, Profile]) -> None:
    """Atomically write profiles to a JSON file."""
    tmp = path.with_suffix(".tmp")
    data = {str(k): p.to_dict() for k, p in sorted(profiles.items())}
    tmp.write_text(json.dumps(data, indent=2, ensure_ascii=False))
    tmp.rename(path)


def upsert_profile(profiles: dict[int, Profile], user: TelegramUser, now: int) -> Profile:
    """Create a profile for a verified user, or refresh its Telegram-owned fields.

    Names and bio are only taken from Telegram on creation; afterwards
    they belong to the user.
    """
    profile = profiles.get(user.id)
    if profile is None:
        profile = Profile(
            telegram_id=user.id,
            first_name=user.first_name,
            last_name=user.last_name,
            username=user.username,
            language_code=user.language_code,
            is_premium=user.is_premium,
            photo_url=user.photo_url,
            created_at=now,
            updated_at=now,
        )
        profiles[user.id] = profile
        return profile

    profile.username = user.username
    profile.language_code = user.language_code
    profile.is_premium = user.is_premium
    profile.photo_url = user.photo_url
    return profile


def _check_avatar_url(value: str) -> str:
    if len(value) > AVATAR_URL_MAX:
        return f"avatar_url is longer than {AVATAR_URL_MAX} characters"
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return "avatar_url must be an http(s) URL"
    return ""


def validate_profile_update(body: dict) -> tuple[dict[str, str], dict[str, str]]:
    """Validate a profile update body.

    Returns (applied, errors): the cleaned values to store and a message
    per rejected key.
    """
    applied = {}
    errors = {}

    for key, value in body.items():
        if key not in EDITABLE_FIELDS:
            errors[key] = f"Unknown field: '{key}'"
            continue
        if not isinstance(value, str):
            errors[key] = f"{key} must be a string"
            continue

        if key == "first_name":
            value = value.strip()
            if not value:
                errors[key] = "first_name cannot be empty"
            elif len(value) > FIRST_NAME_MAX:
                errors[key] = f"first_name is longer than {FIRST_NAME_MAX} characters"
        elif key == "last_name":
            value = value.strip()
            if len(value) > LAST_NAME_MAX:
                errors[key] = f"last_name is longer than {LAST_NAME_MAX} characters"
        elif key == "bio":
            if len(value) > BIO_MAX:
                errors[key] = f"bio is longer than {BIO_MAX} characters"
        elif key == "avatar_url":
            value = value.strip()
            message = _check_avatar_url(value)
            if message:
                errors[key] = message

        if key not in errors:
            applied[key] = value

    return applied, errors


def apply_profile_update(profile: Profile, applied: dict[str, str], now: int) -> Profile:
    """Store validated values on the profile. Empty last_name/avatar_url clear them."""
    for key, value in applied.items():
        if key in ("last_name", "avatar_url") and not value:
            value = None
        setattr(profile, key, value)
    profile.updated_at = now
    return profile
