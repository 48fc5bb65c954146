"""chord_etl.profiles

YAML-based migration profiles.

Each profile captures one way of running the migration (strategy, chunk
sizes, verification, pacing).  The default profiles file ships inside the
package as chord_etl/config/migration_profiles.yml; CLI flags may override
strategy, batch size and verify on top of the selected profile.

Usage:
    from chord_etl.profiles import get_profile

    profile = get_profile("bulk")
    policy = profile.to_batch_policy()
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import yaml

from chord_etl.batch_writer import BatchPolicy

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Installed alongside the modules via [tool.setuptools.package-data].
DEFAULT_PROFILES_PATH = Path(__file__).parent / "config" / "migration_profiles.yml"

FULL_REPLACE = "full_replace"
INCREMENTAL = "incremental"
VALID_STRATEGIES = (FULL_REPLACE, INCREMENTAL)

REQUIRED_PROFILE_KEYS = frozenset({
    "strategy",
    "batch_size",
    "delete_batch_size",
    "verify",
    "max_retries",
    "retry_delay_seconds",
    "inter_chunk_delay_seconds",
    "degrade_threshold",
    "degrade_batch_size",
    "settle_seconds",
})

_POSITIVE_INT_KEYS = ("batch_size", "delete_batch_size")
_NON_NEGATIVE_INT_KEYS = ("max_retries", "degrade_threshold", "degrade_batch_size")
_NON_NEGATIVE_FLOAT_KEYS = (
    "retry_delay_seconds",
    "inter_chunk_delay_seconds",
    "settle_seconds",
    "verify_delay_seconds",
)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ProfileValidationError(ValueError):
    """Raised when the profiles YAML fails schema validation."""


# ---------------------------------------------------------------------------
# MigrationProfile dataclass
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MigrationProfile:
    name: str
    strategy: str = FULL_REPLACE
    batch_size: int = 15
    delete_batch_size: int = 50
    verify: bool = True
    max_retries: int = 3
    retry_delay_seconds: float = 1.0
    inter_chunk_delay_seconds: float = 0.4
    degrade_threshold: int = 0
    degrade_batch_size: int = 0
    settle_seconds: float = 3.0
    verify_delay_seconds: float = 0.5
    prioritize_common: bool = False
    yaml_hash: str = field(default="", compare=False)

    def to_batch_policy(self) -> BatchPolicy:
        return BatchPolicy(
            batch_size=self.batch_size,
            max_retries=self.max_retries,
            retry_delay_seconds=self.retry_delay_seconds,
            inter_chunk_delay_seconds=self.inter_chunk_delay_seconds,
            degrade_threshold=self.degrade_threshold,
            degrade_batch_size=self.degrade_batch_size,
            verify=self.verify,
            verify_delay_seconds=self.verify_delay_seconds,
        )

    def with_overrides(
        self,
        strategy: str | None = None,
        batch_size: int | None = None,
        verify: bool | None = None,
        settle_seconds: float | None = None,
    ) -> "MigrationProfile":
        """Return a copy with CLI overrides applied (None = keep)."""
        changes: dict[str, Any] = {}
        if strategy is not None:
            if strategy not in VALID_STRATEGIES:
                raise ProfileValidationError(
                    f"strategy must be one of {VALID_STRATEGIES}, got {strategy!r}"
                )
            changes["strategy"] = strategy
        if batch_size is not None:
            if batch_size < 1:
                raise ProfileValidationError(f"batch_size must be >= 1, got {batch_size}")
            changes["batch_size"] = batch_size
        if verify is not None:
            changes["verify"] = verify
        if settle_seconds is not None:
            changes["settle_seconds"] = settle_seconds
        return replace(self, **changes) if changes else self


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def load_profiles(yaml_path: Path = DEFAULT_PROFILES_PATH) -> tuple[dict[str, MigrationProfile], str]:
    """Load and validate every profile in the file.

    Returns:
        (profiles by name, default profile name)

    Raises:
        ProfileValidationError: If the file or any profile is malformed.
        FileNotFoundError: If the YAML file does not exist.
    """
    raw = yaml_path.read_text(encoding="utf-8")
    data: dict[str, Any] = yaml.safe_load(raw)
    validate_profiles(data)
    yaml_hash = hashlib.sha256(raw.encode("utf-8")).hexdigest()

    profiles = {
        name: _build_profile(name, body, yaml_hash)
        for name, body in data["profiles"].items()
    }
    return profiles, str(data.get("default_profile") or next(iter(profiles)))


def get_profile(name: str | None = None, yaml_path: Path | None = None) -> MigrationProfile:
    """Look up one profile by name; None selects the file's default_profile."""
    profiles, default = load_profiles(yaml_path or DEFAULT_PROFILES_PATH)
    chosen = name or default
    if chosen not in profiles:
        raise ProfileValidationError(
            f"Unknown profile {chosen!r}; available: {sorted(profiles)}"
        )
    return profiles[chosen]


def validate_profiles(data: Any) -> None:
    """Raise ProfileValidationError if data does not match the profiles schema."""
    if not isinstance(data, dict):
        raise ProfileValidationError("YAML root must be a mapping.")

    profiles = data.get("profiles")
    if not isinstance(profiles, dict) or not profiles:
        raise ProfileValidationError("'profiles' must be a non-empty mapping.")

    default = data.get("default_profile")
    if default is not None and default not in profiles:
        raise ProfileValidationError(
            f"default_profile {default!r} is not a defined profile."
        )

    for name, body in profiles.items():
        validate_profile(str(name), body)


def validate_profile(name: str, body: Any) -> None:
    if not isinstance(body, dict):
        raise ProfileValidationError(f"Profile {name!r} must be a mapping.")

    missing = REQUIRED_PROFILE_KEYS - set(body.keys())
    if missing:
        raise ProfileValidationError(
            f"Profile {name!r} missing required keys: {sorted(missing)}"
        )

    if body["strategy"] not in VALID_STRATEGIES:
        raise ProfileValidationError(
            f"Profile {name!r}: strategy must be one of {VALID_STRATEGIES}, "
            f"got {body['strategy']!r}"
        )

    if not isinstance(body["verify"], bool):
        raise ProfileValidationError(f"Profile {name!r}: verify must be true or false.")

    for key in _POSITIVE_INT_KEYS:
        value = body[key]
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            raise ProfileValidationError(
                f"Profile {name!r}: {key} must be a positive integer, got {value!r}"
            )

    for key in _NON_NEGATIVE_INT_KEYS:
        value = body[key]
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ProfileValidationError(
                f"Profile {name!r}: {key} must be a non-negative integer, got {value!r}"
            )

    for key in _NON_NEGATIVE_FLOAT_KEYS:
        if key not in body:
            continue
        value = body[key]
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
            raise ProfileValidationError(
                f"Profile {name!r}: {key} must be a non-negative number, got {value!r}"
            )

    if (body["degrade_threshold"] > 0) != (body["degrade_batch_size"] > 0):
        raise ProfileValidationError(
            f"Profile {name!r}: degrade_threshold and degrade_batch_size must both "
            "be set or both be 0."
        )


def _build_profile(name: str, body: dict[str, Any], yaml_hash: str) -> MigrationProfile:
    return MigrationProfile(
        name=name,
        strategy=body["strategy"],
        batch_size=int(body["batch_size"]),
        delete_batch_size=int(body["delete_batch_size"]),
        verify=bool(body["verify"]),
        max_retries=int(body["max_retries"]),
        retry_delay_seconds=float(body["retry_delay_seconds"]),
        inter_chunk_delay_seconds=float(body["inter_chunk_delay_seconds"]),
        degrade_threshold=int(body["degrade_threshold"]),
        degrade_batch_size=int(body["degrade_batch_size"]),
        settle_seconds=float(body["settle_seconds"]),
        verify_delay_seconds=float(body.get("verify_delay_seconds", 0.5)),
        prioritize_common=bool(body.get("prioritize_common", False)),
        yaml_hash=yaml_hash,
    )
