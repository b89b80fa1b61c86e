from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from .models import Visibility
from .utils import SUPPORTED_CHECKSUM_ALGORITHMS


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    store_root: str = "state_store"
    binary_root: str = "state_store/binaries"
    default_admin_set_id: str = "admin_set/default"
    default_admin_set_title: str = "Default Admin Set"
    default_visibility: str = "restricted"
    checksum_algorithm: str = "sha256"
    max_upload_bytes: int = 1_073_741_824

    @classmethod
    def from_env(cls, *, dotenv_path: Path | None = None) -> "RuntimeSettings":
        """Read ``CURATION_*`` variables, loading a ``.env`` file first if present.

        Variables already set in the process environment win over the file.
        """
        load_dotenv(dotenv_path if dotenv_path is not None else Path.cwd() / ".env", override=False)
        return cls(
            store_root=os.getenv("CURATION_STORE_ROOT", "state_store"),
            binary_root=os.getenv("CURATION_BINARY_ROOT", "state_store/binaries"),
            default_admin_set_id=os.getenv("CURATION_DEFAULT_ADMIN_SET_ID", "admin_set/default"),
            default_admin_set_title=os.getenv("CURATION_DEFAULT_ADMIN_SET_TITLE", "Default Admin Set"),
            default_visibility=os.getenv("CURATION_DEFAULT_VISIBILITY", "restricted"),
            checksum_algorithm=os.getenv("CURATION_CHECKSUM_ALGORITHM", "sha256"),
            max_upload_bytes=_get_env_int("CURATION_MAX_UPLOAD_BYTES", default=1_073_741_824, minimum=1, maximum=1 << 40),
        ).normalized()

    @property
    def visibility(self) -> Visibility:
        return Visibility(self.default_visibility)

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        # -- Paths and identifiers --
        if not self.store_root.strip():
            raise ValueError("CURATION_STORE_ROOT must be non-empty")
        if not self.binary_root.strip():
            raise ValueError("CURATION_BINARY_ROOT must be non-empty")
        admin_set_id = self.default_admin_set_id.strip()
        if not admin_set_id:
            raise ValueError("CURATION_DEFAULT_ADMIN_SET_ID must be non-empty")
        admin_set_title = self.default_admin_set_title.strip()
        if not admin_set_title:
            raise ValueError("CURATION_DEFAULT_ADMIN_SET_TITLE must be non-empty")

        # -- Enumerated values --
        visibility = self.default_visibility.strip().lower()
        allowed_visibility = {item.value for item in Visibility}
        if visibility not in allowed_visibility:
            raise ValueError(
                f"CURATION_DEFAULT_VISIBILITY must be one of: {', '.join(sorted(allowed_visibility))}"
            )
        algorithm = self.checksum_algorithm.strip().lower()
        if algorithm not in SUPPORTED_CHECKSUM_ALGORITHMS:
            raise ValueError(
                f"CURATION_CHECKSUM_ALGORITHM must be one of: {', '.join(sorted(SUPPORTED_CHECKSUM_ALGORITHMS))}"
            )
        if self.max_upload_bytes < 1:
            raise ValueError(f"CURATION_MAX_UPLOAD_BYTES must be >= 1, got: {self.max_upload_bytes}")

        return RuntimeSettings(
            store_root=self.store_root,
            binary_root=self.binary_root,
            default_admin_set_id=admin_set_id,
            default_admin_set_title=admin_set_title,
            default_visibility=visibility,
            checksum_algorithm=algorithm,
            max_upload_bytes=self.max_upload_bytes,
        )

    def store_path(self, repo_root: Path) -> Path:
        path = Path(self.store_root)
        return path if path.is_absolute() else repo_root / path

    def binary_path(self, repo_root: Path) -> Path:
        path = Path(self.binary_root)
        return path if path.is_absolute() else repo_root / path


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound.

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed
