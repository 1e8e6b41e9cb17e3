"""Load and validate role rubrics."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

from pydantic import ValidationError

from evaluation_platform.rubric_models import RoleSpec, Rubric


logger = logging.getLogger(__name__)


PLATFORM_NAME = "Live Interview Evaluation"

DEFAULT_ROLE_ID = "vp-sales"

ROLES: tuple[RoleSpec, ...] = (
    RoleSpec(id="vp-sales", label="VP of Sales"),
    RoleSpec(id="vp-ta", label="VP of TA"),
    RoleSpec(id="account-executive", label="Account Executive"),
)

BUNDLED_RUBRICS_DIR = Path(__file__).parent / "rubrics"


def resolve_rubrics_dir(rubrics_dir: str | Path | None = None) -> Path:
    """Resolve explicit directory, RUBRICS_DIR, or the bundled rubrics."""
    raw_path = str(rubrics_dir or os.environ.get("RUBRICS_DIR") or "").strip()
    if not raw_path:
        return BUNDLED_RUBRICS_DIR
    return Path(raw_path).expanduser()


def load_rubric(path: Path) -> Rubric:
    """Load one rubric JSON file from disk with strict validation."""
    resolved_path = path.resolve()
    if not resolved_path.exists():
        raise RuntimeError(f"Rubric file not found at '{resolved_path}'.")

    try:
        with open(resolved_path, "r", encoding="utf-8") as rubric_file:
            raw_rubric = json.load(rubric_file)
    except OSError as exc:
        raise RuntimeError(f"Failed to read rubric '{resolved_path}': {exc}") from exc
    except json.JSONDecodeError as exc:
        raise RuntimeError(
            f"Rubric at '{resolved_path}' is not valid JSON: {exc}"
        ) from exc

    try:
        return Rubric.model_validate(raw_rubric)
    except ValidationError as exc:
        raise RuntimeError(
            f"Rubric validation failed for '{resolved_path}': {exc}"
        ) from exc


class RubricRegistry:
    """
    Role rubrics keyed by role id.

    Unknown or empty role ids fall back to the default role. Files are read
    once and cached.
    """

    def __init__(
        self,
        rubrics_dir: str | Path | None = None,
        roles: tuple[RoleSpec, ...] = ROLES,
        default_role: str = DEFAULT_ROLE_ID,
    ) -> None:
        self.rubrics_dir = resolve_rubrics_dir(rubrics_dir)
        self._roles = roles
        if not any(role.id == default_role for role in roles):
            raise RuntimeError(f"Default role '{default_role}' is not a known role.")
        self.default_role = default_role
        self._cache: dict[str, Rubric] = {}

    def roles(self) -> list[RoleSpec]:
        return list(self._roles)

    def resolve_role(self, role_id: str | None) -> str:
        """Return ``role_id`` if known, else the default role id."""
        if role_id and any(role.id == role_id for role in self._roles):
            return role_id
        if role_id:
            logger.warning("Unknown role '%s'; using '%s'", role_id, self.default_role)
        return self.default_role

    def label(self, role_id: str | None) -> str:
        resolved = self.resolve_role(role_id)
        return next(role.label for role in self._roles if role.id == resolved)

    def get(self, role_id: str | None) -> Rubric:
        """
        Load the rubric for ``role_id``.

        Raises:
            RuntimeError: If the rubric file is missing or invalid.
        """
        resolved = self.resolve_role(role_id)
        cached = self._cache.get(resolved)
        if cached is not None:
            return cached

        rubric = load_rubric(self.rubrics_dir / f"{resolved}.json")
        self._cache[resolved] = rubric
        logger.info(
            "Loaded rubric '%s' (%d categories)", resolved, len(rubric.categories)
        )
        return rubric

    def validate_all(self) -> None:
        """Load every role's rubric so misconfiguration fails at startup."""
        for role in self._roles:
            self.get(role.id)
