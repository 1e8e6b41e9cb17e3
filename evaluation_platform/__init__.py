"""Rubric platform package: role rubrics and report delivery routes."""

from evaluation_platform.rubric_loader import (
    BUNDLED_RUBRICS_DIR,
    DEFAULT_ROLE_ID,
    PLATFORM_NAME,
    ROLES,
    RubricRegistry,
    load_rubric,
)
from evaluation_platform.rubric_models import (
    RoleSpec,
    Rubric,
    RubricCategory,
)

__all__ = [
    "BUNDLED_RUBRICS_DIR",
    "DEFAULT_ROLE_ID",
    "PLATFORM_NAME",
    "ROLES",
    "RubricRegistry",
    "load_rubric",
    "RoleSpec",
    "Rubric",
    "RubricCategory",
]
