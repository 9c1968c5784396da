from __future__ import annotations

import re
from typing import Iterable, Optional

from .errors import ValidationError
from .models import TASK_STATES

PROJECT_NAME_RE = re.compile(r"^[A-Za-z0-9\s\-_]+$")
IDENT_RE = re.compile(r"^[A-Za-z0-9\-_]+$")

RESERVED_PROJECT_NAMES = {"default", "system", "admin", "root", "test"}

MAX_PROJECT_NAME = 255
MAX_TASK_NUMBER = 50
MAX_TASK_TITLE = 500
MAX_TAG = 100
MAX_DESCRIPTION = 65535

TASK_TRANSITIONS = {
    "pending": {"in-progress", "completed", "blocked"},
    "in-progress": {"pending", "completed", "blocked"},
    "completed": {"pending", "in-progress"},
    "blocked": {"pending", "in-progress"},
}


def sanitize_project_name(name: str) -> str:
    return " ".join(name.split())


def sanitize_tags(tags: Iterable[str]) -> list[str]:
    out: list[str] = []
    for t in tags:
        t = t.strip().lower()
        if t and t not in out:
            out.append(t)
    return out


def sanitize_description(description: Optional[str]) -> Optional[str]:
    if not description:
        return None
    return description.strip() or None


def _check_description(errors: list[str], what: str, description: Optional[str]) -> None:
    if description and len(description) > MAX_DESCRIPTION:
        errors.append(f"{what} description must be {MAX_DESCRIPTION} characters or less")


def validate_project(name: str, description: Optional[str] = None) -> None:
    errors: list[str] = []
    if not name or not name.strip():
        errors.append("Project name is required")
    else:
        if len(name) > MAX_PROJECT_NAME:
            errors.append(f"Project name must be {MAX_PROJECT_NAME} characters or less")
        if not PROJECT_NAME_RE.match(name):
            errors.append("Project name can only contain letters, numbers, spaces, hyphens, and underscores")
        if name.strip().lower() in RESERVED_PROJECT_NAMES:
            errors.append(f"Project name {name!r} is reserved")
    _check_description(errors, "Project", description)
    if errors:
        raise ValidationError(errors)


def _tag_errors(tags: Iterable[str]) -> list[str]:
    errors: list[str] = []
    for tag in tags:
        if not tag or len(tag) > MAX_TAG:
            errors.append(f"Tag must be between 1 and {MAX_TAG} characters")
        elif not IDENT_RE.match(tag):
            errors.append(f"Tag {tag!r} can only contain letters, numbers, hyphens, and underscores")
    return errors


def validate_task(
    *,
    number: Optional[str] = None,
    title: Optional[str] = None,
    description: Optional[str] = None,
    state: Optional[str] = None,
    size_estimate: Optional[float] = None,
    time_estimate_hours: Optional[float] = None,
    tags: Optional[Iterable[str]] = None,
    partial: bool = False,
) -> None:
    """Validate task fields; with ``partial`` only the given ones are required."""
    errors: list[str] = []

    if number is not None or not partial:
        if not number or not number.strip():
            errors.append("Task number is required")
        elif len(number) > MAX_TASK_NUMBER:
            errors.append(f"Task number must be {MAX_TASK_NUMBER} characters or less")
        elif not IDENT_RE.match(number):
            errors.append("Task number can only contain letters, numbers, hyphens, and underscores")

    if title is not None or not partial:
        if not title or not title.strip():
            errors.append("Task title is required")
        elif len(title) > MAX_TASK_TITLE:
            errors.append(f"Task title must be {MAX_TASK_TITLE} characters or less")

    _check_description(errors, "Task", description)

    if state is not None and state not in TASK_STATES:
        errors.append(f"Invalid task state {state!r} (expected one of: {', '.join(TASK_STATES)})")
    if size_estimate is not None and size_estimate <= 0:
        errors.append("Size estimate must be positive")
    if time_estimate_hours is not None and time_estimate_hours <= 0:
        errors.append("Time estimate must be positive")
    if tags is not None:
        errors.extend(_tag_errors(tags))

    if errors:
        raise ValidationError(errors)


def validate_task_transition(from_state: str, to_state: str) -> None:
    if from_state == to_state:
        return
    if to_state not in TASK_TRANSITIONS.get(from_state, set()):
        raise ValidationError(f"Cannot move task from {from_state} to {to_state}")
