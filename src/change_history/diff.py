"""Row image diffing for history records.

compute_diff() turns the before/after images of one row into what a history
record stores:

- insert: the new image, minus ignored columns
- delete: the old image, minus ignored columns
- update: the old image minus ignored columns, plus the fields whose value
  changed. An update whose only changes are to ignored columns is suppressed
  (None is returned) and no record is written.

Values are compared by equality as captured. Ignored column names are never
validated against the row.
"""
from dataclasses import dataclass
from typing import AbstractSet, Optional

from .errors import ConfigurationError
from .schemas import Action, RowImage


@dataclass(frozen=True)
class RowDiff:
    """Images to store for one row-level event."""
    row_image: RowImage
    changed_fields: Optional[RowImage] = None


def strip_ignored(image: RowImage, ignored_columns: AbstractSet[str]) -> RowImage:
    """Copy of image without the ignored columns."""
    return {key: value for key, value in image.items() if key not in ignored_columns}


def changed_fields(
    old_image: RowImage,
    new_image: RowImage,
    ignored_columns: AbstractSet[str] = frozenset(),
) -> RowImage:
    """Entries of new_image whose value differs from old_image.

    A key missing from old_image counts as changed.
    """
    changes = {}
    for key, value in new_image.items():
        if key in ignored_columns:
            continue
        if key not in old_image or old_image[key] != value:
            changes[key] = value
    return changes


def compute_diff(
    action: Action,
    old_image: Optional[RowImage],
    new_image: Optional[RowImage],
    ignored_columns: AbstractSet[str] = frozenset(),
) -> Optional[RowDiff]:
    """Compute the stored images for a row-level event.

    Args:
        action: INSERT, UPDATE or DELETE.
        old_image: Row before the change (required for UPDATE and DELETE).
        new_image: Row after the change (required for INSERT and UPDATE).
        ignored_columns: Columns left out of both images.

    Returns:
        RowDiff, or None when an UPDATE changed only ignored columns.

    Raises:
        ConfigurationError: The action is not row-level, or a required image
            is missing.
    """
    if action is Action.INSERT:
        _require(new_image, action, "new_image")
        return RowDiff(row_image=strip_ignored(new_image, ignored_columns))

    if action is Action.DELETE:
        _require(old_image, action, "old_image")
        return RowDiff(row_image=strip_ignored(old_image, ignored_columns))

    if action is Action.UPDATE:
        _require(old_image, action, "old_image")
        _require(new_image, action, "new_image")
        row_image = strip_ignored(old_image, ignored_columns)
        changes = changed_fields(row_image, new_image, ignored_columns)
        if not changes:
            return None
        return RowDiff(row_image=row_image, changed_fields=changes)

    raise ConfigurationError(
        f"No row image diff for action '{action.value}'",
        details={"action": action.value}
    )


def _require(image: Optional[RowImage], action: Action, name: str) -> None:
    if image is None:
        raise ConfigurationError(
            f"Row-level {action.value} fired without {name}",
            details={"action": action.value, "missing": name}
        )
