"""
Label catalog and class-index validation.

The catalog is an ordered list of class names loaded once from JSON:

    {"classes": ["A", "B", "C", ...]}

A predicted index is only ever used to look up a label after a bounds
check; anything outside ``[0, len(catalog))`` becomes ``INVALID``.
"""

import json
import logging
from typing import NamedTuple, Optional

from core.errors import CatalogLoadError
from core.types import INVALID_INDEX

logger = logging.getLogger(__name__)


class LabelCatalog:
    """Immutable ordered sequence of class names."""

    __slots__ = ("_classes",)

    def __init__(self, classes):
        classes = tuple(classes)
        if not classes:
            raise CatalogLoadError("Label catalog is empty")
        for i, name in enumerate(classes):
            if not isinstance(name, str) or not name:
                raise CatalogLoadError(
                    "Label catalog entry %d must be a non-empty string, got %r" % (i, name))
        self._classes = classes

    @classmethod
    def load(cls, path: str) -> "LabelCatalog":
        """Parse a JSON catalog. Any problem is fatal for start-up.

        Raises:
            CatalogLoadError: missing file, invalid JSON or bad entries
        """
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError as e:
            raise CatalogLoadError("Label catalog not found: %s" % path) from e
        except (OSError, json.JSONDecodeError, UnicodeDecodeError) as e:
            raise CatalogLoadError("Could not parse label catalog %s: %s" % (path, e)) from e

        if isinstance(data, dict):
            classes = data.get("classes")
        else:
            classes = data
        if not isinstance(classes, list):
            raise CatalogLoadError(
                "Label catalog %s must contain a 'classes' list" % path)

        catalog = cls(classes)
        logger.info("Loaded %d class labels from %s", len(catalog), path)
        return catalog

    @property
    def classes(self) -> tuple:
        return self._classes

    def __len__(self):
        return len(self._classes)

    def __getitem__(self, index):
        return self._classes[index]

    def __iter__(self):
        return iter(self._classes)

    def __repr__(self):
        return "LabelCatalog(%d classes)" % len(self._classes)


class ValidatedLabel(NamedTuple):
    """Outcome of validating a raw class index."""
    index: int
    label: Optional[str]

    @property
    def is_valid(self) -> bool:
        return self.label is not None

    def display(self) -> str:
        return self.label if self.label is not None else "Invalid index"


INVALID = ValidatedLabel(INVALID_INDEX, None)


class Classifier:
    """Pure lookup from class index to label."""

    def __init__(self, catalog: LabelCatalog):
        self._catalog = catalog

    @property
    def catalog(self) -> LabelCatalog:
        return self._catalog

    def validate(self, index) -> ValidatedLabel:
        """Return the catalog entry for ``index`` or ``INVALID``."""
        try:
            index = int(index)
        except (TypeError, ValueError):
            return INVALID
        if 0 <= index < len(self._catalog):
            return ValidatedLabel(index, self._catalog[index])
        return INVALID
