"""Exceptions raised by the form engine.

Evaluation itself never raises on malformed authoring input; these are
reserved for unusable definitions and for data-source fetchers.
"""


class FormDefinitionError(ValueError):
    """Raised when a form definition cannot be parsed at all."""

    def __init__(self, message: str, path: str = ""):
        self.path = path
        super().__init__(f"{path}: {message}" if path else message)


class DataSourceError(Exception):
    """Raised by data-source fetchers when a lookup fails."""

    def __init__(self, source_id: str, message: str):
        self.source_id = source_id
        super().__init__(f"Data source '{source_id}' failed: {message}")
