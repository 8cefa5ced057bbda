class CityScoutError(Exception):
    """Base class for errors surfaced to API and CLI callers."""


class ActivityExportError(CityScoutError, ValueError):
    """The uploaded activity export does not have the expected shape."""

    def __init__(self, message: str, errors: list | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class SynthesisError(CityScoutError):
    """Profile generation failed; nothing was attached to the profile."""


class PreferenceSelectionError(CityScoutError, ValueError):
    """A confirmation tried to add a tag or category that was never generated."""


class ProfileNotFoundError(CityScoutError, LookupError):
    pass
