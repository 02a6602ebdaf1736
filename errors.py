"""Error kinds raised by the vocabulary core and its collaborators."""


class LangHelperError(Exception):
    """Base class for langhelper failures."""


class GeneratorUnavailable(LangHelperError):
    """The word generator (language model) failed or returned garbage."""


class StoreUnavailable(LangHelperError):
    """The filter store could not be read or written."""


class FilterCorrupt(LangHelperError):
    """A persisted filter blob does not match its declared size."""


class SupplyExhausted(LangHelperError):
    """Every supply attempt was spent without collecting a single new word."""
