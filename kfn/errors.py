class KFNError(Exception):
    """Base class for errors raised by the kfn package."""


class InvalidArgumentError(KFNError, ValueError):
    """An invalid parameter or parameter combination was given."""


class TypeMismatchError(KFNError, TypeError):
    """A parameter was stored or requested with the wrong type."""


class ModelReleasedError(KFNError, RuntimeError):
    """A model was used or released after it had already been released."""
