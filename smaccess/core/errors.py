"""Exception and warning types shared across smaccess."""


class SmaccessError(Exception):
    """Base class for smaccess errors."""


class ConfigurationError(SmaccessError, ValueError):
    """Invalid run configuration. Raised before any data is processed."""


class ModelStoreError(SmaccessError):
    """Reference model store is missing, corrupt or unusable for scoring."""


class TrainingError(SmaccessError):
    """No reference model could be fitted from a control dataset."""


class ReadProcessingError(SmaccessError):
    """A single read could not be processed; the read is skipped."""


class MotifError(SmaccessError, ValueError):
    """Malformed motif specification (expected ``<pos>:<motif>``)."""


class ConvergenceWarning(UserWarning):
    """EM stopped at the iteration ceiling before reaching the tolerance."""


class DataQualityWarning(UserWarning):
    """Input units (events, positions, reads) were skipped."""
