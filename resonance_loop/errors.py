"""Error taxonomy for the selection / feedback / harmonization loop."""


class ResonanceError(Exception):
    """Base class for all engine errors."""

    status_code = 500


class ValidationError(ResonanceError):
    """Bad input range or type. Rejected with no side effects."""

    status_code = 400


class NotFoundError(ResonanceError):
    """No applicable candidates, unknown candidate, or missing user state."""

    status_code = 404


class DependencyError(ResonanceError):
    """Embedding service or event log unavailable."""

    status_code = 503


class ConcurrencyConflict(ResonanceError):
    """Compare-and-swap kept losing after the bounded retry budget."""

    status_code = 409
