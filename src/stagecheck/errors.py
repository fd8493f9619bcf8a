from __future__ import annotations


class StagecheckError(Exception):
    pass


class ValidationError(StagecheckError):
    """Bad local input (identifier syntax, missing session user). Never reaches the gateway."""


class NotFoundError(StagecheckError):
    """Identifier absent from an upstream catalog."""


class ConflictError(StagecheckError):
    """Identifier already finalized or in use elsewhere."""


class TransportError(StagecheckError):
    """Network or server failure on a gateway call."""


class CatalogError(ValueError):
    pass
