# respec_engine/errors.py


class ConflictEngineError(Exception):
    pass


class SchemaIntegrityError(ConflictEngineError):
    """
    A referenced node id is absent from the schema, or a unit conversion
    needed by a constraint check is undefined. Fatal to the current detection pass.
    """
    pass


class ResolutionNotFoundError(ConflictEngineError):
    """
    Conflict id or option id unknown at resolution time.
    """

    def __init__(self, message: str, conflict_id: str | None = None, option_id: str | None = None):
        super().__init__(message)
        self.conflict_id = conflict_id
        self.option_id = option_id


class VerificationFailure(ConflictEngineError):
    """
    Post-resolution check found the original cause still present, or a new
    conflict among the touched nodes. Artifacts have already been rolled back
    when this is raised.
    """

    def __init__(self, message: str, conflict_id: str, remaining_ids: list[str] | None = None):
        super().__init__(message)
        self.conflict_id = conflict_id
        self.remaining_ids = list(remaining_ids or [])


class InterpretationServiceError(ConflictEngineError):
    pass
